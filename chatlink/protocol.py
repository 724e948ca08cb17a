"""Message types and the JSON wire format shared by server and client."""

from __future__ import annotations

import enum
import json
from typing import Any


class MsgType(enum.IntEnum):
    """Identifiers carried in the ``msgid`` field of every message."""

    LOGIN_MSG = 1
    LOGIN_MSG_ACK = 2
    LOGINOUT_MSG = 3
    REG_MSG = 4
    REG_MSG_ACK = 5
    ONE_CHAT_MSG = 6
    ADD_FRIEND_MSG = 7
    CREATE_GROUP_MSG = 8
    ADD_GROUP_MSG = 9
    GROUP_CHAT_MSG = 10


_TERMINATOR = b"\0"


def encode(payload: Any) -> bytes:
    """Serialise *payload* as compact JSON with sorted keys, NUL-terminated."""
    text = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return text.encode("utf-8") + _TERMINATOR


def decode(data: bytes | bytearray | str) -> Any:
    """Parse one message; anything from the first NUL byte onwards is ignored.

    Raises ``ValueError`` when the text is not valid JSON.
    """
    if isinstance(data, str):
        text = data.split("\0", 1)[0]
    else:
        raw = bytes(data).split(_TERMINATOR, 1)[0]
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValueError(f"message is not valid UTF-8: {exc}") from exc
    return json.loads(text)