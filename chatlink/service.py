"""Chat business logic: login, registration, chats, friends and groups."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from typing import Any, Callable

from .db import Database
from .models import Group, User
from .protocol import MsgType, decode, encode
from .stores import FriendModel, GroupModel, OfflineMsgModel, UserModel

log = logging.getLogger(__name__)

MsgHandler = Callable[[Any, dict], None]


def _dumps(payload: Any) -> str:
    """The JSON text of *payload* in wire format, without the terminator."""
    return encode(payload).rstrip(b"\0").decode("utf-8")


class ChatService:
    """Handles decoded client messages and routes chats to their receivers.

    A connection is any object with a ``send(bytes)`` method. Users online
    on this server are tracked locally; messages for users online elsewhere
    go through the broker, and messages for offline users are stored.
    """

    def __init__(self, db: Database, broker: Any = None):
        self._user_model = UserModel(db)
        self._offline_model = OfflineMsgModel(db)
        self._friend_model = FriendModel(db)
        self._group_model = GroupModel(db)

        self._user_conns: dict[int, Any] = {}
        self._conn_lock = threading.Lock()
        self.unknown_msgids: Counter[Any] = Counter()

        self._handlers: dict[int, MsgHandler] = {
            MsgType.LOGIN_MSG: self.login,
            MsgType.LOGINOUT_MSG: self.loginout,
            MsgType.REG_MSG: self.reg,
            MsgType.ONE_CHAT_MSG: self.one_chat,
            MsgType.ADD_FRIEND_MSG: self.add_friend,
            MsgType.CREATE_GROUP_MSG: self.create_group,
            MsgType.ADD_GROUP_MSG: self.add_group,
            MsgType.GROUP_CHAT_MSG: self.group_chat,
        }

        self._broker = broker
        if broker is not None:
            broker.set_notify_handler(self.handle_broker_message)
            if not broker.connect():
                log.error("message broker is unavailable")

    def get_handler(self, msgid: int) -> MsgHandler:
        """Return the handler for *msgid*; unknown ids get one that counts and logs them."""
        handler = self._handlers.get(msgid)
        if handler is not None:
            return handler

        def _unknown(conn: Any, js: dict) -> None:
            self.unknown_msgids[msgid] += 1
            log.error("msgid:%s can not find handler!", msgid)

        return _unknown

    def dispatch(self, conn: Any, js: dict) -> None:
        """Run the handler that belongs to the message's ``msgid``."""
        self.get_handler(js["msgid"])(conn, js)

    @staticmethod
    def _send(conn: Any, payload: Any) -> None:
        conn.send(encode(payload))

    def _publish(self, userid: int, text: str) -> None:
        if self._broker is None or not self._broker.publish(userid, text):
            log.warning("cannot relay message to user %s", userid)

    def login(self, conn: Any, js: dict) -> None:
        """Check id and password, mark the user online and send their data."""
        userid = int(js["id"])
        given = js["password"]

        user = self._user_model.query(userid)
        if user.id == -1 or user.id != userid or user.password != given:
            self._send(conn, {
                "msgid": MsgType.LOGIN_MSG_ACK,
                "errno": 1,
                "errmsg": "id or password is invalid!",
            })
            return

        if user.state == "online":
            self._send(conn, {
                "msgid": MsgType.LOGIN_MSG_ACK,
                "errno": 2,
                "errmsg": "this account is using, input another!",
            })
            return

        with self._conn_lock:
            self._user_conns[userid] = conn

        if self._broker is not None:
            self._broker.subscribe(userid)

        user.state = "online"
        self._user_model.update_state(user)

        response: dict[str, Any] = {
            "msgid": MsgType.LOGIN_MSG_ACK,
            "errno": 0,
            "id": user.id,
            "name": user.name,
        }

        offline = self._offline_model.query(userid)
        if offline:
            response["offlinemsg"] = offline
            self._offline_model.remove(userid)

        friends = self._friend_model.query(userid)
        if friends:
            response["friends"] = [
                _dumps({"id": f.id, "name": f.name, "state": f.state}) for f in friends
            ]

        groups = self._group_model.query_groups(userid)
        if groups:
            response["groups"] = [
                _dumps({
                    "id": group.id,
                    "groupname": group.name,
                    "groupdesc": group.desc,
                    "users": [
                        _dumps({
                            "id": member.id,
                            "name": member.name,
                            "state": member.state,
                            "role": member.role,
                        })
                        for member in group.users
                    ],
                })
                for group in groups
            ]

        self._send(conn, response)

    def reg(self, conn: Any, js: dict) -> None:
        """Create a user and reply with its new id, or with an error."""
        user = User(name=js["name"], password=js["password"])
        if self._user_model.insert(user):
            self._send(conn, {"msgid": MsgType.REG_MSG_ACK, "errno": 0, "id": user.id})
        else:
            self._send(conn, {"msgid": MsgType.REG_MSG_ACK, "errno": 1})

    def loginout(self, conn: Any, js: dict) -> None:
        """Log the user out and mark them offline."""
        userid = int(js["id"])
        with self._conn_lock:
            self._user_conns.pop(userid, None)

        if self._broker is not None:
            self._broker.unsubscribe(userid)

        self._user_model.update_state(User(id=userid, state="offline"))

    def client_close_exception(self, conn: Any) -> None:
        """Forget a connection that closed and mark its user offline."""
        userid = -1
        with self._conn_lock:
            for uid, known in self._user_conns.items():
                if known is conn:
                    userid = uid
                    del self._user_conns[uid]
                    break

        if userid == -1:
            return

        if self._broker is not None:
            self._broker.unsubscribe(userid)
        self._user_model.update_state(User(id=userid, state="offline"))

    def one_chat(self, conn: Any, js: dict) -> None:
        """Deliver a chat to ``toid``: directly, via the broker, or stored."""
        toid = int(js["toid"])
        with self._conn_lock:
            target = self._user_conns.get(toid)
            if target is not None:
                self._send(target, js)
                return

        text = _dumps(js)
        if self._user_model.query(toid).state == "online":
            self._publish(toid, text)
            return

        self._offline_model.insert(toid, text)

    def add_friend(self, conn: Any, js: dict) -> None:
        """Record ``friendid`` as a friend of ``id``."""
        self._friend_model.insert(int(js["id"]), int(js["friendid"]))

    def create_group(self, conn: Any, js: dict) -> None:
        """Create a group with the sender as its creator."""
        userid = int(js["id"])
        group = Group(name=js["groupname"], desc=js["groupdesc"])
        if self._group_model.create_group(group):
            self._group_model.add_group(userid, group.id, "creator")

    def add_group(self, conn: Any, js: dict) -> None:
        """Add the sender to a group as a normal member."""
        self._group_model.add_group(int(js["id"]), int(js["groupid"]), "normal")

    def group_chat(self, conn: Any, js: dict) -> None:
        """Deliver a group message to every other member of the group."""
        userid = int(js["id"])
        groupid = int(js["groupid"])
        members = self._group_model.query_group_users(userid, groupid)
        text = _dumps(js)

        with self._conn_lock:
            for member in members:
                target = self._user_conns.get(member)
                if target is not None:
                    self._send(target, js)
                elif self._user_model.query(member).state == "online":
                    self._publish(member, text)
                else:
                    self._offline_model.insert(member, text)

    def reset(self) -> None:
        """Mark every online user offline, as after a server failure."""
        self._user_model.reset_state()

    def handle_broker_message(self, userid: int, msg: str) -> None:
        """Deliver a message relayed by another server, or store it."""
        with self._conn_lock:
            target = self._user_conns.get(userid)
            if target is not None:
                try:
                    payload = decode(msg)
                except ValueError as exc:
                    log.warning("dropping malformed relayed message: %s", exc)
                    return
                self._send(target, payload)
                return

        self._offline_model.insert(userid, msg)