"""Publish/subscribe relay between chat servers, backed by Redis."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

import redis

log = logging.getLogger(__name__)

NotifyHandler = Callable[[int, str], None]

_POLL_SECONDS = 0.2
_JOIN_SECONDS = 2.0


def _as_text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return str(value)


class Broker:
    """Relays messages between servers over Redis channels named by user id.

    One client publishes; a separate pub/sub connection receives messages
    for the subscribed channels on a background thread and hands them to
    the notify handler as ``(channel, message)``.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 6379, client: Any = None):
        self.host = host
        self.port = port
        self._client = client
        self._pubsub: Any = None
        self._handler: Optional[NotifyHandler] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def connect(self) -> bool:
        """Connect to Redis and start the observer thread; False on failure."""
        if self._client is None:
            self._client = redis.Redis(host=self.host, port=self.port)
        try:
            self._client.ping()
            self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        except redis.RedisError as exc:
            log.error("connect redis failed: %s", exc)
            return False

        self._stop.clear()
        self._thread = threading.Thread(
            target=self.observe, name="broker-observer", daemon=True
        )
        self._thread.start()
        log.info("connect redis-server success")
        return True

    def publish(self, channel: int, message: str) -> bool:
        """Publish *message* on *channel*; False if the command fails."""
        if self._client is None:
            log.error("publish command failed: broker is not connected")
            return False
        try:
            self._client.publish(str(channel), message)
        except redis.RedisError as exc:
            log.error("publish command failed: %s", exc)
            return False
        return True

    def subscribe(self, channel: int) -> bool:
        """Start receiving messages published on *channel*."""
        if self._pubsub is None:
            log.error("subscribe command failed: broker is not connected")
            return False
        try:
            self._pubsub.subscribe(str(channel))
        except redis.RedisError as exc:
            log.error("subscribe command failed: %s", exc)
            return False
        return True

    def unsubscribe(self, channel: int) -> bool:
        """Stop receiving messages published on *channel*."""
        if self._pubsub is None:
            log.error("unsubscribe command failed: broker is not connected")
            return False
        try:
            self._pubsub.unsubscribe(str(channel))
        except redis.RedisError as exc:
            log.error("unsubscribe command failed: %s", exc)
            return False
        return True

    def observe(self) -> None:
        """Deliver subscribed messages until closed or the connection fails."""
        pubsub = self._pubsub
        if pubsub is None:
            raise RuntimeError("broker is not connected")
        while not self._stop.is_set():
            try:
                message = pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=_POLL_SECONDS
                )
            except redis.RedisError as exc:
                log.error("receiving subscribed messages failed: %s", exc)
                break
            if message is None or message.get("type") != "message":
                continue
            self._deliver(message)
        log.info("broker observer quit")

    def _deliver(self, message: dict) -> None:
        channel_text = _as_text(message.get("channel", ""))
        try:
            channel = int(channel_text)
        except ValueError:
            log.warning("ignoring message on non-numeric channel %r", channel_text)
            return
        data = _as_text(message.get("data", ""))
        handler = self._handler
        if handler is None:
            log.warning("no handler for message on channel %d", channel)
            return
        handler(channel, data)

    def set_notify_handler(self, handler: NotifyHandler) -> None:
        """Set the callable that receives ``(channel, message)`` for each message."""
        self._handler = handler

    def close(self) -> None:
        """Stop the observer thread and release both connections."""
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(_JOIN_SECONDS)
        self._thread = None
        if self._pubsub is not None:
            try:
                self._pubsub.close()
            except redis.RedisError as exc:
                log.warning("closing subscription failed: %s", exc)
            self._pubsub = None
        if self._client is not None:
            try:
                self._client.close()
            except redis.RedisError as exc:
                log.warning("closing redis client failed: %s", exc)