"""TCP chat server: accepts clients and hands their messages to the chat service."""

from __future__ import annotations

import argparse
import logging
import signal
import socket
import socketserver
import sys
import threading
from typing import Any, Iterator

from .broker import Broker
from .db import Database
from .protocol import decode
from .service import ChatService

log = logging.getLogger(__name__)

_RECV_SIZE = 4096
_JOIN_SECONDS = 2.0


def _frames(sock: socket.socket) -> Iterator[bytes]:
    """Yield NUL-terminated frames read from *sock* until it closes."""
    buffer = b""
    while True:
        try:
            chunk = sock.recv(_RECV_SIZE)
        except OSError:
            break
        if not chunk:
            break
        buffer += chunk
        *complete, buffer = buffer.split(b"\0")
        for frame in complete:
            if frame.strip():
                yield frame
    if buffer.strip():
        yield buffer


class Connection:
    """A client connection that can be written to from several threads."""

    def __init__(self, sock: socket.socket):
        self.sock = sock
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: bytes | str) -> bool:
        """Write *message* in full; False if the connection is closed or fails."""
        data = message.encode("utf-8") if isinstance(message, str) else bytes(message)
        with self._lock:
            if self._closed:
                return False
            try:
                self.sock.sendall(data)
            except OSError as exc:
                log.warning("sending to client failed: %s", exc)
                return False
        return True

    def close(self) -> None:
        """Shut the connection down; closing twice is harmless."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()


class _TCPServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True
    chat_server: "ChatServer"


class _RequestHandler(socketserver.BaseRequestHandler):
    def handle(self) -> None:
        self.server.chat_server._serve(self.request)


class ChatServer:
    """Listens for clients and dispatches each message they send."""

    def __init__(self, host: str, port: int, service: ChatService):
        self.host = host
        self.port = port
        self.service = service
        self._server: _TCPServer | None = None
        self._thread: threading.Thread | None = None
        self._connections: set[Connection] = set()
        self._lock = threading.Lock()

    @property
    def address(self) -> tuple[str, int]:
        """The address the server is bound to."""
        if self._server is None:
            raise RuntimeError("server is not started")
        host, port = self._server.server_address[:2]
        return host, port

    def start(self) -> None:
        """Bind the listening socket and serve clients on a background thread."""
        if self._server is not None:
            raise RuntimeError("server is already started")
        server = _TCPServer((self.host, self.port), _RequestHandler)
        server.chat_server = self
        self._server = server
        self._thread = threading.Thread(
            target=server.serve_forever, name="chat-server", daemon=True
        )
        self._thread.start()
        log.info("chat server listening on %s:%s", *self.address)

    def _serve(self, sock: socket.socket) -> None:
        conn = Connection(sock)
        with self._lock:
            self._connections.add(conn)
        try:
            for frame in _frames(sock):
                self._on_message(conn, frame)
        finally:
            with self._lock:
                self._connections.discard(conn)
            self.service.client_close_exception(conn)
            conn.close()

    def _on_message(self, conn: Connection, frame: bytes) -> None:
        try:
            js: Any = decode(frame)
        except ValueError as exc:
            log.error("malformed message from client: %s", exc)
            return
        if not isinstance(js, dict) or "msgid" not in js:
            log.error("message without msgid: %r", js)
            return
        try:
            self.service.dispatch(conn, js)
        except (KeyError, TypeError, ValueError) as exc:
            log.error("cannot handle message %r: %s", js, exc)

    def shutdown(self) -> None:
        """Stop accepting clients and close every open connection."""
        server, self._server = self._server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        with self._lock:
            connections = list(self._connections)
        for conn in connections:
            conn.close()
        if self._thread is not None:
            self._thread.join(_JOIN_SECONDS)
            self._thread = None


def _port(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {text!r}") from None
    if not 0 <= value <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {value}")
    return value


def main(argv=None) -> int:
    """Run the chat server until interrupted, then mark all users offline."""
    parser = argparse.ArgumentParser(
        prog="chatlink-server",
        description="Run the chat server.",
        epilog="example: chatlink-server 127.0.0.1 6000",
    )
    parser.add_argument("ip", help="address to listen on")
    parser.add_argument("port", type=_port, help="port to listen on")
    parser.add_argument("--db", default="chat.db", help="SQLite database file")
    parser.add_argument("--redis-host", default="127.0.0.1")
    parser.add_argument("--redis-port", type=_port, default=6379)
    parser.add_argument(
        "--no-redis", action="store_true", help="run without relaying to other servers"
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)

    db = Database(args.db).connect()
    db.create_schema()
    broker = None if args.no_redis else Broker(args.redis_host, args.redis_port)
    service = ChatService(db, broker)
    server = ChatServer(args.ip, args.port, service)

    try:
        server.start()
    except OSError as exc:
        print(f"cannot listen on {args.ip}:{args.port}: {exc}", file=sys.stderr)
        if broker is not None:
            broker.close()
        db.close()
        return 1

    stop = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda *_: stop.set())
    try:
        while not stop.wait(0.5):
            pass
    finally:
        signal.signal(signal.SIGINT, previous)
        server.shutdown()
        service.reset()
        if broker is not None:
            broker.close()
        db.close()
    return 0