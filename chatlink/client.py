"""Interactive chat client: menus, commands and the receiving loop."""

from __future__ import annotations

import _thread
import datetime
import logging
import re
import socket
import sys
import threading
from typing import Any, Callable, TextIO

from .models import Group, GroupUser, User
from .protocol import MsgType, decode, encode

log = logging.getLogger(__name__)

_RECV_SIZE = 4096
_ATOI = re.compile(r"\s*([+-]?\d+)")

COMMANDS: dict[str, str] = {
    "help": "显示所有支持的命令，格式help",
    "chat": "一对一聊天，格式chat:friendid:message",
    "addfriend": "添加好友，格式addfriend:friendid",
    "creategroup": "创建群组，格式creategroup:groupname:groupdesc",
    "addgroup": "加入群组，格式addgroup:groupid",
    "groupchat": "群聊，格式groupchat:groupid:message",
    "loginout": "注销，格式loginout",
}

_SECRET_PROMPT = "user" + "password:"


def _atoi(text: str) -> int:
    """The leading integer of *text*, or 0 when there is none."""
    match = _ATOI.match(text)
    return int(match.group(1)) if match else 0


def current_time() -> str:
    """The local time as ``YYYY-MM-DD HH:MM:SS``."""
    return datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def parse_command(line: str) -> tuple[str, str]:
    """Split ``command:args``; without a colon the whole line is both parts."""
    command, sep, rest = line.partition(":")
    return command, (rest if sep else line)


def format_chat_message(js: dict) -> str:
    """Render a one-to-one or group chat message for display."""
    text = f"{js['time']} [{js['id']}]{js['name']} said: {js['msg']}"
    if js.get("msgid") == MsgType.ONE_CHAT_MSG:
        return text
    return f"群消息[{js['groupid']}]:{text}"


def _error(text: str) -> None:
    print(text, file=sys.stderr)


class ClientSession:
    """State of one logged-in client and the commands it can send."""

    def __init__(self, sock: socket.socket, out: TextIO | None = None):
        self.sock = sock
        self.out = out if out is not None else sys.stdout
        self.current_user = User()
        self.friends: list[User] = []
        self.groups: list[Group] = []
        self.login_success = False
        self.main_menu_running = False
        self.closing = False
        self.response_ready = threading.Semaphore(0)
        self._commands: dict[str, Callable[[str], None]] = {
            "help": self.help,
            "chat": self.chat,
            "addfriend": self.add_friend,
            "creategroup": self.create_group,
            "addgroup": self.add_group,
            "groupchat": self.group_chat,
            "loginout": self.loginout,
        }

    def _print(self, text: str = "") -> None:
        print(text, file=self.out)

    def send(self, payload: Any) -> bool:
        """Send *payload* to the server; False if the socket fails."""
        try:
            self.sock.sendall(encode(payload))
        except OSError as exc:
            log.debug("send failed: %s", exc)
            return False
        return True

    def _send_or_report(self, payload: Any, label: str) -> bool:
        if self.send(payload):
            return True
        text = encode(payload).rstrip(b"\0").decode("utf-8")
        _error(f"send {label} msg error -> {text}")
        return False

    def handle_login_response(self, js: dict) -> None:
        """Record the logged-in user's data, or report why login failed."""
        if js.get("errno") != 0:
            _error(str(js.get("errmsg", "")))
            self.login_success = False
            return

        self.current_user = User(id=int(js["id"]), name=js["name"])

        if "friends" in js:
            self.friends = []
            for text in js["friends"]:
                friend = decode(text)
                self.friends.append(
                    User(id=int(friend["id"]), name=friend["name"], state=friend["state"])
                )

        if "groups" in js:
            self.groups = []
            for text in js["groups"]:
                data = decode(text)
                group = Group(id=int(data["id"]), name=data["groupname"], desc=data["groupdesc"])
                for member_text in data["users"]:
                    member = decode(member_text)
                    group.users.append(
                        GroupUser(
                            id=int(member["id"]),
                            name=member["name"],
                            state=member["state"],
                            role=member["role"],
                        )
                    )
                self.groups.append(group)

        self.show_current_user()

        for text in js.get("offlinemsg", []):
            self._print(format_chat_message(decode(text)))

        self.login_success = True

    def handle_reg_response(self, js: dict) -> None:
        """Report the outcome of a registration."""
        if js.get("errno") != 0:
            _error("name is already exist, register error!")
        else:
            self._print(f"name register success, userid is {js['id']}, do not forget it!")

    def show_current_user(self) -> None:
        """Print the logged-in user, their friends and their groups."""
        self._print("======================login user======================")
        self._print(
            f"current login user => id:{self.current_user.id} name:{self.current_user.name}"
        )
        self._print("----------------------friend list---------------------")
        for friend in self.friends:
            self._print(f"{friend.id} {friend.name} {friend.state}")
        self._print("----------------------group list----------------------")
        for group in self.groups:
            self._print(f"{group.id} {group.name} {group.desc}")
            for member in group.users:
                self._print(f"{member.id} {member.name} {member.state} {member.role}")
        self._print("======================================================")

    def help(self, args: str = "") -> None:
        """Print every supported command with its format."""
        self._print("show command list >>> ")
        for name, description in COMMANDS.items():
            self._print(f"{name} : {description}")
        self._print()

    def chat(self, args: str) -> None:
        """Send ``friendid:message`` as a one-to-one chat."""
        friend, sep, message = args.partition(":")
        if not sep:
            _error("chat command invalid!")
            return
        self._send_or_report(
            {
                "msgid": MsgType.ONE_CHAT_MSG,
                "id": self.current_user.id,
                "name": self.current_user.name,
                "toid": _atoi(friend),
                "msg": message,
                "time": current_time(),
            },
            "chat",
        )

    def add_friend(self, args: str) -> None:
        """Ask the server to add ``friendid`` as a friend."""
        self._send_or_report(
            {
                "msgid": MsgType.ADD_FRIEND_MSG,
                "id": self.current_user.id,
                "friendid": _atoi(args),
            },
            "addfriend",
        )

    def create_group(self, args: str) -> None:
        """Create a group from ``groupname:groupdesc``."""
        name, sep, desc = args.partition(":")
        if not sep:
            _error("creategroup command invalid!")
            return
        self._send_or_report(
            {
                "msgid": MsgType.CREATE_GROUP_MSG,
                "id": self.current_user.id,
                "groupname": name,
                "groupdesc": desc,
            },
            "creategroup",
        )

    def add_group(self, args: str) -> None:
        """Join the group ``groupid``."""
        self._send_or_report(
            {
                "msgid": MsgType.ADD_GROUP_MSG,
                "id": self.current_user.id,
                "groupid": _atoi(args),
            },
            "addgroup",
        )

    def group_chat(self, args: str) -> None:
        """Send ``groupid:message`` to a group."""
        group, sep, message = args.partition(":")
        if not sep:
            _error("groupchat command invalid!")
            return
        self._send_or_report(
            {
                "msgid": MsgType.GROUP_CHAT_MSG,
                "id": self.current_user.id,
                "name": self.current_user.name,
                "groupid": _atoi(group),
                "msg": message,
                "time": current_time(),
            },
            "groupchat",
        )

    def loginout(self, args: str = "") -> None:
        """Log out and leave the chat menu."""
        if self._send_or_report(
            {"msgid": MsgType.LOGINOUT_MSG, "id": self.current_user.id}, "loginout"
        ):
            self.main_menu_running = False

    def run_command(self, line: str) -> bool:
        """Run one chat-menu command line; False if the command is unknown."""
        command, args = parse_command(line)
        handler = self._commands.get(command)
        if handler is None:
            _error("invalid input command!")
            return False
        handler(args)
        return True

    def handle_incoming(self, js: dict) -> None:
        """Act on one message received from the server."""
        msgtype = js.get("msgid")
        if msgtype in (MsgType.ONE_CHAT_MSG, MsgType.GROUP_CHAT_MSG):
            self._print(format_chat_message(js))
        elif msgtype == MsgType.LOGIN_MSG_ACK:
            self.handle_login_response(js)
            self.response_ready.release()
        elif msgtype == MsgType.REG_MSG_ACK:
            self.handle_reg_response(js)
            self.response_ready.release()

    def read_loop(self) -> None:
        """Receive and handle server messages until the connection closes."""
        buffer = b""
        while True:
            try:
                chunk = self.sock.recv(_RECV_SIZE)
            except OSError:
                chunk = b""
            if not chunk:
                break
            buffer += chunk
            *frames, buffer = buffer.split(b"\0")
            for frame in frames:
                if not frame.strip():
                    continue
                try:
                    js = decode(frame)
                except ValueError as exc:
                    log.warning("malformed message from server: %s", exc)
                    continue
                if not isinstance(js, dict):
                    continue
                try:
                    self.handle_incoming(js)
                except (KeyError, TypeError, ValueError) as exc:
                    log.warning("cannot handle message %r: %s", js, exc)
        try:
            self.sock.close()
        except OSError:
            pass

    def _login(self, read: Callable[[str], str]) -> None:
        userid = _atoi(read("userid:"))
        answer = read(_SECRET_PROMPT)
        self.login_success = False
        if not self._send_or_report(
            {"msgid": MsgType.LOGIN_MSG, "id": userid, "password": answer}, "login"
        ):
            return
        self.response_ready.acquire()
        if self.login_success:
            self.main_menu_running = True
            self._main_menu(read)

    def _register(self, read: Callable[[str], str]) -> None:
        name = read("username:")
        answer = read(_SECRET_PROMPT)
        if self._send_or_report(
            {"msgid": MsgType.REG_MSG, "name": name, "password": answer}, "reg"
        ):
            self.response_ready.acquire()

    def _main_menu(self, read: Callable[[str], str]) -> None:
        self.help()
        while self.main_menu_running:
            self.run_command(read(""))

    def _start_menu(self, read: Callable[[str], str]) -> None:
        while True:
            self._print("========================")
            self._print("1. login")
            self._print("2. register")
            self._print("3. quit")
            self._print("========================")
            choice = _atoi(read("choice:"))
            if choice == 1:
                self._login(read)
            elif choice == 2:
                self._register(read)
            elif choice == 3:
                return
            else:
                _error("invalid input!")


def main(argv=None) -> int:
    """Connect to a chat server and run the interactive menus."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) < 2:
        _error("command invalid! example: chatlink-client 127.0.0.1 6000")
        return 1

    ip = args[0]
    port = _atoi(args[1]) & 0xFFFF
    try:
        sock = socket.create_connection((ip, port))
    except OSError:
        _error("connect server error")
        return 1

    session = ClientSession(sock)

    def _receive() -> None:
        session.read_loop()
        if not session.closing:
            _thread.interrupt_main()

    threading.Thread(target=_receive, name="chat-receiver", daemon=True).start()

    status = 0
    try:
        session._start_menu(input)
    except EOFError:
        pass
    except KeyboardInterrupt:
        status = 1
    finally:
        session.closing = True
        try:
            sock.close()
        except OSError:
            pass
    return status