# chatlink

A small instant-messaging system made of a TCP chat server and an interactive
terminal client. Messages travel as compact JSON documents, each ending in a
NUL byte. The server keeps its users, friendships, groups and offline messages
in a SQLite database. When several servers run side by side, Redis
publish/subscribe carries each message to the server where the recipient is
logged in.

## Features

- Registering accounts and logging in, with a check against logging in twice
- One-to-one chat and friend lists
- Creating groups, joining them and chatting in a group
- Offline messages that are delivered at the next login
- Fan-out between servers through Redis channels, one channel per user id

## Installation

```
pip install .
```

Install with the `test` extra to run the test suite:

```
pip install ".[test]"
pytest
```

## Running the server

```
chatlink-server 127.0.0.1 6000
```

The server listens on the address and port you give it and creates its tables
in the SQLite database if they are missing. Options:

| Option              | Default      | Meaning                                         |
|---------------------|--------------|-------------------------------------------------|
| `--db PATH`         | `chat.db`    | SQLite database file                            |
| `--redis-host HOST` | `127.0.0.1`  | Redis server used to relay to other servers     |
| `--redis-port PORT` | `6379`       | port of that Redis server                       |
| `--no-redis`        |              | run without relaying to other servers           |

If Redis cannot be reached, the server logs an error and keeps running on its
own. When you stop the server with Ctrl+C, every user still marked online is
set back to offline.

## Running the client

```
chatlink-client 127.0.0.1 6000
```

The first menu offers `1. login`, `2. register` and `3. quit`. Registering
prints the new user id; you log in with that id and your password. After you
log in, the client shows your friends, your groups and any messages that
arrived while you were away. It then takes commands:

| Command                                | Meaning                       |
|----------------------------------------|-------------------------------|
| `help`                                 | list all commands             |
| `chat:friendid:message`                | send a message to one user    |
| `addfriend:friendid`                   | add a friend                  |
| `creategroup:groupname:groupdesc`      | create a group                |
| `addgroup:groupid`                     | join a group                  |
| `groupchat:groupid:message`            | send a message to a group     |
| `loginout`                             | log out                       |

Messages received while the menu is open are printed as they arrive. If the
server closes the connection, the client stops.

## Using it as a library

The parts can be used on their own:

- `chatlink.protocol`: `MsgType`, plus `encode` and `decode` for the wire format
- `chatlink.models`: the dataclasses `User`, `GroupUser` and `Group`
- `chatlink.db`: `Database`, a thread-safe wrapper over SQLite that can be used
  as a context manager, and `DatabaseError`
- `chatlink.stores`: `UserModel`, `FriendModel`, `GroupModel` and `OfflineMsgModel`
- `chatlink.broker`: `Broker`, the Redis publish/subscribe link
- `chatlink.service`: `ChatService`, which sends each incoming message to the
  handler for its `msgid`; any object with a `send(bytes)` method can serve as
  a connection
- `chatlink.server`: `ChatServer`, `Connection` and the `main` command
- `chatlink.client`: `ClientSession`, `parse_command`, `format_chat_message`,
  `current_time` and the `main` command

```python
from chatlink.db import Database
from chatlink.models import User
from chatlink.stores import UserModel

with Database(":memory:") as db:
    db.create_schema()
    users = UserModel(db)
    password = "password"
    user = User(name="alice", password=password)
    users.insert(user)
    print(users.query(user.id))
```

## What it does not do

- Passwords are stored and sent as plain text; there is no hashing and no
  encrypted transport.
- There is no way to remove a friend, leave a group or delete an account.
- A message for a user who is marked online on another server is dropped (and
  logged) when the server runs with `--no-redis` or Redis is unavailable.