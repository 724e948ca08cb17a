"""Data access for users, friendships, groups and offline messages."""

from __future__ import annotations

import logging

from .db import Database, DatabaseError
from .models import Group, GroupUser, User

log = logging.getLogger(__name__)


class UserModel:
    """Operations on the user table."""

    def __init__(self, db: Database):
        self._db = db

    def insert(self, user: User) -> bool:
        """Store *user* and set its generated id; False if the name is taken."""
        try:
            user.id = self._db.update(
                "INSERT INTO User(name, password, state) VALUES (?, ?, ?)",
                (user.name, user.password, user.state),
            )
        except DatabaseError as exc:
            log.warning("cannot insert user %r: %s", user.name, exc)
            return False
        return True

    def query(self, id: int) -> User:
        """Return the user with *id*, or a default ``User()`` if none exists."""
        rows = self._db.query(
            "SELECT id, name, password, state FROM User WHERE id = ?", (id,)
        )
        if not rows:
            return User()
        uid, name, password, state = rows[0]
        return User(id=uid, name=name, password=password, state=state)

    def update_state(self, user: User) -> bool:
        """Write *user*'s state; False if the statement fails."""
        try:
            self._db.update(
                "UPDATE User SET state = ? WHERE id = ?", (user.state, user.id)
            )
        except DatabaseError as exc:
            log.warning("cannot update state of user %s: %s", user.id, exc)
            return False
        return True

    def reset_state(self) -> None:
        """Mark every online user offline."""
        self._db.update("UPDATE User SET state = 'offline' WHERE state = 'online'")


class FriendModel:
    """Operations on the friend relation."""

    def __init__(self, db: Database):
        self._db = db

    def insert(self, userid: int, friendid: int) -> bool:
        """Record that *friendid* is a friend of *userid*."""
        try:
            self._db.update("INSERT INTO Friend VALUES (?, ?)", (userid, friendid))
        except DatabaseError as exc:
            log.warning("cannot add friend %s for user %s: %s", friendid, userid, exc)
            return False
        return True

    def query(self, userid: int) -> list[User]:
        """Return the friends of *userid* with id, name and state."""
        rows = self._db.query(
            "SELECT a.id, a.name, a.state FROM User a "
            "INNER JOIN Friend b ON b.friendid = a.id WHERE b.userid = ?",
            (userid,),
        )
        return [User(id=uid, name=name, state=state) for uid, name, state in rows]


class GroupModel:
    """Operations on groups and their members."""

    def __init__(self, db: Database):
        self._db = db

    def create_group(self, group: Group) -> bool:
        """Store *group* and set its generated id."""
        try:
            group.id = self._db.update(
                "INSERT INTO AllGroup(groupname, groupdesc) VALUES (?, ?)",
                (group.name, group.desc),
            )
        except DatabaseError as exc:
            log.warning("cannot create group %r: %s", group.name, exc)
            return False
        return True

    def add_group(self, userid: int, groupid: int, role: str) -> bool:
        """Add *userid* to *groupid* with *role*."""
        try:
            self._db.update(
                "INSERT INTO GroupUser VALUES (?, ?, ?)", (groupid, userid, role)
            )
        except DatabaseError as exc:
            log.warning("cannot add user %s to group %s: %s", userid, groupid, exc)
            return False
        return True

    def query_groups(self, userid: int) -> list[Group]:
        """Return the groups *userid* belongs to, each with all its members."""
        rows = self._db.query(
            "SELECT a.id, a.groupname, a.groupdesc FROM AllGroup a "
            "INNER JOIN GroupUser b ON a.id = b.groupid WHERE b.userid = ?",
            (userid,),
        )
        groups = [Group(id=gid, name=name, desc=desc) for gid, name, desc in rows]
        for group in groups:
            members = self._db.query(
                "SELECT a.id, a.name, a.state, b.grouprole FROM User a "
                "INNER JOIN GroupUser b ON b.userid = a.id WHERE b.groupid = ?",
                (group.id,),
            )
            group.users.extend(
                GroupUser(id=uid, name=name, state=state, role=role)
                for uid, name, state, role in members
            )
        return groups

    def query_group_users(self, userid: int, groupid: int) -> list[int]:
        """Return the ids of the members of *groupid* other than *userid*."""
        rows = self._db.query(
            "SELECT userid FROM GroupUser WHERE groupid = ? AND userid != ?",
            (groupid, userid),
        )
        return [uid for (uid,) in rows]


class OfflineMsgModel:
    """Operations on stored messages for users who are offline."""

    def __init__(self, db: Database):
        self._db = db

    def insert(self, userid: int, msg: str) -> bool:
        """Store *msg* for *userid*."""
        try:
            self._db.update("INSERT INTO OfflineMessage VALUES (?, ?)", (userid, msg))
        except DatabaseError as exc:
            log.warning("cannot store offline message for %s: %s", userid, exc)
            return False
        return True

    def remove(self, userid: int) -> bool:
        """Delete every stored message for *userid*."""
        try:
            self._db.update("DELETE FROM OfflineMessage WHERE userid = ?", (userid,))
        except DatabaseError as exc:
            log.warning("cannot remove offline messages for %s: %s", userid, exc)
            return False
        return True

    def query(self, userid: int) -> list[str]:
        """Return the stored messages for *userid* in the order they arrived."""
        rows = self._db.query(
            "SELECT message FROM OfflineMessage WHERE userid = ? ORDER BY rowid",
            (userid,),
        )
        return [message for (message,) in rows]