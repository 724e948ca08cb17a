"""A small thread-safe wrapper around an SQLite database."""

from __future__ import annotations

import logging
import sqlite3
import threading
from typing import Any, Iterable

log = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS User (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    password TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'offline' CHECK (state IN ('online', 'offline'))
);
CREATE TABLE IF NOT EXISTS Friend (
    userid INTEGER NOT NULL,
    friendid INTEGER NOT NULL,
    PRIMARY KEY (userid, friendid)
);
CREATE TABLE IF NOT EXISTS AllGroup (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    groupname TEXT NOT NULL,
    groupdesc TEXT NOT NULL DEFAULT ''
);
CREATE TABLE IF NOT EXISTS GroupUser (
    groupid INTEGER NOT NULL,
    userid INTEGER NOT NULL,
    grouprole TEXT NOT NULL CHECK (grouprole IN ('creator', 'normal')),
    PRIMARY KEY (groupid, userid)
);
CREATE TABLE IF NOT EXISTS OfflineMessage (
    userid INTEGER NOT NULL,
    message TEXT NOT NULL
);
"""


class DatabaseError(Exception):
    """Raised when the database cannot be opened or a statement fails."""


class Database:
    """One SQLite connection shared safely between threads."""

    def __init__(self, path=":memory:"):
        self.path = str(path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> "Database":
        """Open the connection if it is not open yet."""
        with self._lock:
            if self._conn is None:
                try:
                    self._conn = sqlite3.connect(self.path, check_same_thread=False)
                except sqlite3.Error as exc:
                    log.info("connect database fail: %s", exc)
                    raise DatabaseError(f"cannot open database {self.path!r}: {exc}") from exc
                log.info("connect database success")
        return self

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise DatabaseError("database is not connected")
        return self._conn

    def create_schema(self) -> None:
        """Create the chat tables if they are missing."""
        with self._lock:
            conn = self._connection()
            try:
                conn.executescript(_SCHEMA)
                conn.commit()
            except sqlite3.Error as exc:
                raise DatabaseError(f"cannot create schema: {exc}") from exc

    def update(self, sql: str, params: Iterable[Any] = ()) -> int | None:
        """Run a modifying statement and commit; return the last inserted row id."""
        with self._lock:
            conn = self._connection()
            try:
                cursor = conn.execute(sql, tuple(params))
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                log.info("%s: update failed: %s", sql, exc)
                raise DatabaseError(f"update failed: {exc}") from exc
            return cursor.lastrowid

    def query(self, sql: str, params: Iterable[Any] = ()) -> list[tuple]:
        """Run a query and return all result rows."""
        with self._lock:
            conn = self._connection()
            try:
                return conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as exc:
                log.info("%s: query failed: %s", sql, exc)
                raise DatabaseError(f"query failed: {exc}") from exc

    def close(self) -> None:
        """Close the connection; closing twice is harmless."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "Database":
        return self.connect()

    def __exit__(self, *args) -> None:
        self.close()