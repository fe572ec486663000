# FILE: osauth/storage.py
"""
Key-value storage backends for the auth backend.

The core only needs a small contract from its store:

  - get / put / delete by key, and list by key prefix;
  - a versioned read (get_entry) plus conditional writes (put_if /
    delete_if) so that read-modify-write cycles on a single key can be
    made atomic without a global lock.

Keys in use:

  - "auth_attempt/<instance_id>"  per-instance attempt counters
  - "role/<name>"                 role definitions
  - "config"                      inventory connection settings

Values are opaque bytes; the JSON helpers at the bottom of this module
serialize the pydantic records from osauth.models.

Versions:
  Every successful write stamps the entry with a value drawn from a
  store-wide monotonic sequence. A key that is deleted and later recreated
  therefore never reuses a version a stale reader may still hold.
"""
from __future__ import annotations

import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple, Type, TypeVar

import logging

from pydantic import BaseModel, ValidationError

from .errors import StorageUnavailable

logger = logging.getLogger(__name__)

#: expected_version value meaning "the key must not exist yet".
MUST_NOT_EXIST = 0

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True, slots=True)
class StorageEntry:
    key: str
    value: bytes
    version: int


def _list_children(keys: Iterable[str], prefix: str) -> List[str]:
    """
    Return the direct children of `prefix`, relative to it.

    Deeper keys collapse into a single "<segment>/" entry, so listing
    "auth_attempt/" yields bare instance ids.
    """
    out = set()
    for k in keys:
        if not k.startswith(prefix):
            continue
        rest = k[len(prefix):]
        if not rest:
            continue
        head, sep, _ = rest.partition("/")
        out.add(head + sep)
    return sorted(out)


# ------------------------------
# Abstract interface
# ------------------------------

class Storage(ABC):
    """
    Durable key -> bytes map with per-key compare-and-swap.

    Implementations must make each individual call atomic; they must not
    retry internally on failure. Backend failures surface as
    StorageUnavailable.
    """

    @abstractmethod
    def get_entry(self, key: str) -> Optional[StorageEntry]:
        """Fetch value and version for key, or None if absent."""

    @abstractmethod
    def put(self, key: str, value: bytes) -> int:
        """Unconditionally write key; return the new version."""

    @abstractmethod
    def put_if(self, key: str, value: bytes, expected_version: int) -> Optional[int]:
        """
        Write key only if its current version equals expected_version.

        expected_version == MUST_NOT_EXIST requires the key to be absent.
        Returns the new version, or None when the condition did not hold.
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete key; deleting an absent key is not an error."""

    @abstractmethod
    def delete_if(self, key: str, expected_version: int) -> bool:
        """Delete key only if its current version equals expected_version."""

    @abstractmethod
    def list(self, prefix: str) -> List[str]:
        """List direct children of prefix (relative names)."""

    def get(self, key: str) -> Optional[bytes]:
        entry = self.get_entry(key)
        return entry.value if entry is not None else None

    def close(self) -> None:
        """Release backend resources."""


# ------------------------------
# In-memory implementation
# ------------------------------

class InMemoryStorage(Storage):
    """
    Thread-safe in-process store.

    Intended for tests and single-process development; contents are lost on
    restart.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[bytes, int]] = {}
        self._seq = 0
        self._g = threading.RLock()

    def _next_version(self) -> int:
        self._seq += 1
        return self._seq

    def get_entry(self, key: str) -> Optional[StorageEntry]:
        with self._g:
            cur = self._data.get(key)
            if cur is None:
                return None
            return StorageEntry(key=key, value=cur[0], version=cur[1])

    def put(self, key: str, value: bytes) -> int:
        with self._g:
            version = self._next_version()
            self._data[key] = (bytes(value), version)
            return version

    def put_if(self, key: str, value: bytes, expected_version: int) -> Optional[int]:
        with self._g:
            cur = self._data.get(key)
            cur_version = cur[1] if cur is not None else MUST_NOT_EXIST
            if cur_version != expected_version:
                return None
            version = self._next_version()
            self._data[key] = (bytes(value), version)
            return version

    def delete(self, key: str) -> None:
        with self._g:
            self._data.pop(key, None)

    def delete_if(self, key: str, expected_version: int) -> bool:
        with self._g:
            cur = self._data.get(key)
            if cur is None or cur[1] != expected_version:
                return False
            del self._data[key]
            return True

    def list(self, prefix: str) -> List[str]:
        with self._g:
            keys = list(self._data.keys())
        return _list_children(keys, prefix)


# ------------------------------
# SQLite implementation
# ------------------------------

_SQL_SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS kv (
  key TEXT PRIMARY KEY,
  value BLOB NOT NULL,
  version INTEGER NOT NULL,
  updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS kv_seq (
  id INTEGER PRIMARY KEY CHECK (id = 1),
  value INTEGER NOT NULL
);

INSERT OR IGNORE INTO kv_seq(id, value) VALUES (1, 0);
"""


class _SQLite:
    """
    Small wrapper around sqlite3 to centralize connection & transactions.

    Characteristics:
      - Single shared connection with check_same_thread=False, guarded by a
        re-entrant lock.
      - IMMEDIATE transactions, so a conditional write also serializes
        against other processes sharing the same database file.
      - WAL mode and busy_timeout to behave reasonably under moderate load.
      - sqlite3 errors are re-raised as StorageUnavailable.
    """

    def __init__(self, path: str, *, busy_timeout_ms: int = 30000):
        self._path = path
        self._g = threading.RLock()
        try:
            self._conn = sqlite3.connect(
                self._path,
                check_same_thread=False,
                isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
            self._conn.executescript(_SQL_SCHEMA)
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"cannot open sqlite store at {path!r}: {exc}") from exc

    def tx(self):
        """
        Context manager for IMMEDIATE transactions.

        Usage:
            with db.tx() as conn:
                conn.execute(...)
        """
        outer = self

        class _Tx:
            def __enter__(self):
                outer._g.acquire()
                try:
                    outer._conn.execute("BEGIN IMMEDIATE;")
                except sqlite3.Error as exc:
                    outer._g.release()
                    raise StorageUnavailable(str(exc)) from exc
                return outer._conn

            def __exit__(self, exc_type, exc, tb):
                try:
                    if exc_type is None:
                        outer._conn.execute("COMMIT;")
                    else:
                        outer._conn.execute("ROLLBACK;")
                except sqlite3.Error as commit_exc:
                    if exc_type is None:
                        raise StorageUnavailable(str(commit_exc)) from commit_exc
                    logger.warning("sqlite rollback failed", exc_info=True)
                finally:
                    outer._g.release()
                if exc_type is not None and issubclass(exc_type, sqlite3.Error):
                    raise StorageUnavailable(str(exc)) from exc
                return False

        return _Tx()

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._g:
            self._conn.close()


class SQLiteStorage(Storage):
    """
    SQLite-backed implementation of Storage.

    Safe for several processes sharing one database file: every conditional
    write runs its version check and update inside one IMMEDIATE transaction.
    """

    def __init__(self, path: str = "osauth.db"):
        self._db = _SQLite(path)

    @staticmethod
    def _next_version(conn: sqlite3.Connection) -> int:
        conn.execute("UPDATE kv_seq SET value = value + 1 WHERE id = 1")
        row = conn.execute("SELECT value FROM kv_seq WHERE id = 1").fetchone()
        return int(row["value"])

    @staticmethod
    def _version_of(conn: sqlite3.Connection, key: str) -> int:
        row = conn.execute("SELECT version FROM kv WHERE key=?", (key,)).fetchone()
        return int(row["version"]) if row else MUST_NOT_EXIST

    @classmethod
    def _upsert(cls, conn: sqlite3.Connection, key: str, value: bytes) -> int:
        version = cls._next_version(conn)
        conn.execute(
            "INSERT INTO kv(key, value, version, updated_at) VALUES(?,?,?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value, "
            "version=excluded.version, updated_at=excluded.updated_at",
            (key, sqlite3.Binary(bytes(value)), version, time.time()),
        )
        return version

    def get_entry(self, key: str) -> Optional[StorageEntry]:
        with self._db.tx() as conn:
            row = conn.execute(
                "SELECT key, value, version FROM kv WHERE key=?",
                (key,),
            ).fetchone()
        if not row:
            return None
        return StorageEntry(key=row["key"], value=bytes(row["value"]), version=int(row["version"]))

    def put(self, key: str, value: bytes) -> int:
        with self._db.tx() as conn:
            return self._upsert(conn, key, value)

    def put_if(self, key: str, value: bytes, expected_version: int) -> Optional[int]:
        with self._db.tx() as conn:
            if self._version_of(conn, key) != expected_version:
                return None
            return self._upsert(conn, key, value)

    def delete(self, key: str) -> None:
        with self._db.tx() as conn:
            conn.execute("DELETE FROM kv WHERE key=?", (key,))

    def delete_if(self, key: str, expected_version: int) -> bool:
        with self._db.tx() as conn:
            cur = conn.execute(
                "DELETE FROM kv WHERE key=? AND version=?",
                (key, int(expected_version)),
            )
            return cur.rowcount > 0

    def list(self, prefix: str) -> List[str]:
        # LIKE treats "_" as a wildcard, so filter precisely in Python.
        with self._db.tx() as conn:
            rows = conn.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ?",
                (len(prefix), prefix),
            ).fetchall()
        return _list_children((r["key"] for r in rows), prefix)

    def close(self) -> None:
        self._db.close()


# ------------------------------
# Helpers & factories
# ------------------------------

def get_json(storage: Storage, key: str, model: Type[M]) -> Optional[M]:
    """
    Read and decode a pydantic record.

    A stored value that no longer parses is reported as StorageUnavailable:
    the store holds data this process cannot interpret.
    """
    raw = storage.get(key)
    if raw is None:
        return None
    try:
        return model.model_validate_json(raw)
    except ValidationError as exc:
        raise StorageUnavailable(f"corrupt record at {key!r}") from exc


def put_json(storage: Storage, key: str, record: BaseModel) -> int:
    return storage.put(key, record.model_dump_json().encode("utf-8"))


def make_storage(dsn: Optional[str]) -> Storage:
    """
    Factory for Storage backends.

    Accepted DSNs:
      - None, "" or "mem://"
          -> InMemoryStorage
      - "sqlite:///path/to/osauth.db"
          -> SQLiteStorage(path="path/to/osauth.db")
      - "sqlite:///:memory:"
          -> SQLiteStorage(path=":memory:")

    In-memory configurations forget attempt counters on restart, which
    resets every instance's login budget; use SQLite (or another durable
    store) for anything but tests and local development.
    """
    if not dsn or dsn.strip().lower().startswith("mem://"):
        return InMemoryStorage()
    dsn_s = dsn.strip()
    if dsn_s.lower().startswith("sqlite:///"):
        path = dsn_s[len("sqlite:///"):]
        if not path:
            raise ValueError("sqlite dsn requires a path")
        return SQLiteStorage(path=path)
    raise ValueError(f"Unsupported storage dsn: {dsn}")
