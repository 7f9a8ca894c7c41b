"""
Switch State Stores for SwitchVault.

Provides:
- SwitchRecord: Versioned boolean record, one per switch key
- SwitchStore: Store contract (get, create_if_absent, compare_and_set)
- InMemorySwitchStore: Per-key locked in-process store
- SQLiteSwitchStore: Durable store, conditional write done by the database

All stores:
- Never apply a write whose expected version is stale
- Bump version by exactly one on every accepted write
- Never retry on their own (retry policy belongs to the service)
"""

import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import closing, contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from switchvault.core.failures import (
    StoreUnavailableError,
    SwitchNotFoundError,
    VersionConflictError,
)


DEFAULT_ACTOR = "System"


class SwitchState(Enum):
    """The only two states a switch can be in."""
    INACTIVE = "INACTIVE"
    ACTIVE = "ACTIVE"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class SwitchRecord:
    """Versioned state of a single kill switch."""
    key: str
    active: bool
    version: int
    last_actor: str
    updated_at: str

    @property
    def state(self) -> SwitchState:
        return SwitchState.ACTIVE if self.active else SwitchState.INACTIVE

    def to_dict(self) -> dict:
        """Wire representation (camelCase field names)."""
        return {
            "key": self.key,
            "active": self.active,
            "version": self.version,
            "lastActor": self.last_actor,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'SwitchRecord':
        return cls(
            key=data["key"],
            active=bool(data["active"]),
            version=int(data["version"]),
            last_actor=data.get("lastActor", DEFAULT_ACTOR),
            updated_at=data.get("updatedAt", ""),
        )

    @classmethod
    def initial(cls, key: str, active: bool = False, actor: str = DEFAULT_ACTOR) -> 'SwitchRecord':
        """Default record for a key seen for the first time."""
        return cls(key=key, active=active, version=0, last_actor=actor, updated_at=utc_now())


class SwitchStore(ABC):
    """
    Contract for durable switch storage.

    compare_and_set is the single mutation point and must be atomic per key.
    """

    # Whether records outlive the process.
    durable: bool = True

    @abstractmethod
    def get(self, key: str) -> SwitchRecord:
        """Return the record for key or raise SwitchNotFoundError."""

    @abstractmethod
    def create_if_absent(self, key: str, initial: Optional[SwitchRecord] = None) -> SwitchRecord:
        """Insert initial if key is unknown; return whatever is stored afterwards."""

    @abstractmethod
    def compare_and_set(
        self,
        key: str,
        expected_version: int,
        new_active: bool,
        actor: str,
    ) -> SwitchRecord:
        """
        Conditionally write a new state.

        Raises:
            SwitchNotFoundError: key has never been created
            VersionConflictError: stored version != expected_version (nothing written)
        """

    @abstractmethod
    def list_keys(self) -> List[str]:
        """All known switch keys, sorted."""

    def close(self) -> None:
        """Release backing resources."""


class InMemorySwitchStore(SwitchStore):
    """
    In-process store with per-key locks.

    Records are immutable, so readers take a reference without locking.
    Writers on different keys never contend; the registry lock only guards
    creation of per-key lock objects.
    """

    durable = False

    def __init__(self):
        self._records: Dict[str, SwitchRecord] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is None:
            with self._registry_lock:
                lock = self._locks.setdefault(key, threading.Lock())
        return lock

    def get(self, key: str) -> SwitchRecord:
        record = self._records.get(key)
        if record is None:
            raise SwitchNotFoundError(key)
        return record

    def create_if_absent(self, key: str, initial: Optional[SwitchRecord] = None) -> SwitchRecord:
        with self._lock_for(key):
            existing = self._records.get(key)
            if existing is not None:
                return existing
            record = initial or SwitchRecord.initial(key)
            if record.key != key:
                raise ValueError(f"Initial record key {record.key!r} does not match {key!r}")
            self._records[key] = record
            return record

    def compare_and_set(
        self,
        key: str,
        expected_version: int,
        new_active: bool,
        actor: str,
    ) -> SwitchRecord:
        with self._lock_for(key):
            current = self._records.get(key)
            if current is None:
                raise SwitchNotFoundError(key)
            if current.version != expected_version:
                raise VersionConflictError(key, expected_version, current.version)

            updated = replace(
                current,
                active=new_active,
                version=current.version + 1,
                last_actor=actor,
                updated_at=utc_now(),
            )
            self._records[key] = updated
            return updated

    def list_keys(self) -> List[str]:
        return sorted(self._records.copy())


class SQLiteSwitchStore(SwitchStore):
    """
    SQLite-backed store for switch records.

    The conditional write is one UPDATE guarded by `version = ?`, so the
    database provides the per-row atomicity. The written row is read back
    inside the same transaction, before the write lock is released.
    """

    DEFAULT_PATH = Path("data/switchvault/switches.db")

    def __init__(self, db_path: Optional[Path] = None, timeout: float = 30.0):
        self.db_path = Path(db_path) if db_path else self.DEFAULT_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout
        self._init_db()

    def _init_db(self):
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS switches (
                    key TEXT PRIMARY KEY,
                    active INTEGER NOT NULL,
                    version INTEGER NOT NULL CHECK (version >= 0),
                    last_actor TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

    def _connect(self) -> sqlite3.Connection:
        """Create database connection."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Connection that commits on success, rolls back on error, and always closes."""
        with closing(self._connect()) as conn:
            with conn:
                yield conn

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> SwitchRecord:
        return SwitchRecord(
            key=row["key"],
            active=bool(row["active"]),
            version=row["version"],
            last_actor=row["last_actor"],
            updated_at=row["updated_at"],
        )

    def _read(self, conn: sqlite3.Connection, key: str) -> Optional[SwitchRecord]:
        row = conn.execute("SELECT * FROM switches WHERE key = ?", (key,)).fetchone()
        return self._row_to_record(row) if row else None

    def get(self, key: str) -> SwitchRecord:
        try:
            with self._transaction() as conn:
                record = self._read(conn, key)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"get {key!r}: {e}")

        if record is None:
            raise SwitchNotFoundError(key)
        return record

    def create_if_absent(self, key: str, initial: Optional[SwitchRecord] = None) -> SwitchRecord:
        record = initial or SwitchRecord.initial(key)
        if record.key != key:
            raise ValueError(f"Initial record key {record.key!r} does not match {key!r}")

        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO switches (key, active, version, last_actor, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (key, int(record.active), record.version, record.last_actor, record.updated_at),
                )
                return self._read(conn, key)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"create {key!r}: {e}")

    def compare_and_set(
        self,
        key: str,
        expected_version: int,
        new_active: bool,
        actor: str,
    ) -> SwitchRecord:
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE switches
                    SET active = ?, version = version + 1, last_actor = ?, updated_at = ?
                    WHERE key = ? AND version = ?
                    """,
                    (int(new_active), actor, utc_now(), key, expected_version),
                )
                current = self._read(conn, key)
                applied = cursor.rowcount == 1
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"compare_and_set {key!r}: {e}")

        if applied:
            return current
        if current is None:
            raise SwitchNotFoundError(key)
        raise VersionConflictError(key, expected_version, current.version)

    def list_keys(self) -> List[str]:
        try:
            with self._transaction() as conn:
                rows = conn.execute("SELECT key FROM switches ORDER BY key").fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"list_keys: {e}")
        return [row["key"] for row in rows]
