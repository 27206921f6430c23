"""Durable memory store for compacted conversation segments.

Compaction replaces old turns with short placeholders and files the
originals here so they can be recalled verbatim later. Entries are keyed by
their memory id, never deleted, and a limited number of them may be pinned.
The store also keeps an append-only log of compaction events.

Key Features:
    - SQLite file in WAL mode, one transaction per logical operation
    - Read-modify-write operations use BEGIN IMMEDIATE
    - Pin ceiling enforced inside the transaction that flips the flag
    - Versioned schema migration tracked with PRAGMA user_version
    - Corruption recovery at open, guarded by a portalocker lock file

Storage Format:
    memories(id, content, summary, placeholder, original_messages,
             created_at, last_access, pinned)
    compaction_events(id, timestamp, chars_before, chars_after,
                      messages_compacted, messages_considered, duration_ms)

    Timestamps are ISO-8601 UTC text.

Example:
    >>> from mnemo.memory.store import MemoryStore, MemoryEntry
    >>>
    >>> with MemoryStore("/tmp/memory.db") as store:
    ...     store.put(MemoryEntry(id="mem-1", content="...", summary="..."))
    ...     entry = store.pin("mem-1", True, max_pins=5)
    ...     entry.pinned
    True
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Union

import portalocker

from mnemo.core.exceptions import (
    ConfigurationError,
    MemoryNotFoundError,
    MemoryStoreError,
    PinLimitExceededError,
    StoreCorruptedError,
)
from mnemo.state.events import (
    CompactionEvent,
    datetime_from_iso,
    datetime_to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

SCHEMA_VERSION = 3
"""Current schema version written to PRAGMA user_version."""

BUSY_TIMEOUT_SECONDS = 5.0
"""How long a connection waits on a locked database."""

LOCK_TIMEOUT_SECONDS = 10
"""How long open/recovery waits for the cross-process lock file."""

DEFAULT_STATS_LIMIT = 5
"""Entries returned by stats() when no positive limit is given."""

DEFAULT_EVENT_LIMIT = 50
"""Events returned by load_compaction_events() by default."""


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class MemoryEntry:
    """One compacted conversation segment.

    Attributes:
        id: Unique memory id (mem-<unix-nanos>-<4 hex>).
        content: Aggregated text the summary was produced from.
        summary: Summary of at most 20 words.
        placeholder: Text that replaced the segment in the conversation.
        original_messages: JSON array of the original messages, if stored.
        created_at: When the entry was created (UTC).
        last_access: Last recall or pin change (UTC).
        pinned: Whether the entry is pinned.
    """

    id: str
    content: str = ""
    summary: str = ""
    placeholder: str = ""
    original_messages: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    last_access: datetime = field(default_factory=utc_now)
    pinned: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-friendly dictionary (without the original blob)."""
        return {
            "id": self.id,
            "summary": self.summary,
            "placeholder": self.placeholder,
            "pinned": self.pinned,
            "created_at": datetime_to_iso(self.created_at),
            "last_access": datetime_to_iso(self.last_access),
            "has_original_messages": self.original_messages is not None,
        }


@dataclass
class StoreStats:
    """Result of MemoryStore.stats()."""

    total: int
    pinned: int
    entries: list[MemoryEntry]


# =============================================================================
# Schema Migrations
# =============================================================================


def _migrate_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS memories (
            id TEXT PRIMARY KEY,
            content TEXT NOT NULL DEFAULT '',
            summary TEXT NOT NULL DEFAULT '',
            placeholder TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            last_access TEXT NOT NULL,
            pinned INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_memories_last_access ON memories (last_access)"
    )


def _migrate_v2(conn: sqlite3.Connection) -> None:
    # Stores created before versioning may already carry the column.
    columns = {row[1] for row in conn.execute("PRAGMA table_info(memories)")}
    if "original_messages" not in columns:
        conn.execute("ALTER TABLE memories ADD COLUMN original_messages TEXT")


def _migrate_v3(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS compaction_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            chars_before INTEGER NOT NULL,
            chars_after INTEGER NOT NULL,
            messages_compacted INTEGER NOT NULL,
            messages_considered INTEGER NOT NULL,
            duration_ms INTEGER NOT NULL
        )
        """
    )


MIGRATIONS: dict[int, Callable[[sqlite3.Connection], None]] = {
    1: _migrate_v1,
    2: _migrate_v2,
    3: _migrate_v3,
}


# =============================================================================
# Memory Store
# =============================================================================


class MemoryStore:
    """SQLite-backed store for memory entries and compaction events.

    One connection is shared by all callers and serialized with a lock;
    every public operation runs in its own transaction. There is no
    in-memory cache, so every read reflects committed state.

    Attributes:
        path: Location of the SQLite file.

    Example:
        >>> store = MemoryStore("data/memory/memory.db")
        >>> store.pinned_count()
        0
        >>> store.close()
    """

    def __init__(self, path: Union[str, Path]) -> None:
        """Open (or create) the store.

        A corrupted file is repaired or recreated before this returns.

        Args:
            path: SQLite file location. Parent directories are created.

        Raises:
            ConfigurationError: If path is empty.
            MemoryStoreError: If the file cannot be opened or migrated.
        """
        if not str(path).strip():
            raise ConfigurationError("memory store path is required", config_key="memory_store_path")

        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None

        lock_path = self.path.with_name(self.path.name + ".lock")
        try:
            # Non-blocking flags make portalocker retry until the timeout.
            with portalocker.Lock(
                lock_path,
                mode="a",
                timeout=LOCK_TIMEOUT_SECONDS,
                flags=portalocker.LOCK_EX | portalocker.LOCK_NB,
            ):
                self._conn = self._open()
                self._migrate()
        except portalocker.LockException as e:
            raise MemoryStoreError(f"Failed to acquire lock for memory store {self.path}: {e}")
        except sqlite3.Error as e:
            self.close()
            raise MemoryStoreError(f"Failed to open memory store {self.path}: {e}")

        logger.debug(f"Opened memory store at {self.path}")

    # -------------------------------------------------------------------------
    # Open, recovery and migration
    # -------------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            timeout=BUSY_TIMEOUT_SECONDS,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _check_health(self, conn: sqlite3.Connection) -> None:
        """Raise StoreCorruptedError if an existing file is unusable."""
        if self.path.stat().st_size == 0:
            raise StoreCorruptedError(str(self.path), "empty file")
        try:
            row = conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'memories'"
            ).fetchone()
        except sqlite3.DatabaseError as e:
            raise StoreCorruptedError(str(self.path), f"schema check failed: {e}")
        if row is None:
            raise StoreCorruptedError(str(self.path), "memories table missing")

    def _open(self) -> sqlite3.Connection:
        existed = self.path.exists()
        conn = self._connect()

        if existed:
            try:
                self._check_health(conn)
            except StoreCorruptedError as e:
                logger.warning(f"{e}; attempting recovery")
                conn = self._recover(conn)

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout={int(BUSY_TIMEOUT_SECONDS * 1000)}")
        return conn

    def _recover(self, conn: sqlite3.Connection) -> sqlite3.Connection:
        """Checkpoint the WAL, falling back to recreating the file."""
        try:
            conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            self._check_health(conn)
            logger.info(f"Recovered memory store {self.path} via WAL checkpoint")
            return conn
        except (sqlite3.DatabaseError, StoreCorruptedError) as e:
            logger.warning(f"WAL checkpoint did not repair {self.path}: {e}")

        conn.close()
        for suffix in ("", "-wal", "-shm"):
            Path(f"{self.path}{suffix}").unlink(missing_ok=True)
        logger.error(f"Recreated memory store {self.path}; previous entries were lost")
        return self._connect()

    def _migrate(self) -> None:
        conn = self._require_conn()
        current = conn.execute("PRAGMA user_version").fetchone()[0]
        for version in range(current + 1, SCHEMA_VERSION + 1):
            with self._transaction(immediate=True) as tx:
                MIGRATIONS[version](tx)
                tx.execute(f"PRAGMA user_version = {version}")
            logger.debug(f"Migrated memory store {self.path} to schema v{version}")

    # -------------------------------------------------------------------------
    # Transaction helpers
    # -------------------------------------------------------------------------

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise MemoryStoreError(f"memory store {self.path} is closed")
        return self._conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._require_conn()
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> MemoryEntry:
        return MemoryEntry(
            id=row["id"],
            content=row["content"],
            summary=row["summary"],
            placeholder=row["placeholder"],
            original_messages=row["original_messages"],
            created_at=datetime_from_iso(row["created_at"]),
            last_access=datetime_from_iso(row["last_access"]),
            pinned=bool(row["pinned"]),
        )

    @classmethod
    def _fetch(cls, conn: sqlite3.Connection, memory_id: str) -> MemoryEntry:
        row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        if row is None:
            raise MemoryNotFoundError(memory_id)
        return cls._row_to_entry(row)

    @staticmethod
    def _write(conn: sqlite3.Connection, entry: MemoryEntry) -> None:
        conn.execute(
            """
            INSERT INTO memories (
                id, content, summary, placeholder, original_messages,
                created_at, last_access, pinned
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                content = excluded.content,
                summary = excluded.summary,
                placeholder = excluded.placeholder,
                original_messages = excluded.original_messages,
                created_at = excluded.created_at,
                last_access = excluded.last_access,
                pinned = excluded.pinned
            """,
            (
                entry.id,
                entry.content,
                entry.summary,
                entry.placeholder,
                entry.original_messages,
                datetime_to_iso(entry.created_at),
                datetime_to_iso(entry.last_access),
                1 if entry.pinned else 0,
            ),
        )

    @staticmethod
    def _count_pinned(conn: sqlite3.Connection) -> int:
        return conn.execute("SELECT COUNT(*) FROM memories WHERE pinned = 1").fetchone()[0]

    # -------------------------------------------------------------------------
    # Entry operations
    # -------------------------------------------------------------------------

    def put(self, entry: Optional[MemoryEntry]) -> None:
        """Insert or overwrite an entry by id. None is ignored."""
        if entry is None:
            return
        with self._transaction(immediate=True) as conn:
            self._write(conn, entry)
        logger.debug(f"Stored memory {entry.id}")

    def get(self, memory_id: str) -> MemoryEntry:
        """Read one entry without touching it.

        Raises:
            MemoryNotFoundError: If the id does not exist.
        """
        with self._transaction() as conn:
            return self._fetch(conn, memory_id)

    def access(
        self,
        memory_id: str,
        mutate: Optional[Callable[[MemoryEntry], None]] = None,
    ) -> MemoryEntry:
        """Read an entry and optionally modify it in the same transaction.

        Args:
            memory_id: Entry to read.
            mutate: Called with the entry; its changes are written back.

        Returns:
            The entry as committed.

        Raises:
            MemoryNotFoundError: If the id does not exist.
        """
        with self._transaction(immediate=mutate is not None) as conn:
            entry = self._fetch(conn, memory_id)
            if mutate is not None:
                mutate(entry)
                self._write(conn, entry)
            return entry

    def pin(self, memory_id: str, pin: bool, max_pins: int) -> MemoryEntry:
        """Pin or unpin an entry, enforcing the pin ceiling.

        Pinning an already pinned entry succeeds without using another slot.
        Unpinning always succeeds. last_access is refreshed on success.

        Raises:
            MemoryNotFoundError: If the id does not exist.
            PinLimitExceededError: If max_pins entries are already pinned.
                Nothing is written in that case.
        """
        with self._transaction(immediate=True) as conn:
            entry = self._fetch(conn, memory_id)
            if pin and not entry.pinned:
                pinned = self._count_pinned(conn)
                if pinned >= max_pins:
                    raise PinLimitExceededError(memory_id, max_pins, pinned)
            entry.pinned = pin
            entry.last_access = utc_now()
            self._write(conn, entry)

        logger.info(f"Memory {memory_id} {'pinned' if pin else 'unpinned'}")
        return entry

    def pinned_count(self) -> int:
        with self._transaction() as conn:
            return self._count_pinned(conn)

    def stats(self, limit: int = DEFAULT_STATS_LIMIT) -> StoreStats:
        """Totals plus the most recently accessed entries.

        Args:
            limit: Number of entries to return; values <= 0 mean 5.
        """
        if limit <= 0:
            limit = DEFAULT_STATS_LIMIT
        with self._transaction() as conn:
            total, pinned = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(pinned), 0) FROM memories"
            ).fetchone()
            rows = conn.execute(
                "SELECT * FROM memories ORDER BY last_access DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return StoreStats(
            total=total,
            pinned=pinned,
            entries=[self._row_to_entry(row) for row in rows],
        )

    # -------------------------------------------------------------------------
    # Compaction events
    # -------------------------------------------------------------------------

    def save_compaction_event(self, event: CompactionEvent) -> None:
        """Append a compaction event."""
        with self._transaction(immediate=True) as conn:
            conn.execute(
                """
                INSERT INTO compaction_events (
                    timestamp, chars_before, chars_after,
                    messages_compacted, messages_considered, duration_ms
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    datetime_to_iso(event.timestamp),
                    event.chars_before,
                    event.chars_after,
                    event.messages_compacted,
                    event.messages_considered,
                    event.duration_ms,
                ),
            )

    def load_compaction_events(self, limit: int = DEFAULT_EVENT_LIMIT) -> list[CompactionEvent]:
        """Return up to limit events, most recent first."""
        if limit <= 0:
            limit = DEFAULT_EVENT_LIMIT
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM compaction_events ORDER BY timestamp DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            CompactionEvent(
                timestamp=datetime_from_iso(row["timestamp"]),
                chars_before=row["chars_before"],
                chars_after=row["chars_after"],
                messages_compacted=row["messages_compacted"],
                messages_considered=row["messages_considered"],
                duration_ms=row["duration_ms"],
            )
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def schema_version(self) -> int:
        with self._lock:
            return self._require_conn().execute("PRAGMA user_version").fetchone()[0]

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


__all__ = [
    "MemoryEntry",
    "MemoryStore",
    "StoreStats",
    "SCHEMA_VERSION",
    "DEFAULT_STATS_LIMIT",
    "DEFAULT_EVENT_LIMIT",
]
