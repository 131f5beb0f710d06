"""
Orb Adaptation: Event Store

Append-only persistence for OrbEvents.

CONSTRAINTS:
- APPEND-ONLY: Events are never modified or deleted
- DURABLE: append() returns only after the write is persisted
- DETERMINISTIC: Same filter always returns the same ordering
- THREAD-SAFE: Each store guards its own state with a lock

Backends:
1. InMemoryEventStore - list + id index
2. FileEventStore - JSONL journal, fsync'd per append
3. SqliteEventStore - sqlite3 table keyed by event id
"""

import json
import logging
import os
import sqlite3
import threading
from pathlib import Path
from typing import Optional, Dict, Any, List, Union

from .config import default_data_dir
from .errors import StorageError, ValidationError
from .event_model import (
    OrbEvent,
    EventFilter,
    EventStats,
    summarize_events,
    sort_newest_first,
)

logger = logging.getLogger("event_store")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
EVENTS_FILE_NAME = "events.jsonl"
EVENTS_DB_NAME = "events.db"

EVENT_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    user_id TEXT,
    session_id TEXT,
    device_id TEXT,
    mode TEXT,
    persona TEXT,
    role TEXT,
    payload TEXT NOT NULL,
    metadata TEXT,
    seq INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_type ON events(type);
CREATE INDEX IF NOT EXISTS idx_events_user ON events(user_id);
CREATE INDEX IF NOT EXISTS idx_events_mode ON events(mode);
CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp DESC);
"""


# -----------------------------------------------------------------------------
# Base Store
# -----------------------------------------------------------------------------
class EventStore:
    """
    Common contract for all event backends.

    Subclasses implement _append_unlocked, _get_unlocked and _candidates;
    filtering, ordering and statistics are shared so every backend answers
    a filter identically.
    """

    def __init__(self):
        self._lock = threading.Lock()

    def append(self, event: OrbEvent) -> bool:
        """
        Append an event.

        Returns False when an identical event with the same id is already
        stored (nothing is written). Raises ValidationError when the id is
        taken by a different event.
        """
        with self._lock:
            existing = self._get_unlocked(event.id)
            if existing is not None:
                if existing.to_dict() == event.to_dict():
                    return False
                raise ValidationError(
                    f"Event id {event.id} is already used by a different event",
                    field="id",
                )
            self._append_unlocked(event)
            return True

    def get(self, event_id: str) -> Optional[OrbEvent]:
        with self._lock:
            return self._get_unlocked(event_id)

    def count(self) -> int:
        raise NotImplementedError

    def query(self, event_filter: Optional[EventFilter] = None) -> List[OrbEvent]:
        """
        Events matching every predicate, newest first.

        Truncated to filter.limit when one is set.
        """
        event_filter = event_filter or EventFilter()
        matched = [e for e in self._candidates(event_filter) if event_filter.matches(e)]
        ordered = sort_newest_first(matched)
        if event_filter.limit is not None:
            return ordered[:event_filter.limit]
        return ordered

    def get_stats(self, event_filter: Optional[EventFilter] = None) -> EventStats:
        event_filter = (event_filter or EventFilter()).with_limit(None)
        return summarize_events(self.query(event_filter))

    def close(self) -> None:
        pass

    def _append_unlocked(self, event: OrbEvent) -> None:
        raise NotImplementedError

    def _get_unlocked(self, event_id: str) -> Optional[OrbEvent]:
        raise NotImplementedError

    def _candidates(self, event_filter: EventFilter) -> List[OrbEvent]:
        raise NotImplementedError


# -----------------------------------------------------------------------------
# In-Memory Store
# -----------------------------------------------------------------------------
class InMemoryEventStore(EventStore):
    """Process-local store. Contents are lost when the process exits."""

    def __init__(self):
        super().__init__()
        self._events: List[OrbEvent] = []
        self._index: Dict[str, OrbEvent] = {}

    def count(self) -> int:
        with self._lock:
            return len(self._events)

    def get(self, event_id: str) -> Optional[OrbEvent]:
        event = super().get(event_id)
        return event.model_copy(deep=True) if event is not None else None

    def _get_unlocked(self, event_id: str) -> Optional[OrbEvent]:
        return self._index.get(event_id)

    def _append_unlocked(self, event: OrbEvent) -> None:
        event = event.model_copy(deep=True)
        self._events.append(event)
        self._index[event.id] = event

    def _candidates(self, event_filter: EventFilter) -> List[OrbEvent]:
        # Callers get copies; payload and metadata dicts are mutable
        with self._lock:
            if event_filter.id is not None:
                found = self._index.get(event_filter.id)
                return [found.model_copy(deep=True)] if found else []
            return [e.model_copy(deep=True) for e in self._events]


# -----------------------------------------------------------------------------
# File Store (JSONL Journal)
# -----------------------------------------------------------------------------
class FileEventStore(InMemoryEventStore):
    """
    JSONL journal, one event per line.

    The journal is replayed into memory on open; malformed lines are
    skipped with a warning. Appends are flushed and fsync'd before
    append() returns.
    """

    def __init__(self, path: Optional[Path] = None):
        super().__init__()
        self._path = Path(path) if path else default_data_dir() / EVENTS_FILE_NAME
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            return

        try:
            with open(self._path, 'r') as f:
                for line_no, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        event = OrbEvent.from_dict(json.loads(line))
                    except (json.JSONDecodeError, ValueError) as e:
                        logger.warning(f"Skipping malformed event at {self._path}:{line_no}: {e}")
                        continue
                    if event.id in self._index:
                        continue
                    self._events.append(event)
                    self._index[event.id] = event
        except OSError as e:
            raise StorageError(f"Failed to read event journal {self._path}: {e}") from e

        logger.info(f"Loaded {len(self._events)} events from {self._path}")

    def _append_unlocked(self, event: OrbEvent) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, 'a') as f:
                f.write(json.dumps(event.to_dict()) + '\n')
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StorageError(f"Failed to append event {event.id}: {e}") from e
        super()._append_unlocked(event)


# -----------------------------------------------------------------------------
# SQLite Store
# -----------------------------------------------------------------------------
class SqliteEventStore(EventStore):
    """
    sqlite3-backed store.

    Equality predicates (id, type, user, session, device, mode, role) are
    pushed into SQL; date range and search are applied by the shared
    filter so their semantics match the other backends.
    """

    def __init__(self, path: Optional[Union[Path, str]] = None):
        super().__init__()
        if path is None:
            path = default_data_dir() / EVENTS_DB_NAME
        self._path = str(path)
        try:
            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self._path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(EVENT_SCHEMA)
            self._conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to open event database {self._path}: {e}") from e

    def count(self) -> int:
        with self._lock:
            try:
                row = self._conn.execute("SELECT COUNT(*) AS count FROM events").fetchone()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to count events: {e}") from e
        return row["count"]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _append_unlocked(self, event: OrbEvent) -> None:
        try:
            self._conn.execute(
                """
                INSERT INTO events (
                    id, type, timestamp, user_id, session_id, device_id,
                    mode, persona, role, payload, metadata, seq
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                        (SELECT COALESCE(MAX(seq), 0) + 1 FROM events))
                """,
                (
                    event.id,
                    event.type.value,
                    event.timestamp,
                    event.user_id,
                    event.session_id,
                    event.device_id,
                    event.mode,
                    event.persona,
                    event.role.value if event.role else None,
                    json.dumps(event.payload),
                    json.dumps(event.metadata) if event.metadata is not None else None,
                ),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            raise StorageError(f"Failed to insert event {event.id}: {e}") from e

    def _candidates(self, event_filter: EventFilter) -> List[OrbEvent]:
        clauses = []
        params: List[Any] = []

        if event_filter.id is not None:
            clauses.append("id = ?")
            params.append(event_filter.id)
        types = event_filter.type_set()
        if types is not None:
            clauses.append(f"type IN ({', '.join('?' for _ in types)})")
            params.extend(sorted(t.value for t in types))
        for column, value in (
            ("user_id", event_filter.user_id),
            ("session_id", event_filter.session_id),
            ("device_id", event_filter.device_id),
            ("mode", event_filter.mode),
            ("role", event_filter.role.value if event_filter.role else None),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)

        sql = "SELECT * FROM events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY seq"
        return self._select(sql, tuple(params))

    def _get_unlocked(self, event_id: str) -> Optional[OrbEvent]:
        rows = self._select_unlocked("SELECT * FROM events WHERE id = ?", (event_id,))
        return rows[0] if rows else None

    def _select(self, sql: str, params: tuple) -> List[OrbEvent]:
        with self._lock:
            return self._select_unlocked(sql, params)

    def _select_unlocked(self, sql: str, params: tuple) -> List[OrbEvent]:
        try:
            rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to query events: {e}") from e
        return [self._row_to_event(row) for row in rows]

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> OrbEvent:
        data: Dict[str, Any] = {
            "id": row["id"],
            "type": row["type"],
            "timestamp": row["timestamp"],
            "userId": row["user_id"],
            "sessionId": row["session_id"],
            "deviceId": row["device_id"],
            "mode": row["mode"],
            "persona": row["persona"],
            "role": row["role"],
            "payload": json.loads(row["payload"]),
        }
        if row["metadata"] is not None:
            data["metadata"] = json.loads(row["metadata"])
        return OrbEvent.from_dict(data)


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------
EVENT_BACKENDS = ("memory", "file", "sqlite")


def create_event_store(
    backend: str = "memory",
    path: Optional[Union[Path, str]] = None,
) -> EventStore:
    """
    Create an event store.

    Args:
        backend: "memory", "file" or "sqlite"
        path: Journal file or database path (file/sqlite only)
    """
    if backend == "memory":
        return InMemoryEventStore()
    if backend == "file":
        return FileEventStore(Path(path) if path else None)
    if backend == "sqlite":
        return SqliteEventStore(path)
    raise ValueError(f"Unknown event store backend: {backend} (expected one of {EVENT_BACKENDS})")
