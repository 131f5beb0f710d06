"""
Orb Adaptation: Learning Store

Persistence for patterns, insights and learning actions.

CONSTRAINTS:
- UPSERT BY ID: Saving a record with an existing id replaces it atomically
- SHARED SEMANTICS: Every backend filters and orders through apply_filter
- FSYNC: File backend writes are fsync'd before returning
- NEWEST FIRST: Results are ordered by record timestamp desc, ties by id

Backends:
1. InMemoryLearningStore
2. FileLearningStore - JSONL journal per record kind, latest line wins
3. SqlLearningStore - sqlite3, INSERT OR REPLACE
"""

import json
import logging
import os
import sqlite3
import threading
from collections import OrderedDict
from dataclasses import replace
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple, Union

from .config import default_data_dir
from .errors import StorageError
from .learning_model import (
    Pattern,
    Insight,
    LearningAction,
    LearningActionStatus,
    PatternFilter,
    InsightFilter,
    LearningActionFilter,
    apply_filter,
)

logger = logging.getLogger("learning_store")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
LEARNING_DIR_NAME = "learning"
LEARNING_DB_NAME = "learning.db"

PATTERNS = "patterns"
INSIGHTS = "insights"
ACTIONS = "learning_actions"

RECORD_TYPES = {
    PATTERNS: Pattern,
    INSIGHTS: Insight,
    ACTIONS: LearningAction,
}

# Timestamp used for ordering and date-range filters
TIMESTAMP_OF = {
    PATTERNS: lambda r: r.detected_at,
    INSIGHTS: lambda r: r.generated_at,
    ACTIONS: lambda r: r.created_at,
}

LEARNING_SCHEMA = """
CREATE TABLE IF NOT EXISTS patterns (
    id TEXT PRIMARY KEY,
    recorded_at TEXT NOT NULL,
    body TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS insights (
    id TEXT PRIMARY KEY,
    recorded_at TEXT NOT NULL,
    body TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS learning_actions (
    id TEXT PRIMARY KEY,
    recorded_at TEXT NOT NULL,
    body TEXT NOT NULL
);
"""


# -----------------------------------------------------------------------------
# Base Store
# -----------------------------------------------------------------------------
class LearningStore:
    """
    Contract shared by all learning backends.

    Subclasses implement _put, _get and _all per record kind.

    The refresh_* operations read and write one record under the store
    lock, which the learning action workflow also holds while deciding.
    """

    def __init__(self):
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    # -------------------------------------------------------------------------
    # Patterns
    # -------------------------------------------------------------------------

    def save_pattern(self, pattern: Pattern) -> None:
        self._put(PATTERNS, pattern)

    def get_pattern(self, pattern_id: str) -> Optional[Pattern]:
        return self._get(PATTERNS, pattern_id)

    def get_patterns(self, pattern_filter: Optional[PatternFilter] = None) -> List[Pattern]:
        return apply_filter(self._all(PATTERNS), pattern_filter, TIMESTAMP_OF[PATTERNS])

    def refresh_pattern(self, pattern: Pattern) -> Tuple[Pattern, bool]:
        """
        Save a re-detected pattern, keeping the stored status.

        Returns the saved pattern and whether it was new.
        """
        with self._lock:
            existing = self._get(PATTERNS, pattern.id)
            if existing is not None:
                pattern = replace(pattern, status=existing.status)
            self._put(PATTERNS, pattern)
        return pattern, existing is None

    # -------------------------------------------------------------------------
    # Insights
    # -------------------------------------------------------------------------

    def save_insight(self, insight: Insight) -> None:
        self._put(INSIGHTS, insight)

    def get_insight(self, insight_id: str) -> Optional[Insight]:
        return self._get(INSIGHTS, insight_id)

    def get_insights(self, insight_filter: Optional[InsightFilter] = None) -> List[Insight]:
        return apply_filter(self._all(INSIGHTS), insight_filter, TIMESTAMP_OF[INSIGHTS])

    def refresh_insight(self, insight: Insight) -> Insight:
        """Save a regenerated insight, keeping any recorded user feedback."""
        with self._lock:
            existing = self._get(INSIGHTS, insight.id)
            if existing is not None:
                insight = replace(
                    insight,
                    user_feedback=existing.user_feedback,
                    applied_at=existing.applied_at,
                )
            self._put(INSIGHTS, insight)
        return insight

    # -------------------------------------------------------------------------
    # Learning Actions
    # -------------------------------------------------------------------------

    def save_learning_action(self, action: LearningAction) -> None:
        self._put(ACTIONS, action)

    def get_learning_action(self, action_id: str) -> Optional[LearningAction]:
        return self._get(ACTIONS, action_id)

    def get_learning_actions(
        self,
        action_filter: Optional[LearningActionFilter] = None,
    ) -> List[LearningAction]:
        return apply_filter(self._all(ACTIONS), action_filter, TIMESTAMP_OF[ACTIONS])

    def refresh_learning_action(self, action: LearningAction) -> LearningAction:
        """
        Save a suggested action unless a decided one exists under its id.

        Returns whichever record is stored afterwards.
        """
        with self._lock:
            existing = self._get(ACTIONS, action.id)
            if existing is not None and existing.status != LearningActionStatus.PENDING.value:
                return existing
            self._put(ACTIONS, action)
        return action

    def close(self) -> None:
        pass

    # -------------------------------------------------------------------------
    # Backend Hooks
    # -------------------------------------------------------------------------

    def _put(self, kind: str, record: Any) -> None:
        raise NotImplementedError

    def _get(self, kind: str, record_id: str) -> Optional[Any]:
        raise NotImplementedError

    def _all(self, kind: str) -> List[Any]:
        raise NotImplementedError


# -----------------------------------------------------------------------------
# In-Memory Store
# -----------------------------------------------------------------------------
class InMemoryLearningStore(LearningStore):

    def __init__(self):
        super().__init__()
        self._records: Dict[str, "OrderedDict[str, Any]"] = {
            kind: OrderedDict() for kind in RECORD_TYPES
        }

    def _put(self, kind: str, record: Any) -> None:
        with self._lock:
            self._records[kind][record.id] = record

    def _get(self, kind: str, record_id: str) -> Optional[Any]:
        with self._lock:
            return self._records[kind].get(record_id)

    def _all(self, kind: str) -> List[Any]:
        with self._lock:
            return list(self._records[kind].values())


# -----------------------------------------------------------------------------
# File Store (JSONL Journals)
# -----------------------------------------------------------------------------
class FileLearningStore(InMemoryLearningStore):
    """
    One JSONL journal per record kind.

    Every save appends the full record and fsyncs. On open the journals are
    replayed; the latest line for an id wins. Malformed lines are skipped.
    """

    def __init__(self, storage_dir: Optional[Path] = None):
        super().__init__()
        self._dir = Path(storage_dir) if storage_dir else default_data_dir() / LEARNING_DIR_NAME
        for kind in RECORD_TYPES:
            self._load(kind)

    def file_for(self, kind: str) -> Path:
        return self._dir / f"{kind}.jsonl"

    def _put(self, kind: str, record: Any) -> None:
        path = self.file_for(kind)
        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(path, 'a') as f:
                    f.write(json.dumps(record.to_dict()) + '\n')
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise StorageError(f"Failed to write {kind} record {record.id}: {e}") from e
            self._records[kind][record.id] = record

    def _load(self, kind: str) -> None:
        path = self.file_for(kind)
        if not path.exists():
            return

        record_type = RECORD_TYPES[kind]
        try:
            with open(path, 'r') as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = record_type.from_dict(json.loads(line))
                    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                        logger.warning(f"Skipping malformed {kind} record in {path}")
                        continue
                    self._records[kind][record.id] = record
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e


# -----------------------------------------------------------------------------
# SQL Store (sqlite3)
# -----------------------------------------------------------------------------
class SqlLearningStore(LearningStore):
    """Records serialized as JSON bodies in one table per kind."""

    def __init__(self, db_path: Optional[Union[Path, str]] = None):
        super().__init__()
        if db_path is None:
            db_path = default_data_dir() / LEARNING_DB_NAME
        self._db_path = str(db_path)
        try:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.executescript(LEARNING_SCHEMA)
            self._conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to open learning database {self._db_path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _put(self, kind: str, record: Any) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    f"INSERT OR REPLACE INTO {kind} (id, recorded_at, body) VALUES (?, ?, ?)",
                    (record.id, TIMESTAMP_OF[kind](record), json.dumps(record.to_dict())),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageError(f"Failed to save {kind} record {record.id}: {e}") from e

    def _get(self, kind: str, record_id: str) -> Optional[Any]:
        rows = self._fetch(f"SELECT id, body FROM {kind} WHERE id = ?", (record_id,))
        if not rows:
            return None
        return self._decode(kind, rows[0])

    def _all(self, kind: str) -> List[Any]:
        rows = self._fetch(f"SELECT id, body FROM {kind} ORDER BY id", ())
        records = [self._decode(kind, row) for row in rows]
        return [r for r in records if r is not None]

    def _decode(self, kind: str, row: tuple) -> Optional[Any]:
        try:
            return RECORD_TYPES[kind].from_dict(json.loads(row[1]))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning(f"Skipping malformed {kind} record {row[0]} in {self._db_path}")
            return None

    def _fetch(self, sql: str, params: tuple) -> List[tuple]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to read learning records: {e}") from e


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------
LEARNING_BACKENDS = ("memory", "file", "sql")


def create_learning_store(
    backend: str = "memory",
    path: Optional[Union[Path, str]] = None,
) -> LearningStore:
    """
    Create a learning store.

    Args:
        backend: "memory", "file" or "sql"
        path: Journal directory (file) or database path (sql)
    """
    if backend == "memory":
        return InMemoryLearningStore()
    if backend == "file":
        return FileLearningStore(Path(path) if path else None)
    if backend in ("sql", "sqlite"):
        return SqlLearningStore(path)
    raise ValueError(f"Unknown learning store backend: {backend} (expected one of {LEARNING_BACKENDS})")
