"""
Orb Adaptation: Learning Action Workflow

Approve/reject state machine over stored LearningActions, plus pattern
status advancement.

CONSTRAINTS:
- EXPLICIT DECISIONS ONLY: pending -> applied | rejected, exactly once
- NO CORRUPTION: A refused transition leaves every stored record unchanged
- AUDITED: Each decision appends a TransitionRecord (memory or JSONL); a
  failed audit write restores the action
- INSIGHT FEEDBACK: The owning insight records accepted/rejected
"""

import json
import logging
import os
import threading
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Optional, List

from .errors import InvalidTransitionError, LearningActionNotFoundError, StorageError
from .event_model import utc_now_iso
from .learning_model import (
    PatternStatus,
    LearningActionStatus,
    InsightFeedback,
    LearningAction,
    Pattern,
    TransitionRecord,
    LearningActionFilter,
    ACTION_TRANSITIONS,
    PATTERN_TRANSITIONS,
)
from .learning_store import LearningStore

logger = logging.getLogger("learning_actions")


class LearningActionWorkflow:
    """
    Decision workflow for learning actions.

    Usage:
        workflow = LearningActionWorkflow(store, audit_file=Path("data/orb/audit.jsonl"))
        workflow.approve("action-pattern-...", user_id="u1")
    """

    def __init__(self, store: LearningStore, audit_file: Optional[Path] = None):
        self._store = store
        self._audit_file = Path(audit_file) if audit_file else None
        self._history: List[TransitionRecord] = []
        self._lock = threading.Lock()

    @property
    def store(self) -> LearningStore:
        return self._store

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    def approve(
        self,
        action_id: str,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> LearningAction:
        """
        Mark a pending action applied.

        Raises:
            LearningActionNotFoundError: unknown action id
            InvalidTransitionError: action is not pending
        """
        return self._transition(action_id, LearningActionStatus.APPLIED.value, user_id, reason)

    def reject(
        self,
        action_id: str,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> LearningAction:
        """Mark a pending action rejected. Same errors as approve()."""
        return self._transition(action_id, LearningActionStatus.REJECTED.value, user_id, reason)

    def get_pending(self, limit: Optional[int] = None) -> List[LearningAction]:
        return self._store.get_learning_actions(LearningActionFilter(
            status=LearningActionStatus.PENDING.value,
            limit=limit,
        ))

    def get_history(self, action_id: Optional[str] = None) -> List[TransitionRecord]:
        """Audit trail, oldest first; all actions when action_id is None."""
        records = self._read_audit() if self._audit_file else list(self._history)
        if action_id is None:
            return records
        return [r for r in records if r.action_id == action_id]

    # -------------------------------------------------------------------------
    # Pattern Status
    # -------------------------------------------------------------------------

    def advance_pattern(self, pattern_id: str, status: str) -> Pattern:
        """
        Move a pattern along detected -> validated -> applied | rejected.

        Raises:
            KeyError: unknown pattern id
            InvalidTransitionError: edge not allowed
        """
        target = status.value if isinstance(status, PatternStatus) else status
        with self._lock, self._store.lock:
            pattern = self._store.get_pattern(pattern_id)
            if pattern is None:
                raise KeyError(f"Pattern not found: {pattern_id}")
            if target not in PATTERN_TRANSITIONS.get(pattern.status, ()):
                raise InvalidTransitionError(pattern_id, pattern.status, target)
            updated = replace(pattern, status=target)
            self._store.save_pattern(updated)

        logger.info(f"Pattern {pattern_id}: {pattern.status} -> {target}")
        return updated

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _transition(
        self,
        action_id: str,
        target: str,
        user_id: Optional[str],
        reason: Optional[str],
    ) -> LearningAction:
        with self._lock, self._store.lock:
            action = self._store.get_learning_action(action_id)
            if action is None:
                logger.warning(f"Cannot {target}: learning action {action_id} not found")
                raise LearningActionNotFoundError(action_id)
            if target not in ACTION_TRANSITIONS.get(action.status, ()):
                logger.warning(f"Cannot {target}: learning action {action_id} is {action.status}")
                raise InvalidTransitionError(action_id, action.status, target)

            now = utc_now_iso()
            updated = replace(
                action,
                status=target,
                applied_at=now if target == LearningActionStatus.APPLIED.value else None,
            )
            record = TransitionRecord(
                record_id=f"transition-{uuid.uuid4().hex[:12]}",
                action_id=action_id,
                from_status=action.status,
                to_status=target,
                timestamp=now,
                user_id=user_id,
                reason=reason,
            )
            self._store.save_learning_action(updated)
            try:
                self._append_audit(record)
            except StorageError:
                self._store.save_learning_action(action)
                logger.error(f"Audit write failed; learning action {action_id} left {action.status}")
                raise
            self._record_feedback(updated, now)

        logger.info(f"Learning action {action_id}: {action.status} -> {target}")
        return updated

    def _record_feedback(self, action: LearningAction, now: str) -> None:
        insight = self._store.get_insight(action.insight_id)
        if insight is None:
            return
        if action.status == LearningActionStatus.APPLIED.value:
            updated = replace(insight, user_feedback=InsightFeedback.ACCEPTED.value, applied_at=now)
        else:
            updated = replace(insight, user_feedback=InsightFeedback.REJECTED.value)
        self._store.save_insight(updated)

    def _append_audit(self, record: TransitionRecord) -> None:
        if self._audit_file is None:
            self._history.append(record)
            return
        try:
            self._audit_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._audit_file, "a") as f:
                f.write(json.dumps(record.to_dict()) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StorageError(f"Failed to write audit record for {record.action_id}: {e}") from e

    def _read_audit(self) -> List[TransitionRecord]:
        if not self._audit_file.exists():
            return []
        records = []
        try:
            with open(self._audit_file) as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(TransitionRecord.from_dict(json.loads(line)))
                    except (json.JSONDecodeError, KeyError, ValueError):
                        continue
        except OSError as e:
            raise StorageError(f"Failed to read audit file {self._audit_file}: {e}") from e
        return records
