"""
Orb Adaptation: Learning Data Models

Frozen dataclasses and enums for patterns, insights and learning actions.

CONSTRAINTS:
- FROZEN: Records are immutable; changes produce new records via replace()
- DETERMINISTIC: Pattern ids are derived from type, grouping key and
  provenance, so the same events always yield the same ids
- NOTHING AUTO-APPLIES: Confidence tiers are informational; every
  LearningAction needs an explicit approve/reject
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, Tuple, List, Iterable, TypeVar, Callable

from .event_model import parse_timestamp


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class PatternType(str, Enum):
    """Families of behavioral patterns the detector recognises."""
    FREQUENT_ACTION = "frequent_action"
    TIME_BASED_ROUTINE = "time_based_routine"
    MODE_PREFERENCE = "mode_preference"
    ERROR_PATTERN = "error_pattern"
    EFFICIENCY_GAIN = "efficiency_gain"
    RISK_THRESHOLD = "risk_threshold"


class PatternStatus(str, Enum):
    DETECTED = "detected"
    VALIDATED = "validated"
    APPLIED = "applied"
    REJECTED = "rejected"


class InsightFeedback(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    MODIFIED = "modified"


class LearningActionType(str, Enum):
    UPDATE_PREFERENCE = "update_preference"
    SUGGEST_AUTOMATION = "suggest_automation"
    ADJUST_CONSTRAINT = "adjust_constraint"
    RECOMMEND_MODE = "recommend_mode"
    ADJUST_RISK_THRESHOLD = "adjust_risk_threshold"
    CREATE_SHORTCUT = "create_shortcut"


class LearningActionStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    REJECTED = "rejected"


class ConfidenceTier(str, Enum):
    """
    Confidence buckets.

    AUTO_APPLY is a label only. Nothing is applied without approval.
    """
    AUTO_APPLY = "auto_apply"
    SUGGEST = "suggest"
    LOG_ONLY = "log_only"
    IGNORE = "ignore"


CONFIDENCE_AUTO_APPLY = 0.9
CONFIDENCE_SUGGEST = 0.7
CONFIDENCE_LOG_ONLY = 0.5


def confidence_tier(confidence: float) -> ConfidenceTier:
    if confidence >= CONFIDENCE_AUTO_APPLY:
        return ConfidenceTier.AUTO_APPLY
    if confidence >= CONFIDENCE_SUGGEST:
        return ConfidenceTier.SUGGEST
    if confidence >= CONFIDENCE_LOG_ONLY:
        return ConfidenceTier.LOG_ONLY
    return ConfidenceTier.IGNORE


def clamp_confidence(value: float) -> float:
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, float(value)))


# -----------------------------------------------------------------------------
# State Machines
# -----------------------------------------------------------------------------
PATTERN_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    PatternStatus.DETECTED.value: (PatternStatus.VALIDATED.value, PatternStatus.REJECTED.value),
    PatternStatus.VALIDATED.value: (PatternStatus.APPLIED.value, PatternStatus.REJECTED.value),
    PatternStatus.APPLIED.value: (),
    PatternStatus.REJECTED.value: (),
}

ACTION_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    LearningActionStatus.PENDING.value: (
        LearningActionStatus.APPLIED.value,
        LearningActionStatus.REJECTED.value,
    ),
    LearningActionStatus.APPLIED.value: (),
    LearningActionStatus.REJECTED.value: (),
}


def make_pattern_id(pattern_type: str, key: str, event_ids: Iterable[str]) -> str:
    """Deterministic pattern id from type, grouping key and provenance."""
    data = {
        "type": pattern_type,
        "key": key,
        "event_ids": sorted(event_ids),
    }
    json_str = json.dumps(data, sort_keys=True)
    return f"pattern-{pattern_type}-{hashlib.sha256(json_str.encode()).hexdigest()[:16]}"


def insight_id_for(pattern_id: str) -> str:
    return f"insight-{pattern_id}"


def action_id_for(pattern_id: str) -> str:
    return f"action-{pattern_id}"


# -----------------------------------------------------------------------------
# Pattern (Frozen - Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Pattern:
    """
    A recurring behavior found in a window of events.

    `data` is family-specific and uses camelCase keys (actions, frequency,
    avgPerDay, timeWindow, modes, usageRate, errorRate, improvement,
    approvalRate, context).
    """
    id: str
    type: str  # PatternType value
    detected_at: str  # ISO format
    confidence: float
    data: Dict[str, Any]
    event_ids: Tuple[str, ...]
    event_count: int
    status: str = PatternStatus.DETECTED.value
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "detected_at": self.detected_at,
            "confidence": self.confidence,
            "data": dict(self.data),
            "event_ids": list(self.event_ids),
            "event_count": self.event_count,
            "status": self.status,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pattern":
        return cls(
            id=data["id"],
            type=data["type"],
            detected_at=data["detected_at"],
            confidence=float(data["confidence"]),
            data=dict(data.get("data") or {}),
            event_ids=tuple(data.get("event_ids", [])),
            event_count=int(data.get("event_count", len(data.get("event_ids", [])))),
            status=data.get("status", PatternStatus.DETECTED.value),
            metadata=dict(data.get("metadata") or {}),
        )


# -----------------------------------------------------------------------------
# Insight (Frozen - Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Insight:
    """
    Human-readable interpretation of exactly one pattern.

    Only user_feedback, applied_at and suggested_actions change after
    creation, always through dataclasses.replace().
    """
    id: str
    pattern_id: str
    pattern_type: str  # PatternType value
    generated_at: str  # ISO format
    confidence: float
    title: str
    description: str
    recommendation: str
    suggested_actions: Tuple[str, ...] = ()  # LearningAction ids
    user_feedback: Optional[str] = None  # InsightFeedback value
    applied_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pattern_id": self.pattern_id,
            "pattern_type": self.pattern_type,
            "generated_at": self.generated_at,
            "confidence": self.confidence,
            "title": self.title,
            "description": self.description,
            "recommendation": self.recommendation,
            "suggested_actions": list(self.suggested_actions),
            "user_feedback": self.user_feedback,
            "applied_at": self.applied_at,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Insight":
        return cls(
            id=data["id"],
            pattern_id=data["pattern_id"],
            pattern_type=data.get("pattern_type", ""),
            generated_at=data["generated_at"],
            confidence=float(data["confidence"]),
            title=data["title"],
            description=data["description"],
            recommendation=data["recommendation"],
            suggested_actions=tuple(data.get("suggested_actions", [])),
            user_feedback=data.get("user_feedback"),
            applied_at=data.get("applied_at"),
            metadata=dict(data.get("metadata") or {}),
        )


# -----------------------------------------------------------------------------
# Learning Action (Frozen - Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class LearningAction:
    """
    A concrete adaptation awaiting an explicit decision.

    Status moves pending -> applied | rejected exactly once. applied_at is
    set only on applied.
    """
    id: str
    type: str  # LearningActionType value
    insight_id: str
    confidence: float
    target: str
    current_value: Any
    suggested_value: Any
    reason: str
    status: str = LearningActionStatus.PENDING.value
    created_at: str = ""
    applied_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "insight_id": self.insight_id,
            "confidence": self.confidence,
            "target": self.target,
            "current_value": self.current_value,
            "suggested_value": self.suggested_value,
            "reason": self.reason,
            "status": self.status,
            "created_at": self.created_at,
            "applied_at": self.applied_at,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearningAction":
        return cls(
            id=data["id"],
            type=data["type"],
            insight_id=data["insight_id"],
            confidence=float(data["confidence"]),
            target=data["target"],
            current_value=data.get("current_value"),
            suggested_value=data.get("suggested_value"),
            reason=data.get("reason", ""),
            status=data.get("status", LearningActionStatus.PENDING.value),
            created_at=data.get("created_at", ""),
            applied_at=data.get("applied_at"),
            metadata=dict(data.get("metadata") or {}),
        )


# -----------------------------------------------------------------------------
# Transition Record (Frozen - Audit)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class TransitionRecord:
    """Audit entry for one learning action decision."""
    record_id: str
    action_id: str
    from_status: str
    to_status: str
    timestamp: str
    user_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "action_id": self.action_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "timestamp": self.timestamp,
            "user_id": self.user_id,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransitionRecord":
        return cls(
            record_id=data["record_id"],
            action_id=data["action_id"],
            from_status=data["from_status"],
            to_status=data["to_status"],
            timestamp=data["timestamp"],
            user_id=data.get("user_id"),
            reason=data.get("reason"),
        )


# -----------------------------------------------------------------------------
# Query Filters
# -----------------------------------------------------------------------------
def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _in_range(
    timestamp: str,
    date_from: Optional[datetime],
    date_to: Optional[datetime],
) -> bool:
    if date_from is None and date_to is None:
        return True
    if not timestamp:
        return False
    at = parse_timestamp(timestamp)
    if date_from is not None and at < parse_timestamp(date_from):
        return False
    if date_to is not None and at > parse_timestamp(date_to):
        return False
    return True


@dataclass
class PatternFilter:
    type: Optional[str] = None
    status: Optional[str] = None
    min_confidence: Optional[float] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: Optional[int] = None

    def matches(self, pattern: Pattern) -> bool:
        if self.type is not None and pattern.type != _enum_value(self.type):
            return False
        if self.status is not None and pattern.status != _enum_value(self.status):
            return False
        if self.min_confidence is not None and pattern.confidence < self.min_confidence:
            return False
        return _in_range(pattern.detected_at, self.date_from, self.date_to)


@dataclass
class InsightFilter:
    """`status` filters on user feedback; `type` on the source pattern type."""
    pattern_id: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None
    min_confidence: Optional[float] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: Optional[int] = None

    def matches(self, insight: Insight) -> bool:
        if self.pattern_id is not None and insight.pattern_id != self.pattern_id:
            return False
        if self.type is not None and insight.pattern_type != _enum_value(self.type):
            return False
        if self.status is not None and insight.user_feedback != _enum_value(self.status):
            return False
        if self.min_confidence is not None and insight.confidence < self.min_confidence:
            return False
        return _in_range(insight.generated_at, self.date_from, self.date_to)


@dataclass
class LearningActionFilter:
    insight_id: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None
    min_confidence: Optional[float] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: Optional[int] = None

    def matches(self, action: LearningAction) -> bool:
        if self.insight_id is not None and action.insight_id != self.insight_id:
            return False
        if self.type is not None and action.type != _enum_value(self.type):
            return False
        if self.status is not None and action.status != _enum_value(self.status):
            return False
        if self.min_confidence is not None and action.confidence < self.min_confidence:
            return False
        return _in_range(action.created_at, self.date_from, self.date_to)


T = TypeVar("T")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _sort_instant(timestamp: str) -> datetime:
    return parse_timestamp(timestamp) if timestamp else _EPOCH


def apply_filter(
    records: Iterable[T],
    record_filter: Any,
    timestamp_of: Callable[[T], str],
) -> List[T]:
    """
    Filter, order newest first (ties by id) and truncate.

    Shared by every learning store backend.
    """
    matched = [r for r in records if record_filter is None or record_filter.matches(r)]
    by_id = sorted(matched, key=lambda r: r.id)
    ordered = sorted(by_id, key=lambda r: _sort_instant(timestamp_of(r)), reverse=True)
    limit = getattr(record_filter, "limit", None)
    if limit is not None:
        return ordered[:limit]
    return ordered


# -----------------------------------------------------------------------------
# Detection Options
# -----------------------------------------------------------------------------
@dataclass
class DetectionOptions:
    """
    Knobs for pattern detection.

    Context filters (user_id, device_id, mode, role, time_window) restrict
    the scanned window before any family runs.
    """
    min_confidence: float = 0.5
    min_occurrences: int = 10
    pattern_types: Optional[List[str]] = None
    user_id: Optional[str] = None
    device_id: Optional[str] = None
    mode: Optional[str] = None
    role: Optional[str] = None
    time_window: Optional[Tuple[datetime, datetime]] = None

    # time_based_routine
    routine_majority: float = 0.7
    routine_min_occurrences: int = 5
    routine_min_days: int = 3
    routine_max_window_minutes: int = 180

    # mode_preference
    mode_preference_rate: float = 0.7

    # error_pattern
    error_rate_threshold: float = 0.15
    error_min_attempts: int = 10

    # efficiency_gain
    efficiency_sample_size: int = 5
    efficiency_improvement: float = 0.2

    # risk_threshold
    risk_min_samples: int = 10

    def enabled_types(self) -> List[str]:
        if not self.pattern_types:
            return [t.value for t in PatternType]
        return [_enum_value(t) for t in self.pattern_types]
