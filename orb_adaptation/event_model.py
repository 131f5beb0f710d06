"""
Orb Adaptation: Event Model

Wire contract between producers (execution, policy, reflection and inference
roles) and the adaptation core.

CONSTRAINTS:
- APPEND-ONLY: Events are never modified or deleted once stored
- STABLE WIRE SHAPE: id, type, timestamp, userId, sessionId, deviceId,
  mode, persona, role, payload, metadata
- OPEN PAYLOAD: Unknown payload/metadata keys round-trip unchanged
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Union, Set, Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator


# -----------------------------------------------------------------------------
# Event Type Enum
# -----------------------------------------------------------------------------
class OrbEventType(str, Enum):
    """
    Event taxonomy.

    Grouped by the role that normally emits them. The task_* and error
    values are the older task-runner vocabulary, still produced by some
    collaborators.
    """
    # Execution (mav)
    ACTION_STARTED = "action_started"
    ACTION_COMPLETED = "action_completed"
    ACTION_FAILED = "action_failed"

    # Policy (luna)
    DECISION_MADE = "decision_made"
    CONSTRAINT_TRIGGERED = "constraint_triggered"
    PREFERENCE_UPDATED = "preference_updated"
    MODE_CHANGED = "mode_changed"

    # Reflection (te)
    REFLECTION_CREATED = "reflection_created"
    PATTERN_DETECTED = "pattern_detected"
    INSIGHT_GENERATED = "insight_generated"

    # Inference (sol)
    MODEL_CALLED = "model_called"
    INTENT_ANALYZED = "intent_analyzed"
    RECOMMENDATION_MADE = "recommendation_made"

    # User
    USER_ACTION = "user_action"
    USER_FEEDBACK = "user_feedback"
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"

    # Task runner
    TASK_RUN = "task_run"
    TASK_COMPLETE = "task_complete"
    TASK_FAIL = "task_fail"
    ERROR = "error"


class OrbRole(str, Enum):
    """Cooperating layers that emit events."""
    ORB = "orb"      # Orchestrator
    SOL = "sol"      # Inference
    TE = "te"        # Reflection / memory
    MAV = "mav"      # Actions / tools
    LUNA = "luna"    # Preferences / policy
    FORGE = "forge"  # Multi-agent coordinator


FAILURE_EVENT_TYPES = frozenset({
    OrbEventType.ACTION_FAILED,
    OrbEventType.TASK_FAIL,
    OrbEventType.ERROR,
})

COMPLETION_EVENT_TYPES = frozenset({
    OrbEventType.ACTION_COMPLETED,
    OrbEventType.TASK_COMPLETE,
})

START_EVENT_TYPES = frozenset({
    OrbEventType.ACTION_STARTED,
    OrbEventType.TASK_RUN,
})

FINISH_EVENT_TYPES = frozenset({
    OrbEventType.ACTION_COMPLETED,
    OrbEventType.ACTION_FAILED,
    OrbEventType.TASK_COMPLETE,
    OrbEventType.TASK_FAIL,
})

DEFAULT_QUERY_LIMIT = 100

# (wire key, attribute) for optional top-level fields
_OPTIONAL_WIRE_FIELDS = (
    ("userId", "user_id"),
    ("sessionId", "session_id"),
    ("deviceId", "device_id"),
    ("mode", "mode"),
    ("persona", "persona"),
    ("role", "role"),
)


# -----------------------------------------------------------------------------
# Timestamp Helpers
# -----------------------------------------------------------------------------
def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """
    Parse an ISO-8601 instant into an aware UTC datetime.

    Naive values are taken to be UTC. Raises ValueError when unparseable.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Invalid timestamp: {value!r}")
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


# -----------------------------------------------------------------------------
# Orb Event (Immutable)
# -----------------------------------------------------------------------------
class OrbEvent(BaseModel):
    """
    Immutable record of something a cooperating role did or decided.

    Python attributes are snake_case; the JSON wire shape is camelCase.
    The timestamp is kept as the producer sent it so the event round-trips
    byte-for-byte; use `occurred_at` for the parsed instant.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str
    type: OrbEventType
    timestamp: str
    user_id: Optional[str] = Field(default=None, alias="userId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    mode: Optional[str] = None
    persona: Optional[str] = None
    role: Optional[OrbRole] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("id must be a non-empty string")
        return value

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp_parseable(cls, value: Any) -> str:
        if isinstance(value, datetime):
            return parse_timestamp(value).isoformat()
        parse_timestamp(value)
        return value

    @field_validator("payload", mode="before")
    @classmethod
    def _payload_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def occurred_at(self) -> datetime:
        return parse_timestamp(self.timestamp)

    @property
    def is_failure(self) -> bool:
        return self.type in FAILURE_EVENT_TYPES

    def to_dict(self) -> Dict[str, Any]:
        """Wire (camelCase) representation; unset optional fields are omitted."""
        data: Dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp,
        }
        for wire_key, attr in _OPTIONAL_WIRE_FIELDS:
            value = getattr(self, attr)
            if value is not None:
                data[wire_key] = value.value if isinstance(value, Enum) else value
        data["payload"] = dict(self.payload)
        if self.metadata is not None:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrbEvent":
        return cls.model_validate(data)


# -----------------------------------------------------------------------------
# Payload Accessors
# -----------------------------------------------------------------------------
def action_key(event: OrbEvent) -> str:
    """Action identifier an event refers to."""
    payload = event.payload
    return str(
        payload.get("actionType")
        or payload.get("action")
        or payload.get("taskLabel")
        or "unknown"
    )


def feature_key(event: OrbEvent) -> str:
    """Feature identifier used for failing-feature statistics."""
    payload = event.payload
    return str(
        payload.get("feature")
        or payload.get("flow")
        or payload.get("taskLabel")
        or payload.get("actionType")
        or "unknown"
    )


def task_id(event: OrbEvent) -> Optional[str]:
    value = event.payload.get("taskId")
    return str(value) if value else None


def duration_ms(event: OrbEvent) -> Optional[float]:
    """Duration recorded in metadata, if it is a usable number."""
    if not event.metadata:
        return None
    value = event.metadata.get("duration")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value < 0:
        return None
    return float(value)


# -----------------------------------------------------------------------------
# Event Filter
# -----------------------------------------------------------------------------
class EventFilter(BaseModel):
    """
    Query predicate shared by the event bus, the stores and the
    adaptation engine. Every provided field must match.
    """
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    id: Optional[str] = None
    type: Optional[Union[OrbEventType, List[OrbEventType]]] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    mode: Optional[str] = None
    role: Optional[OrbRole] = None
    date_from: Optional[datetime] = Field(default=None, alias="dateFrom")
    date_to: Optional[datetime] = Field(default=None, alias="dateTo")
    search: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)

    def type_set(self) -> Optional[Set[OrbEventType]]:
        if self.type is None:
            return None
        if isinstance(self.type, list):
            return set(self.type)
        return {self.type}

    def with_limit(self, limit: Optional[int]) -> "EventFilter":
        return self.model_copy(update={"limit": limit})

    def matches(self, event: OrbEvent) -> bool:
        if self.id is not None and event.id != self.id:
            return False
        types = self.type_set()
        if types is not None and event.type not in types:
            return False
        if self.user_id is not None and event.user_id != self.user_id:
            return False
        if self.session_id is not None and event.session_id != self.session_id:
            return False
        if self.device_id is not None and event.device_id != self.device_id:
            return False
        if self.mode is not None and event.mode != self.mode:
            return False
        if self.role is not None and event.role != self.role:
            return False
        if self.date_from is not None or self.date_to is not None:
            occurred = event.occurred_at
            if self.date_from is not None and occurred < parse_timestamp(self.date_from):
                return False
            if self.date_to is not None and occurred > parse_timestamp(self.date_to):
                return False
        if self.search:
            needle = self.search.lower()
            haystack = event.type.value + json.dumps(event.payload, default=str)
            if event.metadata:
                haystack += json.dumps(event.metadata, default=str)
            if needle not in haystack.lower():
                return False
        return True


# -----------------------------------------------------------------------------
# Event Statistics
# -----------------------------------------------------------------------------
@dataclass
class EventStats:
    """
    Aggregate counts over a set of events.

    Events without a role are counted under "unknown" so the role
    breakdown always sums to total_events.
    """
    total_events: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)
    by_mode: Dict[str, int] = field(default_factory=dict)
    by_role: Dict[str, int] = field(default_factory=dict)
    most_used_modes: List[Dict[str, Any]] = field(default_factory=list)
    error_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalEvents": self.total_events,
            "byType": dict(self.by_type),
            "byMode": dict(self.by_mode),
            "byRole": dict(self.by_role),
            "mostUsedModes": [dict(m) for m in self.most_used_modes],
            "errorRate": self.error_rate,
        }


def summarize_events(events: Iterable[OrbEvent], top_modes: int = 10) -> EventStats:
    """Compute EventStats for an already-filtered set of events."""
    stats = EventStats()
    error_count = 0

    for event in events:
        stats.total_events += 1
        type_key = event.type.value
        stats.by_type[type_key] = stats.by_type.get(type_key, 0) + 1
        if event.mode:
            stats.by_mode[event.mode] = stats.by_mode.get(event.mode, 0) + 1
        role_key = event.role.value if event.role else "unknown"
        stats.by_role[role_key] = stats.by_role.get(role_key, 0) + 1
        if event.is_failure:
            error_count += 1

    ranked = sorted(stats.by_mode.items(), key=lambda item: (-item[1], item[0]))
    stats.most_used_modes = [
        {"mode": mode, "count": count} for mode, count in ranked[:top_modes]
    ]
    stats.error_rate = error_count / stats.total_events if stats.total_events else 0.0
    return stats


def sort_newest_first(events: Iterable[OrbEvent]) -> List[OrbEvent]:
    """Timestamp descending; equal timestamps ordered by id."""
    by_id = sorted(events, key=lambda e: e.id)
    return sorted(by_id, key=lambda e: e.occurred_at, reverse=True)
