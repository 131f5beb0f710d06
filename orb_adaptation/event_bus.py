"""
Orb Adaptation: Event Bus

Single entry point through which roles record events and through which the
adaptation core reads them back.

CONSTRAINTS:
- VALIDATE FIRST: Nothing is persisted for an event that fails validation
- DURABLE: emit() returns only after the store append completed
- IDEMPOTENT: Re-emitting an identical event is a no-op
- NO BUS LOCK: Concurrency is handled by the store
"""

import json
import logging
import uuid
from enum import Enum
from typing import Optional, Dict, Any, List, Union

from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .event_model import (
    OrbEvent,
    OrbEventType,
    EventFilter,
    EventStats,
    DEFAULT_QUERY_LIMIT,
    utc_now_iso,
)
from .event_store import EventStore, InMemoryEventStore

logger = logging.getLogger("event_bus")


FilterLike = Union[EventFilter, Dict[str, Any], None]


def _first_error(exc: PydanticValidationError) -> ValidationError:
    """Convert a pydantic error into the core's ValidationError."""
    errors = exc.errors()
    if not errors:
        return ValidationError(str(exc))
    first = errors[0]
    field_name = ".".join(str(part) for part in first.get("loc", ())) or None
    message = first.get("msg", "invalid value")
    if field_name:
        message = f"{field_name}: {message}"
    return ValidationError(message, field=field_name)


def coerce_filter(event_filter: FilterLike) -> EventFilter:
    """Accept an EventFilter, a wire-shaped dict, or None."""
    if event_filter is None:
        return EventFilter()
    if isinstance(event_filter, EventFilter):
        return event_filter
    try:
        return EventFilter.model_validate(event_filter)
    except PydanticValidationError as e:
        raise _first_error(e) from e


class EventBus:
    """
    Validating front door to an EventStore.

    Usage:
        bus = EventBus(InMemoryEventStore())
        bus.emit({"id": "e1", "type": "action_completed", "role": "mav",
                  "payload": {"actionType": "git-commit"}})
        recent = bus.query({"type": "action_completed"})
    """

    def __init__(
        self,
        store: Optional[EventStore] = None,
        default_limit: int = DEFAULT_QUERY_LIMIT,
    ):
        self._store = store if store is not None else InMemoryEventStore()
        self._default_limit = default_limit

    @property
    def store(self) -> EventStore:
        return self._store

    # -------------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------------

    def emit(self, event: Union[OrbEvent, Dict[str, Any]]) -> OrbEvent:
        """
        Validate and persist an event.

        A dict without a timestamp is stamped with the current UTC instant.

        Raises:
            ValidationError: missing/blank id, unknown type or role,
                unparseable timestamp, or an id taken by a different event
            StorageError: the backend could not persist the event
        """
        if isinstance(event, OrbEvent):
            validated = event
        elif isinstance(event, dict):
            data = dict(event)
            if not data.get("timestamp"):
                data["timestamp"] = utc_now_iso()
            try:
                validated = OrbEvent.from_dict(data)
            except PydanticValidationError as e:
                error = _first_error(e)
                logger.warning(f"Rejected event {data.get('id')!r}: {error}")
                raise error from e
        else:
            raise ValidationError(
                f"Event must be an OrbEvent or a mapping, got {type(event).__name__}"
            )

        try:
            json.dumps(validated.to_dict())
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Event {validated.id} is not JSON-serializable: {e}", field="payload") from e

        if self._store.append(validated):
            logger.debug(f"Event emitted: {validated.id} ({validated.type.value})")
        else:
            logger.info(f"Duplicate event ignored: {validated.id}")
        return validated

    def record(
        self,
        event_type: Union[OrbEventType, str],
        payload: Optional[Dict[str, Any]] = None,
        **context: Any,
    ) -> OrbEvent:
        """
        Build an event with a fresh id and timestamp, then emit it.

        Keyword context uses wire names or attribute names (user_id,
        session_id, device_id, mode, persona, role, metadata).
        """
        event_type = event_type.value if isinstance(event_type, OrbEventType) else event_type
        data: Dict[str, Any] = {
            "id": f"evt-{uuid.uuid4().hex}",
            "type": event_type,
            "timestamp": utc_now_iso(),
            "payload": payload or {},
        }
        for key, value in context.items():
            if value is not None:
                data[key] = value.value if isinstance(value, Enum) else value
        return self.emit(data)

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def get(self, event_id: str) -> Optional[OrbEvent]:
        return self._store.get(event_id)

    def query(self, event_filter: FilterLike = None) -> List[OrbEvent]:
        """Matching events, newest first, capped at the default limit."""
        resolved = coerce_filter(event_filter)
        if resolved.limit is None:
            resolved = resolved.with_limit(self._default_limit)
        return self._store.query(resolved)

    def query_all(self, event_filter: FilterLike = None) -> List[OrbEvent]:
        """Matching events with no default cap (an explicit limit still applies)."""
        return self._store.query(coerce_filter(event_filter))

    def get_stats(self, event_filter: FilterLike = None) -> EventStats:
        """Statistics over every matching event; limit is ignored."""
        return self._store.get_stats(coerce_filter(event_filter))
