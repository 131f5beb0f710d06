"""
Orb Adaptation: Error Types

Every failure the adaptation core reports to its callers is one of these.

- ValidationError: malformed input at an ingestion boundary (emit, filters)
- StorageError: an event or learning backend could not read or write
- InvalidTransitionError: a learning action or pattern was asked to move
  along an edge its state machine does not have
- LearningActionNotFoundError: no learning action with the requested id
"""


class AdaptationError(Exception):
    """Base class for all adaptation core errors."""


class ValidationError(AdaptationError, ValueError):
    """Raised when an event or request fails validation."""

    def __init__(self, message: str, field: str = None):
        super().__init__(message)
        self.field = field


class StorageError(AdaptationError):
    """Raised when a storage backend is unavailable or fails an operation."""


class InvalidTransitionError(AdaptationError):
    """Raised when a state transition is not permitted."""

    def __init__(self, record_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Cannot transition {record_id} from '{from_status}' to '{to_status}'"
        )
        self.record_id = record_id
        self.from_status = from_status
        self.to_status = to_status


class LearningActionNotFoundError(AdaptationError, KeyError):
    """Raised when a learning action id does not exist in the store."""

    def __init__(self, action_id: str):
        super().__init__(action_id)
        self.action_id = action_id

    def __str__(self) -> str:
        return f"Learning action not found: {self.action_id}"
