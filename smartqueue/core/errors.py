"""
Error taxonomy for queue operations.

Every error raised by the orchestrator carries a machine-readable ``kind`` and
a human message. The HTTP layer maps kinds to status codes.
"""


class QueueError(Exception):
    """Base exception for queue operations."""

    kind = "queue_error"

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class NotFoundError(QueueError):
    kind = "not_found"

    @classmethod
    def for_entity(cls, entity: str, field: str, value) -> "NotFoundError":
        return cls(f"{entity} not found with {field}: {value}")


class InvalidStateError(QueueError):
    kind = "invalid_state"


class CapacityExceededError(QueueError):
    kind = "capacity_exceeded"


class EmptyQueueError(QueueError):
    kind = "empty_queue"


class AlreadyServingError(QueueError):
    kind = "already_serving"


class InvalidPriorityError(QueueError):
    kind = "invalid_priority"


class ContentionError(QueueError):
    kind = "contention"


class ServicePointUnavailableError(QueueError):
    kind = "point_unavailable"
