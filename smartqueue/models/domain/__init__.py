"""
Domain subpackage for the token queue.
"""

from .queue_domain import (
    SERVING_STATUSES,
    TERMINAL_STATUSES,
    MessageKind,
    Party,
    Priority,
    QueueEstimate,
    QueueSnapshot,
    ServiceGroup,
    ServicePoint,
    Token,
    TokenStatus,
)

__all__ = [
    "SERVING_STATUSES",
    "TERMINAL_STATUSES",
    "MessageKind",
    "Party",
    "Priority",
    "QueueEstimate",
    "QueueSnapshot",
    "ServiceGroup",
    "ServicePoint",
    "Token",
    "TokenStatus",
]
