"""
Priority classes, their scores, and how a token's priority is chosen.
"""

from collections.abc import Mapping
from datetime import date

from smartqueue.config import DEFAULT_PRIORITY_SCORES
from smartqueue.core.errors import InvalidPriorityError
from smartqueue.models.domain import Party, Priority

# Used in regression messages to name the class that jumped the queue
PRIORITY_DESCRIPTIONS = {
    Priority.EMERGENCY: "Emergency",
    Priority.EXPECTANT: "Expectant mother",
    Priority.SENIOR: "Senior citizen (60+)",
    Priority.VIP: "VIP",
}


def parse_priority(value: Priority | str | None) -> Priority | None:
    """Accept an enum member or a case-insensitive name; None stays None."""
    if value is None or isinstance(value, Priority):
        return value
    try:
        return Priority(str(value).strip().upper())
    except ValueError:
        raise InvalidPriorityError(f"Invalid priority: {value}") from None


def describe_priority(priority: Priority) -> str:
    return PRIORITY_DESCRIPTIONS.get(priority, "Priority")


def insertion_reason(priority: Priority) -> str:
    return (
        f"A {describe_priority(priority)} case has been added to the queue "
        "and given priority as per the queue policy."
    )


REPRIORITIZE_REASON = "Queue order has been adjusted based on priority updates."


class PriorityScale:
    """Maps priority classes to their ordering scores."""

    def __init__(self, scores: Mapping[str, int] | None = None):
        source = scores or DEFAULT_PRIORITY_SCORES
        self._scores = {Priority(name.upper()): int(score) for name, score in source.items()}

    def score(self, priority: Priority) -> int:
        return self._scores[priority]

    def resolve(
        self,
        party: Party,
        requested: Priority | None,
        on: date,
        senior_age_threshold: int = 60,
    ) -> Priority:
        """
        Pick the priority for a new token.

        An explicit EMERGENCY request always wins. Otherwise party traits
        override the request: expectant first, then senior. Without traits
        the request stands, defaulting to NORMAL.
        """
        if requested == Priority.EMERGENCY:
            return Priority.EMERGENCY
        if party.is_expectant:
            return Priority.EXPECTANT
        if party.is_senior_on(on, senior_age_threshold):
            return Priority.SENIOR
        return requested or Priority.NORMAL
