"""
Token lifecycle transitions.

    WAITING -> CALLED -> IN_CONSULTATION -> COMPLETED
    WAITING -> CANCELLED
    CALLED -> NO_SHOW
    CALLED -> WAITING (skip)
    CALLED | IN_CONSULTATION -> CANCELLED (abort)
    CALLED -> COMPLETED (end without an explicit start)

Every transition checks its source state, stamps its timestamps from the
clock and mutates the token in place. Persistence and queue-level rules
(head of queue, one serving token per point) belong to the orchestrator.
"""

from datetime import date

from smartqueue.core.clock import Clock
from smartqueue.core.errors import InvalidStateError
from smartqueue.core.priority import PriorityScale
from smartqueue.models.domain import Priority, Token, TokenStatus


class TokenStateMachine:
    def __init__(self, clock: Clock, scale: PriorityScale):
        self.clock = clock
        self.scale = scale

    @staticmethod
    def _require(token: Token, operation: str, *allowed: TokenStatus) -> None:
        if token.is_terminal or token.status not in allowed:
            expected = " or ".join(s.value for s in allowed)
            raise InvalidStateError(
                f"Cannot {operation} token {token.token_number} in status "
                f"{token.status.value}; expected {expected}",
                operation=operation,
            )

    def create(
        self,
        *,
        token_number: str,
        party_id: int,
        group_id: int,
        point_id: int | None,
        service_date: date,
        priority: Priority,
        notes: str | None = None,
    ) -> Token:
        return Token(
            id=None,
            token_number=token_number,
            party_id=party_id,
            group_id=group_id,
            point_id=point_id,
            service_date=service_date,
            priority=priority,
            priority_score=self.scale.score(priority),
            status=TokenStatus.WAITING,
            generated_at=self.clock.now(),
            notes=notes,
        )

    def call(self, token: Token) -> Token:
        self._require(token, "call", TokenStatus.WAITING)
        token.status = TokenStatus.CALLED
        token.called_at = self.clock.now()
        return token

    def start_service(self, token: Token) -> Token:
        self._require(token, "start", TokenStatus.CALLED)
        token.status = TokenStatus.IN_CONSULTATION
        token.consultation_started_at = self.clock.now()
        return token

    def end_service(self, token: Token) -> Token:
        self._require(token, "end", TokenStatus.CALLED, TokenStatus.IN_CONSULTATION)
        now = self.clock.now()
        if token.consultation_started_at is None:
            token.consultation_started_at = now
        token.consultation_ended_at = now
        token.status = TokenStatus.COMPLETED
        return token

    def abort_active(self, token: Token) -> Token:
        self._require(token, "abort", TokenStatus.CALLED, TokenStatus.IN_CONSULTATION)
        token.status = TokenStatus.CANCELLED
        token.consultation_ended_at = self.clock.now()
        return token

    def cancel(self, token: Token) -> Token:
        self._require(token, "cancel", TokenStatus.WAITING)
        token.status = TokenStatus.CANCELLED
        token.consultation_ended_at = self.clock.now()
        return token

    def mark_no_show(self, token: Token) -> Token:
        self._require(token, "mark no-show for", TokenStatus.CALLED)
        token.status = TokenStatus.NO_SHOW
        token.consultation_ended_at = self.clock.now()
        return token

    def skip(self, token: Token) -> Token:
        """Send a called token back to the queue behind its equal-priority peers."""
        self._require(token, "skip", TokenStatus.CALLED)
        token.status = TokenStatus.WAITING
        token.called_at = None
        token.skip_count += 1
        return token

    def reprioritize(self, token: Token, priority: Priority) -> Token:
        self._require(token, "reprioritize", TokenStatus.WAITING)
        token.priority = priority
        token.priority_score = self.scale.score(priority)
        token.skip_count = 0
        return token
