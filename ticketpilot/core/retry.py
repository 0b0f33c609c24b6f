"""Per-operation retry bookkeeping."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from ticketpilot.config import Settings
from ticketpilot.db.models import RetryAttempt, Ticket, utcnow
from ticketpilot.db.repository import RetryAttemptRepository
from ticketpilot.db.session import Database

from .status import Operation, RetryStatus

logger = structlog.get_logger()


class RetryDecisionKind(str, Enum):
    RETRY_NOW = "retry_now"
    WAIT_UNTIL = "wait_until"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class RetryDecision:
    """What the state machine should do next for one operation."""

    kind: RetryDecisionKind
    attempt_number: int = 0
    max_attempts: int = 0
    next_attempt_at: datetime | None = None
    error: str | None = None

    @property
    def exhausted(self) -> bool:
        return self.kind is RetryDecisionKind.EXHAUSTED

    @property
    def should_wait(self) -> bool:
        return self.kind is RetryDecisionKind.WAIT_UNTIL


class RetryCoordinator:
    """Tracks attempts per (ticket, operation) within the ticket's processing cycle.

    There is at most one non-terminal RetryAttempt per pair. Each failure
    raises ``attempt_number`` by one; the row fails once it reaches
    ``max_attempts``. The delay between attempts is fixed.
    """

    def __init__(self, settings: Settings, db: Database):
        self.settings = settings
        self.db = db

    def should_retry(self, ticket: Ticket, operation: Operation, now: datetime | None = None) -> RetryDecision:
        now = now or utcnow()
        with self.db.transaction() as session:
            attempt = RetryAttemptRepository(session).latest(ticket.key, operation, ticket.processing_cycle)
            return self._decision_for(attempt, now)

    def record_outcome(
        self,
        ticket: Ticket,
        operation: Operation,
        success: bool,
        error: str | None = None,
        context: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> RetryDecision:
        now = now or utcnow()
        log = logger.bind(ticket=ticket.key, operation=operation.value, cycle=ticket.processing_cycle)

        with self.db.transaction() as session:
            repo = RetryAttemptRepository(session)
            attempt = repo.active(ticket.key, operation, ticket.processing_cycle)

            if success:
                if attempt is not None:
                    attempt.status = RetryStatus.SUCCESS
                    attempt.next_attempt_at = None
                    attempt.updated_at = now
                    log.info("Operation succeeded after retry", attempt=attempt.attempt_number)
                return RetryDecision(kind=RetryDecisionKind.RETRY_NOW)

            delay = self.settings.retry_delay_seconds
            if attempt is None:
                attempt = repo.add(
                    RetryAttempt(
                        ticket_key=ticket.key,
                        operation=operation,
                        cycle=ticket.processing_cycle,
                        attempt_number=1,
                        max_attempts=self.settings.max_retry_attempts,
                        status=RetryStatus.RETRYING,
                        delay_seconds=delay,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                attempt.attempt_number = min(attempt.attempt_number + 1, attempt.max_attempts)
                attempt.status = RetryStatus.RETRYING

            attempt.error_message = error
            attempt.context = context or {}
            attempt.updated_at = now

            if attempt.attempt_number >= attempt.max_attempts:
                attempt.status = RetryStatus.FAILED
                attempt.next_attempt_at = None
                log.warning(
                    "Retry attempts exhausted",
                    attempt=attempt.attempt_number,
                    max_attempts=attempt.max_attempts,
                    error=error,
                )
            else:
                attempt.next_attempt_at = now + timedelta(seconds=delay)
                log.info(
                    "Retry scheduled",
                    attempt=attempt.attempt_number,
                    max_attempts=attempt.max_attempts,
                    next_attempt_at=attempt.next_attempt_at.isoformat(),
                    error=error,
                )
            return self._decision_for(attempt, now)

    def due_attempts(self, now: datetime | None = None) -> list[RetryAttempt]:
        """Retrying rows whose next attempt time has passed."""
        with self.db.transaction() as session:
            return RetryAttemptRepository(session).due(now or utcnow())

    def pending_for(self, ticket: Ticket) -> RetryAttempt | None:
        """The active attempt of the ticket's current cycle, if any."""
        with self.db.transaction() as session:
            return RetryAttemptRepository(session).latest_active_for_ticket(ticket.key, ticket.processing_cycle)

    @staticmethod
    def _decision_for(attempt: RetryAttempt | None, now: datetime) -> RetryDecision:
        if attempt is None:
            return RetryDecision(kind=RetryDecisionKind.RETRY_NOW)

        fields = dict(
            attempt_number=attempt.attempt_number,
            max_attempts=attempt.max_attempts,
            error=attempt.error_message,
        )
        if attempt.status == RetryStatus.FAILED:
            return RetryDecision(kind=RetryDecisionKind.EXHAUSTED, **fields)
        if attempt.status == RetryStatus.SUCCESS:
            return RetryDecision(kind=RetryDecisionKind.RETRY_NOW, **fields)
        if attempt.next_attempt_at is not None and attempt.next_attempt_at > now:
            return RetryDecision(kind=RetryDecisionKind.WAIT_UNTIL, next_attempt_at=attempt.next_attempt_at, **fields)
        return RetryDecision(kind=RetryDecisionKind.RETRY_NOW, next_attempt_at=attempt.next_attempt_at, **fields)
