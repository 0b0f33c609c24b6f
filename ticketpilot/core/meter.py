"""Session hour meter: budgets, consumption and one-time notifications."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import structlog
from sqlalchemy.orm import Session

from ticketpilot.config import Settings
from ticketpilot.db.models import BotSession, utcnow
from ticketpilot.db.repository import SessionRepository
from ticketpilot.db.session import Database

from .errors import InvalidTransitionError
from .status import SessionStatus

logger = structlog.get_logger()


class SessionEventKind(str, Enum):
    FIRST_WARNING = "first_warning"
    SECOND_WARNING = "second_warning"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SessionEvent:
    kind: SessionEventKind
    session_key: str
    customer_email: str
    consumption_percentage: float
    remaining_hours: float
    threshold: float | None = None


class Notifier(Protocol):
    """Receives session events. Delivery is up to the implementation."""

    def notify(self, event: SessionEvent) -> None: ...


class LoggingNotifier:
    """Writes session events to the structured log."""

    def notify(self, event: SessionEvent) -> None:
        logger.warning(
            "Session event",
            kind=event.kind.value,
            session=event.session_key,
            customer=event.customer_email,
            consumption_percentage=round(event.consumption_percentage, 1),
            remaining_hours=round(event.remaining_hours, 2),
            threshold=event.threshold,
        )


class ReserveResult(str, Enum):
    OK = "ok"
    BUDGET_EXHAUSTED = "budget_exhausted"
    INACTIVE = "inactive"
    UNKNOWN = "unknown"

    @property
    def ok(self) -> bool:
        return self is ReserveResult.OK


@dataclass
class DebitResult:
    accepted: bool
    requested_hours: float
    consumed_hours: float = 0.0
    remaining_hours: float = 0.0
    events: list[SessionEvent] = field(default_factory=list)


class SessionMeter:
    """Charges processing time against customer sessions."""

    def __init__(self, settings: Settings, db: Database, notifier: Notifier | None = None):
        self.settings = settings
        self.db = db
        self.notifier = notifier or LoggingNotifier()

    def create_session(
        self,
        customer_email: str,
        hours: float | None = None,
        customer_name: str | None = None,
        notes: str | None = None,
    ) -> BotSession:
        hours = self.settings.default_hours if hours is None else hours
        if hours <= 0:
            raise ValueError("Session hours must be positive")

        now = utcnow()
        with self.db.transaction() as session:
            bot_session = SessionRepository(session).add(
                BotSession(
                    session_key=uuid.uuid4().hex,
                    customer_email=customer_email,
                    customer_name=customer_name,
                    purchased_hours=hours,
                    consumed_hours=0.0,
                    remaining_hours=hours,
                    status=SessionStatus.ACTIVE,
                    started_at=now,
                    last_activity_at=now,
                    notes=notes,
                )
            )
        logger.info("Session created", session=bot_session.session_key, customer=customer_email, hours=hours)
        return bot_session

    def get(self, session_key: str) -> BotSession:
        with self.db.transaction() as session:
            return SessionRepository(session).require(session_key)

    def reserve(self, session_key: str | None) -> ReserveResult:
        """Check that work may start against the session. Nothing is held."""
        if session_key is None:
            return ReserveResult.UNKNOWN
        with self.db.transaction() as session:
            bot_session = SessionRepository(session).get(session_key)
            if bot_session is None:
                return ReserveResult.UNKNOWN
            if not SessionStatus(bot_session.status).accepts_reservations:
                return ReserveResult.INACTIVE
            if bot_session.remaining_hours <= 0:
                return ReserveResult.BUDGET_EXHAUSTED
            return ReserveResult.OK

    def charge(self, session: Session, session_key: str, hours: float, successful: bool = True) -> DebitResult:
        """Debit inside the caller's transaction. Thresholds are not checked here."""
        if hours < 0:
            raise ValueError("Cannot debit negative hours")

        repo = SessionRepository(session)
        accepted = repo.debit(session_key, hours, successful, utcnow())
        bot_session = repo.require(session_key)
        result = DebitResult(
            accepted=accepted,
            requested_hours=hours,
            consumed_hours=bot_session.consumed_hours,
            remaining_hours=bot_session.remaining_hours,
        )

        log = logger.bind(session=session_key, hours=round(hours, 4))
        if accepted:
            log.info("Hours debited", consumed=result.consumed_hours, remaining=result.remaining_hours)
        else:
            log.warning("Debit refused, session budget exhausted")
        return result

    def debit(self, session_key: str, hours: float, successful: bool = True) -> DebitResult:
        """Charge ``hours``, floored at zero remaining. Refused when nothing remains."""
        with self.db.transaction() as session:
            result = self.charge(session, session_key, hours, successful)
        if result.accepted:
            result.events = self.check_thresholds(session_key)
        return result

    def record_failure(self, session_key: str, session: Session | None = None) -> None:
        if session is not None:
            SessionRepository(session).record_failure(session_key, utcnow())
            return
        with self.db.transaction() as session:
            SessionRepository(session).record_failure(session_key, utcnow())

    def check_thresholds(self, session_key: str) -> list[SessionEvent]:
        """Claim and emit warnings and expiry. Each event fires at most once per session."""
        thresholds = self.settings.warning_thresholds
        claimed: list[tuple[SessionEventKind, float | None]] = []
        now = utcnow()

        with self.db.transaction() as session:
            repo = SessionRepository(session)
            if repo.claim_flag(session_key, "warning_first_sent", thresholds.first):
                claimed.append((SessionEventKind.FIRST_WARNING, thresholds.first))
            if repo.claim_flag(session_key, "warning_second_sent", thresholds.second):
                claimed.append((SessionEventKind.SECOND_WARNING, thresholds.second))
            if repo.claim_expiry(session_key, now):
                claimed.append((SessionEventKind.EXPIRED, None))
            bot_session = repo.require(session_key)

        events = [self._event(kind, bot_session, threshold) for kind, threshold in claimed]
        for event in events:
            self.notifier.notify(event)
        return events

    def renew(self, session_key: str, additional_hours: float) -> BotSession:
        """Add hours, reset flags whose threshold is no longer crossed and reactivate."""
        if additional_hours <= 0:
            raise ValueError("Additional hours must be positive")

        thresholds = self.settings.warning_thresholds
        now = utcnow()
        with self.db.transaction() as session:
            repo = SessionRepository(session)
            bot_session = repo.require(session_key)
            if bot_session.status == SessionStatus.CANCELLED:
                raise InvalidTransitionError(f"Session '{session_key}' is cancelled")

            repo.add_hours(session_key, additional_hours, now)
            repo.reset_flag_below(session_key, "warning_first_sent", thresholds.first)
            repo.reset_flag_below(session_key, "warning_second_sent", thresholds.second)
            reactivated = repo.reactivate_if_funded(session_key, now)
            bot_session = repo.require(session_key)

        logger.info(
            "Session renewed",
            session=session_key,
            added_hours=additional_hours,
            purchased=bot_session.purchased_hours,
            remaining=bot_session.remaining_hours,
            reactivated=reactivated,
        )
        return bot_session

    def pause(self, session_key: str) -> BotSession:
        return self._set_status(session_key, SessionStatus.PAUSED, allowed_from=(SessionStatus.ACTIVE,))

    def resume(self, session_key: str) -> BotSession:
        return self._set_status(session_key, SessionStatus.ACTIVE, allowed_from=(SessionStatus.PAUSED,))

    def cancel(self, session_key: str) -> BotSession:
        return self._set_status(
            session_key,
            SessionStatus.CANCELLED,
            allowed_from=(SessionStatus.ACTIVE, SessionStatus.PAUSED, SessionStatus.EXPIRED),
        )

    def expire(self, session_key: str) -> list[SessionEvent]:
        """Force expiry regardless of remaining hours."""
        now = utcnow()
        with self.db.transaction() as session:
            repo = SessionRepository(session)
            bot_session = repo.require(session_key)
            if bot_session.status == SessionStatus.CANCELLED:
                raise InvalidTransitionError(f"Session '{session_key}' is cancelled")
            claimed = repo.claim_expiry(session_key, now, force=True)
            bot_session = repo.require(session_key)
            if not claimed and bot_session.status != SessionStatus.EXPIRED:
                bot_session.status = SessionStatus.EXPIRED
                bot_session.expired_at = now

        if not claimed:
            return []
        event = self._event(SessionEventKind.EXPIRED, bot_session, None)
        self.notifier.notify(event)
        return [event]

    def report(self, session_key: str) -> dict[str, Any]:
        bot_session = self.get(session_key)
        processed = bot_session.tickets_processed or 0
        successful = bot_session.tickets_successful or 0
        avg_hours = bot_session.consumed_hours / successful if successful else 0.0
        estimated_remaining = int(bot_session.remaining_hours / avg_hours) if avg_hours > 0 else None

        return {
            "session_key": bot_session.session_key,
            "customer_email": bot_session.customer_email,
            "status": SessionStatus(bot_session.status).value,
            "purchased_hours": bot_session.purchased_hours,
            "consumed_hours": round(bot_session.consumed_hours, 4),
            "remaining_hours": round(bot_session.remaining_hours, 4),
            "consumption_percentage": round(bot_session.consumption_percentage, 2),
            "tickets_processed": processed,
            "tickets_successful": successful,
            "tickets_failed": bot_session.tickets_failed or 0,
            "success_rate": round(successful / processed * 100, 2) if processed else 0.0,
            "average_hours_per_ticket": round(avg_hours, 4),
            "estimated_remaining_tickets": estimated_remaining,
            "started_at": _iso(bot_session.started_at),
            "paused_at": _iso(bot_session.paused_at),
            "expired_at": _iso(bot_session.expired_at),
            "last_activity_at": _iso(bot_session.last_activity_at),
        }

    def _set_status(
        self,
        session_key: str,
        status: SessionStatus,
        allowed_from: tuple[SessionStatus, ...],
    ) -> BotSession:
        now = utcnow()
        with self.db.transaction() as session:
            bot_session = SessionRepository(session).require(session_key)
            current = SessionStatus(bot_session.status)
            if current not in allowed_from:
                raise InvalidTransitionError(
                    f"Session '{session_key}' cannot go from {current.value} to {status.value}"
                )
            bot_session.status = status
            if status == SessionStatus.PAUSED:
                bot_session.paused_at = now
            elif status == SessionStatus.ACTIVE:
                bot_session.paused_at = None
            bot_session.last_activity_at = now

        logger.info("Session status changed", session=session_key, old=current.value, new=status.value)
        return bot_session

    @staticmethod
    def _event(kind: SessionEventKind, bot_session: BotSession, threshold: float | None) -> SessionEvent:
        return SessionEvent(
            kind=kind,
            session_key=bot_session.session_key,
            customer_email=bot_session.customer_email,
            consumption_percentage=bot_session.consumption_percentage,
            remaining_hours=bot_session.remaining_hours,
            threshold=threshold,
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
