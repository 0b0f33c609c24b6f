"""Pipeline runner: scheduler trigger entry points.

Every trigger is idempotent and safe to fire repeatedly. A persisted lock per
trigger keeps two runs of the same trigger from overlapping; a lock older
than the trigger's window is treated as stuck and taken over.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError

from ticketpilot.config import Settings
from ticketpilot.db.models import utcnow
from ticketpilot.db.repository import SessionRepository, TicketRepository, TriggerLockRepository
from ticketpilot.db.session import Database
from ticketpilot.providers.registry import Providers

from .errors import InvalidTransitionError
from .meter import SessionEventKind, SessionMeter
from .predicates import TRIGGER_PREDICATES
from .results import call_with_timeout
from .retry import RetryCoordinator
from .state_machine import StepOutcome, TicketStateMachine
from .status import TicketStatus, TriggerKind

logger = structlog.get_logger()


@dataclass
class RunReport:
    trigger: TriggerKind
    ok: bool = True
    skipped: bool = False
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class SessionWorkQueue:
    """One consumer per session; total in-flight work bounded by a semaphore.

    Tickets of the same session are processed one after another, so their
    debits never race each other.
    """

    def __init__(self, worker: Callable[[str], Awaitable[StepOutcome]], max_concurrent: int):
        self.worker = worker
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._queues: dict[str, asyncio.Queue[str]] = {}
        self._seen: set[str] = set()
        self.results: dict[str, StepOutcome | BaseException] = {}

    def submit(self, session_key: str | None, ticket_key: str) -> bool:
        if ticket_key in self._seen:
            return False
        self._seen.add(ticket_key)
        self._queues.setdefault(session_key or "", asyncio.Queue()).put_nowait(ticket_key)
        return True

    def __len__(self) -> int:
        return len(self._seen)

    async def _consume(self, session_key: str, queue: asyncio.Queue[str]) -> None:
        while not queue.empty():
            ticket_key = queue.get_nowait()
            async with self._semaphore:
                try:
                    self.results[ticket_key] = await self.worker(ticket_key)
                except Exception as e:
                    logger.exception("Ticket processing crashed", ticket=ticket_key, session=session_key)
                    self.results[ticket_key] = e
            queue.task_done()

    async def drain(self) -> dict[str, StepOutcome | BaseException]:
        await asyncio.gather(*(self._consume(key, queue) for key, queue in self._queues.items()))
        return self.results


class PipelineRunner:
    """Runs scheduler triggers against the lifecycle components."""

    def __init__(
        self,
        settings: Settings,
        db: Database,
        providers: Providers,
        meter: SessionMeter,
        retry: RetryCoordinator,
        machine: TicketStateMachine,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.db = db
        self.providers = providers
        self.meter = meter
        self.retry = retry
        self.machine = machine
        self.clock = clock
        self._handlers: dict[TriggerKind, Callable[[], Awaitable[RunReport]]] = {
            TriggerKind.LOAD_TICKETS: self._load_tickets,
            TriggerKind.CLEANUP_SESSIONS: self._cleanup_sessions,
            TriggerKind.CLEANUP_REPOSITORIES: self._cleanup_repositories,
            TriggerKind.HEALTH_CHECK: self._health_check,
            TriggerKind.CHECK_WARNINGS: self._check_warnings,
            TriggerKind.COLLECT_METRICS: self._collect_metrics,
            TriggerKind.CHECK_SESSION_EXPIRY: self._check_session_expiry,
        }

    # Trigger entry points

    async def load_tickets(self) -> RunReport:
        return await self.run(TriggerKind.LOAD_TICKETS)

    async def cleanup_sessions(self) -> RunReport:
        return await self.run(TriggerKind.CLEANUP_SESSIONS)

    async def cleanup_repositories(self) -> RunReport:
        return await self.run(TriggerKind.CLEANUP_REPOSITORIES)

    async def health_check(self) -> RunReport:
        return await self.run(TriggerKind.HEALTH_CHECK)

    async def check_warnings(self) -> RunReport:
        return await self.run(TriggerKind.CHECK_WARNINGS)

    async def collect_metrics(self) -> RunReport:
        return await self.run(TriggerKind.COLLECT_METRICS)

    async def check_session_expiry(self) -> RunReport:
        return await self.run(TriggerKind.CHECK_SESSION_EXPIRY)

    async def run(self, trigger: TriggerKind) -> RunReport:
        log = logger.bind(trigger=trigger.value)
        predicate = TRIGGER_PREDICATES[trigger]
        if not predicate(self.db):
            log.info("Trigger skipped", reason=predicate.__name__)
            return RunReport(trigger=trigger, skipped=True, reason=f"predicate {predicate.__name__} is false")

        owner = self._acquire(trigger)
        if owner is None:
            log.info("Trigger skipped, previous run still active")
            return RunReport(trigger=trigger, skipped=True, reason="previous run still active")

        log.info("Trigger started")
        try:
            report = await self._handlers[trigger]()
        except Exception as e:
            log.exception("Trigger failed")
            report = RunReport(trigger=trigger, ok=False, reason=f"{e.__class__.__name__}: {e}")
        finally:
            self._release(trigger, owner)

        log.info("Trigger finished", ok=report.ok, **{k: v for k, v in report.details.items() if _loggable(v)})
        return report

    # Overlap protection

    def _acquire(self, trigger: TriggerKind) -> str | None:
        owner = uuid.uuid4().hex
        now = self.clock()
        window = timedelta(seconds=trigger.overlap_window_seconds)
        try:
            with self.db.transaction() as session:
                locks = TriggerLockRepository(session)
                if locks.try_take_over(trigger.value, owner, now, window):
                    logger.warning("Took over stuck trigger lock", trigger=trigger.value)
                    return owner
                if locks.get(trigger.value) is not None:
                    return None
                locks.insert(trigger.value, owner, now, window)
        except IntegrityError:
            return None
        return owner

    def _release(self, trigger: TriggerKind, owner: str) -> None:
        with self.db.transaction() as session:
            if not TriggerLockRepository(session).release(trigger.value, owner):
                logger.warning("Trigger lock was taken over before release", trigger=trigger.value)

    # Handlers

    async def _sync_tickets(self) -> dict[str, Any]:
        source = self.providers.source
        result = await call_with_timeout(
            source.fetch_tickets(), self.settings.provider_timeout_seconds, source.name
        )
        if not result.ok:
            logger.warning("Ticket sync failed", error=str(result.error))
            return {"sync_error": str(result.error)}

        created = updated = 0
        with self.db.transaction() as session:
            tickets = TicketRepository(session)
            owner = SessionRepository(session).oldest_active_with_budget()
            for data in result.value:
                existing = tickets.get(data.key)
                if existing is not None and TicketStatus(existing.status) is not TicketStatus.PENDING:
                    continue
                _, is_new = tickets.upsert_from_source(data, session_key=owner.session_key if owner else None)
                if is_new:
                    created += 1
                else:
                    updated += 1
        return {"fetched": len(result.value), "created": created, "updated": updated}

    async def _process_one(self, ticket_key: str) -> StepOutcome:
        try:
            return await self.machine.process(ticket_key)
        except InvalidTransitionError:
            raise
        except Exception as e:
            logger.exception("Fatal error processing ticket", ticket=ticket_key)
            return self.machine.mark_failed(ticket_key, f"{e.__class__.__name__}: {e}")

    async def _load_tickets(self) -> RunReport:
        errors = self.providers.validate()
        if errors:
            logger.error("Provider configuration invalid", errors=errors)
            return RunReport(
                trigger=TriggerKind.LOAD_TICKETS,
                ok=False,
                reason="provider configuration invalid",
                details={"configuration_errors": errors},
            )

        details = await self._sync_tickets()
        now = self.clock()
        supported = set(self.providers.source.supported_statuses())
        allowed = [s for s in self.settings.allowed_tracker_statuses if s in supported]
        if not allowed:
            logger.warning(
                "No allowed tracker status is supported by the ticket source",
                allowed=self.settings.allowed_tracker_statuses,
                supported=sorted(supported),
            )

        due = self.retry.due_attempts(now)
        queue = SessionWorkQueue(self._process_one, self.settings.max_concurrent_tickets)
        with self.db.transaction() as session:
            tickets = TicketRepository(session)
            # Only this trigger drives tickets and it holds the lock, so in-flight rows are orphans
            for ticket in tickets.in_status([s for s in TicketStatus if s.is_in_flight]):
                queue.submit(ticket.session_key, ticket.key)
            for attempt in due:
                ticket = tickets.require(attempt.ticket_key)
                queue.submit(ticket.session_key, ticket.key)
            for ticket in tickets.select_eligible(
                self.settings.required_label,
                self.settings.require_unassigned,
                allowed,
                limit=self.settings.max_tickets_per_load,
            ):
                queue.submit(ticket.session_key, ticket.key)

        results = await queue.drain()
        outcomes: dict[str, int] = {}
        for outcome in results.values():
            name = outcome.kind.value if isinstance(outcome, StepOutcome) else "error"
            outcomes[name] = outcomes.get(name, 0) + 1

        details.update(processed=len(results), outcomes=outcomes)
        return RunReport(trigger=TriggerKind.LOAD_TICKETS, details=details)

    async def _check_warnings(self) -> RunReport:
        thresholds = self.settings.warning_thresholds
        with self.db.transaction() as session:
            keys = [s.session_key for s in SessionRepository(session).needing_warning(thresholds.first, thresholds.second)]

        events = []
        for key in keys:
            events += self.meter.check_thresholds(key)
        return RunReport(
            trigger=TriggerKind.CHECK_WARNINGS,
            details={"sessions_checked": len(keys), "events": [e.kind.value for e in events]},
        )

    async def _check_session_expiry(self) -> RunReport:
        with self.db.transaction() as session:
            keys = [s.session_key for s in SessionRepository(session).exhausted_active()]

        expired = []
        for key in keys:
            events = self.meter.check_thresholds(key)
            if any(e.kind is SessionEventKind.EXPIRED for e in events):
                expired.append(key)
        return RunReport(trigger=TriggerKind.CHECK_SESSION_EXPIRY, details={"expired": expired})

    async def _cleanup_sessions(self) -> RunReport:
        cutoff = self.clock() - timedelta(days=self.settings.session_cleanup_days)
        with self.db.transaction() as session:
            repo = SessionRepository(session)
            keys = [s.session_key for s in repo.cleanup_candidates(cutoff)]
            for key in keys:
                repo.delete(key)
        if keys:
            logger.info("Sessions removed", count=len(keys))
        return RunReport(trigger=TriggerKind.CLEANUP_SESSIONS, details={"deleted": len(keys)})

    async def _cleanup_repositories(self) -> RunReport:
        cleanup = getattr(self.providers.executor, "cleanup", None)
        if cleanup is None:
            return RunReport(trigger=TriggerKind.CLEANUP_REPOSITORIES, details={"removed": 0})
        removed = await asyncio.to_thread(cleanup, self.settings.workspace_cleanup_days)
        return RunReport(trigger=TriggerKind.CLEANUP_REPOSITORIES, details={"removed": len(removed)})

    async def _health_check(self) -> RunReport:
        issues = list(self.providers.validate())
        cutoff = self.clock() - timedelta(seconds=self.settings.max_processing_time_seconds)
        with self.db.transaction() as session:
            stale = [t.key for t in TicketRepository(session).stale_in_flight(cutoff)]
            active_sessions = SessionRepository(session).count_active_with_budget()

        if stale:
            issues.append(f"{len(stale)} ticket(s) in flight longer than {self.settings.max_processing_time_seconds}s")
        healthy = not issues
        if not healthy:
            logger.warning("Health check found issues", issues=issues)
        return RunReport(
            trigger=TriggerKind.HEALTH_CHECK,
            ok=healthy,
            details={
                "healthy": healthy,
                "issues": issues,
                "stale_tickets": stale,
                "active_sessions": active_sessions,
            },
        )

    async def _collect_metrics(self) -> RunReport:
        with self.db.transaction() as session:
            tickets = TicketRepository(session)
            metrics = {
                "tickets": tickets.count_by_status(),
                "average_processing_seconds": tickets.average_duration_seconds(),
                "sessions": SessionRepository(session).totals(),
            }
        logger.info("Metrics collected", **metrics)
        return RunReport(trigger=TriggerKind.COLLECT_METRICS, details=metrics)


def _loggable(value: Any) -> bool:
    return isinstance(value, (int, float, str, bool)) or value is None
