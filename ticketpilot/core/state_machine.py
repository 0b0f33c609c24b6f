"""Ticket lifecycle state machine.

One ``step`` performs at most one external operation and one transition.
The machine is the only place that decides between retry, failure and
review; every decision is persisted on the ticket before the next step.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.orm import Session

from ticketpilot.config import Settings
from ticketpilot.db.models import Ticket, utcnow
from ticketpilot.db.repository import (
    ExecutionRepository,
    RetryAttemptRepository,
    TicketRepository,
    TodoRepository,
)
from ticketpilot.db.session import Database
from ticketpilot.providers.registry import Providers

from .analysis import assess_complexity, plan_todos
from .errors import BudgetExhaustedError, ErrorKind, InvalidTransitionError
from .meter import ReserveResult, SessionMeter
from .prompts import build_solution_prompt
from .results import (
    ExecutionResult,
    ProviderError,
    ProviderResult,
    Solution,
    TicketData,
    call_with_timeout,
)
from .retry import RetryCoordinator, RetryDecisionKind
from .status import Operation, TicketStatus

logger = structlog.get_logger()

CANCEL_NOW_STATUSES = (TicketStatus.PENDING, TicketStatus.RETRYING, TicketStatus.REQUIRES_REVIEW)
# Nothing resumes a ticket in these statuses, so its live retry rows are closed
CLOSES_RETRIES_STATUSES = (TicketStatus.CANCELLED, TicketStatus.FAILED, TicketStatus.REQUIRES_REVIEW)


class StepOutcomeKind(str, Enum):
    ADVANCED = "advanced"
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    WAITING = "waiting"
    REQUIRES_REVIEW = "requires_review"
    FAILED = "failed"
    CANCELLED = "cancelled"
    IDLE = "idle"


@dataclass(frozen=True)
class StepOutcome:
    kind: StepOutcomeKind
    status: TicketStatus
    next_attempt_at: datetime | None = None
    error: str | None = None

    @property
    def should_continue(self) -> bool:
        return self.kind is StepOutcomeKind.ADVANCED

    @classmethod
    def for_status(cls, status: TicketStatus, **kwargs: Any) -> "StepOutcome":
        match status:
            case TicketStatus.COMPLETED:
                kind = StepOutcomeKind.COMPLETED
            case TicketStatus.FAILED:
                kind = StepOutcomeKind.FAILED
            case TicketStatus.CANCELLED:
                kind = StepOutcomeKind.CANCELLED
            case TicketStatus.REQUIRES_REVIEW:
                kind = StepOutcomeKind.REQUIRES_REVIEW
            case TicketStatus.RETRYING:
                kind = StepOutcomeKind.RETRY_SCHEDULED
            case (
                TicketStatus.ANALYZING
                | TicketStatus.GENERATING_SOLUTION
                | TicketStatus.EXECUTING
                | TicketStatus.CREATING_PR
            ):
                kind = StepOutcomeKind.ADVANCED
            case TicketStatus.PENDING:
                kind = StepOutcomeKind.IDLE
        return cls(kind=kind, status=status, **kwargs)


def ticket_data(ticket: Ticket) -> TicketData:
    return TicketData(
        key=ticket.key,
        summary=ticket.summary,
        description=ticket.description or "",
        tracker_status=ticket.tracker_status or "",
        priority=ticket.priority,
        assignee=ticket.assignee,
        reporter=ticket.reporter,
        labels=list(ticket.labels or []),
        linked_repository=ticket.linked_repository,
        created_at=ticket.tracker_created_at,
        updated_at=ticket.tracker_updated_at,
    )


class TicketStateMachine:
    """Drives one ticket at a time through the lifecycle."""

    def __init__(
        self,
        settings: Settings,
        db: Database,
        providers: Providers,
        meter: SessionMeter,
        retry: RetryCoordinator,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.db = db
        self.providers = providers
        self.meter = meter
        self.retry = retry
        self.clock = clock

    # Persistence helpers

    def _load(self, key: str) -> Ticket:
        with self.db.transaction() as session:
            return TicketRepository(session).require(key)

    def _apply(
        self,
        session: Session,
        key: str,
        to: TicketStatus,
        restart: bool = False,
        **fields: Any,
    ) -> Ticket:
        """The single guarded transition. Terminal statuses are left only by restart."""
        ticket = TicketRepository(session).require(key)
        current = TicketStatus(ticket.status)

        if current.is_terminal and not (restart and current.can_restart and to is TicketStatus.PENDING):
            raise InvalidTransitionError(f"Ticket {key} is {current.value} and cannot move to {to.value}")

        now = self.clock()
        if ticket.cancel_requested and not to.is_terminal and not restart:
            to = TicketStatus.CANCELLED
            fields = {"hours_consumed": 0.0, "processing_completed_at": now}

        for name, value in fields.items():
            setattr(ticket, name, value)
        ticket.status = to
        ticket.updated_at = now
        ticket.last_processed_at = now

        if to in CLOSES_RETRIES_STATUSES:
            reason = fields.get("error_message") or f"Ticket {to.value}"
            RetryAttemptRepository(session).close_active(key, ticket.processing_cycle, reason, now)

        logger.info(
            "Ticket transition",
            ticket=key,
            old=current.value,
            new=to.value,
            cycle=ticket.processing_cycle,
            error=fields.get("error_message"),
        )
        return ticket

    def _transition(self, key: str, to: TicketStatus, **fields: Any) -> Ticket:
        with self.db.transaction() as session:
            return self._apply(session, key, to, **fields)

    def _update(self, key: str, **fields: Any) -> Ticket:
        with self.db.transaction() as session:
            ticket = TicketRepository(session).require(key)
            for name, value in fields.items():
                setattr(ticket, name, value)
            return ticket

    # Lifecycle entry points

    def start(self, key: str) -> StepOutcome:
        """Move a pending ticket into analysis once its session can pay for it."""
        ticket = self._load(key)
        status = TicketStatus(ticket.status)
        if status is not TicketStatus.PENDING:
            raise InvalidTransitionError(f"Ticket {key} is {status.value}, only pending tickets can start")

        reservation = self.meter.reserve(ticket.session_key)
        if not reservation.ok:
            message = {
                ReserveResult.UNKNOWN: "No session is attached to this ticket",
                ReserveResult.INACTIVE: "Owning session is not active",
                ReserveResult.BUDGET_EXHAUSTED: "Session budget exhausted",
            }[reservation]
            ticket = self._transition(key, TicketStatus.REQUIRES_REVIEW, error_message=message)
            return StepOutcome.for_status(TicketStatus(ticket.status), error=message)

        ticket = self._transition(
            key,
            TicketStatus.ANALYZING,
            processing_started_at=self.clock(),
            processing_completed_at=None,
            error_message=None,
        )
        return StepOutcome.for_status(TicketStatus(ticket.status))

    async def step(self, key: str, now: datetime | None = None) -> StepOutcome:
        """Perform exactly one operation for the ticket's current status."""
        ticket = self._load(key)
        status = TicketStatus(ticket.status)

        if status is TicketStatus.PENDING:
            return self.start(key)
        if status is TicketStatus.RETRYING:
            return self._resume(ticket, now or self.clock())
        if status.operation is None:
            return StepOutcome(kind=StepOutcomeKind.IDLE, status=status, error=ticket.error_message)

        operation = status.operation
        log = logger.bind(ticket=key, operation=operation.value)
        log.info("Running operation")
        try:
            result = await self._run(ticket, operation)
        except InvalidTransitionError:
            raise
        except Exception as e:
            log.exception("Unexpected error during operation")
            return self._fail(key, f"{e.__class__.__name__}: {e}")

        return self._handle(ticket, operation, result, now)

    async def process(self, key: str) -> StepOutcome:
        """Step until the ticket stops, bounded by ``max_processing_time_seconds``."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.max_processing_time_seconds

        while True:
            remaining = deadline - loop.time()
            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError
                outcome = await asyncio.wait_for(self.step(key), timeout=remaining)
            except asyncio.TimeoutError:
                return self._timed_out(key)
            if not outcome.should_continue:
                return outcome

    def cancel(self, key: str) -> Ticket:
        """Request cancellation; immediate unless an operation may be running."""
        with self.db.transaction() as session:
            ticket = TicketRepository(session).require(key)
            status = TicketStatus(ticket.status)
            if status.is_terminal:
                raise InvalidTransitionError(f"Ticket {key} is already {status.value}")

            ticket.cancel_requested = True
            if status in CANCEL_NOW_STATUSES:
                ticket = self._apply(
                    session,
                    key,
                    TicketStatus.CANCELLED,
                    hours_consumed=0.0,
                    processing_completed_at=self.clock(),
                )
            else:
                logger.info("Cancellation requested", ticket=key, status=status.value)
            return ticket

    def restart(self, key: str) -> Ticket:
        """Start a new processing cycle for a failed or review ticket."""
        ticket = self._load(key)
        status = TicketStatus(ticket.status)
        if not status.can_restart:
            raise InvalidTransitionError(f"Ticket {key} is {status.value} and cannot be restarted")

        reservation = self.meter.reserve(ticket.session_key)
        if not reservation.ok:
            raise BudgetExhaustedError(
                f"Ticket {key} cannot restart: session is {reservation.value.replace('_', ' ')}"
            )

        with self.db.transaction() as session:
            return self._apply(
                session,
                key,
                TicketStatus.PENDING,
                restart=True,
                processing_cycle=ticket.processing_cycle + 1,
                error_message=None,
                billing_reconciliation_required=False,
                cancel_requested=False,
                hours_consumed=None,
                processing_started_at=None,
                processing_completed_at=None,
                processing_duration_seconds=None,
            )

    def mark_failed(self, key: str, message: str) -> StepOutcome:
        """Fail a ticket from outside the normal step flow, e.g. after a crash."""
        ticket = self._load(key)
        status = TicketStatus(ticket.status)
        if status.is_terminal:
            return StepOutcome.for_status(status, error=ticket.error_message)
        return self._fail(key, message)

    # Outcome handling

    def _handle(
        self,
        ticket: Ticket,
        operation: Operation,
        result: ProviderResult,
        now: datetime | None,
    ) -> StepOutcome:
        key = ticket.key
        if result.ok:
            self.retry.record_outcome(ticket, operation, success=True, now=now or self.clock())
            if operation is Operation.PUBLISH:
                return self._finish(key)
            current = TicketStatus.for_operation(operation)
            updated = self._transition(key, current.next_status, error_message=None)
            return StepOutcome.for_status(TicketStatus(updated.status))

        error: ProviderError = result.error
        message = str(error)
        if not error.retriable:
            updated = self._transition(key, TicketStatus.REQUIRES_REVIEW, error_message=message)
            return StepOutcome.for_status(TicketStatus(updated.status), error=message)

        decision = self.retry.record_outcome(
            ticket,
            operation,
            success=False,
            error=message,
            context={"kind": error.kind.value, "provider": error.provider, **error.details},
            now=now or self.clock(),
        )
        # Counts every recorded failure, the exhausting one included
        retry_count = ticket.retry_count + 1
        if decision.kind is RetryDecisionKind.EXHAUSTED:
            return self._fail(key, message, retry_count=retry_count)

        updated = self._transition(
            key,
            TicketStatus.RETRYING,
            error_message=message,
            retry_count=retry_count,
        )
        return StepOutcome.for_status(
            TicketStatus(updated.status), next_attempt_at=decision.next_attempt_at, error=message
        )

    def _resume(self, ticket: Ticket, now: datetime) -> StepOutcome:
        attempt = self.retry.pending_for(ticket)
        if attempt is None:
            message = "Ticket is retrying without an active retry attempt"
            updated = self._transition(ticket.key, TicketStatus.REQUIRES_REVIEW, error_message=message)
            return StepOutcome.for_status(TicketStatus(updated.status), error=message)

        decision = self.retry.should_retry(ticket, attempt.operation, now)
        if decision.kind is RetryDecisionKind.WAIT_UNTIL:
            return StepOutcome(
                kind=StepOutcomeKind.WAITING,
                status=TicketStatus.RETRYING,
                next_attempt_at=decision.next_attempt_at,
                error=ticket.error_message,
            )
        if decision.kind is RetryDecisionKind.EXHAUSTED:
            return self._fail(ticket.key, decision.error or "Retry attempts exhausted")

        updated = self._transition(ticket.key, TicketStatus.for_operation(attempt.operation))
        return StepOutcome.for_status(TicketStatus(updated.status))

    def _timed_out(self, key: str) -> StepOutcome:
        ticket = self._load(key)
        status = TicketStatus(ticket.status)
        limit = self.settings.max_processing_time_seconds
        logger.warning("Ticket processing time limit exceeded", ticket=key, status=status.value, limit=limit)
        if status.operation is None:
            return StepOutcome.for_status(status, error=ticket.error_message)
        result = ProviderResult.failure(
            ErrorKind.TRANSIENT, f"Processing exceeded {limit}s", provider="runner"
        )
        return self._handle(ticket, status.operation, result, None)

    def _finish(self, key: str) -> StepOutcome:
        """Debit elapsed time and complete, in one transaction."""
        ticket = self._load(key)
        now = self.clock()
        started = ticket.processing_started_at or now
        elapsed_seconds = max((now - started).total_seconds(), 0.0)
        hours = elapsed_seconds / 3600

        with self.db.transaction() as session:
            debit = None
            if ticket.session_key is not None:
                debit = self.meter.charge(session, ticket.session_key, hours, successful=True)

            if debit is not None and debit.accepted:
                updated = self._apply(
                    session,
                    key,
                    TicketStatus.COMPLETED,
                    hours_consumed=hours,
                    error_message=None,
                    processing_completed_at=now,
                    processing_duration_seconds=int(elapsed_seconds),
                )
            else:
                updated = self._apply(
                    session,
                    key,
                    TicketStatus.REQUIRES_REVIEW,
                    billing_reconciliation_required=True,
                    error_message="Session budget exhausted before completion; billing reconciliation required",
                    processing_duration_seconds=int(elapsed_seconds),
                )
            if TicketStatus(updated.status) is TicketStatus.COMPLETED:
                TodoRepository(session).complete_all(key)

        if debit is not None and debit.accepted:
            self.meter.check_thresholds(ticket.session_key)
        return StepOutcome.for_status(TicketStatus(updated.status), error=updated.error_message)

    def _fail(self, key: str, message: str, **fields: Any) -> StepOutcome:
        now = self.clock()
        with self.db.transaction() as session:
            ticket = TicketRepository(session).require(key)
            started = ticket.processing_started_at
            updated = self._apply(
                session,
                key,
                TicketStatus.FAILED,
                error_message=message,
                hours_consumed=0.0,
                processing_completed_at=now,
                processing_duration_seconds=int((now - started).total_seconds()) if started else None,
                **fields,
            )
            if ticket.session_key is not None:
                self.meter.record_failure(ticket.session_key, session=session)
        return StepOutcome.for_status(TicketStatus(updated.status), error=message)

    # Operations

    async def _run(self, ticket: Ticket, operation: Operation) -> ProviderResult:
        match operation:
            case Operation.FETCH:
                return await self._fetch(ticket)
            case Operation.GENERATE:
                return await self._generate(ticket)
            case Operation.EXECUTE:
                return await self._execute(ticket)
            case Operation.PUBLISH:
                return await self._publish(ticket)
        raise ValueError(f"Unhandled operation: {operation!r}")

    async def _call(self, call, provider: str) -> ProviderResult:
        return await call_with_timeout(call, self.settings.provider_timeout_seconds, provider)

    def _business_rule_violations(self, data: TicketData) -> list[str]:
        violations = []
        if self.settings.required_label and not data.has_label(self.settings.required_label):
            violations.append(f"missing required label '{self.settings.required_label}'")
        if self.settings.require_unassigned and not data.is_unassigned:
            violations.append(f"assigned to {data.assignee}")
        if not data.linked_repository:
            violations.append("no linked repository")
        return violations

    async def _fetch(self, ticket: Ticket) -> ProviderResult:
        source = self.providers.source
        result = await self._call(source.get_ticket(ticket.key), source.name)
        if not result.ok:
            return result

        data: TicketData = result.value
        violations = self._business_rule_violations(data)
        assessment = assess_complexity(data)

        with self.db.transaction() as session:
            TicketRepository(session).upsert_from_source(data)
            if violations:
                return ProviderResult.failure(
                    ErrorKind.BUSINESS, "Ticket not eligible: " + "; ".join(violations), provider=source.name
                )
            todos = TodoRepository(session).replace_for_ticket(ticket.key, plan_todos(data, assessment))
            stored = TicketRepository(session).require(ticket.key)
            stored.complexity_score = assessment.score

        logger.info(
            "Ticket analyzed",
            ticket=ticket.key,
            complexity=assessment.score,
            level=assessment.level,
            todos=len(todos),
        )
        return ProviderResult.success()

    async def _generate(self, ticket: Ticket) -> ProviderResult:
        with self.db.transaction() as session:
            todos = [
                {
                    "title": todo.title,
                    "description": todo.description,
                    "acceptance_criteria": todo.acceptance_criteria or [],
                }
                for todo in TodoRepository(session).for_ticket(ticket.key)
            ]

        data = ticket_data(ticket)
        prompt = build_solution_prompt(
            data,
            todos,
            {"repository": data.linked_repository, "base_branch": self.settings.default_base_branch},
        )
        generator = self.providers.generator
        result = await self._call(generator.generate(prompt), generator.name)
        if not result.ok:
            return result

        solution: Solution = result.value
        if solution.substituted_from:
            logger.warning(
                "Solution generated by fallback provider",
                ticket=ticket.key,
                provider=solution.provider,
                substituted_from=solution.substituted_from,
            )
        self._update(ticket.key, solution=solution.model_dump(mode="json"), ai_provider_used=solution.provider)
        return ProviderResult.success()

    async def _execute(self, ticket: Ticket) -> ProviderResult:
        if not ticket.solution:
            return ProviderResult.failure(ErrorKind.FATAL, "No solution stored for execution", provider="runner")

        executor = self.providers.executor
        solution = Solution.model_validate(ticket.solution)
        result = await self._call(executor.execute(ticket_data(ticket), solution), executor.name)
        if not result.ok:
            return result

        execution: ExecutionResult = result.value
        with self.db.transaction() as session:
            executions = ExecutionRepository(session)
            for action in execution.actions:
                executions.record(
                    ticket.key,
                    action,
                    repository=execution.repository,
                    branch_name=execution.branch_name,
                    simulation=execution.simulation,
                )
            stored = TicketRepository(session).require(ticket.key)
            stored.branch_name = execution.branch_name

        failed = [a.command or a.file_path for a in execution.actions if a.status == "failed"]
        if failed:
            return ProviderResult.failure(
                ErrorKind.FATAL, f"Execution failed for: {', '.join(map(str, failed))}", provider=executor.name
            )
        return ProviderResult.success()

    async def _publish(self, ticket: Ticket) -> ProviderResult:
        data = ticket_data(ticket)
        source = self.providers.source
        publisher = self.providers.publisher

        if self.settings.simulation_mode:
            logger.info("Simulation mode, skipping pull request and tracker update", ticket=ticket.key)
            return ProviderResult.success()

        pr_url = ticket.pr_url
        if ticket.pr_number is None:
            solution = Solution.model_validate(ticket.solution or {"summary": ""})
            execution = ExecutionResult(
                branch_name=ticket.branch_name,
                repository=ticket.linked_repository,
                changes=solution.changes,
            )
            result = await self._call(publisher.create_pull_request(data, execution), publisher.name)
            if not result.ok:
                return result
            pr = result.value
            pr_url = pr.url
            self._update(ticket.key, pr_number=pr.number, pr_url=pr.url, branch_name=pr.branch)
        else:
            logger.info("Pull request already exists, skipping creation", ticket=ticket.key, pr=ticket.pr_number)

        if not ticket.tracker_comment_posted:
            comment = await self._call(source.add_comment(ticket.key, f"Pull request opened: {pr_url}"), source.name)
            if not comment.ok:
                return comment
            self._update(ticket.key, tracker_comment_posted=True)
        status = await self._call(
            source.update_status(ticket.key, self.settings.completed_tracker_status), source.name
        )
        if not status.ok:
            return status
        return ProviderResult.success()
