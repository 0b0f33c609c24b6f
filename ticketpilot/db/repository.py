"""Repository pattern for data access.

Repositories wrap a SQLAlchemy ``Session`` opened by ``Database.transaction()``
and never commit on their own. Budget and flag changes are single conditional
UPDATE statements so concurrent callers cannot interleave a read and a write.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session

from ticketpilot.core.errors import InvalidTransitionError, NotFoundError
from ticketpilot.core.results import ExecutedAction, TicketData
from ticketpilot.core.status import (
    Operation,
    RetryStatus,
    SessionStatus,
    TicketStatus,
    TodoStatus,
)

from .models import (
    BotSession,
    Execution,
    RetryAttempt,
    Ticket,
    TicketTodo,
    TriggerLock,
    utcnow,
)

ACTIVE_RETRY_STATUSES = (RetryStatus.PENDING, RetryStatus.RETRYING)


class TicketRepository:
    """Access to tickets and the rows they own."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, key: str) -> Ticket | None:
        return self.session.scalars(select(Ticket).where(Ticket.key == key)).first()

    def require(self, key: str) -> Ticket:
        ticket = self.get(key)
        if ticket is None:
            raise NotFoundError(f"Ticket '{key}' not found")
        return ticket

    def recent(self, status: TicketStatus | None = None, limit: int = 50) -> list[Ticket]:
        query = select(Ticket)
        if status is not None:
            query = query.where(Ticket.status == status)
        query = query.order_by(Ticket.updated_at.desc()).limit(limit)
        return list(self.session.scalars(query))

    def upsert_from_source(self, data: TicketData, session_key: str | None = None) -> tuple[Ticket, bool]:
        """Insert a new ticket or refresh tracker fields of a known one.

        Returns the ticket and whether it was newly created. Lifecycle fields
        of an existing ticket are never touched here.
        """
        ticket = self.get(data.key)
        if ticket is None:
            ticket = Ticket(
                key=data.key,
                summary=data.summary,
                description=data.description,
                status=TicketStatus.PENDING,
                tracker_status=data.tracker_status,
                priority=data.priority or "Medium",
                assignee=data.assignee,
                reporter=data.reporter,
                labels=list(data.labels),
                linked_repository=data.linked_repository,
                session_key=session_key,
                tracker_created_at=data.created_at,
                tracker_updated_at=data.updated_at,
            )
            self.session.add(ticket)
            self.session.flush()
            return ticket, True

        ticket.summary = data.summary
        ticket.description = data.description
        ticket.tracker_status = data.tracker_status
        ticket.priority = data.priority or ticket.priority
        ticket.assignee = data.assignee
        ticket.labels = list(data.labels)
        ticket.linked_repository = data.linked_repository or ticket.linked_repository
        ticket.tracker_updated_at = data.updated_at
        if ticket.session_key is None and session_key is not None:
            ticket.session_key = session_key
        return ticket, False

    def select_eligible(
        self,
        required_label: str | None,
        require_unassigned: bool,
        allowed_tracker_statuses: Iterable[str],
        limit: int = 50,
    ) -> list[Ticket]:
        """Pending tickets whose owning session is active with hours left.

        Only tracker statuses in ``allowed_tracker_statuses`` qualify; an empty
        list selects nothing.
        """
        allowed = list(allowed_tracker_statuses)
        query = (
            select(Ticket)
            .join(BotSession, Ticket.session_key == BotSession.session_key)
            .where(
                Ticket.status == TicketStatus.PENDING,
                Ticket.cancel_requested.is_(False),
                BotSession.status == SessionStatus.ACTIVE,
                BotSession.remaining_hours > 0,
            )
            .order_by(Ticket.created_at, Ticket.id)
        )
        query = query.where(Ticket.tracker_status.in_(allowed))
        if require_unassigned:
            query = query.where(Ticket.assignee.is_(None))

        eligible = []
        for ticket in self.session.scalars(query):
            if required_label and required_label not in (ticket.labels or []):
                continue
            eligible.append(ticket)
            if len(eligible) >= limit:
                break
        return eligible

    def in_status(self, statuses: Sequence[TicketStatus]) -> list[Ticket]:
        return list(self.session.scalars(select(Ticket).where(Ticket.status.in_(statuses))))

    def stale_in_flight(self, started_before: datetime) -> list[Ticket]:
        in_flight = [s for s in TicketStatus if s.is_in_flight]
        query = select(Ticket).where(
            Ticket.status.in_(in_flight),
            Ticket.processing_started_at.is_not(None),
            Ticket.processing_started_at < started_before,
        )
        return list(self.session.scalars(query))

    def count_by_status(self) -> dict[str, int]:
        rows = self.session.execute(select(Ticket.status, func.count(Ticket.id)).group_by(Ticket.status))
        counts = {status.value: 0 for status in TicketStatus}
        for status, count in rows:
            counts[TicketStatus(status).value] = count
        return counts

    def average_duration_seconds(self) -> float | None:
        value = self.session.scalar(
            select(func.avg(Ticket.processing_duration_seconds)).where(
                Ticket.status == TicketStatus.COMPLETED,
                Ticket.processing_duration_seconds.is_not(None),
            )
        )
        return float(value) if value is not None else None

    def delete(self, key: str) -> None:
        """Delete a ticket together with its todos, executions and retry attempts."""
        self.require(key)
        self.session.execute(delete(TicketTodo).where(TicketTodo.ticket_key == key))
        self.session.execute(delete(Execution).where(Execution.ticket_key == key))
        self.session.execute(delete(RetryAttempt).where(RetryAttempt.ticket_key == key))
        self.session.execute(delete(Ticket).where(Ticket.key == key))


class TodoRepository:
    """Todos of a ticket, kept in ``order_index`` order."""

    def __init__(self, session: Session):
        self.session = session

    def for_ticket(self, ticket_key: str) -> list[TicketTodo]:
        query = (
            select(TicketTodo)
            .where(TicketTodo.ticket_key == ticket_key)
            .order_by(TicketTodo.order_index, TicketTodo.id)
        )
        return list(self.session.scalars(query))

    def replace_for_ticket(self, ticket_key: str, todos: Iterable[dict[str, Any]]) -> list[TicketTodo]:
        self.session.execute(delete(TicketTodo).where(TicketTodo.ticket_key == ticket_key))
        created = []
        for index, data in enumerate(todos, start=1):
            todo = TicketTodo(
                ticket_key=ticket_key,
                title=data["title"],
                description=data.get("description", ""),
                priority=min(5, max(1, int(data.get("priority", 3)))),
                category=data.get("category", "backend"),
                order_index=data.get("order_index", index),
                estimated_hours=float(data.get("estimated_hours", 2.0)),
                dependencies=list(data.get("dependencies", [])),
                acceptance_criteria=list(data.get("acceptance_criteria", [])),
                ai_generated=bool(data.get("ai_generated", False)),
            )
            self.session.add(todo)
            created.append(todo)
        self.session.flush()
        return created

    def _require(self, todo_id: int) -> TicketTodo:
        todo = self.session.get(TicketTodo, todo_id)
        if todo is None:
            raise NotFoundError(f"Todo {todo_id} not found")
        return todo

    def unmet_dependencies(self, todo: TicketTodo) -> list[str]:
        if not todo.dependencies:
            return []
        siblings = {t.title: t for t in self.for_ticket(todo.ticket_key)}
        siblings.update({str(t.id): t for t in siblings.values()})
        return [
            str(dep)
            for dep in todo.dependencies
            if str(dep) in siblings and siblings[str(dep)].status != TodoStatus.COMPLETED
        ]

    def next_startable(self, ticket_key: str) -> TicketTodo | None:
        for todo in self.for_ticket(ticket_key):
            if todo.status == TodoStatus.PENDING and not self.unmet_dependencies(todo):
                return todo
        return None

    def start(self, todo_id: int) -> TicketTodo:
        todo = self._require(todo_id)
        todo.status = TodoStatus.IN_PROGRESS
        todo.started_at = utcnow()
        return todo

    def complete(self, todo_id: int, actual_hours: float | None = None) -> TicketTodo:
        todo = self._require(todo_id)
        unmet = self.unmet_dependencies(todo)
        if unmet:
            raise InvalidTransitionError(
                f"Todo '{todo.title}' depends on unfinished todos: {', '.join(unmet)}"
            )
        todo.status = TodoStatus.COMPLETED
        todo.completed_at = utcnow()
        todo.actual_hours = actual_hours
        return todo

    def complete_all(self, ticket_key: str) -> None:
        for todo in self.for_ticket(ticket_key):
            if todo.status in (TodoStatus.PENDING, TodoStatus.IN_PROGRESS):
                self.complete(todo.id)


class ExecutionRepository:
    """Insert-only audit trail of executed actions."""

    def __init__(self, session: Session):
        self.session = session

    def record(
        self,
        ticket_key: str,
        action: ExecutedAction,
        repository: str | None = None,
        branch_name: str | None = None,
        simulation: bool = False,
    ) -> Execution:
        execution = Execution(
            ticket_key=ticket_key,
            repository=repository,
            branch_name=branch_name,
            action=action.action,
            file_path=action.file_path,
            command=action.command,
            content_before=action.content_before,
            content_after=action.content_after,
            command_output=action.command_output,
            exit_code=action.exit_code,
            status=action.status,
            error_message=action.error_message,
            duration_ms=action.duration_ms,
            simulation=simulation,
        )
        self.session.add(execution)
        return execution

    def for_ticket(self, ticket_key: str) -> list[Execution]:
        query = select(Execution).where(Execution.ticket_key == ticket_key).order_by(Execution.id)
        return list(self.session.scalars(query))


class RetryAttemptRepository:
    """Persisted RetryAttempt rows."""

    def __init__(self, session: Session):
        self.session = session

    def active(self, ticket_key: str, operation: Operation, cycle: int) -> RetryAttempt | None:
        query = select(RetryAttempt).where(
            RetryAttempt.ticket_key == ticket_key,
            RetryAttempt.operation == operation,
            RetryAttempt.cycle == cycle,
            RetryAttempt.status.in_(ACTIVE_RETRY_STATUSES),
        )
        return self.session.scalars(query.order_by(RetryAttempt.id.desc())).first()

    def latest(self, ticket_key: str, operation: Operation, cycle: int) -> RetryAttempt | None:
        query = select(RetryAttempt).where(
            RetryAttempt.ticket_key == ticket_key,
            RetryAttempt.operation == operation,
            RetryAttempt.cycle == cycle,
        )
        return self.session.scalars(query.order_by(RetryAttempt.id.desc())).first()

    def latest_active_for_ticket(self, ticket_key: str, cycle: int) -> RetryAttempt | None:
        query = select(RetryAttempt).where(
            RetryAttempt.ticket_key == ticket_key,
            RetryAttempt.cycle == cycle,
            RetryAttempt.status.in_(ACTIVE_RETRY_STATUSES),
        )
        return self.session.scalars(query.order_by(RetryAttempt.id.desc())).first()

    def close_active(self, ticket_key: str, cycle: int, reason: str, now: datetime) -> int:
        """Fail every non-terminal attempt of a cycle; returns how many were closed."""
        result = self.session.execute(
            update(RetryAttempt)
            .where(
                RetryAttempt.ticket_key == ticket_key,
                RetryAttempt.cycle == cycle,
                RetryAttempt.status.in_(ACTIVE_RETRY_STATUSES),
            )
            .values(status=RetryStatus.FAILED, next_attempt_at=None, error_message=reason, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def for_ticket(self, ticket_key: str) -> list[RetryAttempt]:
        query = select(RetryAttempt).where(RetryAttempt.ticket_key == ticket_key).order_by(RetryAttempt.id)
        return list(self.session.scalars(query))

    def add(self, attempt: RetryAttempt) -> RetryAttempt:
        self.session.add(attempt)
        self.session.flush()
        return attempt

    def due(self, now: datetime) -> list[RetryAttempt]:
        query = (
            select(RetryAttempt)
            .join(Ticket, Ticket.key == RetryAttempt.ticket_key)
            .where(
                RetryAttempt.status == RetryStatus.RETRYING,
                RetryAttempt.next_attempt_at <= now,
                RetryAttempt.cycle == Ticket.processing_cycle,
                Ticket.status == TicketStatus.RETRYING,
            )
            .order_by(RetryAttempt.next_attempt_at)
        )
        return list(self.session.scalars(query))


class SessionRepository:
    """Budget sessions. Hour and flag changes are atomic UPDATE statements."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, session_key: str) -> BotSession | None:
        query = select(BotSession).where(BotSession.session_key == session_key)
        return self.session.scalars(query.execution_options(populate_existing=True)).first()

    def require(self, session_key: str) -> BotSession:
        bot_session = self.get(session_key)
        if bot_session is None:
            raise NotFoundError(f"Session '{session_key}' not found")
        return bot_session

    def add(self, bot_session: BotSession) -> BotSession:
        self.session.add(bot_session)
        self.session.flush()
        return bot_session

    def recent(self, status: SessionStatus | None = None, limit: int = 50) -> list[BotSession]:
        query = select(BotSession)
        if status is not None:
            query = query.where(BotSession.status == status)
        return list(self.session.scalars(query.order_by(BotSession.created_at.desc()).limit(limit)))

    def _active_with_budget(self):
        return select(BotSession).where(
            BotSession.status == SessionStatus.ACTIVE, BotSession.remaining_hours > 0
        )

    def has_active_budget(self) -> bool:
        return self.session.scalars(self._active_with_budget().limit(1)).first() is not None

    def count_active_with_budget(self) -> int:
        return self.session.scalar(select(func.count()).select_from(self._active_with_budget().subquery()))

    def oldest_active_with_budget(self) -> BotSession | None:
        return self.session.scalars(self._active_with_budget().order_by(BotSession.created_at, BotSession.id)).first()

    def needing_warning(self, first: float, second: float) -> list[BotSession]:
        crossed_first = BotSession.consumed_hours >= BotSession.purchased_hours * (first / 100)
        crossed_second = BotSession.consumed_hours >= BotSession.purchased_hours * (second / 100)
        query = select(BotSession).where(
            BotSession.status == SessionStatus.ACTIVE,
            BotSession.purchased_hours > 0,
            ((BotSession.warning_first_sent.is_(False) & crossed_first)
             | (BotSession.warning_second_sent.is_(False) & crossed_second)),
        )
        return list(self.session.scalars(query))

    def exhausted_active(self) -> list[BotSession]:
        query = select(BotSession).where(
            BotSession.status == SessionStatus.ACTIVE, BotSession.remaining_hours <= 0
        )
        return list(self.session.scalars(query))

    def cleanup_candidates(self, older_than: datetime) -> list[BotSession]:
        query = select(BotSession).where(
            BotSession.status.in_((SessionStatus.EXPIRED, SessionStatus.CANCELLED)),
            BotSession.updated_at < older_than,
        )
        return list(self.session.scalars(query))

    def debit(self, session_key: str, hours: float, successful: bool, now: datetime) -> bool:
        """Charge hours in one statement; refused when nothing remains.

        The charge is floored at zero remaining hours and ``remaining_hours``
        is always recomputed as ``purchased_hours - consumed_hours``.
        """
        floored = BotSession.remaining_hours <= hours
        result = self.session.execute(
            update(BotSession)
            .where(BotSession.session_key == session_key, BotSession.remaining_hours > 0)
            .values(
                consumed_hours=case(
                    (floored, BotSession.purchased_hours),
                    else_=BotSession.consumed_hours + hours,
                ),
                remaining_hours=case(
                    (floored, 0.0),
                    else_=BotSession.purchased_hours - (BotSession.consumed_hours + hours),
                ),
                tickets_processed=BotSession.tickets_processed + 1,
                tickets_successful=BotSession.tickets_successful + (1 if successful else 0),
                tickets_failed=BotSession.tickets_failed + (0 if successful else 1),
                last_activity_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def record_failure(self, session_key: str, now: datetime) -> None:
        self.session.execute(
            update(BotSession)
            .where(BotSession.session_key == session_key)
            .values(
                tickets_processed=BotSession.tickets_processed + 1,
                tickets_failed=BotSession.tickets_failed + 1,
                last_activity_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    def add_hours(self, session_key: str, hours: float, now: datetime) -> bool:
        result = self.session.execute(
            update(BotSession)
            .where(BotSession.session_key == session_key)
            .values(
                purchased_hours=BotSession.purchased_hours + hours,
                remaining_hours=(BotSession.purchased_hours + hours) - BotSession.consumed_hours,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def claim_flag(self, session_key: str, flag: str, threshold_percent: float) -> bool:
        """Set a warning flag if unset and its threshold is crossed. True if this call set it."""
        column = getattr(BotSession, flag)
        result = self.session.execute(
            update(BotSession)
            .where(
                BotSession.session_key == session_key,
                column.is_(False),
                BotSession.purchased_hours > 0,
                BotSession.consumed_hours >= BotSession.purchased_hours * (threshold_percent / 100),
            )
            .values({flag: True})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def reset_flag_below(self, session_key: str, flag: str, threshold_percent: float) -> bool:
        column = getattr(BotSession, flag)
        result = self.session.execute(
            update(BotSession)
            .where(
                BotSession.session_key == session_key,
                column.is_(True),
                BotSession.consumed_hours < BotSession.purchased_hours * (threshold_percent / 100),
            )
            .values({flag: False})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def claim_expiry(self, session_key: str, now: datetime, force: bool = False) -> bool:
        """Mark the session expired and claim the expiry notification once."""
        conditions = [BotSession.session_key == session_key, BotSession.expiry_notified.is_(False)]
        if not force:
            conditions += [
                BotSession.remaining_hours <= 0,
                BotSession.status != SessionStatus.CANCELLED,
            ]
        result = self.session.execute(
            update(BotSession)
            .where(*conditions)
            .values(
                status=SessionStatus.EXPIRED,
                expired_at=now,
                expiry_notified=True,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def reactivate_if_funded(self, session_key: str, now: datetime) -> bool:
        result = self.session.execute(
            update(BotSession)
            .where(
                BotSession.session_key == session_key,
                BotSession.remaining_hours > 0,
                BotSession.status == SessionStatus.EXPIRED,
            )
            .values(status=SessionStatus.ACTIVE, expired_at=None, expiry_notified=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def delete(self, session_key: str) -> None:
        """Delete a session after detaching the tickets that reference it."""
        self.session.execute(
            update(Ticket)
            .where(Ticket.session_key == session_key)
            .values(session_key=None)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(delete(BotSession).where(BotSession.session_key == session_key))

    def totals(self) -> dict[str, float]:
        row = self.session.execute(
            select(
                func.count(BotSession.id),
                func.coalesce(func.sum(BotSession.purchased_hours), 0.0),
                func.coalesce(func.sum(BotSession.consumed_hours), 0.0),
                func.coalesce(func.sum(BotSession.remaining_hours), 0.0),
            )
        ).one()
        return {
            "sessions": row[0],
            "purchased_hours": float(row[1]),
            "consumed_hours": float(row[2]),
            "remaining_hours": float(row[3]),
        }


class TriggerLockRepository:
    """Persisted single-flight markers for scheduler triggers."""

    def __init__(self, session: Session):
        self.session = session

    def try_take_over(self, trigger: str, owner: str, now: datetime, window: timedelta) -> bool:
        """Take an expired lock. True if this call now holds it."""
        result = self.session.execute(
            update(TriggerLock)
            .where(TriggerLock.trigger == trigger, TriggerLock.expires_at <= now)
            .values(owner=owner, acquired_at=now, expires_at=now + window)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def get(self, trigger: str) -> TriggerLock | None:
        return self.session.get(TriggerLock, trigger, populate_existing=True)

    def insert(self, trigger: str, owner: str, now: datetime, window: timedelta) -> None:
        self.session.add(TriggerLock(trigger=trigger, owner=owner, acquired_at=now, expires_at=now + window))
        self.session.flush()

    def release(self, trigger: str, owner: str) -> bool:
        result = self.session.execute(
            delete(TriggerLock).where(TriggerLock.trigger == trigger, TriggerLock.owner == owner)
        )
        return result.rowcount == 1
