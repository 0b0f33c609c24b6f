"""SQLAlchemy database models.

Owned rows (todos, executions, retry attempts) store their ticket's key; the
repositories delete them explicitly together with the ticket. No relationship
cascades are configured.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

from ticketpilot.core.status import (
    ExecutionAction,
    Operation,
    RetryStatus,
    SessionStatus,
    TicketStatus,
    TodoStatus,
)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum(enum_cls: type) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class BotSession(Base):
    """Customer budget and activity envelope."""

    __tablename__ = "bot_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_key = Column(String(64), nullable=False, unique=True)
    customer_email = Column(String(255), nullable=False, index=True)
    customer_name = Column(String(255), nullable=True)

    purchased_hours = Column(Float, nullable=False)
    consumed_hours = Column(Float, nullable=False, default=0.0)
    remaining_hours = Column(Float, nullable=False)

    status = Column(_enum(SessionStatus), nullable=False, default=SessionStatus.ACTIVE)
    started_at = Column(DateTime, nullable=True)
    paused_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, nullable=True)

    tickets_processed = Column(Integer, nullable=False, default=0)
    tickets_successful = Column(Integer, nullable=False, default=0)
    tickets_failed = Column(Integer, nullable=False, default=0)

    warning_first_sent = Column(Boolean, nullable=False, default=False)
    warning_second_sent = Column(Boolean, nullable=False, default=False)
    expiry_notified = Column(Boolean, nullable=False, default=False)

    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (Index("ix_bot_sessions_status_remaining", "status", "remaining_hours"),)

    @property
    def consumption_percentage(self) -> float:
        if not self.purchased_hours or self.purchased_hours <= 0:
            return 0.0
        return self.consumed_hours / self.purchased_hours * 100


class Ticket(Base):
    """Externally tracked work item driven through the lifecycle."""

    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(64), nullable=False, unique=True)
    summary = Column(String(500), nullable=False)
    description = Column(Text, nullable=False, default="")
    status = Column(_enum(TicketStatus), nullable=False, default=TicketStatus.PENDING)
    tracker_status = Column(String(64), nullable=True)
    priority = Column(String(32), nullable=True)
    assignee = Column(String(255), nullable=True)
    reporter = Column(String(255), nullable=True)
    labels = Column(JSON, nullable=False, default=list)
    linked_repository = Column(String(255), nullable=True)

    session_key = Column(String(64), ForeignKey("bot_sessions.session_key"), nullable=True, index=True)
    processing_cycle = Column(Integer, nullable=False, default=1)
    retry_count = Column(Integer, nullable=False, default=0)
    hours_consumed = Column(Float, nullable=True)
    error_message = Column(Text, nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    billing_reconciliation_required = Column(Boolean, nullable=False, default=False)

    complexity_score = Column(Float, nullable=True)
    solution = Column(JSON, nullable=True)
    ai_provider_used = Column(String(64), nullable=True)
    branch_name = Column(String(255), nullable=True)
    pr_url = Column(String(500), nullable=True)
    pr_number = Column(Integer, nullable=True)
    tracker_comment_posted = Column(Boolean, nullable=False, default=False)

    tracker_created_at = Column(DateTime, nullable=True)
    tracker_updated_at = Column(DateTime, nullable=True)
    processing_started_at = Column(DateTime, nullable=True)
    processing_completed_at = Column(DateTime, nullable=True)
    processing_duration_seconds = Column(Integer, nullable=True)
    last_processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (Index("ix_tickets_status_updated", "status", "updated_at"),)


class TicketTodo(Base):
    """Decomposed unit of work belonging to one ticket."""

    __tablename__ = "ticket_todos"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_key = Column(String(64), ForeignKey("tickets.key"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    priority = Column(Integer, nullable=False, default=3)
    category = Column(String(32), nullable=False, default="backend")
    status = Column(_enum(TodoStatus), nullable=False, default=TodoStatus.PENDING)
    order_index = Column(Integer, nullable=False, default=1)
    estimated_hours = Column(Float, nullable=False, default=2.0)
    actual_hours = Column(Float, nullable=True)
    dependencies = Column(JSON, nullable=False, default=list)
    acceptance_criteria = Column(JSON, nullable=False, default=list)
    ai_generated = Column(Boolean, nullable=False, default=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Execution(Base):
    """Audit record of one concrete action taken while resolving a ticket."""

    __tablename__ = "executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_key = Column(String(64), ForeignKey("tickets.key"), nullable=False)
    repository = Column(String(255), nullable=True)
    branch_name = Column(String(255), nullable=True)
    action = Column(_enum(ExecutionAction), nullable=False)
    file_path = Column(String(500), nullable=True)
    command = Column(Text, nullable=True)
    content_before = Column(Text, nullable=True)
    content_after = Column(Text, nullable=True)
    command_output = Column(Text, nullable=True)
    exit_code = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default="completed")
    error_message = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    simulation = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("ix_executions_ticket_created", "ticket_key", "created_at"),)


class RetryAttempt(Base):
    """Retry bookkeeping for one (ticket, operation) pair within a processing cycle."""

    __tablename__ = "retry_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_key = Column(String(64), ForeignKey("tickets.key"), nullable=False)
    operation = Column(_enum(Operation), nullable=False)
    cycle = Column(Integer, nullable=False, default=1)
    attempt_number = Column(Integer, nullable=False)
    max_attempts = Column(Integer, nullable=False)
    status = Column(_enum(RetryStatus), nullable=False, default=RetryStatus.PENDING)
    delay_seconds = Column(Integer, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    context = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_retry_attempts_ticket_operation", "ticket_key", "operation"),
        Index("ix_retry_attempts_status_next", "status", "next_attempt_at"),
    )


class TriggerLock(Base):
    """Single-flight marker for a scheduler trigger."""

    __tablename__ = "trigger_locks"

    trigger = Column(String(64), primary_key=True)
    owner = Column(String(36), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
