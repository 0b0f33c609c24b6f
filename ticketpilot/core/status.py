"""Status enums driving the ticket lifecycle, retries and sessions."""

from enum import Enum


class Operation(str, Enum):
    """External operations tracked independently for retries."""

    FETCH = "fetch"
    GENERATE = "generate"
    EXECUTE = "execute"
    PUBLISH = "publish"


class TicketStatus(str, Enum):
    """Lifecycle status of a ticket."""

    PENDING = "pending"
    ANALYZING = "analyzing"
    GENERATING_SOLUTION = "generating_solution"
    EXECUTING = "executing"
    CREATING_PR = "creating_pr"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"
    REQUIRES_REVIEW = "requires_review"

    @property
    def description(self) -> str:
        match self:
            case TicketStatus.PENDING:
                return "Waiting for processing"
            case TicketStatus.ANALYZING:
                return "Fetching and analyzing the ticket"
            case TicketStatus.GENERATING_SOLUTION:
                return "Generating a solution"
            case TicketStatus.EXECUTING:
                return "Applying code changes"
            case TicketStatus.CREATING_PR:
                return "Opening the pull request"
            case TicketStatus.COMPLETED:
                return "Resolved successfully"
            case TicketStatus.FAILED:
                return "Processing failed"
            case TicketStatus.RETRYING:
                return "Waiting for the next retry"
            case TicketStatus.CANCELLED:
                return "Cancelled by an operator"
            case TicketStatus.REQUIRES_REVIEW:
                return "Needs human review"
        raise ValueError(f"Unhandled ticket status: {self!r}")

    @property
    def is_terminal(self) -> bool:
        match self:
            case TicketStatus.COMPLETED | TicketStatus.FAILED | TicketStatus.CANCELLED:
                return True
            case (
                TicketStatus.PENDING
                | TicketStatus.ANALYZING
                | TicketStatus.GENERATING_SOLUTION
                | TicketStatus.EXECUTING
                | TicketStatus.CREATING_PR
                | TicketStatus.RETRYING
                | TicketStatus.REQUIRES_REVIEW
            ):
                return False
        raise ValueError(f"Unhandled ticket status: {self!r}")

    @property
    def can_restart(self) -> bool:
        """Whether a new processing attempt may start from this status."""
        match self:
            case TicketStatus.FAILED | TicketStatus.REQUIRES_REVIEW:
                return True
            case (
                TicketStatus.PENDING
                | TicketStatus.ANALYZING
                | TicketStatus.GENERATING_SOLUTION
                | TicketStatus.EXECUTING
                | TicketStatus.CREATING_PR
                | TicketStatus.COMPLETED
                | TicketStatus.RETRYING
                | TicketStatus.CANCELLED
            ):
                return False
        raise ValueError(f"Unhandled ticket status: {self!r}")

    @property
    def operation(self) -> Operation | None:
        """The external operation performed while in this status."""
        match self:
            case TicketStatus.ANALYZING:
                return Operation.FETCH
            case TicketStatus.GENERATING_SOLUTION:
                return Operation.GENERATE
            case TicketStatus.EXECUTING:
                return Operation.EXECUTE
            case TicketStatus.CREATING_PR:
                return Operation.PUBLISH
            case (
                TicketStatus.PENDING
                | TicketStatus.COMPLETED
                | TicketStatus.FAILED
                | TicketStatus.RETRYING
                | TicketStatus.CANCELLED
                | TicketStatus.REQUIRES_REVIEW
            ):
                return None
        raise ValueError(f"Unhandled ticket status: {self!r}")

    @property
    def next_status(self) -> "TicketStatus | None":
        """Status reached when this status' operation succeeds."""
        match self:
            case TicketStatus.PENDING:
                return TicketStatus.ANALYZING
            case TicketStatus.ANALYZING:
                return TicketStatus.GENERATING_SOLUTION
            case TicketStatus.GENERATING_SOLUTION:
                return TicketStatus.EXECUTING
            case TicketStatus.EXECUTING:
                return TicketStatus.CREATING_PR
            case TicketStatus.CREATING_PR:
                return TicketStatus.COMPLETED
            case (
                TicketStatus.COMPLETED
                | TicketStatus.FAILED
                | TicketStatus.RETRYING
                | TicketStatus.CANCELLED
                | TicketStatus.REQUIRES_REVIEW
            ):
                return None
        raise ValueError(f"Unhandled ticket status: {self!r}")

    @property
    def is_in_flight(self) -> bool:
        """Whether an external operation may be running in this status."""
        return self.operation is not None

    @classmethod
    def for_operation(cls, operation: Operation) -> "TicketStatus":
        match operation:
            case Operation.FETCH:
                return cls.ANALYZING
            case Operation.GENERATE:
                return cls.GENERATING_SOLUTION
            case Operation.EXECUTE:
                return cls.EXECUTING
            case Operation.PUBLISH:
                return cls.CREATING_PR
        raise ValueError(f"Unhandled operation: {operation!r}")


class RetryStatus(str, Enum):
    """Status of a RetryAttempt row."""

    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        match self:
            case RetryStatus.SUCCESS | RetryStatus.FAILED:
                return True
            case RetryStatus.PENDING | RetryStatus.RETRYING:
                return False
        raise ValueError(f"Unhandled retry status: {self!r}")


class SessionStatus(str, Enum):
    """Status of a customer budget session."""

    ACTIVE = "active"
    PAUSED = "paused"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def accepts_reservations(self) -> bool:
        match self:
            case SessionStatus.ACTIVE:
                return True
            case SessionStatus.PAUSED | SessionStatus.EXPIRED | SessionStatus.CANCELLED:
                return False
        raise ValueError(f"Unhandled session status: {self!r}")


class TodoStatus(str, Enum):
    """Status of a decomposed unit of work."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class ExecutionAction(str, Enum):
    """Concrete action recorded in the execution audit trail."""

    CREATE_FILE = "create_file"
    EDIT_FILE = "edit_file"
    DELETE_FILE = "delete_file"
    RUN_COMMAND = "run_command"


class TriggerKind(str, Enum):
    """Entry points exposed to the external scheduler."""

    LOAD_TICKETS = "load-tickets"
    CLEANUP_SESSIONS = "cleanup-sessions"
    CLEANUP_REPOSITORIES = "cleanup-repositories"
    HEALTH_CHECK = "health-check"
    CHECK_WARNINGS = "check-warnings"
    COLLECT_METRICS = "collect-metrics"
    CHECK_SESSION_EXPIRY = "check-session-expiry"

    @property
    def overlap_window_seconds(self) -> int:
        """How long a previous run may hold the trigger before it counts as stuck."""
        match self:
            case TriggerKind.LOAD_TICKETS:
                return 5 * 60
            case TriggerKind.HEALTH_CHECK:
                return 2 * 60
            case (
                TriggerKind.CLEANUP_SESSIONS
                | TriggerKind.CLEANUP_REPOSITORIES
                | TriggerKind.CHECK_WARNINGS
                | TriggerKind.COLLECT_METRICS
                | TriggerKind.CHECK_SESSION_EXPIRY
            ):
                return 24 * 60 * 60
        raise ValueError(f"Unhandled trigger: {self!r}")
