"""Exception hierarchy and failure classification."""

from enum import Enum


class ErrorKind(str, Enum):
    """How a failure is handled by the state machine."""

    TRANSIENT = "transient"
    BUSINESS = "business"
    CONFIGURATION = "configuration"
    FATAL = "fatal"

    @property
    def consumes_retry(self) -> bool:
        match self:
            case ErrorKind.TRANSIENT | ErrorKind.FATAL:
                return True
            case ErrorKind.BUSINESS | ErrorKind.CONFIGURATION:
                return False
        raise ValueError(f"Unhandled error kind: {self!r}")


class TicketPilotError(Exception):
    """Base class for all ticketpilot errors."""

    kind: ErrorKind = ErrorKind.FATAL


class ConfigurationError(TicketPilotError):
    """Invalid or missing provider configuration."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class BusinessRuleError(TicketPilotError):
    """A ticket violates a business rule and needs a human."""

    kind = ErrorKind.BUSINESS


class BudgetExhaustedError(BusinessRuleError):
    """The owning session has no hours left."""


class ProviderTimeoutError(TicketPilotError):
    """A provider call exceeded its time budget."""

    kind = ErrorKind.TRANSIENT


class TransientProviderError(TicketPilotError):
    """Network, rate-limit or temporary provider failure."""

    kind = ErrorKind.TRANSIENT


class InvalidTransitionError(TicketPilotError):
    """A state change that the lifecycle rules forbid."""


class NotFoundError(TicketPilotError):
    """A ticket or session does not exist."""
