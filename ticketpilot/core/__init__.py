"""Core lifecycle logic."""

from .errors import (
    BudgetExhaustedError,
    BusinessRuleError,
    ConfigurationError,
    ErrorKind,
    InvalidTransitionError,
    NotFoundError,
    TicketPilotError,
)
from .status import Operation, RetryStatus, SessionStatus, TicketStatus, TriggerKind

__all__ = [
    "BudgetExhaustedError",
    "BusinessRuleError",
    "ConfigurationError",
    "ErrorKind",
    "InvalidTransitionError",
    "NotFoundError",
    "TicketPilotError",
    "Operation",
    "RetryStatus",
    "SessionStatus",
    "TicketStatus",
    "TriggerKind",
]
