"""Persistence layer."""

from .models import Base, BotSession, Execution, RetryAttempt, Ticket, TicketTodo, TriggerLock
from .session import Database

__all__ = ["Base", "BotSession", "Database", "Execution", "RetryAttempt", "Ticket", "TicketTodo", "TriggerLock"]
