"""Named predicates deciding whether a scheduled trigger should run at all."""

from collections.abc import Callable

from ticketpilot.db.repository import SessionRepository
from ticketpilot.db.session import Database

from .status import TriggerKind

Predicate = Callable[[Database], bool]


def has_active_budget(db: Database) -> bool:
    """At least one active session has hours left."""
    with db.transaction() as session:
        return SessionRepository(session).has_active_budget()


def always(db: Database) -> bool:
    return True


TRIGGER_PREDICATES: dict[TriggerKind, Predicate] = {
    TriggerKind.LOAD_TICKETS: has_active_budget,
    TriggerKind.CHECK_WARNINGS: has_active_budget,
    TriggerKind.CLEANUP_SESSIONS: always,
    TriggerKind.CLEANUP_REPOSITORIES: always,
    TriggerKind.HEALTH_CHECK: always,
    TriggerKind.COLLECT_METRICS: always,
    TriggerKind.CHECK_SESSION_EXPIRY: always,
}
