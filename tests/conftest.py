"""Pytest configuration and fixtures."""

import asyncio
from collections.abc import Callable, Generator
from datetime import datetime, timedelta
from typing import Any

import pytest

from ticketpilot.config import Settings
from ticketpilot.core.errors import ErrorKind
from ticketpilot.core.meter import SessionEvent, SessionMeter
from ticketpilot.core.results import (
    ExecutedAction,
    ExecutionResult,
    FileChange,
    ProviderResult,
    PullRequestInfo,
    Solution,
    TicketData,
)
from ticketpilot.core.retry import RetryCoordinator
from ticketpilot.core.runner import PipelineRunner
from ticketpilot.core.state_machine import TicketStateMachine
from ticketpilot.core.status import ExecutionAction, TicketStatus
from ticketpilot.db.models import Ticket
from ticketpilot.db.repository import TicketRepository
from ticketpilot.db.session import Database
from ticketpilot.providers.base import (
    ChangeExecutor,
    SolutionGenerator,
    TicketSource,
    VersionControlPublisher,
)
from ticketpilot.providers.registry import Providers

T0 = datetime(2024, 6, 3, 9, 0, 0)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class CollectingNotifier:
    def __init__(self):
        self.events: list[SessionEvent] = []

    def notify(self, event: SessionEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.kind.value for e in self.events]


def ticket_data(key: str = "PROJ-1", **overrides: Any) -> TicketData:
    data = {
        "key": key,
        "summary": f"Fix the thing in {key}",
        "description": "The login page redirects to a 404 after submitting the form.",
        "tracker_status": "open",
        "priority": "Medium",
        "labels": ["ticketpilot"],
        "linked_repository": "acme/widgets",
    }
    data.update(overrides)
    return TicketData(**data)


class FakeTicketSource(TicketSource):
    name = "fake-tracker"

    def __init__(self):
        self.tickets: dict[str, TicketData] = {}
        self.failures: list[ProviderResult] = []
        self.comments: list[tuple[str, str]] = []
        self.statuses: list[tuple[str, str]] = []
        self.status_failures: list[ProviderResult] = []
        self.errors: list[str] = []

    def add(self, data: TicketData) -> TicketData:
        self.tickets[data.key] = data
        return data

    async def fetch_tickets(self) -> ProviderResult[list[TicketData]]:
        return ProviderResult.success(list(self.tickets.values()))

    async def get_ticket(self, key: str) -> ProviderResult[TicketData]:
        if self.failures:
            return self.failures.pop(0)
        if key not in self.tickets:
            return ProviderResult.failure(ErrorKind.BUSINESS, f"{key} not found", provider=self.name)
        return ProviderResult.success(self.tickets[key])

    async def add_comment(self, key: str, body: str) -> ProviderResult[None]:
        self.comments.append((key, body))
        return ProviderResult.success()

    async def update_status(self, key: str, status: str) -> ProviderResult[None]:
        if self.status_failures:
            return self.status_failures.pop(0)
        self.statuses.append((key, status))
        return ProviderResult.success()

    def supported_statuses(self) -> list[str]:
        return ["open", "To Do", "In Progress"]

    def validate_configuration(self) -> list[str]:
        return list(self.errors)


class FakeGenerator(SolutionGenerator):
    def __init__(self, name: str = "fake-ai", configured: bool = True):
        self.name = name
        self.configured = configured
        self.failures: list[ProviderResult] = []
        self.calls = 0
        self.on_generate: Callable[[], None] | None = None
        self.delay = 0.0

    async def generate(self, prompt: str, context: dict[str, Any] | None = None) -> ProviderResult[Solution]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.on_generate is not None:
            self.on_generate()
        if self.failures:
            return self.failures.pop(0)
        return ProviderResult.success(
            Solution(
                summary="Point the redirect at the dashboard",
                changes=[FileChange(path="app/login.py", content="REDIRECT = '/dashboard'\n")],
                provider=self.name,
                model="fake-model",
            )
        )

    def estimate_cost(self, prompt: str) -> float:
        return 0.0

    def supported_models(self) -> list[str]:
        return ["fake-model"]

    def max_tokens(self) -> int:
        return 1024

    def validate_configuration(self) -> list[str]:
        return [] if self.configured else [f"{self.name} api key is not set"]

    async def test_connection(self) -> ProviderResult[None]:
        return ProviderResult.success()


class FakeExecutor(ChangeExecutor):
    name = "fake-executor"

    def __init__(self):
        self.calls = 0
        self.failures: list[ProviderResult] = []

    async def execute(self, ticket: TicketData, solution: Solution) -> ProviderResult[ExecutionResult]:
        self.calls += 1
        if self.failures:
            return self.failures.pop(0)
        return ProviderResult.success(
            ExecutionResult(
                branch_name=f"ticketpilot/feature/{ticket.key.lower()}",
                repository=ticket.linked_repository,
                changes=solution.changes,
                actions=[
                    ExecutedAction(action=ExecutionAction.CREATE_FILE, file_path=c.path, content_after=c.content)
                    for c in solution.changes
                ],
            )
        )


class FakePublisher(VersionControlPublisher):
    name = "fake-vcs"

    def __init__(self):
        self.created: list[str] = []
        self.failures: list[ProviderResult] = []

    async def create_pull_request(
        self, ticket: TicketData, execution: ExecutionResult
    ) -> ProviderResult[PullRequestInfo]:
        if self.failures:
            return self.failures.pop(0)
        self.created.append(ticket.key)
        number = len(self.created)
        return ProviderResult.success(
            PullRequestInfo(
                number=number,
                url=f"https://github.com/{execution.repository}/pull/{number}",
                branch=execution.branch_name,
            )
        )

    async def add_pr_comment(self, repository: str, pr_number: int, body: str) -> ProviderResult[None]:
        return ProviderResult.success()

    async def merge_pull_request(self, repository: str, pr_number: int) -> ProviderResult[None]:
        return ProviderResult.success()

    async def delete_branch(self, repository: str, branch: str) -> ProviderResult[None]:
        return ProviderResult.success()

    def validate_configuration(self) -> list[str]:
        return []


@pytest.fixture
def test_settings() -> Settings:
    """Provide test settings with mock API keys."""
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        environment="development",
        github_token="test_github_token",
        github_repo="acme/widgets",
        anthropic_api_key="test_anthropic_key",
        openai_api_key="test_openai_key",
        max_retry_attempts=3,
        retry_delay_seconds=300,
        max_concurrent_tickets=2,
        provider_timeout_seconds=5.0,
    )


@pytest.fixture
def db(test_settings: Settings) -> Generator[Database, None, None]:
    database = Database(test_settings.database_url)
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> CollectingNotifier:
    return CollectingNotifier()


@pytest.fixture
def meter(test_settings: Settings, db: Database, notifier: CollectingNotifier) -> SessionMeter:
    return SessionMeter(test_settings, db, notifier)


@pytest.fixture
def retry(test_settings: Settings, db: Database) -> RetryCoordinator:
    return RetryCoordinator(test_settings, db)


@pytest.fixture
def source() -> FakeTicketSource:
    return FakeTicketSource()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def providers(
    source: FakeTicketSource,
    generator: FakeGenerator,
    executor: FakeExecutor,
    publisher: FakePublisher,
) -> Providers:
    return Providers(source=source, generator=generator, executor=executor, publisher=publisher)


@pytest.fixture
def machine(
    test_settings: Settings,
    db: Database,
    providers: Providers,
    meter: SessionMeter,
    retry: RetryCoordinator,
    clock: FakeClock,
) -> TicketStateMachine:
    return TicketStateMachine(test_settings, db, providers, meter, retry, clock=clock)


@pytest.fixture
def runner(
    test_settings: Settings,
    db: Database,
    providers: Providers,
    meter: SessionMeter,
    retry: RetryCoordinator,
    machine: TicketStateMachine,
    clock: FakeClock,
) -> PipelineRunner:
    return PipelineRunner(test_settings, db, providers, meter, retry, machine, clock=clock)


@pytest.fixture
def session_key(meter: SessionMeter) -> str:
    return meter.create_session("customer@example.com", hours=10.0).session_key


@pytest.fixture
def add_ticket(db: Database, source: FakeTicketSource) -> Callable[..., Ticket]:
    """Insert a pending ticket and make the fake tracker know it."""

    def _add(key: str = "PROJ-1", session_key: str | None = None, **overrides: Any) -> Ticket:
        data = source.add(ticket_data(key, **overrides))
        with db.transaction() as session:
            ticket, _ = TicketRepository(session).upsert_from_source(data, session_key=session_key)
        return ticket

    return _add


def load_ticket(db: Database, key: str) -> Ticket:
    with db.transaction() as session:
        return TicketRepository(session).require(key)


def ticket_status(db: Database, key: str) -> TicketStatus:
    return TicketStatus(load_ticket(db, key).status)
