"""Provider contracts.

Every method is async and returns a ``ProviderResult``; implementations report
failures as results rather than raising. Callers still wrap each call with
``call_with_timeout`` so a raised exception is classified at the seam.
"""

from abc import ABC, abstractmethod
from typing import Any

from ticketpilot.core.results import (
    ExecutionResult,
    ProviderResult,
    PullRequestInfo,
    Solution,
    TicketData,
)


class TicketSource(ABC):
    """Issue tracker the tickets come from."""

    name: str = "ticket-source"

    @abstractmethod
    async def fetch_tickets(self) -> ProviderResult[list[TicketData]]:
        """Tickets currently visible to the bot."""

    @abstractmethod
    async def get_ticket(self, key: str) -> ProviderResult[TicketData]:
        pass

    @abstractmethod
    async def add_comment(self, key: str, body: str) -> ProviderResult[None]:
        pass

    @abstractmethod
    async def update_status(self, key: str, status: str) -> ProviderResult[None]:
        pass

    @abstractmethod
    def supported_statuses(self) -> list[str]:
        pass

    @abstractmethod
    def validate_configuration(self) -> list[str]:
        """Configuration errors; empty when usable."""


class SolutionGenerator(ABC):
    """AI backend producing a code solution for a prompt."""

    name: str = "solution-generator"

    @abstractmethod
    async def generate(self, prompt: str, context: dict[str, Any] | None = None) -> ProviderResult[Solution]:
        pass

    @abstractmethod
    def estimate_cost(self, prompt: str) -> float:
        pass

    @abstractmethod
    def supported_models(self) -> list[str]:
        pass

    @abstractmethod
    def max_tokens(self) -> int:
        pass

    @abstractmethod
    def validate_configuration(self) -> list[str]:
        pass

    @abstractmethod
    async def test_connection(self) -> ProviderResult[None]:
        pass


class ChangeExecutor(ABC):
    """Applies a solution to a working copy of the repository."""

    name: str = "change-executor"

    @abstractmethod
    async def execute(self, ticket: TicketData, solution: Solution) -> ProviderResult[ExecutionResult]:
        pass

    def validate_configuration(self) -> list[str]:
        return []


class VersionControlPublisher(ABC):
    """Opens and manages review requests."""

    name: str = "publisher"

    @abstractmethod
    async def create_pull_request(
        self, ticket: TicketData, execution: ExecutionResult
    ) -> ProviderResult[PullRequestInfo]:
        pass

    @abstractmethod
    async def add_pr_comment(self, repository: str, pr_number: int, body: str) -> ProviderResult[None]:
        pass

    @abstractmethod
    async def merge_pull_request(self, repository: str, pr_number: int) -> ProviderResult[None]:
        pass

    @abstractmethod
    async def delete_branch(self, repository: str, branch: str) -> ProviderResult[None]:
        pass

    @abstractmethod
    def validate_configuration(self) -> list[str]:
        pass
