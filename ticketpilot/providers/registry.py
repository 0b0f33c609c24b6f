"""Provider registry: name to factory, plus configuration validation."""

from collections.abc import Callable
from dataclasses import dataclass

import structlog

from ticketpilot.config import Settings
from ticketpilot.core.errors import ConfigurationError
from ticketpilot.core.results import ValidationReport

from .base import ChangeExecutor, SolutionGenerator, TicketSource, VersionControlPublisher
from .fallback import FallbackSolutionGenerator
from .github import GitHubIssueSource, GitHubPublisher
from .llm import LangChainSolutionGenerator
from .workspace import LocalWorkspaceExecutor

logger = structlog.get_logger()

Factory = Callable[[Settings], object]


@dataclass
class Providers:
    """The set of providers one pipeline run works with."""

    source: TicketSource
    generator: SolutionGenerator
    executor: ChangeExecutor
    publisher: VersionControlPublisher

    def validate(self) -> list[str]:
        errors = []
        for label, provider in (
            ("ticket source", self.source),
            ("solution generator", self.generator),
            ("executor", self.executor),
            ("publisher", self.publisher),
        ):
            errors += [f"{label} '{provider.name}': {error}" for error in provider.validate_configuration()]
        return errors


class ProviderRegistry:
    """Knows how to build every provider by name."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._factories: dict[str, dict[str, Factory]] = {
            "source": {},
            "generator": {},
            "executor": {},
            "publisher": {},
        }

    @classmethod
    def default(cls, settings: Settings) -> "ProviderRegistry":
        registry = cls(settings)
        registry.register("source", "github", GitHubIssueSource)
        registry.register("generator", "anthropic", lambda s: LangChainSolutionGenerator(s, "anthropic"))
        registry.register("generator", "openai", lambda s: LangChainSolutionGenerator(s, "openai"))
        registry.register("executor", "workspace", LocalWorkspaceExecutor)
        registry.register("publisher", "github", GitHubPublisher)
        return registry

    def register(self, kind: str, name: str, factory: Factory) -> None:
        if kind not in self._factories:
            raise ValueError(f"Unknown provider kind: {kind}")
        self._factories[kind][name] = factory

    def names(self, kind: str) -> list[str]:
        return sorted(self._factories[kind])

    def create(self, kind: str, name: str):
        try:
            factory = self._factories[kind][name]
        except KeyError:
            raise ConfigurationError(f"No {kind} provider named '{name}'") from None
        return factory(self.settings)

    def solution_generator(self) -> SolutionGenerator:
        primary = self.create("generator", self.settings.primary_provider)
        fallback_name = self.settings.fallback_provider
        fallback = None
        if fallback_name and fallback_name != self.settings.primary_provider:
            fallback = self.create("generator", fallback_name)
        return FallbackSolutionGenerator(primary, fallback)

    def build(
        self,
        source: str = "github",
        executor: str = "workspace",
        publisher: str = "github",
    ) -> Providers:
        return Providers(
            source=self.create("source", source),
            generator=self.solution_generator(),
            executor=self.create("executor", executor),
            publisher=self.create("publisher", publisher),
        )

    def available(self) -> list[ValidationReport]:
        """Configuration state of every registered provider."""
        reports = []
        for kind, factories in self._factories.items():
            for name in sorted(factories):
                try:
                    errors = self.create(kind, name).validate_configuration()
                except ConfigurationError as e:
                    errors = [str(e), *e.errors]
                reports.append(ValidationReport(name=name, kind=kind, configured=not errors, errors=errors))
        return reports

    def validate_all(self, providers: Providers) -> list[str]:
        errors = providers.validate()
        if errors:
            logger.error("Provider configuration invalid", errors=errors)
        return errors
