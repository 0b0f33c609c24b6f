"""Primary/fallback solution generator pair."""

from typing import Any

import structlog

from ticketpilot.core.errors import ErrorKind
from ticketpilot.core.results import ProviderResult, Solution

from .base import SolutionGenerator

logger = structlog.get_logger()

SUBSTITUTABLE_KINDS = (ErrorKind.CONFIGURATION, ErrorKind.TRANSIENT)


class FallbackSolutionGenerator(SolutionGenerator):
    """Uses the fallback when the primary is misconfigured or unreachable.

    Business and fatal failures of the primary are returned as they are.
    """

    def __init__(self, primary: SolutionGenerator, fallback: SolutionGenerator | None = None):
        self.primary = primary
        self.fallback = fallback
        self.name = primary.name

    async def generate(self, prompt: str, context: dict[str, Any] | None = None) -> ProviderResult[Solution]:
        errors = self.primary.validate_configuration()
        if errors:
            result = ProviderResult.failure(
                ErrorKind.CONFIGURATION, "; ".join(errors), provider=self.primary.name
            )
        else:
            result = await self.primary.generate(prompt, context)

        if result.ok or self.fallback is None or result.error.kind not in SUBSTITUTABLE_KINDS:
            return result
        if self.fallback.validate_configuration():
            return result

        logger.warning(
            "Falling back to secondary solution generator",
            primary=self.primary.name,
            fallback=self.fallback.name,
            reason=result.error.message,
            kind=result.error.kind.value,
        )
        fallback_result = await self.fallback.generate(prompt, context)
        if fallback_result.ok and fallback_result.value is not None:
            fallback_result.value.substituted_from = self.primary.name
        return fallback_result

    def estimate_cost(self, prompt: str) -> float:
        return self.primary.estimate_cost(prompt)

    def supported_models(self) -> list[str]:
        models = list(self.primary.supported_models())
        if self.fallback is not None:
            models += [m for m in self.fallback.supported_models() if m not in models]
        return models

    def max_tokens(self) -> int:
        return self.primary.max_tokens()

    def validate_configuration(self) -> list[str]:
        """Errors only when neither generator is usable."""
        primary_errors = self.primary.validate_configuration()
        if not primary_errors:
            return []
        if self.fallback is not None and not self.fallback.validate_configuration():
            return []
        return primary_errors

    async def test_connection(self) -> ProviderResult[None]:
        result = await self.primary.test_connection()
        if result.ok or self.fallback is None:
            return result
        return await self.fallback.test_connection()
