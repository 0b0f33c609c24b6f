"""LangChain chat-model solution generators."""

import json
from typing import Any, Literal

import anthropic
import openai
import structlog
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import ValidationError

from ticketpilot.config import Settings
from ticketpilot.core.errors import ErrorKind
from ticketpilot.core.prompts import SOLUTION_SYSTEM_PROMPT
from ticketpilot.core.results import ProviderResult, Solution

from .base import SolutionGenerator

logger = structlog.get_logger()

ProviderName = Literal["anthropic", "openai"]

# USD per million input/output tokens
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-3-5-sonnet-20241022": (3.0, 15.0),
    "claude-3-5-haiku-20241022": (0.8, 4.0),
    "claude-3-opus-20240229": (15.0, 75.0),
    "gpt-4o": (2.5, 10.0),
    "gpt-4o-mini": (0.15, 0.6),
    "gpt-4-turbo": (10.0, 30.0),
}

SUPPORTED_MODELS: dict[str, list[str]] = {
    "anthropic": ["claude-3-5-sonnet-20241022", "claude-3-5-haiku-20241022", "claude-3-opus-20240229"],
    "openai": ["gpt-4o", "gpt-4o-mini", "gpt-4-turbo"],
}

TRANSIENT_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)
CONFIGURATION_ERRORS = (
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
    anthropic.NotFoundError,
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.NotFoundError,
)


def classify_llm_error(exc: Exception) -> ErrorKind:
    if isinstance(exc, TRANSIENT_ERRORS):
        return ErrorKind.TRANSIENT
    if isinstance(exc, CONFIGURATION_ERRORS):
        return ErrorKind.CONFIGURATION
    return ErrorKind.FATAL


def extract_json(text: str) -> str:
    """Strip a Markdown code fence around a JSON payload, if present."""
    if "```json" in text:
        return text.split("```json")[1].split("```")[0].strip()
    if "```" in text:
        return text.split("```")[1].split("```")[0].strip()
    return text.strip()


def parse_solution(text: str) -> Solution:
    data = json.loads(extract_json(text))
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object with 'summary' and 'changes'")
    return Solution.model_validate(data)


class LangChainSolutionGenerator(SolutionGenerator):
    """Generates solutions through an Anthropic or OpenAI chat model."""

    def __init__(self, settings: Settings, provider: ProviderName, llm: BaseChatModel | None = None):
        self.settings = settings
        self.provider = provider
        self.name = provider
        self.model_name = settings.anthropic_model if provider == "anthropic" else settings.openai_model
        self._llm = llm
        self.logger = logger.bind(provider=provider, model=self.model_name)

    @property
    def api_key(self) -> str | None:
        return self.settings.anthropic_api_key if self.provider == "anthropic" else self.settings.openai_api_key

    @property
    def llm(self) -> BaseChatModel:
        if self._llm is None:
            self._llm = self._create_llm()
        return self._llm

    def _create_llm(self) -> BaseChatModel:
        """Create LLM instance based on settings."""
        if self.provider == "anthropic":
            return ChatAnthropic(
                api_key=self.api_key,
                model=self.model_name,
                temperature=self.settings.default_temperature,
                max_tokens=self.settings.max_output_tokens,
                timeout=self.settings.provider_timeout_seconds,
                max_retries=0,
            )
        return ChatOpenAI(
            api_key=self.api_key,
            model=self.model_name,
            temperature=self.settings.default_temperature,
            max_tokens=self.settings.max_output_tokens,
            timeout=self.settings.provider_timeout_seconds,
            max_retries=0,
        )

    async def generate(self, prompt: str, context: dict[str, Any] | None = None) -> ProviderResult[Solution]:
        messages = [SystemMessage(content=SOLUTION_SYSTEM_PROMPT), HumanMessage(content=prompt)]
        if context:
            messages[-1].content += f"\n\nAdditional Context:\n{self._format_context(context)}"

        self.logger.info("Generating solution", prompt_length=len(prompt))
        try:
            response = await self.llm.ainvoke(messages)
        except Exception as e:
            kind = classify_llm_error(e)
            self.logger.error("Solution generation failed", error=str(e), kind=kind.value)
            return ProviderResult.failure(kind, str(e) or e.__class__.__name__, provider=self.name)

        content = response.content if isinstance(response.content, str) else json.dumps(response.content)
        try:
            solution = parse_solution(content)
        except (json.JSONDecodeError, ValidationError, ValueError) as e:
            self.logger.warning("Unparseable solution", error=str(e), preview=content[:200])
            return ProviderResult.failure(
                ErrorKind.FATAL, f"Model returned an unparseable solution: {e}", provider=self.name
            )

        solution.provider = self.name
        solution.model = self.model_name
        solution.estimated_cost = self.estimate_cost(prompt + content)
        self.logger.info("Solution generated", changes=len(solution.changes))
        return ProviderResult.success(solution)

    def estimate_cost(self, prompt: str) -> float:
        """Rough USD cost at four characters per token, priced as input plus a full output."""
        input_price, output_price = MODEL_PRICING.get(self.model_name, (0.0, 0.0))
        tokens = len(prompt) / 4
        return round((tokens * input_price + self.max_tokens() * output_price) / 1_000_000, 6)

    def supported_models(self) -> list[str]:
        return list(SUPPORTED_MODELS[self.provider])

    def max_tokens(self) -> int:
        return self.settings.max_output_tokens

    def validate_configuration(self) -> list[str]:
        errors = []
        if not self.api_key:
            errors.append(f"{self.provider}_api_key is not set")
        if not self.model_name:
            errors.append(f"{self.provider}_model is not set")
        return errors

    async def test_connection(self) -> ProviderResult[None]:
        errors = self.validate_configuration()
        if errors:
            return ProviderResult.failure(ErrorKind.CONFIGURATION, "; ".join(errors), provider=self.name)
        try:
            await self.llm.ainvoke([HumanMessage(content="ping")])
        except Exception as e:
            return ProviderResult.failure(classify_llm_error(e), str(e), provider=self.name)
        return ProviderResult.success()

    def _format_context(self, context: dict[str, Any]) -> str:
        """Format context dictionary for LLM."""
        lines = []
        for key, value in context.items():
            if isinstance(value, (list, dict)):
                value = json.dumps(value, indent=2, default=str)
            lines.append(f"{key}: {value}")
        return "\n".join(lines)
