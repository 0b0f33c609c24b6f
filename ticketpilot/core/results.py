"""Uniform result shapes exchanged across provider seams."""

import asyncio
from collections.abc import Awaitable
from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .errors import ErrorKind, TicketPilotError
from .status import ExecutionAction

T = TypeVar("T")


class ProviderError(BaseModel):
    """Structured description of a provider failure."""

    kind: ErrorKind
    message: str
    provider: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def retriable(self) -> bool:
        return self.kind.consumes_retry

    @classmethod
    def from_exception(cls, exc: BaseException, provider: str | None = None) -> "ProviderError":
        """Classify an exception raised behind a provider seam."""
        if isinstance(exc, TicketPilotError):
            kind = exc.kind
        elif isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
            kind = ErrorKind.TRANSIENT
        else:
            kind = ErrorKind.FATAL
        message = str(exc) or exc.__class__.__name__
        return cls(kind=kind, message=message, provider=provider, details={"type": exc.__class__.__name__})

    def __str__(self) -> str:
        prefix = f"[{self.provider}] " if self.provider else ""
        return f"{prefix}{self.kind.value}: {self.message}"


class ProviderResult(BaseModel, Generic[T]):
    """Success value or structured error returned by every provider call."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    ok: bool
    value: T | None = None
    error: ProviderError | None = None

    @classmethod
    def success(cls, value: T | None = None) -> "ProviderResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        provider: str | None = None,
        **details: Any,
    ) -> "ProviderResult[T]":
        return cls(ok=False, error=ProviderError(kind=kind, message=message, provider=provider, details=details))

    @classmethod
    def from_exception(cls, exc: BaseException, provider: str | None = None) -> "ProviderResult[T]":
        return cls(ok=False, error=ProviderError.from_exception(exc, provider))


async def call_with_timeout(
    call: Awaitable["ProviderResult[T]"],
    timeout: float,
    provider: str | None = None,
) -> "ProviderResult[T]":
    """Await a provider call, turning timeouts and stray exceptions into results.

    A timeout is a transient failure, the same as a transport error.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError:
        return ProviderResult.failure(
            ErrorKind.TRANSIENT, f"Provider call timed out after {timeout:g}s", provider=provider
        )
    except asyncio.CancelledError:
        raise
    except Exception as e:
        return ProviderResult.from_exception(e, provider=provider)


class TicketData(BaseModel):
    """Ticket as reported by a ticket source."""

    key: str
    summary: str
    description: str = ""
    tracker_status: str
    priority: str | None = None
    assignee: str | None = None
    reporter: str | None = None
    labels: list[str] = Field(default_factory=list)
    linked_repository: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def has_label(self, label: str) -> bool:
        return label in self.labels

    @property
    def is_unassigned(self) -> bool:
        return self.assignee is None


class FileChange(BaseModel):
    """One file-level change proposed by a solution."""

    path: str
    action: ExecutionAction = ExecutionAction.EDIT_FILE
    content: str | None = None
    description: str = ""


class Solution(BaseModel):
    """Structured output of a solution generator."""

    summary: str
    changes: list[FileChange] = Field(default_factory=list)
    commands: list[str] = Field(default_factory=list)
    provider: str | None = None
    model: str | None = None
    estimated_cost: float = 0.0
    substituted_from: str | None = Field(
        default=None, description="Primary provider replaced by the fallback, if any"
    )


class ExecutedAction(BaseModel):
    """Audit entry produced by a change executor."""

    action: ExecutionAction
    file_path: str | None = None
    command: str | None = None
    content_before: str | None = None
    content_after: str | None = None
    command_output: str | None = None
    exit_code: int | None = None
    status: str = "completed"
    error_message: str | None = None
    duration_ms: int = 0


class ExecutionResult(BaseModel):
    """Outcome of applying a solution to a repository."""

    branch_name: str
    repository: str
    changes: list[FileChange] = Field(default_factory=list)
    actions: list[ExecutedAction] = Field(default_factory=list)
    simulation: bool = False


class PullRequestInfo(BaseModel):
    """Review request opened for a ticket."""

    number: int
    url: str
    branch: str
    commit_sha: str | None = None


class ValidationReport(BaseModel):
    """Configuration state of a registered provider."""

    name: str
    kind: str
    configured: bool
    errors: list[str] = Field(default_factory=list)
