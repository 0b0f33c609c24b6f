"""Ticket sources, solution generators, executors and publishers."""

from .base import ChangeExecutor, SolutionGenerator, TicketSource, VersionControlPublisher
from .fallback import FallbackSolutionGenerator
from .registry import ProviderRegistry, Providers

__all__ = [
    "ChangeExecutor",
    "FallbackSolutionGenerator",
    "ProviderRegistry",
    "Providers",
    "SolutionGenerator",
    "TicketSource",
    "VersionControlPublisher",
]
