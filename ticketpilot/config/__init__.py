"""Configuration for ticketpilot."""

from .settings import Settings, WarningThresholds, get_settings

__all__ = ["Settings", "WarningThresholds", "get_settings"]
