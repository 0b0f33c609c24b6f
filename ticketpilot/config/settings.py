"""Application settings and configuration."""

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WarningThresholds(BaseModel):
    """Budget consumption percentages that trigger a one-time warning."""

    first: float = Field(default=75.0, gt=0, le=100)
    second: float = Field(default=90.0, gt=0, le=100)

    @model_validator(mode="after")
    def _check_order(self) -> "WarningThresholds":
        if self.first >= self.second:
            raise ValueError("warning_thresholds.first must be lower than warning_thresholds.second")
        return self


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Built once at process start and handed to every component; nothing below
    the CLI reads the environment itself.
    """

    model_config = SettingsConfigDict(
        env_prefix="TICKETPILOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    log_json: bool = Field(default=False, description="Render logs as JSON lines")

    # Retry policy
    max_retry_attempts: int = Field(default=3, ge=1, description="Ceiling for RetryAttempt.max_attempts")
    retry_delay_seconds: int = Field(default=300, ge=0, description="Fixed delay before a retry is due")

    # Processing
    max_concurrent_tickets: int = Field(default=1, ge=1, description="Tickets in flight per load run")
    max_processing_time_seconds: int = Field(default=3600, gt=0, description="Per-ticket hard timeout")
    provider_timeout_seconds: float = Field(default=120.0, gt=0, description="Per provider call timeout")
    max_tickets_per_load: int = Field(default=50, ge=1)
    simulation_mode: bool = Field(default=False, description="Record executions without touching files")

    # Sessions
    default_hours: float = Field(default=10.0, gt=0, description="purchased_hours for a new session")
    warning_thresholds: WarningThresholds = Field(default_factory=WarningThresholds)
    session_cleanup_days: int = Field(default=90, ge=1)

    # Ticket selection
    required_label: str | None = Field(default="ticketpilot", description="Label a ticket must carry")
    require_unassigned: bool = True
    allowed_tracker_statuses: list[str] = Field(default_factory=lambda: ["open", "To Do", "In Progress"])
    completed_tracker_status: str = "In Review"
    failed_tracker_status: str | None = None

    # AI providers
    primary_provider: Literal["anthropic", "openai"] = "openai"
    fallback_provider: Literal["anthropic", "openai"] | None = "anthropic"
    anthropic_api_key: str | None = Field(default=None, description="Anthropic API key")
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    openai_api_key: str | None = Field(default=None, description="OpenAI API key")
    openai_model: str = "gpt-4o"
    default_temperature: float = 0.2
    max_output_tokens: int = 4096

    # GitHub
    github_token: str | None = Field(default=None, description="GitHub Personal Access Token")
    github_repo: str | None = Field(default=None, description="Issue tracker repository (owner/name)")
    default_base_branch: str = "main"
    branch_prefix: str = "ticketpilot"
    create_draft_prs: bool = True

    # Workspaces
    workspace_base_path: str = "./workspaces"
    workspace_cleanup_days: int = Field(default=30, ge=1)
    allowed_commands: list[str] = Field(
        default_factory=list, description="Programs a solution may run in its workspace"
    )
    command_timeout_seconds: float = Field(default=300.0, gt=0)

    # Database
    database_url: str = Field(
        default="sqlite:///./ticketpilot.db", description="Database connection URL"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def max_processing_hours(self) -> float:
        return self.max_processing_time_seconds / 3600


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
