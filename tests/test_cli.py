"""Tests for the command-line interface."""

import pytest
from typer.testing import CliRunner

from ticketpilot.cli.main import app
from ticketpilot.config import get_settings

cli = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(monkeypatch, tmp_path):
    monkeypatch.setenv("TICKETPILOT_DATABASE_URL", f"sqlite:///{tmp_path / 'ticketpilot.db'}")
    monkeypatch.setenv("TICKETPILOT_WORKSPACE_BASE_PATH", str(tmp_path / "workspaces"))
    monkeypatch.setenv("TICKETPILOT_GITHUB_TOKEN", "test_github_token")
    monkeypatch.setenv("TICKETPILOT_GITHUB_REPO", "acme/widgets")
    monkeypatch.setenv("TICKETPILOT_OPENAI_API_KEY", "test_openai_key")
    monkeypatch.setenv("TICKETPILOT_ANTHROPIC_API_KEY", "test_anthropic_key")
    # Keep the test session's structlog configuration
    monkeypatch.setattr("ticketpilot.cli.main.configure_logging", lambda settings: None)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def create_session(hours: str = "5") -> str:
    result = cli.invoke(app, ["session", "create", "--email", "customer@example.com", "--hours", hours])
    assert result.exit_code == 0, result.output
    return result.output.split("Session created:")[1].split()[0]


def test_session_lifecycle_commands():
    key = create_session()

    shown = cli.invoke(app, ["session", "show", key])
    assert shown.exit_code == 0
    assert "purchased_hours" in shown.output

    assert cli.invoke(app, ["session", "pause", key]).exit_code == 0
    assert cli.invoke(app, ["session", "resume", key]).exit_code == 0
    renewed = cli.invoke(app, ["session", "renew", key, "2.5"])
    assert renewed.exit_code == 0
    assert "7.50" in renewed.output


def test_invalid_session_action_fails():
    key = create_session()
    assert cli.invoke(app, ["session", "cancel", key]).exit_code == 0

    result = cli.invoke(app, ["session", "resume", key])

    assert result.exit_code == 1


def test_unknown_ticket():
    result = cli.invoke(app, ["ticket", "show", "PROJ-404"])

    assert result.exit_code == 1
    assert "not found" in result.output


def test_run_health_check():
    result = cli.invoke(app, ["run", "health-check"])

    assert result.exit_code == 0, result.output
    assert "health-check" in result.output


def test_run_load_tickets_without_sessions_is_skipped():
    result = cli.invoke(app, ["run", "load-tickets"])

    assert result.exit_code == 0
    assert "skipped" in result.output


def test_providers_table():
    result = cli.invoke(app, ["providers"])

    assert result.exit_code == 0
    assert "workspace" in result.output


def test_list_commands():
    create_session()

    sessions = cli.invoke(app, ["session", "list", "--status", "active"])
    tickets = cli.invoke(app, ["ticket", "list"])

    assert sessions.exit_code == 0, sessions.output
    assert "Sessions" in sessions.output
    assert tickets.exit_code == 0, tickets.output
    assert "Tickets" in tickets.output
