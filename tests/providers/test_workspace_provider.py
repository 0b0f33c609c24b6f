"""Tests for the local workspace executor."""

import os
import sys
import time

import pytest

from ticketpilot.core.errors import ErrorKind
from ticketpilot.core.results import FileChange, Solution, TicketData
from ticketpilot.core.status import ExecutionAction
from ticketpilot.providers.workspace import LocalWorkspaceExecutor


@pytest.fixture
def workspace_settings(test_settings, tmp_path):
    return test_settings.model_copy(
        update={"workspace_base_path": str(tmp_path / "workspaces"), "allowed_commands": [sys.executable]}
    )


@pytest.fixture
def local_executor(workspace_settings) -> LocalWorkspaceExecutor:
    return LocalWorkspaceExecutor(workspace_settings)


@pytest.fixture
def ticket() -> TicketData:
    return TicketData(
        key="PROJ-1",
        summary="Fix login redirect",
        tracker_status="open",
        labels=["ticketpilot", "bug"],
        linked_repository="acme/widgets",
    )


def solution(*changes: FileChange, commands: list[str] | None = None) -> Solution:
    return Solution(summary="Fix", changes=list(changes), commands=commands or [])


@pytest.mark.asyncio
async def test_applies_changes_in_ticket_workspace(local_executor, ticket, tmp_path):
    workspace = tmp_path / "workspaces" / "acme__widgets" / "proj-1"
    (workspace / "app").mkdir(parents=True)
    (workspace / "app" / "login.py").write_text("REDIRECT = '/404'\n")
    (workspace / "app" / "old.py").write_text("obsolete\n")

    result = await local_executor.execute(
        ticket,
        solution(
            FileChange(path="app/login.py", content="REDIRECT = '/dashboard'\n"),
            FileChange(path="app/new.py", content="NEW = True\n"),
            FileChange(path="app/old.py", action=ExecutionAction.DELETE_FILE),
        ),
    )

    assert result.ok
    execution = result.value
    assert execution.branch_name == "ticketpilot/bugfix/proj-1"
    assert execution.repository == "acme/widgets"
    assert [a.action for a in execution.actions] == [
        ExecutionAction.EDIT_FILE,
        ExecutionAction.CREATE_FILE,
        ExecutionAction.DELETE_FILE,
    ]
    assert execution.actions[0].content_before == "REDIRECT = '/404'\n"
    assert (workspace / "app" / "login.py").read_text() == "REDIRECT = '/dashboard'\n"
    assert (workspace / "app" / "new.py").exists()
    assert not (workspace / "app" / "old.py").exists()


@pytest.mark.asyncio
async def test_simulation_writes_nothing(workspace_settings, ticket, tmp_path):
    executor = LocalWorkspaceExecutor(workspace_settings.model_copy(update={"simulation_mode": True}))

    result = await executor.execute(
        ticket,
        solution(FileChange(path="app/new.py", content="NEW = True\n"), commands=[f"{sys.executable} -V"]),
    )

    assert result.ok
    assert result.value.simulation is True
    assert [a.status for a in result.value.actions] == ["completed", "simulated"]
    assert not (tmp_path / "workspaces").exists()


@pytest.mark.asyncio
async def test_path_escape_is_business_error(local_executor, ticket):
    result = await local_executor.execute(ticket, solution(FileChange(path="../../etc/passwd", content="x")))

    assert result.error.kind is ErrorKind.BUSINESS
    assert "escapes the workspace" in result.error.message


@pytest.mark.asyncio
async def test_missing_repository_or_changes(local_executor, ticket):
    no_repo = ticket.model_copy(update={"linked_repository": None})

    assert (await local_executor.execute(no_repo, solution(FileChange(path="a.py")))).error.kind is ErrorKind.BUSINESS
    assert (await local_executor.execute(ticket, solution())).error.kind is ErrorKind.BUSINESS


@pytest.mark.asyncio
async def test_commands_are_allow_listed(local_executor, ticket):
    result = await local_executor.execute(
        ticket,
        solution(
            FileChange(path="a.py", content="print('ok')\n"),
            commands=[f"{sys.executable} a.py", "rm -rf /", f"{sys.executable} -c 'raise SystemExit(3)'"],
        ),
    )

    ran, skipped, failed = result.value.actions[1:]
    assert ran.status == "completed"
    assert ran.exit_code == 0
    assert ran.command_output.strip() == "ok"
    assert skipped.status == "skipped"
    assert failed.status == "failed"
    assert failed.exit_code == 3


def test_cleanup_removes_old_workspaces(local_executor, tmp_path):
    base = tmp_path / "workspaces" / "acme__widgets"
    old = base / "proj-1"
    fresh = base / "proj-2"
    old.mkdir(parents=True)
    fresh.mkdir()
    stale = time.time() - 40 * 24 * 3600
    os.utime(old, (stale, stale))

    removed = local_executor.cleanup()

    assert removed == [old]
    assert fresh.exists()


def test_validate_configuration(workspace_settings, tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    settings = workspace_settings.model_copy(update={"workspace_base_path": str(blocker)})

    assert LocalWorkspaceExecutor(settings).validate_configuration() != []
