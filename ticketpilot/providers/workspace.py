"""Local workspace change executor."""

import asyncio
import shlex
import shutil
import time
from datetime import datetime, timedelta
from pathlib import Path

import structlog

from ticketpilot.config import Settings
from ticketpilot.core.errors import ErrorKind
from ticketpilot.core.naming import branch_name
from ticketpilot.core.results import (
    ExecutedAction,
    ExecutionResult,
    FileChange,
    ProviderResult,
    Solution,
    TicketData,
)
from ticketpilot.core.status import ExecutionAction

from .base import ChangeExecutor

logger = structlog.get_logger()


def branch_kind(ticket: TicketData) -> str:
    labels = {label.lower() for label in ticket.labels}
    return "bugfix" if labels & {"bug", "bugfix", "fix"} else "feature"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class LocalWorkspaceExecutor(ChangeExecutor):
    """Applies file changes inside ``<workspace_base_path>/<owner>__<repo>/<ticket>``.

    In simulation mode every action is recorded but nothing is written or run.
    """

    name = "workspace"

    def __init__(self, settings: Settings):
        self.settings = settings
        self.base_path = Path(settings.workspace_base_path)

    def workspace_for(self, repository: str, ticket_key: str) -> Path:
        return self.base_path / repository.replace("/", "__") / ticket_key.lower()

    def _resolve(self, workspace: Path, relative: str) -> Path:
        target = (workspace / relative).resolve()
        if not target.is_relative_to(workspace.resolve()):
            raise ValueError(f"Path escapes the workspace: {relative}")
        return target

    def _apply_change(self, workspace: Path, change: FileChange, simulation: bool) -> ExecutedAction:
        started = time.monotonic()
        target = self._resolve(workspace, change.path)
        before = target.read_text(encoding="utf-8") if target.is_file() else None

        if change.action == ExecutionAction.DELETE_FILE:
            after = None
            if not simulation and target.exists():
                target.unlink()
        else:
            after = change.content or ""
            if not simulation:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(after, encoding="utf-8")

        action = change.action
        if action == ExecutionAction.EDIT_FILE and before is None:
            action = ExecutionAction.CREATE_FILE
        return ExecutedAction(
            action=action,
            file_path=change.path,
            content_before=before,
            content_after=after,
            duration_ms=_elapsed_ms(started),
        )

    async def _run_command(self, workspace: Path, command: str, simulation: bool) -> ExecutedAction:
        started = time.monotonic()
        argv = shlex.split(command)
        if not argv or argv[0] not in self.settings.allowed_commands:
            return ExecutedAction(
                action=ExecutionAction.RUN_COMMAND,
                command=command,
                status="skipped",
                error_message="Command not in allowed_commands",
            )
        if simulation:
            return ExecutedAction(action=ExecutionAction.RUN_COMMAND, command=command, status="simulated")

        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=workspace,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            output, _ = await asyncio.wait_for(process.communicate(), self.settings.command_timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return ExecutedAction(
                action=ExecutionAction.RUN_COMMAND,
                command=command,
                status="failed",
                error_message=f"Timed out after {self.settings.command_timeout_seconds:g}s",
                duration_ms=_elapsed_ms(started),
            )

        return ExecutedAction(
            action=ExecutionAction.RUN_COMMAND,
            command=command,
            command_output=output.decode("utf-8", errors="replace")[-10000:],
            exit_code=process.returncode,
            status="completed" if process.returncode == 0 else "failed",
            duration_ms=_elapsed_ms(started),
        )

    async def execute(self, ticket: TicketData, solution: Solution) -> ProviderResult[ExecutionResult]:
        if not ticket.linked_repository:
            return ProviderResult.failure(
                ErrorKind.BUSINESS, f"Ticket {ticket.key} has no linked repository", provider=self.name
            )
        if not solution.changes:
            return ProviderResult.failure(
                ErrorKind.BUSINESS, "Solution contains no file changes", provider=self.name
            )

        simulation = self.settings.simulation_mode
        workspace = self.workspace_for(ticket.linked_repository, ticket.key)
        log = logger.bind(ticket=ticket.key, workspace=str(workspace), simulation=simulation)
        log.info("Applying solution", changes=len(solution.changes), commands=len(solution.commands))

        try:
            if not simulation:
                workspace.mkdir(parents=True, exist_ok=True)
            actions = [self._apply_change(workspace, change, simulation) for change in solution.changes]
        except ValueError as e:
            return ProviderResult.failure(ErrorKind.BUSINESS, str(e), provider=self.name)
        except OSError as e:
            return ProviderResult.failure(ErrorKind.FATAL, str(e), provider=self.name)

        for command in solution.commands:
            actions.append(await self._run_command(workspace, command, simulation))

        failed = [a for a in actions if a.status == "failed"]
        if failed:
            log.warning("Commands failed", commands=[a.command for a in failed])

        return ProviderResult.success(
            ExecutionResult(
                branch_name=branch_name(ticket.key, self.settings.branch_prefix, branch_kind(ticket)),
                repository=ticket.linked_repository,
                changes=solution.changes,
                actions=actions,
                simulation=simulation,
            )
        )

    def cleanup(self, older_than_days: int | None = None) -> list[Path]:
        """Remove ticket workspaces not modified within the retention window."""
        days = older_than_days or self.settings.workspace_cleanup_days
        cutoff = (datetime.now() - timedelta(days=days)).timestamp()
        removed = []
        if not self.base_path.is_dir():
            return removed

        for repo_dir in self.base_path.iterdir():
            if not repo_dir.is_dir():
                continue
            for ticket_dir in repo_dir.iterdir():
                if ticket_dir.is_dir() and ticket_dir.stat().st_mtime < cutoff:
                    shutil.rmtree(ticket_dir)
                    removed.append(ticket_dir)
            if not any(repo_dir.iterdir()):
                repo_dir.rmdir()
        if removed:
            logger.info("Workspaces removed", count=len(removed))
        return removed

    def validate_configuration(self) -> list[str]:
        if self.base_path.exists() and not self.base_path.is_dir():
            return [f"workspace_base_path is not a directory: {self.base_path}"]
        return []
