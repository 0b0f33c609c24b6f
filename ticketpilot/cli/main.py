"""ticketpilot command-line interface."""

import asyncio
from dataclasses import dataclass
from typing import Any

import structlog
import typer
from rich.console import Console
from rich.table import Table

from ticketpilot.config import Settings, get_settings
from ticketpilot.core.errors import TicketPilotError
from ticketpilot.core.meter import SessionMeter
from ticketpilot.core.retry import RetryCoordinator
from ticketpilot.core.runner import PipelineRunner, RunReport
from ticketpilot.core.state_machine import TicketStateMachine
from ticketpilot.core.status import SessionStatus, TicketStatus, TriggerKind
from ticketpilot.db.repository import (
    ExecutionRepository,
    RetryAttemptRepository,
    SessionRepository,
    TicketRepository,
    TodoRepository,
)
from ticketpilot.db.session import Database
from ticketpilot.logging import configure_logging
from ticketpilot.providers.registry import ProviderRegistry

app = typer.Typer(
    name="ticketpilot",
    help="Automated ticket resolution metered against session hour budgets",
    add_completion=False,
)
session_app = typer.Typer(help="Manage customer budget sessions")
ticket_app = typer.Typer(help="Inspect and control tickets")
app.add_typer(session_app, name="session")
app.add_typer(ticket_app, name="ticket")

console = Console()
logger = structlog.get_logger()


@dataclass
class Runtime:
    settings: Settings
    db: Database
    meter: SessionMeter
    retry: RetryCoordinator
    registry: ProviderRegistry

    def machine(self) -> TicketStateMachine:
        return TicketStateMachine(self.settings, self.db, self.registry.build(), self.meter, self.retry)

    def runner(self) -> PipelineRunner:
        providers = self.registry.build()
        machine = TicketStateMachine(self.settings, self.db, providers, self.meter, self.retry)
        return PipelineRunner(self.settings, self.db, providers, self.meter, self.retry, machine)


def build_runtime(settings: Settings | None = None) -> Runtime:
    settings = settings or get_settings()
    configure_logging(settings)
    db = Database(settings.database_url)
    db.create_all()
    return Runtime(
        settings=settings,
        db=db,
        meter=SessionMeter(settings, db),
        retry=RetryCoordinator(settings, db),
        registry=ProviderRegistry.default(settings),
    )


def _fail(message: str) -> None:
    console.print(f"\n[bold red]✗ {message}[/bold red]\n")
    raise typer.Exit(1)


def _print_report(report: RunReport) -> None:
    if report.skipped:
        console.print(f"[yellow]⏭  {report.trigger.value} skipped:[/yellow] {report.reason}")
        return

    color = "green" if report.ok else "red"
    mark = "✓" if report.ok else "✗"
    console.print(f"\n[bold {color}]{mark} {report.trigger.value}[/bold {color}]")
    if report.reason:
        console.print(f"  [dim]{report.reason}[/dim]")
    for key, value in report.details.items():
        console.print(f"  {key}: {value}")


@app.command()
def run(trigger: TriggerKind = typer.Argument(..., help="Trigger to run")) -> None:
    """Run one scheduler trigger."""
    runtime = build_runtime()
    report = asyncio.run(runtime.runner().run(trigger))
    _print_report(report)
    if not report.ok:
        raise typer.Exit(1)


@app.command("init-db")
def init_db(reset: bool = typer.Option(False, "--reset", help="Drop all tables first")) -> None:
    """Initialize the database schema."""
    settings = get_settings()
    configure_logging(settings)
    console.print("\n[bold cyan]📦 Initializing Database[/bold cyan]\n")
    console.print(f"[bold]Database URL:[/bold] {settings.database_url}")

    if reset:
        typer.confirm("This will delete all data. Are you sure?", abort=True)

    db = Database(settings.database_url)
    try:
        if reset:
            db.drop_all()
        db.create_all()
    except Exception as e:
        _fail(f"Database initialization failed: {e}")
    finally:
        db.dispose()
    console.print("\n[green]✅ Database initialized successfully![/green]\n")


@app.command()
def providers() -> None:
    """Show provider configuration status."""
    runtime = build_runtime()
    table = Table(title="Providers")
    table.add_column("Kind")
    table.add_column("Name")
    table.add_column("Configured")
    table.add_column("Errors")
    for report in runtime.registry.available():
        table.add_row(
            report.kind,
            report.name,
            "[green]yes[/green]" if report.configured else "[red]no[/red]",
            "; ".join(report.errors),
        )
    console.print(table)


# Sessions


def _session_table(rows: list[dict[str, Any]]) -> Table:
    table = Table(title="Sessions")
    for column in ("session_key", "customer_email", "status", "purchased", "consumed", "remaining", "tickets"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            row["session_key"],
            row["customer_email"],
            row["status"],
            f"{row['purchased_hours']:.2f}",
            f"{row['consumed_hours']:.2f}",
            f"{row['remaining_hours']:.2f}",
            str(row["tickets_processed"]),
        )
    return table


@session_app.command("create")
def session_create(
    email: str = typer.Option(..., "--email", "-e", help="Customer email"),
    hours: float | None = typer.Option(None, "--hours", "-h", help="Purchased hours"),
    name: str | None = typer.Option(None, "--name", "-n", help="Customer name"),
) -> None:
    """Create an active session."""
    runtime = build_runtime()
    try:
        bot_session = runtime.meter.create_session(email, hours=hours, customer_name=name)
    except ValueError as e:
        _fail(str(e))
    console.print(f"[green]✓ Session created:[/green] {bot_session.session_key}")
    console.print(_session_table([runtime.meter.report(bot_session.session_key)]))


@session_app.command("show")
def session_show(session_key: str) -> None:
    """Show a session report."""
    runtime = build_runtime()
    try:
        report = runtime.meter.report(session_key)
    except TicketPilotError as e:
        _fail(str(e))
    for key, value in report.items():
        console.print(f"[bold]{key}:[/bold] {value}")


@session_app.command("list")
def session_list(
    status: SessionStatus | None = typer.Option(None, "--status", "-s"),
    limit: int = typer.Option(50, "--limit", "-l"),
) -> None:
    """List sessions."""
    runtime = build_runtime()
    with runtime.db.transaction() as session:
        keys = [s.session_key for s in SessionRepository(session).recent(status, limit)]
    console.print(_session_table([runtime.meter.report(key) for key in keys]))


def _session_action(action: str, session_key: str, *args: Any) -> None:
    runtime = build_runtime()
    try:
        getattr(runtime.meter, action)(session_key, *args)
    except (TicketPilotError, ValueError) as e:
        _fail(str(e))
    console.print(f"[green]✓ Session {action} done[/green]")
    console.print(_session_table([runtime.meter.report(session_key)]))


@session_app.command("renew")
def session_renew(session_key: str, hours: float = typer.Argument(..., help="Hours to add")) -> None:
    """Add hours to a session."""
    _session_action("renew", session_key, hours)


@session_app.command("pause")
def session_pause(session_key: str) -> None:
    """Pause a session; running tickets finish."""
    _session_action("pause", session_key)


@session_app.command("resume")
def session_resume(session_key: str) -> None:
    """Resume a paused session."""
    _session_action("resume", session_key)


@session_app.command("cancel")
def session_cancel(session_key: str) -> None:
    """Cancel a session."""
    _session_action("cancel", session_key)


@session_app.command("expire")
def session_expire(session_key: str) -> None:
    """Expire a session now."""
    _session_action("expire", session_key)


# Tickets


@ticket_app.command("list")
def ticket_list(
    status: TicketStatus | None = typer.Option(None, "--status", "-s"),
    limit: int = typer.Option(50, "--limit", "-l"),
) -> None:
    """List tickets."""
    runtime = build_runtime()
    table = Table(title="Tickets")
    for column in ("key", "status", "session", "retries", "hours", "pr", "error"):
        table.add_column(column)
    with runtime.db.transaction() as session:
        for ticket in TicketRepository(session).recent(status, limit):
            table.add_row(
                ticket.key,
                TicketStatus(ticket.status).value,
                ticket.session_key or "-",
                str(ticket.retry_count),
                f"{ticket.hours_consumed:.2f}" if ticket.hours_consumed is not None else "-",
                ticket.pr_url or "-",
                (ticket.error_message or "")[:60],
            )
    console.print(table)


@ticket_app.command("show")
def ticket_show(key: str) -> None:
    """Show a ticket with its todos, executions and retry attempts."""
    runtime = build_runtime()
    with runtime.db.transaction() as session:
        try:
            ticket = TicketRepository(session).require(key)
        except TicketPilotError as e:
            _fail(str(e))
        status = TicketStatus(ticket.status)
        console.print(f"\n[bold cyan]{ticket.key}[/bold cyan] {ticket.summary}")
        console.print(f"Status: [yellow]{status.value}[/yellow] ({status.description})")
        console.print(f"Cycle: {ticket.processing_cycle}  Retries: {ticket.retry_count}")
        if ticket.error_message:
            console.print(f"Error: [red]{ticket.error_message}[/red]")
        if ticket.billing_reconciliation_required:
            console.print("[bold red]Billing reconciliation required[/bold red]")
        if ticket.pr_url:
            console.print(f"PR: {ticket.pr_url}")

        todos = TodoRepository(session).for_ticket(key)
        if todos:
            console.print("\n[bold]Todos:[/bold]")
            for todo in todos:
                console.print(f"  {todo.order_index}. [{todo.status.value}] {todo.title}")

        executions = ExecutionRepository(session).for_ticket(key)
        if executions:
            console.print(f"\n[bold]Executions:[/bold] {len(executions)}")
            for execution in executions[:10]:
                console.print(f"  • {execution.action.value} {execution.file_path or execution.command}")

        for attempt in RetryAttemptRepository(session).for_ticket(key):
            console.print(
                f"  retry {attempt.operation.value} cycle {attempt.cycle}: "
                f"{attempt.attempt_number}/{attempt.max_attempts} {attempt.status.value}"
            )


@ticket_app.command("cancel")
def ticket_cancel(key: str) -> None:
    """Cancel a ticket (at the next checkpoint if it is mid-operation)."""
    runtime = build_runtime()
    try:
        ticket = runtime.machine().cancel(key)
    except TicketPilotError as e:
        _fail(str(e))
    if TicketStatus(ticket.status) is TicketStatus.CANCELLED:
        console.print(f"[green]✓ {key} cancelled[/green]")
    else:
        console.print(f"[yellow]Cancellation of {key} requested[/yellow]")


@ticket_app.command("restart")
def ticket_restart(key: str) -> None:
    """Restart a failed or review ticket in a new processing cycle."""
    runtime = build_runtime()
    try:
        ticket = runtime.machine().restart(key)
    except TicketPilotError as e:
        _fail(str(e))
    console.print(f"[green]✓ {key} restarted[/green] (cycle {ticket.processing_cycle})")


if __name__ == "__main__":
    app()
