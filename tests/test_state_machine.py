"""Tests for the ticket lifecycle state machine."""

from datetime import timedelta

import pytest
from conftest import FakeGenerator, load_ticket, ticket_status

from ticketpilot.core.errors import BudgetExhaustedError, ErrorKind, InvalidTransitionError
from ticketpilot.core.results import ExecutedAction, ExecutionResult, ProviderResult
from ticketpilot.core.state_machine import StepOutcomeKind
from ticketpilot.core.status import ExecutionAction, Operation, RetryStatus, TicketStatus, TodoStatus
from ticketpilot.db.repository import ExecutionRepository, RetryAttemptRepository, TodoRepository
from ticketpilot.providers.fallback import FallbackSolutionGenerator


def transient(message: str = "upstream timeout") -> ProviderResult:
    return ProviderResult.failure(ErrorKind.TRANSIENT, message, provider="fake-ai")


class TestHappyPath:
    """A ticket walks every status and is charged its elapsed time."""

    @pytest.mark.asyncio
    async def test_process_completes_ticket(
        self, machine, meter, clock, generator, publisher, source, add_ticket, session_key
    ):
        add_ticket("PROJ-1", session_key)
        generator.on_generate = lambda: clock.advance(hours=1.5)

        outcome = await machine.process("PROJ-1")

        assert outcome.kind is StepOutcomeKind.COMPLETED
        ticket = load_ticket(machine.db, "PROJ-1")
        assert ticket.status == TicketStatus.COMPLETED
        assert ticket.hours_consumed == 1.5
        assert ticket.processing_duration_seconds == 5400
        assert ticket.pr_number == 1
        assert ticket.pr_url == "https://github.com/acme/widgets/pull/1"
        assert ticket.branch_name == "ticketpilot/feature/proj-1"
        assert ticket.ai_provider_used == "fake-ai"

        assert publisher.created == ["PROJ-1"]
        assert source.comments == [("PROJ-1", "Pull request opened: https://github.com/acme/widgets/pull/1")]
        assert source.statuses == [("PROJ-1", "In Review")]

        bot_session = meter.get(session_key)
        assert bot_session.consumed_hours == 1.5
        assert bot_session.tickets_successful == 1

        with machine.db.transaction() as session:
            executions = ExecutionRepository(session).for_ticket("PROJ-1")
            todos = TodoRepository(session).for_ticket("PROJ-1")
        assert [e.action for e in executions] == [ExecutionAction.CREATE_FILE]
        assert todos and all(t.status == TodoStatus.COMPLETED for t in todos)

    @pytest.mark.asyncio
    async def test_step_runs_one_operation(self, machine, generator, add_ticket, session_key):
        add_ticket("PROJ-1", session_key)

        first = await machine.step("PROJ-1")
        second = await machine.step("PROJ-1")

        assert first.status is TicketStatus.ANALYZING
        assert second.status is TicketStatus.GENERATING_SOLUTION
        assert second.should_continue
        assert generator.calls == 0

    @pytest.mark.asyncio
    async def test_existing_pull_request_is_not_recreated(
        self, machine, publisher, source, add_ticket, session_key
    ):
        add_ticket("PROJ-1", session_key)
        machine._update("PROJ-1", pr_number=7, pr_url="https://github.com/acme/widgets/pull/7")

        outcome = await machine.process("PROJ-1")

        assert outcome.status is TicketStatus.COMPLETED
        assert publisher.created == []
        assert source.comments == [("PROJ-1", "Pull request opened: https://github.com/acme/widgets/pull/7")]

    @pytest.mark.asyncio
    async def test_simulation_mode_skips_publishing(
        self, machine, test_settings, publisher, source, add_ticket, session_key
    ):
        machine.settings = test_settings.model_copy(update={"simulation_mode": True})
        add_ticket("PROJ-1", session_key)

        outcome = await machine.process("PROJ-1")

        assert outcome.status is TicketStatus.COMPLETED
        assert publisher.created == []
        assert source.comments == []
        assert source.statuses == []


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failures_exhaust_retries(
        self, machine, meter, clock, generator, add_ticket, session_key
    ):
        add_ticket("PROJ-1", session_key)
        generator.failures = [transient("timeout 1"), transient("timeout 2"), transient("timeout 3")]

        first = await machine.process("PROJ-1")
        assert first.kind is StepOutcomeKind.RETRY_SCHEDULED
        assert first.next_attempt_at == clock.now + timedelta(seconds=300)

        waiting = await machine.process("PROJ-1")
        assert waiting.kind is StepOutcomeKind.WAITING
        assert generator.calls == 1

        clock.advance(seconds=301)
        second = await machine.process("PROJ-1")
        assert second.kind is StepOutcomeKind.RETRY_SCHEDULED

        clock.advance(seconds=301)
        last = await machine.process("PROJ-1")

        assert last.kind is StepOutcomeKind.FAILED
        assert generator.calls == 3
        ticket = load_ticket(machine.db, "PROJ-1")
        assert ticket.retry_count == 3
        assert ticket.hours_consumed == 0.0
        assert "timeout 3" in ticket.error_message

        with machine.db.transaction() as session:
            [attempt] = RetryAttemptRepository(session).for_ticket("PROJ-1")
        assert attempt.operation == Operation.GENERATE
        assert attempt.attempt_number == 3
        assert attempt.status == RetryStatus.FAILED

        bot_session = meter.get(session_key)
        assert bot_session.tickets_failed == 1
        assert bot_session.consumed_hours == 0.0

    @pytest.mark.asyncio
    async def test_retry_resumes_failed_operation(self, machine, clock, source, add_ticket, session_key):
        add_ticket("PROJ-1", session_key)
        source.failures = [ProviderResult.failure(ErrorKind.TRANSIENT, "503", provider="fake-tracker")]

        first = await machine.process("PROJ-1")
        assert first.status is TicketStatus.RETRYING

        clock.advance(minutes=6)
        outcome = await machine.process("PROJ-1")

        assert outcome.status is TicketStatus.COMPLETED
        with machine.db.transaction() as session:
            [attempt] = RetryAttemptRepository(session).for_ticket("PROJ-1")
        assert attempt.operation == Operation.FETCH
        assert attempt.status == RetryStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_publish_retry_does_not_repeat_tracker_comment(
        self, machine, clock, source, publisher, add_ticket, session_key
    ):
        add_ticket("PROJ-1", session_key)
        source.status_failures = [
            ProviderResult.failure(ErrorKind.TRANSIENT, "tracker unavailable", provider="fake-tracker")
        ]

        first = await machine.process("PROJ-1")
        assert first.status is TicketStatus.RETRYING
        assert load_ticket(machine.db, "PROJ-1").tracker_comment_posted is True

        clock.advance(seconds=301)
        outcome = await machine.process("PROJ-1")

        assert outcome.status is TicketStatus.COMPLETED
        assert publisher.created == ["PROJ-1"]
        assert len(source.comments) == 1
        assert source.statuses == [("PROJ-1", "In Review")]

    @pytest.mark.asyncio
    async def test_provider_timeout_is_transient(self, machine, test_settings, generator, add_ticket, session_key):
        machine.settings = test_settings.model_copy(update={"provider_timeout_seconds": 0.05})
        generator.delay = 1.0
        add_ticket("PROJ-1", session_key)

        outcome = await machine.process("PROJ-1")

        assert outcome.status is TicketStatus.RETRYING
        assert "timed out" in outcome.error

    @pytest.mark.asyncio
    async def test_processing_time_limit(self, machine, test_settings, generator, add_ticket, session_key):
        machine.settings = test_settings.model_copy(update={"max_processing_time_seconds": 0.05})
        generator.delay = 1.0
        add_ticket("PROJ-1", session_key)

        outcome = await machine.process("PROJ-1")

        assert outcome.status is TicketStatus.RETRYING
        assert "Processing exceeded" in outcome.error

    @pytest.mark.asyncio
    async def test_failed_command_consumes_retry(self, machine, executor, add_ticket, session_key):
        add_ticket("PROJ-1", session_key)
        executor.failures = [
            ProviderResult.success(
                ExecutionResult(
                    branch_name="ticketpilot/feature/proj-1",
                    repository="acme/widgets",
                    actions=[
                        ExecutedAction(
                            action=ExecutionAction.RUN_COMMAND,
                            command="pytest -q",
                            exit_code=1,
                            status="failed",
                        )
                    ],
                )
            )
        ]

        outcome = await machine.process("PROJ-1")

        assert outcome.status is TicketStatus.RETRYING
        assert "pytest -q" in outcome.error
        with machine.db.transaction() as session:
            [execution] = ExecutionRepository(session).for_ticket("PROJ-1")
        assert execution.exit_code == 1


class TestReview:
    @pytest.mark.asyncio
    async def test_business_failure_needs_review(self, machine, add_ticket, session_key):
        add_ticket("PROJ-1", session_key, assignee="someone")

        outcome = await machine.process("PROJ-1")

        assert outcome.kind is StepOutcomeKind.REQUIRES_REVIEW
        assert "assigned to someone" in outcome.error
        with machine.db.transaction() as session:
            assert RetryAttemptRepository(session).for_ticket("PROJ-1") == []

    @pytest.mark.asyncio
    async def test_configuration_failure_needs_review(self, machine, generator, add_ticket, session_key):
        add_ticket("PROJ-1", session_key)
        generator.failures = [
            ProviderResult.failure(ErrorKind.CONFIGURATION, "invalid api key", provider="fake-ai")
        ]

        outcome = await machine.process("PROJ-1")

        assert outcome.status is TicketStatus.REQUIRES_REVIEW
        assert load_ticket(machine.db, "PROJ-1").retry_count == 0

    @pytest.mark.asyncio
    async def test_fallback_generator_is_used(self, machine, providers, add_ticket, session_key):
        primary = FakeGenerator("primary-ai", configured=False)
        backup = FakeGenerator("backup-ai")
        providers.generator = FallbackSolutionGenerator(primary, backup)
        add_ticket("PROJ-1", session_key)

        outcome = await machine.process("PROJ-1")

        assert outcome.status is TicketStatus.COMPLETED
        assert primary.calls == 0
        assert backup.calls == 1
        ticket = load_ticket(machine.db, "PROJ-1")
        assert ticket.ai_provider_used == "backup-ai"
        assert ticket.solution["substituted_from"] == "primary-ai"

    @pytest.mark.asyncio
    async def test_budget_exhausted_mid_flight(
        self, machine, meter, generator, executor, add_ticket, session_key
    ):
        add_ticket("PROJ-1", session_key)
        generator.on_generate = lambda: meter.debit(session_key, 10.0)

        outcome = await machine.process("PROJ-1")

        assert outcome.kind is StepOutcomeKind.REQUIRES_REVIEW
        ticket = load_ticket(machine.db, "PROJ-1")
        assert ticket.billing_reconciliation_required is True
        assert ticket.hours_consumed is None
        assert executor.calls == 1
        with machine.db.transaction() as session:
            assert len(ExecutionRepository(session).for_ticket("PROJ-1")) == 1
        assert meter.get(session_key).consumed_hours == 10.0

    @pytest.mark.asyncio
    async def test_start_without_session(self, machine, add_ticket):
        add_ticket("PROJ-1")

        outcome = await machine.process("PROJ-1")

        assert outcome.status is TicketStatus.REQUIRES_REVIEW
        assert outcome.error == "No session is attached to this ticket"

    @pytest.mark.asyncio
    async def test_start_with_paused_session(self, machine, meter, add_ticket, session_key):
        add_ticket("PROJ-1", session_key)
        meter.pause(session_key)

        outcome = await machine.process("PROJ-1")

        assert outcome.status is TicketStatus.REQUIRES_REVIEW
        assert outcome.error == "Owning session is not active"

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_ticket(self, machine, meter, monkeypatch, add_ticket, session_key):
        def explode(ticket):
            raise RuntimeError("scoring blew up")

        monkeypatch.setattr("ticketpilot.core.state_machine.assess_complexity", explode)
        add_ticket("PROJ-1", session_key)

        outcome = await machine.process("PROJ-1")

        assert outcome.status is TicketStatus.FAILED
        assert outcome.error == "RuntimeError: scoring blew up"
        assert meter.get(session_key).tickets_failed == 1


class TestOperatorActions:
    def test_cancel_pending_ticket(self, machine, add_ticket, session_key):
        add_ticket("PROJ-1", session_key)

        ticket = machine.cancel("PROJ-1")

        assert ticket.status == TicketStatus.CANCELLED
        assert ticket.hours_consumed == 0.0
        assert ticket.processing_completed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_mid_operation_stops_at_next_transition(
        self, machine, generator, executor, add_ticket, session_key
    ):
        add_ticket("PROJ-1", session_key)
        generator.on_generate = lambda: machine.cancel("PROJ-1")

        outcome = await machine.process("PROJ-1")

        assert outcome.kind is StepOutcomeKind.CANCELLED
        assert executor.calls == 0
        ticket = load_ticket(machine.db, "PROJ-1")
        assert ticket.cancel_requested is True
        assert ticket.hours_consumed == 0.0

    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self, machine, add_ticket, session_key):
        add_ticket("PROJ-1", session_key)
        await machine.process("PROJ-1")
        assert ticket_status(machine.db, "PROJ-1") is TicketStatus.COMPLETED

        with pytest.raises(InvalidTransitionError):
            machine._transition("PROJ-1", TicketStatus.ANALYZING)
        with pytest.raises(InvalidTransitionError):
            machine.cancel("PROJ-1")
        with pytest.raises(InvalidTransitionError):
            machine.restart("PROJ-1")

        outcome = await machine.step("PROJ-1")
        assert outcome.kind is StepOutcomeKind.IDLE

    def test_start_requires_pending(self, machine, add_ticket, session_key):
        add_ticket("PROJ-1", session_key)
        machine.start("PROJ-1")

        with pytest.raises(InvalidTransitionError):
            machine.start("PROJ-1")

    @pytest.mark.asyncio
    async def test_restart_opens_new_cycle(self, machine, source, add_ticket, session_key):
        add_ticket("PROJ-1", session_key)
        source.failures = [ProviderResult.failure(ErrorKind.BUSINESS, "ticket locked", provider="fake-tracker")]
        await machine.process("PROJ-1")
        assert ticket_status(machine.db, "PROJ-1") is TicketStatus.REQUIRES_REVIEW

        restarted = machine.restart("PROJ-1")

        assert restarted.status == TicketStatus.PENDING
        assert restarted.processing_cycle == 2
        assert restarted.error_message is None

        outcome = await machine.process("PROJ-1")
        assert outcome.status is TicketStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_restart_refused_without_budget(self, machine, meter, generator, clock, add_ticket, session_key):
        add_ticket("PROJ-1", session_key)
        generator.failures = [transient(), transient(), transient()]
        for _ in range(3):
            await machine.process("PROJ-1")
            clock.advance(seconds=301)
        assert ticket_status(machine.db, "PROJ-1") is TicketStatus.FAILED

        meter.cancel(session_key)

        with pytest.raises(BudgetExhaustedError):
            machine.restart("PROJ-1")
        assert ticket_status(machine.db, "PROJ-1") is TicketStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancel_closes_live_retry_attempt(self, machine, generator, add_ticket, session_key):
        add_ticket("PROJ-1", session_key)
        generator.failures = [transient()]
        await machine.process("PROJ-1")

        ticket = machine.cancel("PROJ-1")

        assert ticket.status == TicketStatus.CANCELLED
        with machine.db.transaction() as session:
            [attempt] = RetryAttemptRepository(session).for_ticket("PROJ-1")
        assert attempt.status == RetryStatus.FAILED
        assert attempt.next_attempt_at is None
        assert attempt.error_message == "Ticket cancelled"
        assert machine.retry.due_attempts(machine.clock() + timedelta(hours=1)) == []

    @pytest.mark.asyncio
    async def test_review_closes_live_retry_attempt(self, machine, clock, generator, add_ticket, session_key):
        add_ticket("PROJ-1", session_key)
        generator.failures = [
            transient(),
            ProviderResult.failure(ErrorKind.CONFIGURATION, "invalid api key", provider="fake-ai"),
        ]
        await machine.process("PROJ-1")
        clock.advance(seconds=301)

        outcome = await machine.process("PROJ-1")

        assert outcome.status is TicketStatus.REQUIRES_REVIEW
        with machine.db.transaction() as session:
            [attempt] = RetryAttemptRepository(session).for_ticket("PROJ-1")
        assert attempt.status == RetryStatus.FAILED
        assert "invalid api key" in attempt.error_message

    def test_mark_failed_leaves_terminal_tickets(self, machine, add_ticket, session_key):
        add_ticket("PROJ-1", session_key)
        machine.cancel("PROJ-1")

        outcome = machine.mark_failed("PROJ-1", "worker crashed")

        assert outcome.status is TicketStatus.CANCELLED
