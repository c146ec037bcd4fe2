"""
Unit tests for the turn executor.

A scripted provider drives each turn; the approval gate and budget tracker
are real.
"""

import pytest

from huddle.errors import ErrorCode
from huddle.models.approval import ApprovalKind
from huddle.models.budget import BudgetLimits, TokenUsage
from huddle.models.message import Message, MessageStatus
from huddle.models.team_config import PermissionMode, ToolApprovalConfig
from huddle.models.turn import ContentDelta, ConversationContext, GatedAction, UsageReport
from huddle.services.approval_gate import ApprovalGate
from huddle.services.budget_tracker import BudgetTracker
from huddle.services.turn_executor import TurnExecutor, estimate_tokens

from conftest import ScriptedProvider, make_participant


@pytest.fixture
def agent():
    return make_participant("builder")


@pytest.fixture
def context(agent):
    trigger = Message.from_human("s1", "please build it")
    return ConversationContext(session_id="s1", participant=agent, roster=[agent], messages=[trigger], trigger=trigger)


@pytest.fixture
def gate():
    return ApprovalGate(ToolApprovalConfig())


@pytest.fixture
def budget():
    return BudgetTracker(BudgetLimits())


def approve_all(gate, budget=1):
    async def listener(request):
        gate.resolve(request.id, True, budget)
    gate.add_request_listener(listener)


def deny_all(gate):
    async def listener(request):
        gate.resolve(request.id, False)
    gate.add_request_listener(listener)


class TestTurnExecution:
    """Happy path and accounting."""

    @pytest.mark.asyncio
    async def test_streams_content_and_reports_usage(self, agent, context, gate, budget):
        provider = ScriptedProvider()
        provider.queue(
            "builder",
            ContentDelta(text="Hello "),
            ContentDelta(text="world"),
            UsageReport(usage=TokenUsage(input_tokens=20, output_tokens=2))
        )
        executor = TurnExecutor(provider, gate)

        outcome = await executor.run_turn(agent, context, budget)

        assert outcome.completed
        assert outcome.message.content == "Hello world"
        assert outcome.message.author == "builder"
        assert outcome.message.usage.total_tokens == 22
        assert outcome.invocation_id is not None
        assert budget.counters.agent_tokens == {}

    @pytest.mark.asyncio
    async def test_missing_usage_is_estimated(self, agent, context, gate, budget):
        provider = ScriptedProvider()
        provider.queue("builder", ContentDelta(text="x" * 40))
        executor = TurnExecutor(provider, gate)

        outcome = await executor.run_turn(agent, context, budget)

        assert outcome.message.usage.estimated
        assert outcome.message.usage.output_tokens == 10
        assert budget.counters.session_tokens == 0

    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcde") == 2


class TestBudgetRejection:
    """A rejected turn never reaches the provider."""

    @pytest.mark.asyncio
    async def test_rejected_turn_skips_provider(self, agent, context, gate):
        budget = BudgetTracker(BudgetLimits(max_tokens_per_agent_per_session=100))
        budget.record("builder", TokenUsage(input_tokens=100), "earlier")
        provider = ScriptedProvider()
        executor = TurnExecutor(provider, gate)

        outcome = await executor.run_turn(agent, context, budget)

        assert provider.calls == []
        assert outcome.message.status == MessageStatus.ERROR
        assert outcome.message.error_code == ErrorCode.BUDGET_EXCEEDED
        assert "agent-ceiling-exceeded" in outcome.message.error
        assert not outcome.admission.admitted
        assert outcome.invocation_id is None
        assert budget.counters.agent_tokens["builder"] == 100


class TestGatedActions:
    """Gated actions suspend the turn on the approval gate."""

    @pytest.mark.asyncio
    async def test_approved_action_continues(self, agent, context, gate, budget):
        approve_all(gate)
        provider = ScriptedProvider()
        provider.queue(
            "builder",
            GatedAction(action_id="act-1", kind=ApprovalKind.WRITE, tool_name="write_file"),
            ContentDelta(text="wrote it")
        )
        executor = TurnExecutor(provider, gate)

        outcome = await executor.run_turn(agent, context, budget)

        assert outcome.completed
        assert outcome.approved_actions == ["act-1"]
        assert provider.decisions[0].approved
        assert provider.decisions[0].request_id is not None

    @pytest.mark.asyncio
    async def test_denied_action_is_not_retried(self, agent, context, gate, budget):
        deny_all(gate)
        provider = ScriptedProvider()
        provider.queue(
            "builder",
            GatedAction(action_id="act-1", kind=ApprovalKind.SHELL, tool_name="bash"),
            GatedAction(action_id="act-1", kind=ApprovalKind.SHELL, tool_name="bash"),
            ContentDelta(text="could not run it")
        )
        executor = TurnExecutor(provider, gate)

        outcome = await executor.run_turn(agent, context, budget)

        assert outcome.completed
        assert outcome.denied_actions == ["act-1"]
        assert [d.approved for d in provider.decisions] == [False, False]
        assert provider.decisions[1].reason == "Action was already denied in this turn"
        assert len(gate.get_audit_records("s1")) == 2

    @pytest.mark.asyncio
    async def test_plan_kind_from_agent_is_denied(self, agent, context, gate, budget):
        provider = ScriptedProvider()
        provider.queue(
            "builder",
            GatedAction(action_id="plan-1", kind=ApprovalKind.PLAN),
            ContentDelta(text="no plan then")
        )
        executor = TurnExecutor(provider, gate)

        outcome = await executor.run_turn(agent, context, budget)

        assert outcome.completed
        assert outcome.denied_actions == ["plan-1"]
        assert provider.decisions[0].approved is False
        assert gate.pending_requests() == []
        assert gate.get_audit_records("s1") == []

    @pytest.mark.asyncio
    async def test_until_response_end_allowance_expires_after_turn(self, agent, context, gate, budget):
        approve_all(gate, budget=-1)
        provider = ScriptedProvider()
        provider.queue(
            "builder",
            GatedAction(action_id="act-1", kind=ApprovalKind.WRITE, tool_name="write_file"),
            GatedAction(action_id="act-2", kind=ApprovalKind.WRITE, tool_name="write_file")
        )
        executor = TurnExecutor(provider, gate)

        await executor.run_turn(agent, context, budget)

        assert [d.approved for d in provider.decisions] == [True, True]
        assert gate.allowance("s1", "builder", ApprovalKind.WRITE, "write_file") == 0

    @pytest.mark.asyncio
    async def test_policy_approved_action_needs_no_listener(self, agent, context, budget):
        gate = ApprovalGate(ToolApprovalConfig(permission_mode=PermissionMode.AUTO))
        provider = ScriptedProvider()
        provider.queue(
            "builder",
            GatedAction(action_id="act-1", kind=ApprovalKind.WRITE, tool_name="edit_file"),
            ContentDelta(text="edited")
        )

        outcome = await TurnExecutor(provider, gate).run_turn(agent, context, budget)

        assert outcome.approved_actions == ["act-1"]


class TestProviderFailure:
    """Provider errors become error messages."""

    @pytest.mark.asyncio
    async def test_provider_error_marks_message(self, agent, context, gate, budget):
        provider = ScriptedProvider()
        provider.queue("builder", ContentDelta(text="partial"), RuntimeError("connection reset"))
        executor = TurnExecutor(provider, gate)

        outcome = await executor.run_turn(agent, context, budget)

        assert outcome.message.status == MessageStatus.ERROR
        assert outcome.message.error_code == ErrorCode.PROVIDER_ERROR
        assert outcome.message.content == "partial"
        assert "connection reset" in outcome.message.error
        assert outcome.invocation_id is None
        assert budget.counters.session_tokens == 0
