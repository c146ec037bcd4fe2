"""
Unit tests for the data models and their validation rules.
"""

import pytest
from pydantic import ValidationError

from huddle.errors import ApprovalAlreadyResolvedError, ErrorCode, InvalidTransitionError
from huddle.models.approval import ApprovalKind, ApprovalRequest, ApprovalResolution, ApprovalStatus
from huddle.models.budget import TokenUsage
from huddle.models.conversation_session import Session
from huddle.models.message import ApprovalPayload, Message, MessageStatus, PlanPayload
from huddle.models.plan import AgentContribution, Plan, PlanStep, TaskCompletionSummary, make_excerpt
from huddle.models.routing_state import RoutingState
from huddle.models.team_config import TeamConfig

from conftest import make_participant


@pytest.fixture
def plan():
    return Plan(
        description="Ship the parser",
        steps=[
            PlanStep(agent_id="a", action="Design the grammar"),
            PlanStep(agent_id="b", action="Implement it", depends_on=[0])
        ]
    )


class TestParticipant:
    """Participant profile validation."""

    def test_invalid_id_rejected(self):
        with pytest.raises(ValidationError):
            make_participant("has space")

    def test_aliases_deduplicated(self):
        participant = make_participant("dev", aliases=["Builder", "builder", " coder "])

        assert participant.aliases == ["Builder", "coder"]

    def test_profile_is_frozen(self):
        participant = make_participant("dev")

        with pytest.raises(ValidationError):
            participant.name = "Other"


class TestMessage:
    """Message status transitions."""

    def test_pending_to_complete(self):
        message = Message(session_id="s1", author="a")

        message.mark_complete("done", TokenUsage(input_tokens=3, output_tokens=4))

        assert message.status == MessageStatus.COMPLETE
        assert message.usage.total_tokens == 7

    def test_pending_to_error(self):
        message = Message(session_id="s1", author="a")

        message.mark_error(ErrorCode.BUDGET_EXCEEDED, "agent-ceiling-exceeded: used 100 of 100")

        assert message.status == MessageStatus.ERROR
        assert message.error_code == ErrorCode.BUDGET_EXCEEDED

    def test_settled_message_cannot_change(self):
        message = Message(session_id="s1", author="a")
        message.mark_complete("done")

        with pytest.raises(InvalidTransitionError):
            message.mark_error(ErrorCode.PROVIDER_ERROR, "late failure")
        with pytest.raises(InvalidTransitionError):
            message.mark_complete("again")

    def test_human_message_is_sent(self):
        message = Message.from_human("s1", "hello")

        assert message.status == MessageStatus.SENT
        assert message.is_human

    def test_payload_round_trips_by_kind(self, plan):
        message = Message.from_orchestrator("s1", "plan", PlanPayload(plan=plan))

        restored = Message.model_validate(message.model_dump(mode="json"))

        assert isinstance(restored.payload, PlanPayload)
        assert restored.payload.plan.steps[1].depends_on == [0]

    def test_approval_payload_keeps_request(self):
        request = ApprovalRequest(session_id="s1", agent_id="a", kind=ApprovalKind.SHELL, tool_name="bash")
        message = Message.from_orchestrator("s1", "needs approval", ApprovalPayload(request=request))

        restored = Message.model_validate_json(message.model_dump_json())

        assert isinstance(restored.payload, ApprovalPayload)
        assert restored.payload.request.tool_name == "bash"


class TestApproval:
    """Approval resolution rules."""

    def test_denial_forces_zero_budget(self):
        resolution = ApprovalResolution(approved=False, budget=5)

        assert resolution.budget == 0

    def test_zero_budget_approval_rejected(self):
        with pytest.raises(ValidationError):
            ApprovalResolution(approved=True, budget=0)

    def test_resolution_is_immutable(self):
        resolution = ApprovalResolution(approved=True)

        with pytest.raises(ValidationError):
            resolution.approved = False

    def test_request_resolves_once(self):
        request = ApprovalRequest(session_id="s1", agent_id="a", kind=ApprovalKind.WRITE)
        request.resolve(ApprovalResolution(approved=True))

        assert request.status == ApprovalStatus.APPROVED
        with pytest.raises(ApprovalAlreadyResolvedError):
            request.resolve(ApprovalResolution(approved=False))
        assert request.status == ApprovalStatus.APPROVED


class TestPlan:
    """Plan and summary validation."""

    def test_plan_needs_steps(self):
        with pytest.raises(ValidationError):
            Plan(steps=[])

    def test_dependency_must_point_backwards(self):
        with pytest.raises(ValidationError):
            Plan(steps=[PlanStep(agent_id="a", action="x", depends_on=[1]), PlanStep(agent_id="b", action="y")])

    def test_agent_ids_in_first_appearance_order(self):
        plan = Plan(steps=[
            PlanStep(agent_id="b", action="x"),
            PlanStep(agent_id="a", action="y"),
            PlanStep(agent_id="b", action="z")
        ])

        assert plan.agent_ids == ["b", "a"]

    def test_one_contribution_per_agent_and_round(self):
        contribution = AgentContribution(agent_id="a", agent_name="A", action="x", round=1)

        with pytest.raises(ValidationError):
            TaskCompletionSummary(executive_summary="done", contributions=[contribution, contribution])

    def test_excerpt_short_text_unchanged(self):
        assert make_excerpt("  short   text ") == "short text"

    def test_excerpt_cuts_at_word_boundary(self):
        text = " ".join(["word"] * 60)

        excerpt = make_excerpt(text)

        assert excerpt.endswith("word...")
        assert len(excerpt) <= 153

    def test_excerpt_hard_cut_without_spaces(self):
        excerpt = make_excerpt("x" * 400)

        assert excerpt == "x" * 150 + "..."


class TestSessionAndTeam:
    """Session and team invariants."""

    def test_routing_index_must_point_at_roster(self):
        with pytest.raises(ValidationError):
            Session(
                participants=[make_participant("a")],
                routing_state=RoutingState(last_speaker_index=3)
            )

    def test_duplicate_participants_rejected(self):
        with pytest.raises(ValidationError):
            Session(participants=[make_participant("a"), make_participant("a")])

    def test_message_count_includes_compacted_messages(self):
        session = Session(participants=[make_participant("a")])
        session.compaction.base_index = 40
        session.messages.append(Message.from_human(session.id, "hi"))

        assert session.message_count == 41

    def test_team_default_agent_must_exist(self):
        with pytest.raises(ValidationError):
            TeamConfig(agents=[make_participant("a")], default_agent_id="zed")

    def test_team_duplicate_agents_rejected(self):
        with pytest.raises(ValidationError):
            TeamConfig(agents=[make_participant("a"), make_participant("A")])
