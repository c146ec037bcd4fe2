"""Provider stream events, turn context and round results."""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from huddle.models.approval import ApprovalKind
from huddle.models.budget import BudgetDecision, TokenUsage
from huddle.models.checkpoint import Checkpoint
from huddle.models.message import Message, MessageStatus
from huddle.models.participant import Participant
from huddle.models.plan import PlanStatus, PlanStep, TaskCompletionSummary
from huddle.models.routing_state import RoutingResult


class ContentDelta(BaseModel):
    """A chunk of streamed agent text."""

    type: Literal["content"] = "content"
    text: str


class GatedAction(BaseModel):
    """An agent asking to run an action that may need human approval."""

    type: Literal["gated_action"] = "gated_action"
    action_id: str = Field(..., description="Provider-side id; a retried action reuses it")
    kind: ApprovalKind
    tool_name: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class UsageReport(BaseModel):
    type: Literal["usage"] = "usage"
    usage: TokenUsage


ProviderEvent = Union[ContentDelta, GatedAction, UsageReport]


class ApprovalDecision(BaseModel):
    """Sent back into the provider stream after a gated action."""

    action_id: str
    approved: bool
    request_id: Optional[str] = None
    reason: Optional[str] = None


class ConversationContext(BaseModel):
    """Everything a provider needs to produce one agent turn."""

    session_id: str
    participant: Participant
    roster: List[Participant] = Field(default_factory=list)
    summary: Optional[str] = Field(None, description="Summary of compacted history")
    messages: List[Message] = Field(default_factory=list, description="Recent history, oldest first")
    trigger: Message = Field(..., description="Human message the round responds to")
    plan_step: Optional[PlanStep] = None
    round_number: int = Field(default=1, ge=1)

    def transcript_chars(self) -> int:
        total = len(self.summary or "")
        total += sum(len(m.content) for m in self.messages)
        return total


class TurnOutcome(BaseModel):
    """What one agent turn produced."""

    agent_id: str
    message: Message
    admission: BudgetDecision
    denied_actions: List[str] = Field(default_factory=list)
    approved_actions: List[str] = Field(default_factory=list)
    invocation_id: Optional[str] = Field(None, description="Set when usage is still to be recorded against the budget")

    @property
    def completed(self) -> bool:
        return self.message.status == MessageStatus.COMPLETE


class RoundResult(BaseModel):
    """Result of processing one human message."""

    session_id: str
    trigger: Message
    routing: Optional[RoutingResult] = None
    messages: List[Message] = Field(default_factory=list, description="Messages produced, in append order")
    plan_status: Optional[PlanStatus] = None
    summary: Optional[TaskCompletionSummary] = None
    checkpoint: Optional[Checkpoint] = None
