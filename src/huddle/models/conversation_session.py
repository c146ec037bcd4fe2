"""Session model holding the roster, history and scheduler state."""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from huddle.models.approval import ApprovalRequest
from huddle.models.budget import BudgetCounters
from huddle.models.message import Message
from huddle.models.participant import Participant
from huddle.models.plan import Plan, TaskAnalysis
from huddle.models.routing_state import ConversationMode, RoutingState


class CompactionSummary(BaseModel):
    """Summary text standing in for messages dropped from memory."""

    summary: str
    covered_through: int = Field(..., ge=0, description="Absolute message count the summary covers")
    fingerprint: str = Field(..., description="SHA-256 of the summarized text")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CompactionMarker(BaseModel):
    last_checkpoint_index: int = Field(default=0, ge=0, description="Message count at the last checkpoint")
    base_index: int = Field(default=0, ge=0, description="Absolute index of the first in-memory message")
    summaries: List[CompactionSummary] = Field(default_factory=list)

    @property
    def latest_summary(self) -> Optional[str]:
        return self.summaries[-1].summary if self.summaries else None


class PendingPlan(BaseModel):
    """A plan proposed to the human and not yet decided."""

    plan: Plan
    analysis: Optional[TaskAnalysis] = None
    trigger_message_id: str
    request_id: str


class Session(BaseModel):
    """A shared conversation between one human and several agents."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Session identifier")
    team_id: Optional[str] = Field(None, description="Team configuration the session was created from")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    mode: ConversationMode = Field(default=ConversationMode.FREE_CHAT)
    participants: List[Participant] = Field(default_factory=list)
    messages: List[Message] = Field(default_factory=list, description="In-memory history, oldest first")
    routing_state: RoutingState = Field(default_factory=RoutingState)
    budget: BudgetCounters = Field(default_factory=BudgetCounters)
    compaction: CompactionMarker = Field(default_factory=CompactionMarker)
    pending_approvals: List[ApprovalRequest] = Field(default_factory=list)
    pending_plan: Optional[PendingPlan] = None

    @model_validator(mode='after')
    def validate_consistency(self):
        """Enforce roster, history and routing invariants."""
        participant_ids = [p.id for p in self.participants]
        if len(set(participant_ids)) != len(participant_ids):
            raise ValueError("Duplicate participant ids in session")

        message_ids = [m.id for m in self.messages]
        if len(set(message_ids)) != len(message_ids):
            raise ValueError("Duplicate message ids in session")

        if not self.routing_state.is_valid_for(len(self.participants)):
            raise ValueError(
                f"Routing state points at participant {self.routing_state.last_speaker_index} "
                f"but the roster has {len(self.participants)} entries"
            )

        return self

    @property
    def message_count(self) -> int:
        """Absolute number of messages ever appended."""
        return self.compaction.base_index + len(self.messages)

    @property
    def participant_ids(self) -> List[str]:
        return [p.id for p in self.participants]

    def get_participant(self, agent_id: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.id == agent_id:
                return participant
        return None

    def has_message(self, message_id: str) -> bool:
        return any(m.id == message_id for m in self.messages)

    def find_message(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    @property
    def has_open_gates(self) -> bool:
        """True while an approval or plan decision is outstanding."""
        return self.pending_plan is not None or any(r.is_pending for r in self.pending_approvals)

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)
