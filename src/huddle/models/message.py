"""Message model with status transitions and structured payloads."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from huddle.errors import ErrorCode, InvalidTransitionError
from huddle.models.approval import ApprovalRequest
from huddle.models.budget import TokenUsage
from huddle.models.plan import Plan, PlanStatus, TaskCompletionSummary


HUMAN_AUTHOR = "human"
ORCHESTRATOR_AUTHOR = "orchestrator"


class MessageStatus(str, Enum):
    """Lifecycle status of a message.

    Agent messages start ``pending`` and settle once on ``complete`` or
    ``error``. Human input is recorded as ``sent``.
    """

    PENDING = "pending"
    COMPLETE = "complete"
    SENT = "sent"
    ERROR = "error"


class PlanPayload(BaseModel):
    kind: Literal["plan"] = "plan"
    plan: Plan
    status: PlanStatus = PlanStatus.PROPOSED


class ApprovalPayload(BaseModel):
    kind: Literal["approval"] = "approval"
    request: ApprovalRequest


class TaskSummaryPayload(BaseModel):
    kind: Literal["task_summary"] = "task_summary"
    summary: TaskCompletionSummary


MessagePayload = Annotated[
    Union[PlanPayload, ApprovalPayload, TaskSummaryPayload],
    Field(discriminator="kind")
]


class Message(BaseModel):
    """One entry in a session's append-only history."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Unique message identifier")
    session_id: str = Field(..., description="Owning session")
    author: str = Field(..., min_length=1, description="'human', 'orchestrator' or an agent id")
    content: str = Field(default="", description="Message text")
    status: MessageStatus = Field(default=MessageStatus.PENDING)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Optional[MessagePayload] = None
    usage: Optional[TokenUsage] = None
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None

    @field_validator('content')
    @classmethod
    def validate_content_size(cls, v):
        if len(v) > 1_000_000:
            raise ValueError("Message content exceeds 1MB")
        return v

    @classmethod
    def from_human(cls, session_id: str, content: str) -> "Message":
        return cls(session_id=session_id, author=HUMAN_AUTHOR, content=content, status=MessageStatus.SENT)

    @classmethod
    def from_orchestrator(
        cls,
        session_id: str,
        content: str,
        payload: Optional[BaseModel] = None
    ) -> "Message":
        return cls(
            session_id=session_id,
            author=ORCHESTRATOR_AUTHOR,
            content=content,
            status=MessageStatus.COMPLETE,
            payload=payload
        )

    @property
    def is_human(self) -> bool:
        return self.author == HUMAN_AUTHOR

    def _leave_pending(self, target: MessageStatus) -> None:
        if self.status != MessageStatus.PENDING:
            raise InvalidTransitionError(
                f"Message {self.id} cannot move from {self.status.value} to {target.value}",
                context={"message_id": self.id}
            )
        self.status = target

    def mark_complete(self, content: str, usage: Optional[TokenUsage] = None) -> None:
        self._leave_pending(MessageStatus.COMPLETE)
        self.content = content
        self.usage = usage
        self.timestamp = datetime.now(timezone.utc)

    def mark_error(self, code: ErrorCode, error: str, content: str = "") -> None:
        self._leave_pending(MessageStatus.ERROR)
        self.error_code = code
        self.error = error
        self.content = content
        self.timestamp = datetime.now(timezone.utc)
