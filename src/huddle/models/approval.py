"""Approval requests for gated actions and plans."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from huddle.errors import ApprovalAlreadyResolvedError


# Signed budget convention: -1 keeps approving until the response ends.
UNLIMITED_UNTIL_RESPONSE_END = -1


class ApprovalKind(str, Enum):
    SHELL = "shell"
    WRITE = "write"
    READ = "read"
    URL = "url"
    MCP = "mcp"
    PLAN = "plan"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class ApprovalResolution(BaseModel):
    """A human (or policy) decision. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    approved: bool
    budget: int = Field(default=1, description="1 = once, N = N uses, -1 = until the response ends")
    decided_by: str = Field(default="human", description="human, policy, allowance or timeout")
    reason: Optional[str] = None
    resolved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode='before')
    @classmethod
    def normalize_budget(cls, data):
        """A denial carries no budget."""
        if isinstance(data, dict) and not data.get("approved", False):
            data = {**data, "budget": 0}
        return data

    @model_validator(mode='after')
    def validate_budget(self):
        if self.approved and self.budget != UNLIMITED_UNTIL_RESPONSE_END and self.budget < 1:
            raise ValueError("Approval budget must be -1 or a positive count")
        return self


class ApprovalRequest(BaseModel):
    """A gated action (or plan) waiting on a decision."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str
    agent_id: str = Field(..., description="Requesting agent id, or 'orchestrator' for plans")
    kind: ApprovalKind
    tool_name: Optional[str] = Field(None, description="Tool or command name used for allowance matching")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    action_id: Optional[str] = Field(None, description="Provider-side id of the gated action")
    trigger_message_id: Optional[str] = Field(None, description="Human message that started the turn")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    resolution: Optional[ApprovalResolution] = None

    @property
    def status(self) -> ApprovalStatus:
        if self.resolution is None:
            return ApprovalStatus.PENDING
        return ApprovalStatus.APPROVED if self.resolution.approved else ApprovalStatus.DENIED

    @property
    def is_pending(self) -> bool:
        return self.resolution is None

    @property
    def allowance_key(self) -> str:
        return f"{self.session_id}:{self.agent_id}:{self.kind.value}:{self.tool_name or '*'}"

    def resolve(self, resolution: ApprovalResolution) -> None:
        """Set the resolution exactly once."""
        if self.resolution is not None:
            raise ApprovalAlreadyResolvedError(self.id)
        self.resolution = resolution
