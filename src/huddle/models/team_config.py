"""Team configuration consumed by the orchestrator."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from huddle.models.budget import BudgetLimits
from huddle.models.participant import Participant
from huddle.models.routing_state import ConversationMode


class PermissionMode(str, Enum):
    """How gated actions outside the read-only tier are handled."""

    AUTO = "auto"
    PROMPT = "prompt"
    DENY = "deny"


class ToolApprovalConfig(BaseModel):
    """Tool risk tiers and approval behaviour."""

    permission_mode: PermissionMode = Field(default=PermissionMode.PROMPT)
    read_only: List[str] = Field(
        default_factory=lambda: ["read*", "view*", "list*", "glob*", "grep*", "search*"],
        description="Glob patterns for tools that never need approval"
    )
    write: List[str] = Field(
        default_factory=lambda: ["write*", "edit*", "create*"],
        description="Glob patterns for tools that modify files"
    )
    dangerous: List[str] = Field(
        default_factory=lambda: ["shell*", "bash*", "exec*", "delete*", "rm*"],
        description="Glob patterns for tools that always prompt"
    )
    approval_timeout_seconds: Optional[float] = Field(
        None,
        gt=0,
        description="Deny a pending request after this long; None waits indefinitely"
    )


class CompactionConfig(BaseModel):
    enabled: bool = True
    checkpoint_interval: int = Field(default=20, ge=1, description="Messages between checkpoints")
    max_full_history_chars: int = Field(
        default=50_000,
        gt=0,
        description="Checkpoints keep full history below this size, a summary above it"
    )
    keep_recent_messages: int = Field(default=10, ge=1, description="Messages kept verbatim after compaction")


class PersistenceConfig(BaseModel):
    enabled: bool = True
    directory: str = Field(default="~/.huddle/sessions")


class SupervisionConfig(BaseModel):
    max_rounds: int = Field(default=5, ge=1, le=50, description="Upper bound on supervised plan rounds")
    parallel_fan_out: bool = Field(default=True, description="Run free-chat broadcast turns concurrently")


class TeamConfig(BaseModel):
    """A team of agents plus the scheduler policies applied to it."""

    team_id: str = Field(default="default", min_length=1)
    mission: Optional[str] = None
    conversation_mode: ConversationMode = Field(default=ConversationMode.FREE_CHAT)
    agents: List[Participant] = Field(default_factory=list)
    default_agent_id: Optional[str] = None
    budgets: BudgetLimits = Field(default_factory=BudgetLimits)
    tool_approval: ToolApprovalConfig = Field(default_factory=ToolApprovalConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    supervision: SupervisionConfig = Field(default_factory=SupervisionConfig)

    @field_validator('agents')
    @classmethod
    def validate_agents(cls, v):
        ids = [agent.id.lower() for agent in v]
        duplicates = sorted({agent_id for agent_id in ids if ids.count(agent_id) > 1})
        if duplicates:
            raise ValueError(f"Duplicate agent ids: {', '.join(duplicates)}")
        return v

    @model_validator(mode='after')
    def validate_default_agent(self):
        if self.default_agent_id is not None and self.default_agent_id not in {a.id for a in self.agents}:
            raise ValueError(f"default_agent_id '{self.default_agent_id}' is not a declared agent")
        return self
