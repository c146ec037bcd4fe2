"""Budget limits, counters and admission decisions."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class TokenUsage(BaseModel):
    """Token usage reported for one agent invocation."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    estimated: bool = Field(default=False, description="True when derived from text length")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class BudgetLimits(BaseModel):
    """Nullable ceilings; None means unlimited."""

    max_tokens_per_agent_per_session: Optional[int] = Field(None, gt=0)
    max_tokens_per_session: Optional[int] = Field(None, gt=0)
    max_invocations_per_minute: Optional[int] = Field(None, gt=0)


class BudgetCounters(BaseModel):
    """Consumption counters owned by a session.

    Counters only grow within a session. Compaction of history leaves them
    untouched.
    """

    agent_tokens: Dict[str, int] = Field(default_factory=dict, description="Tokens consumed per agent")
    session_tokens: int = Field(default=0, ge=0, description="Tokens consumed by the whole session")
    agent_invocations: Dict[str, int] = Field(default_factory=dict, description="Recorded invocations per agent")
    invocation_times: Dict[str, List[float]] = Field(
        default_factory=dict,
        description="Epoch timestamps of recent invocations per agent, for the rate window"
    )
    recorded_invocations: List[str] = Field(
        default_factory=list,
        description="Ids of recently recorded invocations, used to reject double counting"
    )

    @field_validator('agent_tokens', 'agent_invocations')
    @classmethod
    def validate_non_negative(cls, v):
        for agent_id, value in v.items():
            if value < 0:
                raise ValueError(f"Counter for {agent_id} cannot be negative")
        return v


class RejectionReason(str, Enum):
    """Why an invocation was not admitted."""

    AGENT_CEILING_EXCEEDED = "agent-ceiling-exceeded"
    SESSION_CEILING_EXCEEDED = "session-ceiling-exceeded"
    RATE_LIMITED = "rate-limited"


class BudgetDecision(BaseModel):
    """Outcome of an admission check."""

    admitted: bool
    agent_id: str
    reason: Optional[RejectionReason] = None
    detail: str = ""
    consumed: Optional[int] = Field(None, description="Counter value that triggered the rejection")
    limit: Optional[int] = Field(None, description="Ceiling that triggered the rejection")

    @classmethod
    def admit(cls, agent_id: str) -> "BudgetDecision":
        return cls(admitted=True, agent_id=agent_id)

    @classmethod
    def reject(
        cls,
        agent_id: str,
        reason: RejectionReason,
        detail: str,
        consumed: int,
        limit: int
    ) -> "BudgetDecision":
        return cls(
            admitted=False,
            agent_id=agent_id,
            reason=reason,
            detail=detail,
            consumed=consumed,
            limit=limit
        )
