"""Plans, task analysis and task completion summaries."""

from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


EXCERPT_LIMIT = 150
EXCERPT_MIN_CUT = 80


class EstimatedCost(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskComplexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class PlanStatus(str, Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"


class PlanStep(BaseModel):
    """One unit of plan work bound to a single agent."""

    model_config = ConfigDict(frozen=True)

    agent_id: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1, description="What the agent is asked to do")
    depends_on: List[int] = Field(default_factory=list, description="Indices of earlier steps this step needs")


class Plan(BaseModel):
    """An ordered multi-step plan. Frozen, so an approved plan cannot drift."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    description: str = Field(default="")
    steps: List[PlanStep] = Field(..., min_length=1)
    estimated_rounds: int = Field(default=1, ge=1)
    estimated_cost: EstimatedCost = Field(default=EstimatedCost.LOW)

    @model_validator(mode='after')
    def validate_dependencies(self):
        """Dependencies must point at earlier steps."""
        for index, step in enumerate(self.steps):
            for dependency in step.depends_on:
                if dependency < 0 or dependency >= index:
                    raise ValueError(f"Step {index} depends on invalid step {dependency}")
        return self

    @property
    def agent_ids(self) -> List[str]:
        seen: List[str] = []
        for step in self.steps:
            if step.agent_id not in seen:
                seen.append(step.agent_id)
        return seen


class TaskAnalysis(BaseModel):
    """What a planner concluded about an incoming message."""

    intent: str = Field(default="")
    complexity: TaskComplexity = Field(default=TaskComplexity.SIMPLE)
    plan: Optional[Plan] = None
    needs_approval: bool = Field(default=True)


class AgentContribution(BaseModel):
    """What one agent produced in one supervised round."""

    agent_id: str
    agent_name: str
    role: str = ""
    action: str
    excerpt: str = ""
    round: int = Field(..., ge=1)


class TaskMetadata(BaseModel):
    intent: str = ""
    complexity: TaskComplexity = TaskComplexity.SIMPLE
    total_rounds: int = Field(default=0, ge=0)
    max_rounds: int = Field(default=5, ge=1)
    plan_description: Optional[str] = None


class TaskCompletionSummary(BaseModel):
    """Closing record of a supervised multi-round task."""

    executive_summary: str
    contributions: List[AgentContribution] = Field(default_factory=list)
    metadata: TaskMetadata = Field(default_factory=TaskMetadata)

    @field_validator('contributions')
    @classmethod
    def validate_one_per_round(cls, v):
        """One contribution per (agent, round) pair."""
        keys = [(c.agent_id, c.round) for c in v]
        if len(set(keys)) != len(keys):
            raise ValueError("Duplicate contribution for the same agent and round")
        return v


def make_excerpt(content: str, limit: int = EXCERPT_LIMIT) -> str:
    """Shorten ``content`` to ``limit`` characters, preferring a word boundary."""
    text = " ".join(content.split())
    if len(text) <= limit:
        return text
    cut = text[:limit]
    last_space = cut.rfind(" ")
    if last_space > EXCERPT_MIN_CUT:
        cut = cut[:last_space]
    return cut + "..."
