"""Participant model describing one agent in a shared session."""

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


AGENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


class ProviderBinding(BaseModel):
    """Which provider and model answer for an agent."""

    model_config = ConfigDict(frozen=True)

    provider: str = Field(..., min_length=1, description="Provider family, e.g. anthropic or openai")
    model: str = Field(..., min_length=1, description="Model identifier passed to the provider")
    options: Dict[str, Any] = Field(default_factory=dict, description="Provider-specific invocation options")


class Participant(BaseModel):
    """An agent taking part in a session.

    Profiles are frozen once the session is created. Token consumption is
    tracked separately in the session's budget counters.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Agent identifier, unique within the session")
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    role: str = Field(default="", max_length=200, description="Short role label")
    instructions: Optional[str] = Field(None, description="System instructions for the agent")
    skills: List[str] = Field(default_factory=list, description="Skill tags used by role-based routing")
    aliases: List[str] = Field(default_factory=list, description="Extra names the agent answers to")
    provider: ProviderBinding = Field(..., description="Provider binding")
    max_tokens: Optional[int] = Field(
        None,
        gt=0,
        description="Per-agent token ceiling for the session; overrides the team-wide ceiling"
    )

    @field_validator('id')
    @classmethod
    def validate_id(cls, v):
        """Agent ids must be addressable with an @mention."""
        if not AGENT_ID_PATTERN.match(v):
            raise ValueError(f"Invalid agent id '{v}': use letters, digits, '-' or '_'")
        return v

    @field_validator('skills', 'aliases')
    @classmethod
    def normalize_tags(cls, v):
        cleaned = []
        for item in v:
            item = item.strip()
            if item and item.lower() not in {c.lower() for c in cleaned}:
                cleaned.append(item)
        return cleaned

    def addressable_names(self) -> List[str]:
        """Lower-cased names this agent can be addressed by, longest first."""
        names = {self.id.lower(), self.name.lower()}
        names.update(alias.lower() for alias in self.aliases)
        return sorted(names, key=lambda n: (-len(n), n))
