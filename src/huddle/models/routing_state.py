"""Routing state and routing decisions."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from huddle.errors import ErrorCode


class ConversationMode(str, Enum):
    """Routing policy applied to each human message."""

    FREE_CHAT = "free_chat"
    SEQUENTIAL = "sequential"
    TAG_ONLY = "tag_only"
    ROLE_BASED = "role_based"


class RoutingState(BaseModel):
    """Rotation bookkeeping carried between rounds.

    ``last_speaker_index`` is None until somebody has spoken; afterwards it
    always points at a live participant.
    """

    mode: ConversationMode = Field(default=ConversationMode.FREE_CHAT)
    last_speaker_index: Optional[int] = Field(None, ge=0, description="Index of the last speaker in the roster")
    round_counter: int = Field(default=0, ge=0, description="Rounds completed in the session")

    def is_valid_for(self, participant_count: int) -> bool:
        if self.last_speaker_index is None:
            return True
        return 0 <= self.last_speaker_index < participant_count

    def advanced(self, last_speaker_index: Optional[int]) -> "RoutingState":
        """State after one more completed round."""
        return self.model_copy(update={
            "last_speaker_index": (
                self.last_speaker_index if last_speaker_index is None else last_speaker_index
            ),
            "round_counter": self.round_counter + 1
        })

    def reset(self) -> "RoutingState":
        return RoutingState(mode=self.mode)


class RoutingResult(BaseModel):
    """Ordered targets for the next round plus an explanation."""

    target_ids: List[str] = Field(default_factory=list)
    reason: str = Field(..., min_length=1)
    fallback_used: bool = Field(default=False, description="True when the strategy fell back to a default policy")
    error_code: Optional[ErrorCode] = Field(None, description="Set to ROUTING_UNAVAILABLE for an empty roster")
    help_content: Optional[str] = Field(None, description="Addressing hints for the human when a fallback happened")

    @field_validator('target_ids')
    @classmethod
    def validate_unique(cls, v):
        if len(set(v)) != len(v):
            raise ValueError("Routing targets must not repeat")
        return v

    @property
    def is_empty(self) -> bool:
        return not self.target_ids
