"""Checkpoint snapshots used for resume and compaction."""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from huddle.models.budget import BudgetCounters
from huddle.models.message import Message
from huddle.models.participant import Participant
from huddle.models.routing_state import RoutingState


class Checkpoint(BaseModel):
    """Snapshot of a session at a given message index.

    ``history`` holds either every message up to ``message_index`` or, when
    ``summarized`` is set, only the most recent ones with ``summary``
    standing in for the rest.
    """

    thread_id: str = Field(..., description="Checkpoint thread, the session id by default")
    session_id: str
    message_index: int = Field(..., ge=0, description="Absolute message count covered by the snapshot")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    participants: List[Participant] = Field(default_factory=list)
    routing_state: RoutingState
    budget: BudgetCounters
    history: List[Message] = Field(default_factory=list)
    history_start_index: int = Field(default=0, ge=0, description="Absolute index of history[0]")
    summarized: bool = False
    summary: Optional[str] = None
    summarized_count: int = Field(default=0, ge=0, description="Messages represented by the summary only")
