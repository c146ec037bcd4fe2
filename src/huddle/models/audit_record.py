"""AuditRecord model for gate and budget decisions."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


class EventType(str, Enum):
    """Audit event type enumeration."""

    APPROVAL = "approval"
    PLAN = "plan"
    BUDGET = "budget"
    ROUTING = "routing"
    SESSION = "session"
    COMPACTION = "compaction"


class ResultStatus(str, Enum):
    """Operation result status enumeration."""

    SUCCESS = "success"
    BLOCKED = "blocked"
    PENDING = "pending"
    TIMEOUT = "timeout"


class AuditRecord(BaseModel):
    """Compliance log entry for a scheduler decision."""

    record_id: str = Field(default_factory=lambda: str(uuid4()), description="Unique identifier for the audit record")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="When the event occurred")
    event_type: EventType = Field(..., description="Type of event")
    session_id: Optional[str] = Field(None, description="Related session")
    agent_id: Optional[str] = Field(None, description="Agent that triggered the event")
    action: str = Field(..., description="Specific action or operation")
    result: ResultStatus = Field(..., description="Outcome of the action")
    reason: Optional[str] = Field(None, description="Rationale for the decision")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional event metadata")

    @field_validator('action')
    @classmethod
    def validate_action(cls, v):
        """Validate action is not empty."""
        if not v.strip():
            raise ValueError("action cannot be empty")
        return v.strip()
