"""Error taxonomy for the conversation scheduler.

Only errors that must reach the caller are raised. Routing gaps, budget
rejections and approval denials are recovered inside the round and are
reported through ``ErrorCode`` values on routing results and messages.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Machine-readable error codes carried by errors and error messages."""

    ROUTING_UNAVAILABLE = "routing_unavailable"
    BUDGET_EXCEEDED = "budget_exceeded"
    APPROVAL_DENIED = "approval_denied"
    APPROVAL_NOT_FOUND = "approval_not_found"
    APPROVAL_ALREADY_RESOLVED = "approval_already_resolved"
    APPROVAL_CONFLICT = "approval_conflict"
    PLAN_NOT_PENDING = "plan_not_pending"
    SESSION_NOT_FOUND = "session_not_found"
    AMBIGUOUS_SESSION = "ambiguous_session"
    PERSISTENCE_FAILURE = "persistence_failure"
    PROVIDER_ERROR = "provider_error"
    INVALID_TRANSITION = "invalid_transition"


class HuddleError(Exception):
    """Base class for errors surfaced by the scheduler."""

    code: ErrorCode = ErrorCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context or {}


class SessionNotFoundError(HuddleError):
    """Raised when a session id does not resolve to a stored session."""

    code = ErrorCode.SESSION_NOT_FOUND

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", context={"session_id": session_id})
        self.session_id = session_id


class AmbiguousSessionError(HuddleError):
    """Raised when a session id prefix matches more than one session."""

    code = ErrorCode.AMBIGUOUS_SESSION

    def __init__(self, prefix: str, matches):
        matches = sorted(matches)
        super().__init__(
            f"Session prefix '{prefix}' matches {len(matches)} sessions: {', '.join(matches)}",
            context={"prefix": prefix, "matches": matches}
        )
        self.matches = matches


class PersistenceError(HuddleError):
    """Raised when the session store is unreachable or its data is corrupt."""

    code = ErrorCode.PERSISTENCE_FAILURE


class ApprovalNotFoundError(HuddleError):
    code = ErrorCode.APPROVAL_NOT_FOUND

    def __init__(self, request_id: str):
        super().__init__(f"Approval request not found: {request_id}", context={"request_id": request_id})


class ApprovalAlreadyResolvedError(HuddleError):
    code = ErrorCode.APPROVAL_ALREADY_RESOLVED

    def __init__(self, request_id: str):
        super().__init__(
            f"Approval request {request_id} is already resolved",
            context={"request_id": request_id}
        )


class ApprovalConflictError(HuddleError):
    """Raised when a turn asks for a second approval while one is pending."""

    code = ErrorCode.APPROVAL_CONFLICT


class PlanNotPendingError(HuddleError):
    code = ErrorCode.PLAN_NOT_PENDING

    def __init__(self, session_id: str):
        super().__init__(f"No plan is awaiting approval in session {session_id}", context={"session_id": session_id})


class InvalidTransitionError(HuddleError):
    """Raised on an illegal message status transition."""

    code = ErrorCode.INVALID_TRANSITION
