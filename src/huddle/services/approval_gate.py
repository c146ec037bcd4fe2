"""Approval gate for gated agent actions and multi-step plans."""

import asyncio
import logging
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from huddle.errors import ApprovalConflictError, ApprovalNotFoundError
from huddle.lib.logging_config import AuditLogger
from huddle.lib.metrics import SchedulerMetrics
from huddle.lib.observability import approval_span
from huddle.models.approval import (
    UNLIMITED_UNTIL_RESPONSE_END,
    ApprovalKind,
    ApprovalRequest,
    ApprovalResolution,
)
from huddle.models.audit_record import AuditRecord, EventType, ResultStatus
from huddle.models.team_config import PermissionMode, ToolApprovalConfig


logger = logging.getLogger(__name__)

RequestListener = Callable[[ApprovalRequest], Awaitable[None]]


class ToolTier(str, Enum):
    READ_ONLY = "read_only"
    WRITE = "write"
    DANGEROUS = "dangerous"


class ApprovalGate:
    """Holds pending approval requests and the allowances granted for them.

    A request that policy cannot settle suspends its caller on a future
    until ``resolve`` is called. At most one request per (session, agent)
    may be pending. Allowances are keyed by session, agent, kind and tool:
    a count N is consumed one use at a time, and -1 lasts until
    ``end_response`` for that agent.
    """

    def __init__(
        self,
        config: ToolApprovalConfig,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[SchedulerMetrics] = None
    ):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.audit_logger = audit_logger or AuditLogger()
        self.metrics = metrics
        self._pending: Dict[str, ApprovalRequest] = {}
        self._waiters: Dict[str, asyncio.Future] = {}
        self._blocking: Dict[Tuple[str, str], str] = {}
        self._allowances: Dict[str, int] = {}
        self._listeners: List[RequestListener] = []
        self._audit_records: List[AuditRecord] = []

    def add_request_listener(self, listener: RequestListener) -> None:
        """Called with each request that needs a human, before waiting."""
        self._listeners.append(listener)

    def classify(self, tool_name: str, kind: Optional[ApprovalKind] = None) -> ToolTier:
        """Risk tier for a tool.

        Patterns are checked dangerous, read-only, then write. A tool no
        pattern matches takes its tier from the action kind: shell is
        dangerous, read is read-only, anything else is write.
        """
        name = tool_name.lower()
        if any(fnmatch(name, pattern.lower()) for pattern in self.config.dangerous):
            return ToolTier.DANGEROUS
        if any(fnmatch(name, pattern.lower()) for pattern in self.config.read_only):
            return ToolTier.READ_ONLY
        if any(fnmatch(name, pattern.lower()) for pattern in self.config.write):
            return ToolTier.WRITE

        if kind == ApprovalKind.SHELL:
            return ToolTier.DANGEROUS
        if kind == ApprovalKind.READ:
            return ToolTier.READ_ONLY
        return ToolTier.WRITE

    def evaluate(self, request: ApprovalRequest) -> Dict[str, Any]:
        """Policy decision for a request before any allowance or human is asked.

        Returns:
            Dict with ``decision`` (approve, deny or prompt), ``reason`` and ``tier``
        """
        if request.kind == ApprovalKind.PLAN:
            return {"decision": "prompt", "reason": "Plans always need a human decision", "tier": None}

        tier = self.classify(request.tool_name or request.kind.value, request.kind)

        if request.kind == ApprovalKind.READ or tier == ToolTier.READ_ONLY:
            return {"decision": "approve", "reason": "Read-only actions are always allowed", "tier": tier}

        mode = self.config.permission_mode
        if mode == PermissionMode.DENY:
            return {"decision": "deny", "reason": "Permission mode denies gated actions", "tier": tier}

        if tier == ToolTier.DANGEROUS:
            return {"decision": "prompt", "reason": "Dangerous tools always need approval", "tier": tier}

        if mode == PermissionMode.AUTO:
            return {"decision": "approve", "reason": "Permission mode approves automatically", "tier": tier}

        return {"decision": "prompt", "reason": "Permission mode requires approval", "tier": tier}

    def _consume_allowance(self, request: ApprovalRequest) -> Optional[ApprovalResolution]:
        key = request.allowance_key
        remaining = self._allowances.get(key)
        if not remaining:
            return None

        if remaining == UNLIMITED_UNTIL_RESPONSE_END:
            budget = UNLIMITED_UNTIL_RESPONSE_END
        else:
            budget = remaining
            if remaining - 1 > 0:
                self._allowances[key] = remaining - 1
            else:
                del self._allowances[key]

        return ApprovalResolution(
            approved=True,
            budget=budget,
            decided_by="allowance",
            reason="Covered by an earlier approval"
        )

    async def request(self, request: ApprovalRequest) -> ApprovalResolution:
        """Settle ``request``, waiting for a human if policy requires one."""
        policy = self.evaluate(request)

        if policy["decision"] != "prompt":
            resolution = ApprovalResolution(
                approved=policy["decision"] == "approve",
                decided_by="policy",
                reason=policy["reason"]
            )
            self._settle(request, resolution)
            return resolution

        if request.kind != ApprovalKind.PLAN:
            resolution = self._consume_allowance(request)
            if resolution is not None:
                self._settle(request, resolution)
                return resolution

        blocking_key = (request.session_id, request.agent_id)
        if blocking_key in self._blocking:
            raise ApprovalConflictError(
                f"{request.agent_id} already has a pending approval request "
                f"{self._blocking[blocking_key]} in session {request.session_id}",
                context={"request_id": self._blocking[blocking_key]}
            )

        future = asyncio.get_running_loop().create_future()
        self._register(request)
        self._waiters[request.id] = future
        self._create_audit_record(request, ResultStatus.PENDING, policy["reason"])

        try:
            for listener in self._listeners:
                await listener(request)

            with approval_span(request.session_id, request.agent_id, request.kind.value):
                timeout = self.config.approval_timeout_seconds
                if timeout is None or request.kind == ApprovalKind.PLAN:
                    return await future
                return await asyncio.wait_for(future, timeout)

        except asyncio.TimeoutError:
            self.logger.warning(f"Approval request {request.id} timed out; denying")
            resolution = ApprovalResolution(approved=False, decided_by="timeout", reason="No decision in time")
            self._settle(request, resolution)
            return resolution

        except asyncio.CancelledError:
            if request.is_pending:
                self._settle(request, ApprovalResolution(
                    approved=False, decided_by="policy", reason="Turn cancelled"
                ))
            raise

        finally:
            self._waiters.pop(request.id, None)

    def _register(self, request: ApprovalRequest) -> None:
        self._pending[request.id] = request
        self._blocking[(request.session_id, request.agent_id)] = request.id

    def restore(self, request: ApprovalRequest) -> None:
        """Re-register a pending request loaded from storage. Nobody is waiting on it."""
        if not request.is_pending:
            return
        self._register(request)
        self.logger.info(f"Restored pending approval {request.id} for {request.agent_id}")

    def resolve(self, request_id: str, approved: bool, budget: int = 1) -> ApprovalRequest:
        """Record a human decision and wake the waiting turn, if any."""
        request = self._pending.get(request_id)
        if request is None:
            raise ApprovalNotFoundError(request_id)

        restored = not self.has_waiter(request_id)
        resolution = ApprovalResolution(approved=approved, budget=budget if approved else 0)
        self._settle(request, resolution)

        # A restored request's action never ran; the rerun turn gets the whole budget.
        if restored and approved and request.kind != ApprovalKind.PLAN:
            self._allowances[request.allowance_key] = budget

        return request

    def _settle(self, request: ApprovalRequest, resolution: ApprovalResolution) -> None:
        request.resolve(resolution)

        self._pending.pop(request.id, None)
        if self._blocking.get((request.session_id, request.agent_id)) == request.id:
            del self._blocking[(request.session_id, request.agent_id)]

        future = self._waiters.get(request.id)
        if future is not None and not future.done():
            future.set_result(resolution)

        if (
            resolution.approved
            and resolution.decided_by == "human"
            and request.kind != ApprovalKind.PLAN
            and resolution.budget != 1
        ):
            if resolution.budget == UNLIMITED_UNTIL_RESPONSE_END:
                self._allowances[request.allowance_key] = UNLIMITED_UNTIL_RESPONSE_END
            else:
                self._allowances[request.allowance_key] = resolution.budget - 1

        if resolution.decided_by == "timeout":
            result = ResultStatus.TIMEOUT
        else:
            result = ResultStatus.SUCCESS if resolution.approved else ResultStatus.BLOCKED
        self._create_audit_record(request, result, resolution.reason)

        self.audit_logger.log_approval_event(
            event_type="resolved",
            request_id=request.id,
            session_id=request.session_id,
            agent_id=request.agent_id,
            kind=request.kind.value,
            decision="approved" if resolution.approved else "denied",
            decided_by=resolution.decided_by,
            budget=resolution.budget,
            tool_name=request.tool_name
        )
        if self.metrics:
            self.metrics.record_approval(request.kind.value, resolution.approved, resolution.decided_by)

    def end_response(self, session_id: str, agent_id: str) -> None:
        """Drop until-response-end allowances once the agent's response completes."""
        prefix = f"{session_id}:{agent_id}:"
        expired = [
            key for key, value in self._allowances.items()
            if key.startswith(prefix) and value == UNLIMITED_UNTIL_RESPONSE_END
        ]
        for key in expired:
            del self._allowances[key]

    def cancel(self, session_id: str, agent_id: Optional[str] = None, reason: str = "Turn failed") -> List[ApprovalRequest]:
        """Deny every pending request of a session (or one agent in it)."""
        cancelled = []
        for request in list(self._pending.values()):
            if request.session_id != session_id:
                continue
            if agent_id is not None and request.agent_id != agent_id:
                continue
            self._settle(request, ApprovalResolution(approved=False, decided_by="policy", reason=reason))
            cancelled.append(request)
        return cancelled

    def pending_requests(self, session_id: Optional[str] = None) -> List[ApprovalRequest]:
        return [
            r for r in self._pending.values()
            if session_id is None or r.session_id == session_id
        ]

    def pending_plan_request(self, session_id: str) -> Optional[ApprovalRequest]:
        for request in self._pending.values():
            if request.session_id == session_id and request.kind == ApprovalKind.PLAN:
                return request
        return None

    def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        return self._pending.get(request_id)

    def has_waiter(self, request_id: str) -> bool:
        future = self._waiters.get(request_id)
        return future is not None and not future.done()

    def allowance(self, session_id: str, agent_id: str, kind: ApprovalKind, tool_name: Optional[str] = None) -> int:
        """Remaining auto-approvals for a combination; 0 when none."""
        return self._allowances.get(f"{session_id}:{agent_id}:{kind.value}:{tool_name or '*'}", 0)

    def _create_audit_record(self, request: ApprovalRequest, result: ResultStatus, reason: Optional[str]) -> None:
        record = AuditRecord(
            event_type=EventType.PLAN if request.kind == ApprovalKind.PLAN else EventType.APPROVAL,
            session_id=request.session_id,
            agent_id=request.agent_id,
            action=f"{request.kind.value}:{request.tool_name or request.kind.value}",
            result=result,
            reason=reason,
            metadata={"request_id": request.id, "action_id": request.action_id}
        )
        self._audit_records.append(record)

    def get_audit_records(self, session_id: Optional[str] = None) -> List[AuditRecord]:
        if session_id is None:
            return list(self._audit_records)
        return [r for r in self._audit_records if r.session_id == session_id]
