"""Turn executor: drives one agent through one turn."""

import logging
import math
from typing import Callable, Optional, Set
from uuid import uuid4

from huddle.errors import ErrorCode
from huddle.lib.logging_config import AuditLogger
from huddle.lib.metrics import SchedulerMetrics
from huddle.lib.observability import turn_span
from huddle.models.approval import ApprovalKind, ApprovalRequest
from huddle.models.budget import TokenUsage
from huddle.models.message import Message
from huddle.models.participant import Participant
from huddle.models.turn import (
    ApprovalDecision,
    ContentDelta,
    ConversationContext,
    GatedAction,
    TurnOutcome,
    UsageReport,
)
from huddle.services.approval_gate import ApprovalGate
from huddle.services.budget_tracker import BudgetTracker
from huddle.services.interfaces.agent_provider import IAgentProvider


logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token count for providers that report no usage."""
    return math.ceil(len(text) / CHARS_PER_TOKEN) if text else 0


class TurnExecutor:
    """Runs a single agent turn against its provider.

    The turn is admitted by the budget tracker, streamed from the provider
    and paused at each gated action until the approval gate settles it.
    The resulting message and its usage are returned for the caller to
    store; the executor never touches session history or budget counters.
    """

    def __init__(
        self,
        provider: IAgentProvider,
        approval_gate: ApprovalGate,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[SchedulerMetrics] = None,
        id_factory: Callable[[], str] = lambda: str(uuid4())
    ):
        self.provider = provider
        self.approval_gate = approval_gate
        self.audit_logger = audit_logger or AuditLogger()
        self.metrics = metrics
        self._new_id = id_factory

    async def run_turn(
        self,
        participant: Participant,
        context: ConversationContext,
        budget: BudgetTracker
    ) -> TurnOutcome:
        session_id = context.session_id
        message = Message(session_id=session_id, author=participant.id)

        estimate = self.provider.estimate_tokens(participant, context)
        admission = budget.admit(participant.id, estimate)
        self.audit_logger.log_budget_event(
            session_id=session_id,
            agent_id=participant.id,
            decision="admitted" if admission.admitted else "rejected",
            reason=admission.reason.value if admission.reason else None,
            consumed=admission.consumed,
            limit=admission.limit
        )

        if not admission.admitted:
            message.mark_error(ErrorCode.BUDGET_EXCEEDED, f"{admission.reason.value}: {admission.detail}")
            logger.info(f"Turn for {participant.id} rejected: {admission.detail}")
            if self.metrics:
                self.metrics.record_budget_rejection(participant.id, admission.reason.value)
                self.metrics.record_turn(participant.id, message.status.value)
            return TurnOutcome(agent_id=participant.id, message=message, admission=admission)

        invocation_id = self._new_id()
        chunks = []
        usage: Optional[TokenUsage] = None
        denied: Set[str] = set()
        approved = []

        with turn_span(session_id, participant.id) as span:
            stream = self.provider.invoke(participant, context)
            try:
                reply: Optional[ApprovalDecision] = None
                while True:
                    try:
                        event = await stream.asend(reply)
                    except StopAsyncIteration:
                        break
                    reply = None

                    if isinstance(event, ContentDelta):
                        chunks.append(event.text)
                    elif isinstance(event, UsageReport):
                        usage = event.usage
                    elif isinstance(event, GatedAction):
                        reply = await self._gate(event, participant, context, denied)
                        if reply.approved:
                            approved.append(event.action_id)
                    else:
                        logger.warning(f"Ignoring unknown provider event from {participant.id}: {event!r}")

            except Exception as e:
                logger.error(f"Provider failed during turn for {participant.id}: {e}")
                self.approval_gate.cancel(session_id, participant.id, reason="Turn failed")
                message.mark_error(ErrorCode.PROVIDER_ERROR, str(e), content="".join(chunks))
                span.set_attribute("turn.status", "error")
                if self.metrics:
                    self.metrics.record_turn(participant.id, message.status.value)
                return TurnOutcome(
                    agent_id=participant.id,
                    message=message,
                    admission=admission,
                    denied_actions=sorted(denied),
                    approved_actions=approved
                )
            finally:
                await stream.aclose()
                self.approval_gate.end_response(session_id, participant.id)

            content = "".join(chunks)
            if usage is None:
                usage = TokenUsage(
                    input_tokens=estimate_tokens(context.trigger.content) + context.transcript_chars() // CHARS_PER_TOKEN,
                    output_tokens=estimate_tokens(content),
                    estimated=True
                )

            message.mark_complete(content, usage)
            span.set_attribute("turn.tokens", usage.total_tokens)

        if self.metrics:
            self.metrics.record_turn(participant.id, message.status.value, usage.total_tokens)

        return TurnOutcome(
            agent_id=participant.id,
            message=message,
            admission=admission,
            denied_actions=sorted(denied),
            approved_actions=approved,
            invocation_id=invocation_id
        )

    async def _gate(
        self,
        action: GatedAction,
        participant: Participant,
        context: ConversationContext,
        denied: Set[str]
    ) -> ApprovalDecision:
        """Settle one gated action. A denied action is never retried."""
        if action.action_id in denied:
            return ApprovalDecision(
                action_id=action.action_id,
                approved=False,
                reason="Action was already denied in this turn"
            )

        # Plans are proposed by the orchestrator, never from inside a turn.
        if action.kind == ApprovalKind.PLAN:
            denied.add(action.action_id)
            logger.warning(f"Denied plan approval requested by {participant.id} during its turn")
            return ApprovalDecision(
                action_id=action.action_id,
                approved=False,
                reason="Agents cannot request plan approval"
            )

        request = ApprovalRequest(
            session_id=context.session_id,
            agent_id=participant.id,
            kind=action.kind,
            tool_name=action.tool_name,
            parameters=action.parameters,
            action_id=action.action_id,
            trigger_message_id=context.trigger.id
        )
        resolution = await self.approval_gate.request(request)

        if not resolution.approved:
            denied.add(action.action_id)
            logger.info(f"Gated action {action.action_id} for {participant.id} denied: {resolution.reason}")

        return ApprovalDecision(
            action_id=action.action_id,
            approved=resolution.approved,
            request_id=request.id,
            reason=resolution.reason
        )
