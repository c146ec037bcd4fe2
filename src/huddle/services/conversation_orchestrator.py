"""Conversation orchestrator: the per-message lifecycle of a session.

receive -> route -> run the round -> advance routing -> compact -> persist.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from huddle.errors import ApprovalNotFoundError, ErrorCode, HuddleError, PlanNotPendingError
from huddle.lib.logging_config import AuditLogger
from huddle.lib.metrics import SchedulerMetrics
from huddle.lib.observability import round_span
from huddle.models.approval import ApprovalKind, ApprovalRequest, ApprovalResolution
from huddle.models.checkpoint import Checkpoint
from huddle.models.conversation_session import PendingPlan, Session
from huddle.models.message import (
    ORCHESTRATOR_AUTHOR,
    ApprovalPayload,
    Message,
    PlanPayload,
    TaskSummaryPayload,
)
from huddle.models.participant import Participant
from huddle.models.plan import (
    AgentContribution,
    Plan,
    PlanStatus,
    PlanStep,
    TaskAnalysis,
    TaskCompletionSummary,
    TaskComplexity,
    TaskMetadata,
    make_excerpt,
)
from huddle.models.routing_state import ConversationMode, RoutingResult, RoutingState
from huddle.models.team_config import TeamConfig
from huddle.models.turn import ConversationContext, RoundResult, TurnOutcome
from huddle.services.approval_gate import ApprovalGate
from huddle.services.budget_tracker import BudgetTracker
from huddle.services.compactor import Compactor
from huddle.services.event_feed import EventFeed, FeedEventType, FeedHandler
from huddle.services.interfaces.agent_provider import IAgentProvider
from huddle.services.interfaces.planner import IPlanner
from huddle.services.interfaces.service_lifecycle import IServiceLifecycle
from huddle.services.interfaces.session_store import ISessionStore
from huddle.services.interfaces.summarizer import ISummarizer
from huddle.services.routing_engine import RoleBasedStrategy, RoutingEngine, roster_help
from huddle.services.session_store import FileSessionStore, InMemorySessionStore
from huddle.services.turn_executor import TurnExecutor


logger = logging.getLogger(__name__)

HELP_COMMAND = "/help"
RESET_COMMAND = "/reset"
PARALLEL_MODES = {ConversationMode.FREE_CHAT, ConversationMode.TAG_ONLY}


class ConversationOrchestrator(IServiceLifecycle):
    """Composes routing, budgets, approvals, turns, compaction and storage.

    One round runs per session at a time. Inside a round, broadcast turns
    may run concurrently, but their messages are appended one at a time in
    completion order. Every durable change is written to the store before
    the in-memory session moves forward.
    """

    def __init__(
        self,
        team: TeamConfig,
        provider: IAgentProvider,
        store: Optional[ISessionStore] = None,
        planner: Optional[IPlanner] = None,
        summarizer: Optional[ISummarizer] = None,
        routing_engine: Optional[RoutingEngine] = None,
        event_feed: Optional[EventFeed] = None,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[SchedulerMetrics] = None
    ):
        """Initialize the orchestrator.

        Args:
            team: Validated team configuration
            provider: Provider used to run agent turns
            store: Session store; defaults to a file store when persistence
                is enabled and an in-memory store otherwise
            planner: Optional planner that proposes multi-step plans
            summarizer: Summarizer used when compaction drops history
            routing_engine: Routing engine override
            event_feed: Feed that receives scheduler events
            audit_logger: Audit logger override
            metrics: Metrics collector override
        """
        self.logger = logging.getLogger(__name__)
        self.team = team

        if store is None:
            if team.persistence.enabled:
                store = FileSessionStore(team.persistence.directory)
            else:
                store = InMemorySessionStore()
        self.store = store

        self.planner = planner
        self.audit_logger = audit_logger or AuditLogger()
        self.metrics = metrics or SchedulerMetrics()
        self.event_feed = event_feed or EventFeed()
        self.routing_engine = routing_engine or RoutingEngine({
            ConversationMode.ROLE_BASED: RoleBasedStrategy(default_agent_id=team.default_agent_id)
        })
        self.approval_gate = ApprovalGate(team.tool_approval, self.audit_logger, self.metrics)
        self.approval_gate.add_request_listener(self._on_approval_requested)
        self.turn_executor = TurnExecutor(provider, self.approval_gate, self.audit_logger, self.metrics)
        self.compactor = Compactor(team.compaction, summarizer)

        self._sessions: Dict[str, Session] = {}
        self._budgets: Dict[str, BudgetTracker] = {}
        self._round_locks: Dict[str, asyncio.Lock] = {}
        self._append_locks: Dict[str, asyncio.Lock] = {}
        self._initialized = False

    # Lifecycle

    async def initialize(self) -> None:
        """Open the session store. Called once per process."""
        if self._initialized:
            return
        self.logger.info(f"Initializing conversation orchestrator for team {self.team.team_id}")
        await self.store.initialize()
        self._initialized = True

    async def shutdown(self) -> None:
        """Close the store. Pending approvals stay persisted for resume."""
        if not self._initialized:
            return
        await self.store.shutdown()
        self._initialized = False
        self.logger.info("Conversation orchestrator shut down")

    async def health_check(self) -> Dict[str, Any]:
        return {
            "initialized": self._initialized,
            "active_sessions": len(self._sessions),
            "pending_approvals": len(self.approval_gate.pending_requests()),
            "store": await self.store.health_check()
        }

    # Sessions

    def _register(self, session: Session) -> None:
        self._sessions[session.id] = session
        self._budgets[session.id] = BudgetTracker(
            self.team.budgets,
            session.budget,
            agent_ceilings={p.id: p.max_tokens for p in session.participants}
        )
        self._round_locks.setdefault(session.id, asyncio.Lock())
        self._append_locks.setdefault(session.id, asyncio.Lock())

    async def start_session(self, session_id: Optional[str] = None) -> Session:
        """Create and persist an empty session for the team."""
        session = Session(
            id=session_id or str(uuid4()),
            team_id=self.team.team_id,
            mode=self.team.conversation_mode,
            participants=list(self.team.agents),
            routing_state=RoutingState(mode=self.team.conversation_mode)
        )
        if await self.store.exists(session.id):
            raise HuddleError(f"Session {session.id} already exists", code=ErrorCode.PERSISTENCE_FAILURE)

        await self.store.save(session)
        self._register(session)

        self.audit_logger.log_session_event(
            "created",
            session.id,
            metadata={"mode": session.mode.value, "participants": session.participant_ids}
        )
        self.logger.info(f"Started session {session.id} with {len(session.participants)} agents")
        return session

    async def resume_session(self, session_id: str) -> Session:
        """Load a stored session and re-arm its pending approvals."""
        if session_id in self._sessions:
            return self._sessions[session_id]

        session = await self.store.load(session_id)
        self._register(session)
        for request in session.pending_approvals:
            self.approval_gate.restore(request)

        self.audit_logger.log_session_event(
            "resumed",
            session.id,
            metadata={
                "message_count": session.message_count,
                "pending_approvals": len(session.pending_approvals),
                "pending_plan": session.pending_plan is not None
            }
        )
        return session

    async def get_session(self, session_id: str) -> Session:
        """In-memory session, loading it from the store if needed."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        return await self.resume_session(session_id)

    async def get_participants(self, session_id: str) -> List[Participant]:
        session = await self.get_session(session_id)
        return list(session.participants)

    async def get_messages(self, session_id: str) -> List[Message]:
        """Full history, including messages folded away by compaction."""
        session = await self.get_session(session_id)
        return await self.store.get_messages(session.id)

    async def get_budget_status(self, session_id: str) -> Dict[str, Any]:
        await self.get_session(session_id)
        return self._budgets[session_id].status()

    def subscribe(self, handler: FeedHandler) -> Callable[[], None]:
        return self.event_feed.subscribe(handler)

    # Persistence helpers

    async def _append(self, session: Session, message: Message) -> None:
        """Store ``message`` then add it to memory. Retrying the same id is a no-op."""
        if session.has_message(message.id):
            return
        await self.store.append_message(session.id, message, session.message_count)
        session.messages.append(message)
        session.touch()
        await self.event_feed.emit(
            FeedEventType.MESSAGE_APPENDED,
            session.id,
            message=message.model_dump(mode="json")
        )

    async def _commit(self, session: Session, **updates: Any) -> None:
        """Save the session with ``updates`` applied, then adopt them in memory."""
        updates.setdefault("pending_approvals", self.approval_gate.pending_requests(session.id))
        candidate = session.model_copy(update=updates)
        await self.store.save(candidate)
        for field_name, value in updates.items():
            setattr(session, field_name, value)
        session.touch()

    # Rounds

    async def send_message(
        self,
        content: str,
        session_id: Optional[str] = None,
        directed_to: Optional[Sequence[str]] = None,
        plan: Optional[Plan] = None
    ) -> RoundResult:
        """Process one human message.

        Args:
            content: Message text
            session_id: Target session; a new session is started when None
            directed_to: Agent ids that must answer, bypassing routing
            plan: Plan to put up for approval instead of routing

        Returns:
            RoundResult with the messages the round produced
        """
        if session_id is None:
            session = await self.start_session()
        else:
            session = await self.get_session(session_id)

        async with self._round_locks[session.id]:
            trigger = Message.from_human(session.id, content)
            await self._append(session, trigger)

            command = content.strip().lower()
            if command in (HELP_COMMAND, RESET_COMMAND):
                return await self._handle_command(session, trigger, command)

            analysis: Optional[TaskAnalysis] = None
            if plan is None and self.planner is not None and not directed_to:
                analysis = await self.planner.analyze(content, session.participants)
                if analysis is not None and analysis.plan is not None and analysis.needs_approval:
                    plan = analysis.plan

            if plan is not None:
                return await self._run_plan_round(session, trigger, plan, analysis)

            routing = self._route(session, content, directed_to)
            outcomes: List[TurnOutcome] = []
            with round_span(session.id, session.mode.value, session.routing_state.round_counter + 1):
                if routing.target_ids:
                    parallel = (
                        self.team.supervision.parallel_fan_out
                        and len(routing.target_ids) > 1
                        and session.mode in PARALLEL_MODES
                    )
                    await self._run_targets(session, trigger, routing.target_ids, outcomes, parallel)
                    await self._finish_round(session, routing, outcomes)
                else:
                    self.logger.info(f"Session {session.id}: {routing.reason}")

            checkpoint = await self._maybe_compact(session)
            return RoundResult(
                session_id=session.id,
                trigger=trigger,
                routing=routing,
                messages=[o.message for o in outcomes],
                checkpoint=checkpoint
            )

    def _route(self, session: Session, content: str, directed_to: Optional[Sequence[str]]) -> RoutingResult:
        if directed_to:
            known = [agent_id for agent_id in dict.fromkeys(directed_to) if session.get_participant(agent_id)]
            if known:
                routing = RoutingResult(target_ids=known, reason=f"Directed to {', '.join(known)}")
            else:
                self.logger.warning(f"Ignoring directed targets not in session {session.id}: {list(directed_to)}")
                routing = self.routing_engine.route(content, session.participants, session.routing_state)
        else:
            routing = self.routing_engine.route(content, session.participants, session.routing_state)

        self.audit_logger.log_routing_event(
            session.id,
            session.mode.value,
            routing.target_ids,
            routing.reason,
            routing.fallback_used
        )
        return routing

    def _build_context(
        self,
        session: Session,
        participant: Participant,
        trigger: Message,
        plan_step: Optional[PlanStep] = None,
        round_number: int = 1
    ) -> ConversationContext:
        return ConversationContext(
            session_id=session.id,
            participant=participant,
            roster=list(session.participants),
            summary=session.compaction.latest_summary,
            messages=list(session.messages),
            trigger=trigger,
            plan_step=plan_step,
            round_number=round_number
        )

    async def _run_and_append(
        self,
        session: Session,
        trigger: Message,
        agent_id: str,
        collected: List[TurnOutcome],
        plan_step: Optional[PlanStep] = None,
        round_number: int = 1
    ) -> TurnOutcome:
        participant = session.get_participant(agent_id)
        context = self._build_context(session, participant, trigger, plan_step, round_number)
        budget = self._budgets[session.id]
        outcome = await self.turn_executor.run_turn(participant, context, budget)

        async with self._append_locks[session.id]:
            await self._append(session, outcome.message)
            # Usage counts only once the message is stored.
            if outcome.invocation_id is not None:
                budget.record(outcome.agent_id, outcome.message.usage, outcome.invocation_id)
            collected.append(outcome)
        return outcome

    async def _run_targets(
        self,
        session: Session,
        trigger: Message,
        target_ids: Sequence[str],
        collected: List[TurnOutcome],
        parallel: bool
    ) -> None:
        if not parallel:
            for agent_id in target_ids:
                await self._run_and_append(session, trigger, agent_id, collected)
            return

        results = await asyncio.gather(
            *(self._run_and_append(session, trigger, agent_id, collected) for agent_id in target_ids),
            return_exceptions=True
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            raise failures[0]

    async def _finish_round(self, session: Session, routing: RoutingResult, outcomes: List[TurnOutcome]) -> None:
        """Advance routing state once the round's messages are stored."""
        spoken = [o.agent_id for o in outcomes if o.completed]
        new_state = self.routing_engine.next_state(session.routing_state, routing, session.participants, spoken)
        await self._commit(session, routing_state=new_state)

        self.metrics.record_round(session.mode.value, len(routing.target_ids))
        await self.event_feed.emit(
            FeedEventType.ROUTING_STATE_CHANGED,
            session.id,
            routing_state=new_state.model_dump(mode="json"),
            reason=routing.reason
        )

    async def _handle_command(self, session: Session, trigger: Message, command: str) -> RoundResult:
        if command == HELP_COMMAND:
            reply = Message.from_orchestrator(session.id, roster_help(session.participants))
            await self._append(session, reply)
        else:
            new_state = session.routing_state.reset()
            await self._commit(session, routing_state=new_state)
            reply = Message.from_orchestrator(session.id, "Routing state reset. The next round starts fresh.")
            await self._append(session, reply)
            await self.event_feed.emit(
                FeedEventType.ROUTING_STATE_CHANGED,
                session.id,
                routing_state=new_state.model_dump(mode="json"),
                reason="reset"
            )
        return RoundResult(session_id=session.id, trigger=trigger, messages=[reply])

    # Plans

    @staticmethod
    def _describe_plan(plan: Plan) -> str:
        lines = [plan.description or "Proposed plan:"]
        for number, step in enumerate(plan.steps, start=1):
            lines.append(f"{number}. @{step.agent_id}: {step.action}")
        lines.append(f"Estimated rounds: {plan.estimated_rounds}, cost: {plan.estimated_cost.value}")
        return "\n".join(lines)

    async def _run_plan_round(
        self,
        session: Session,
        trigger: Message,
        plan: Plan,
        analysis: Optional[TaskAnalysis]
    ) -> RoundResult:
        """Propose ``plan`` and wait for the human's decision."""
        request = ApprovalRequest(
            session_id=session.id,
            agent_id=ORCHESTRATOR_AUTHOR,
            kind=ApprovalKind.PLAN,
            parameters={"plan_id": plan.id, "steps": len(plan.steps)},
            trigger_message_id=trigger.id
        )
        proposal = Message.from_orchestrator(session.id, self._describe_plan(plan), PlanPayload(plan=plan))
        await self._append(session, proposal)

        pending = PendingPlan(plan=plan, analysis=analysis, trigger_message_id=trigger.id, request_id=request.id)
        await self._commit(session, pending_plan=pending)
        await self.event_feed.emit(
            FeedEventType.PLAN_PROPOSED,
            session.id,
            request_id=request.id,
            plan=plan.model_dump(mode="json")
        )

        resolution = await self.approval_gate.request(request)
        result = await self._complete_plan(session, trigger, pending, resolution)
        result.messages.insert(0, proposal)
        return result

    async def _complete_plan(
        self,
        session: Session,
        trigger: Message,
        pending: PendingPlan,
        resolution: ApprovalResolution
    ) -> RoundResult:
        plan = pending.plan
        await self._commit(session, pending_plan=None)
        await self.event_feed.emit(
            FeedEventType.PLAN_RESOLVED,
            session.id,
            plan_id=plan.id,
            approved=resolution.approved
        )

        if not resolution.approved:
            rejected = Message.from_orchestrator(
                session.id,
                "Plan rejected. No steps were executed.",
                PlanPayload(plan=plan, status=PlanStatus.REJECTED)
            )
            await self._append(session, rejected)
            self.logger.info(f"Plan {plan.id} rejected in session {session.id}")
            return RoundResult(
                session_id=session.id,
                trigger=trigger,
                messages=[rejected],
                plan_status=PlanStatus.REJECTED
            )

        max_rounds = self.team.supervision.max_rounds
        steps = list(plan.steps[:max_rounds])
        if len(plan.steps) > max_rounds:
            self.logger.warning(
                f"Plan {plan.id} has {len(plan.steps)} steps; running the first {max_rounds}"
            )

        outcomes: List[TurnOutcome] = []
        contributions: List[AgentContribution] = []
        rounds_run = 0
        for round_number, step in enumerate(steps, start=1):
            participant = session.get_participant(step.agent_id)
            if participant is None:
                self.logger.warning(f"Skipping plan step for unknown agent {step.agent_id}")
                continue

            routing = RoutingResult(target_ids=[step.agent_id], reason=f"Plan step {round_number}: {step.action}")
            with round_span(session.id, "plan", round_number):
                outcome = await self._run_and_append(
                    session, trigger, step.agent_id, outcomes, plan_step=step, round_number=round_number
                )
                await self._finish_round(session, routing, [outcome])
            rounds_run += 1

            if outcome.completed:
                contributions.append(AgentContribution(
                    agent_id=participant.id,
                    agent_name=participant.name,
                    role=participant.role,
                    action=step.action or participant.instructions or participant.role,
                    excerpt=make_excerpt(outcome.message.content),
                    round=round_number
                ))

        if pending.analysis is not None:
            intent, complexity = pending.analysis.intent, pending.analysis.complexity
        else:
            intent = trigger.content
            complexity = (
                TaskComplexity.SIMPLE if len(plan.steps) == 1
                else TaskComplexity.MODERATE if len(plan.steps) <= 3
                else TaskComplexity.COMPLEX
            )

        summary = TaskCompletionSummary(
            executive_summary=plan.description or "Task completed.",
            contributions=contributions,
            metadata=TaskMetadata(
                intent=intent,
                complexity=complexity,
                total_rounds=rounds_run,
                max_rounds=max_rounds,
                plan_description=plan.description or None
            )
        )
        summary_message = Message.from_orchestrator(
            session.id, summary.executive_summary, TaskSummaryPayload(summary=summary)
        )
        await self._append(session, summary_message)
        await self.event_feed.emit(
            FeedEventType.TASK_COMPLETED,
            session.id,
            summary=summary.model_dump(mode="json")
        )

        checkpoint = await self._maybe_compact(session)
        return RoundResult(
            session_id=session.id,
            trigger=trigger,
            messages=[o.message for o in outcomes] + [summary_message],
            plan_status=PlanStatus.APPROVED,
            summary=summary,
            checkpoint=checkpoint
        )

    async def _find_trigger(self, session: Session, message_id: Optional[str]) -> Message:
        trigger = session.find_message(message_id) if message_id else None
        if trigger is None and message_id:
            trigger = next((m for m in await self.store.get_messages(session.id) if m.id == message_id), None)
        if trigger is None:
            raise HuddleError(
                f"Trigger message {message_id} missing from session {session.id}",
                code=ErrorCode.PERSISTENCE_FAILURE
            )
        return trigger

    async def resolve_plan(self, session_id: str, approved: bool) -> Optional[RoundResult]:
        """Approve or reject the session's pending plan.

        When a round is waiting on the plan, that round carries on and its
        ``send_message`` call returns the result; this returns None. For a
        plan restored after a restart, the plan runs here and its result is
        returned.
        """
        session = await self.get_session(session_id)
        request = self.approval_gate.pending_plan_request(session.id)
        if request is None or session.pending_plan is None:
            raise PlanNotPendingError(session.id)

        if self.approval_gate.has_waiter(request.id):
            self.approval_gate.resolve(request.id, approved)
            return None

        async with self._round_locks[session.id]:
            self.approval_gate.resolve(request.id, approved)
            pending = session.pending_plan
            trigger = await self._find_trigger(session, pending.trigger_message_id)
            return await self._complete_plan(session, trigger, pending, request.resolution)

    # Approvals

    async def _on_approval_requested(self, request: ApprovalRequest) -> None:
        """Persist a new pending request and announce it."""
        session = self._sessions.get(request.session_id)
        if session is None:
            return

        await self._commit(session)
        if request.kind == ApprovalKind.PLAN:
            return

        notice = Message.from_orchestrator(
            session.id,
            f"{request.agent_id} requests approval for {request.kind.value}"
            + (f": {request.tool_name}" if request.tool_name else ""),
            ApprovalPayload(request=request.model_copy(deep=True))
        )
        async with self._append_locks[session.id]:
            await self._append(session, notice)
        await self.event_feed.emit(
            FeedEventType.APPROVAL_REQUESTED,
            session.id,
            request=request.model_dump(mode="json")
        )

    async def resolve_approval(self, request_id: str, approved: bool, budget: int = 1) -> Optional[RoundResult]:
        """Settle a pending approval request.

        Args:
            request_id: Pending request id
            approved: Human decision
            budget: 1 for once, N for N uses, -1 until the response ends

        Returns:
            None when a live turn was waiting (it resumes on its own); for a
            request restored after a restart, the result of rerunning or
            closing the interrupted turn
        """
        request = self.approval_gate.get_request(request_id)
        if request is None:
            raise ApprovalNotFoundError(request_id)
        if request.kind == ApprovalKind.PLAN and request.agent_id == ORCHESTRATOR_AUTHOR:
            return await self.resolve_plan(request.session_id, approved)

        if self.approval_gate.has_waiter(request_id):
            self.approval_gate.resolve(request_id, approved, budget)
            await self.event_feed.emit(
                FeedEventType.APPROVAL_RESOLVED,
                request.session_id,
                request=request.model_dump(mode="json")
            )
            return None

        session = await self.get_session(request.session_id)
        async with self._round_locks[session.id]:
            self.approval_gate.resolve(request_id, approved, budget)
            await self._commit(session)
            await self.event_feed.emit(
                FeedEventType.APPROVAL_RESOLVED,
                session.id,
                request=request.model_dump(mode="json")
            )

            trigger = await self._find_trigger(session, request.trigger_message_id)
            routing = RoutingResult(target_ids=[request.agent_id], reason="Resumed after approval decision")
            outcomes: List[TurnOutcome] = []

            if approved:
                await self._run_and_append(session, trigger, request.agent_id, outcomes)
            else:
                closed = Message(session_id=session.id, author=request.agent_id)
                closed.mark_error(ErrorCode.APPROVAL_DENIED, f"{request.kind.value} action was denied")
                async with self._append_locks[session.id]:
                    await self._append(session, closed)

            if outcomes:
                await self._finish_round(session, routing, outcomes)
            checkpoint = await self._maybe_compact(session)

            return RoundResult(
                session_id=session.id,
                trigger=trigger,
                routing=routing,
                messages=[o.message for o in outcomes] if outcomes else [session.messages[-1]],
                checkpoint=checkpoint
            )

    # Compaction

    async def _maybe_compact(self, session: Session) -> Optional[Checkpoint]:
        if not self.compactor.should_compact(session):
            return None

        result = await self.compactor.compact(session)
        await self.store.save_checkpoint(result.checkpoint)
        await self._commit(session, compaction=result.marker, messages=result.retained)

        self.metrics.record_compaction(result.checkpoint.summarized)
        self.audit_logger.log_compaction_event(
            session.id,
            result.checkpoint.message_index,
            result.checkpoint.summarized,
            len(result.retained)
        )
        await self.event_feed.emit(
            FeedEventType.SESSION_COMPACTED,
            session.id,
            message_index=result.checkpoint.message_index,
            summarized=result.checkpoint.summarized
        )
        return result.checkpoint
