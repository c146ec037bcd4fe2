"""Budget tracker: admission checks and usage accounting for one session."""

import logging
import time
from typing import Any, Callable, Dict, Optional

from huddle.models.budget import BudgetCounters, BudgetDecision, BudgetLimits, RejectionReason, TokenUsage


logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60.0
WARNING_THRESHOLD = 0.8
MAX_REMEMBERED_INVOCATIONS = 512


class BudgetTracker:
    """Counts tokens and invocations for one session.

    The tracker mutates the session's ``BudgetCounters`` in place. All
    updates happen without awaiting, so concurrent turns on the event loop
    never interleave inside ``record``.
    """

    def __init__(
        self,
        limits: BudgetLimits,
        counters: Optional[BudgetCounters] = None,
        agent_ceilings: Optional[Dict[str, Optional[int]]] = None,
        clock: Callable[[], float] = time.time
    ):
        self.limits = limits
        self.counters = counters if counters is not None else BudgetCounters()
        self.agent_ceilings = agent_ceilings or {}
        self._clock = clock
        self._warned_agents = set()

    def ceiling_for(self, agent_id: str) -> Optional[int]:
        if agent_id in self.agent_ceilings and self.agent_ceilings[agent_id] is not None:
            return self.agent_ceilings[agent_id]
        return self.limits.max_tokens_per_agent_per_session

    def _recent_invocations(self, agent_id: str, now: float) -> int:
        cutoff = now - RATE_WINDOW_SECONDS
        return sum(1 for ts in self.counters.invocation_times.get(agent_id, []) if ts > cutoff)

    def admit(self, agent_id: str, estimated_tokens: int = 0) -> BudgetDecision:
        """Check ceilings in order: agent tokens, session tokens, invocation rate.

        Admission does not change any counter, so a rejection repeats for
        as long as the counters and ceilings stay the same.
        """
        estimated_tokens = max(0, estimated_tokens)

        agent_limit = self.ceiling_for(agent_id)
        if agent_limit is not None:
            consumed = self.counters.agent_tokens.get(agent_id, 0)
            if consumed >= agent_limit or consumed + estimated_tokens > agent_limit:
                return BudgetDecision.reject(
                    agent_id,
                    RejectionReason.AGENT_CEILING_EXCEEDED,
                    f"Agent {agent_id} used {consumed} of {agent_limit} tokens",
                    consumed,
                    agent_limit
                )
            if consumed >= agent_limit * WARNING_THRESHOLD and agent_id not in self._warned_agents:
                self._warned_agents.add(agent_id)
                logger.warning(
                    f"Agent {agent_id} has used {consumed}/{agent_limit} tokens "
                    f"({consumed / agent_limit:.0%} of its ceiling)"
                )

        session_limit = self.limits.max_tokens_per_session
        if session_limit is not None:
            consumed = self.counters.session_tokens
            if consumed >= session_limit or consumed + estimated_tokens > session_limit:
                return BudgetDecision.reject(
                    agent_id,
                    RejectionReason.SESSION_CEILING_EXCEEDED,
                    f"Session used {consumed} of {session_limit} tokens",
                    consumed,
                    session_limit
                )

        rate_limit = self.limits.max_invocations_per_minute
        if rate_limit is not None:
            recent = self._recent_invocations(agent_id, self._clock())
            if recent >= rate_limit:
                return BudgetDecision.reject(
                    agent_id,
                    RejectionReason.RATE_LIMITED,
                    f"Agent {agent_id} made {recent} calls in the last minute (limit {rate_limit})",
                    recent,
                    rate_limit
                )

        return BudgetDecision.admit(agent_id)

    def record(self, agent_id: str, usage: TokenUsage, invocation_id: str) -> bool:
        """Add actual usage for one invocation.

        Returns False without touching counters when ``invocation_id`` was
        already recorded.
        """
        if invocation_id in self.counters.recorded_invocations:
            logger.warning(f"Ignoring duplicate usage report for invocation {invocation_id}")
            return False

        now = self._clock()
        tokens = usage.total_tokens
        counters = self.counters

        counters.agent_tokens[agent_id] = counters.agent_tokens.get(agent_id, 0) + tokens
        counters.session_tokens += tokens
        counters.agent_invocations[agent_id] = counters.agent_invocations.get(agent_id, 0) + 1

        cutoff = now - RATE_WINDOW_SECONDS
        window = [ts for ts in counters.invocation_times.get(agent_id, []) if ts > cutoff]
        window.append(now)
        counters.invocation_times[agent_id] = window

        counters.recorded_invocations.append(invocation_id)
        if len(counters.recorded_invocations) > MAX_REMEMBERED_INVOCATIONS:
            del counters.recorded_invocations[:-MAX_REMEMBERED_INVOCATIONS]

        logger.debug(f"Recorded {tokens} tokens for {agent_id} (session total {counters.session_tokens})")
        return True

    def status(self) -> Dict[str, Any]:
        """Usage and limits for display."""
        now = self._clock()
        agents = {}
        agent_ids = set(self.counters.agent_tokens) | set(self.agent_ceilings)
        for agent_id in sorted(agent_ids):
            limit = self.ceiling_for(agent_id)
            used = self.counters.agent_tokens.get(agent_id, 0)
            agents[agent_id] = {
                "tokens_used": used,
                "token_limit": limit,
                "remaining": None if limit is None else max(0, limit - used),
                "invocations": self.counters.agent_invocations.get(agent_id, 0),
                "invocations_last_minute": self._recent_invocations(agent_id, now)
            }

        return {
            "session_tokens": self.counters.session_tokens,
            "limits": self.limits.model_dump(),
            "agents": agents
        }
