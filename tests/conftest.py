"""Shared fixtures: a scripted provider and small participant rosters."""

import asyncio
from typing import Dict, List, Optional, Tuple

import pytest

from huddle.models.budget import TokenUsage
from huddle.models.participant import Participant, ProviderBinding
from huddle.models.turn import ApprovalDecision, ContentDelta, ConversationContext, UsageReport
from huddle.services.interfaces.agent_provider import IAgentProvider


class ScriptedProvider(IAgentProvider):
    """Replays queued event lists per agent.

    Each turn pops the next script for the agent. A script is a list of
    provider events; an Exception entry is raised at that point and an
    asyncio.Event entry is awaited before continuing. Agents without a
    queued script answer "<agent> reply" with 10 tokens of usage.
    """

    def __init__(self, scripts: Optional[Dict[str, List[list]]] = None):
        self.scripts: Dict[str, List[list]] = {k: list(v) for k, v in (scripts or {}).items()}
        self.calls: List[Tuple[str, ConversationContext]] = []
        self.decisions: List[ApprovalDecision] = []

    def queue(self, agent_id: str, *events) -> None:
        self.scripts.setdefault(agent_id, []).append(list(events))

    def called_agents(self) -> List[str]:
        return [agent_id for agent_id, _ in self.calls]

    async def invoke(self, participant, context):
        self.calls.append((participant.id, context))
        pending = self.scripts.get(participant.id)
        if pending:
            events = pending.pop(0)
        else:
            events = [
                ContentDelta(text=f"{participant.id} reply"),
                UsageReport(usage=TokenUsage(input_tokens=5, output_tokens=5))
            ]

        for event in events:
            if isinstance(event, Exception):
                raise event
            if isinstance(event, asyncio.Event):
                await event.wait()
                continue
            decision = yield event
            if decision is not None:
                self.decisions.append(decision)


def make_participant(agent_id: str, **overrides) -> Participant:
    data = {
        "id": agent_id,
        "name": agent_id.capitalize(),
        "provider": ProviderBinding(provider="fake", model="scripted")
    }
    data.update(overrides)
    return Participant(**data)


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def roster():
    """Three agents A, B and C in declaration order."""
    return [make_participant("a"), make_participant("b"), make_participant("c")]
