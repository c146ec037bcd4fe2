"""Routing engine: picks which agents answer a human message.

Routing is pure. Strategies read the message text, the roster and the
routing state and return a ``RoutingResult``; the orchestrator advances
the routing state after the round completes.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Sequence

from huddle.errors import ErrorCode
from huddle.models.participant import Participant
from huddle.models.routing_state import ConversationMode, RoutingResult, RoutingState


logger = logging.getLogger(__name__)

_WORD_PATTERN = re.compile(r"[a-z0-9]+")
_NAME_CHAR = re.compile(r"[\w-]")
_GREETINGS = ("hey", "hi", "hello", "ok", "okay", "yo")

SkillScorer = Callable[[str, Participant], float]


def _tokens(text: str) -> List[str]:
    return _WORD_PATTERN.findall(text.lower())


def parse_mentions(text: str, participants: Sequence[Participant]) -> List[str]:
    """Participant ids addressed with ``@name``, in order of appearance.

    Names match case-insensitively against id, display name and aliases,
    longest name first so ``@code-reviewer`` wins over ``@code``.
    """
    lowered = text.lower()
    candidates = []
    for participant in participants:
        for name in participant.addressable_names():
            candidates.append((name, participant.id))
    candidates.sort(key=lambda item: -len(item[0]))

    found: List[str] = []
    position = lowered.find("@")
    while position != -1:
        rest = lowered[position + 1:]
        for name, agent_id in candidates:
            if not rest.startswith(name):
                continue
            following = rest[len(name):len(name) + 1]
            if following and _NAME_CHAR.match(following):
                continue
            if agent_id not in found:
                found.append(agent_id)
            break
        position = lowered.find("@", position + 1)

    return found


def parse_natural_address(text: str, participants: Sequence[Participant]) -> List[str]:
    """Participants addressed without an @, e.g. "hey builder" or "Builder, ...".

    Only the start of the message is considered.
    """
    lowered = text.strip().lower()
    found: List[str] = []
    for participant in participants:
        for name in participant.addressable_names():
            escaped = re.escape(name)
            greeting = rf"^(?:{'|'.join(_GREETINGS)})[\s,]+{escaped}(?![\w-])"
            vocative = rf"^{escaped}\s*[,:]"
            if re.match(greeting, lowered) or re.match(vocative, lowered):
                found.append(participant.id)
                break
    return found


def skill_overlap_score(message: str, participant: Participant) -> float:
    """Count skills whose words all appear in the message.

    Multi-word skills ("code review") need every word present. A skill that
    matches only as a prefix of a message word ("test" in "testing") counts
    half.
    """
    words = set(_tokens(message))
    if not words:
        return 0.0

    score = 0.0
    for skill in participant.skills:
        skill_words = _tokens(skill)
        if not skill_words:
            continue
        if all(word in words for word in skill_words):
            score += 1.0
        elif all(any(w.startswith(word) for w in words) for word in skill_words):
            score += 0.5
    return score


def roster_help(participants: Sequence[Participant]) -> str:
    """Addressing hints listing every agent and its aliases."""
    lines = ["Address an agent with @name. Available agents:"]
    for participant in participants:
        aliases = ", ".join(f"@{alias}" for alias in participant.aliases)
        suffix = f" (also {aliases})" if aliases else ""
        role = f" - {participant.role}" if participant.role else ""
        lines.append(f"  @{participant.id}: {participant.name}{role}{suffix}")
    return "\n".join(lines)


class RoutingStrategy(ABC):
    """One routing policy."""

    mode: ConversationMode

    @abstractmethod
    def route(
        self,
        message: str,
        participants: Sequence[Participant],
        state: RoutingState
    ) -> RoutingResult:
        """Select targets for a non-empty roster."""
        pass


class FreeChatStrategy(RoutingStrategy):
    """Everybody answers, in declaration order."""

    mode = ConversationMode.FREE_CHAT

    def route(self, message, participants, state):
        return RoutingResult(
            target_ids=[p.id for p in participants],
            reason=f"Free chat: broadcasting to all {len(participants)} agents"
        )


class SequentialStrategy(RoutingStrategy):
    """Everybody answers once, rotating from the agent after the last speaker."""

    mode = ConversationMode.SEQUENTIAL

    def route(self, message, participants, state):
        count = len(participants)
        last = state.last_speaker_index
        start = 0 if last is None else (last + 1) % count
        order = [participants[(start + offset) % count].id for offset in range(count)]
        return RoutingResult(
            target_ids=order,
            reason=f"Sequential: rotation starts at {participants[start].name}"
        )


class TagOnlyStrategy(RoutingStrategy):
    """Only addressed agents answer; nobody addressed means broadcast."""

    mode = ConversationMode.TAG_ONLY

    def route(self, message, participants, state):
        mentioned = parse_mentions(message, participants)
        if mentioned:
            return RoutingResult(
                target_ids=mentioned,
                reason=f"Tag only: addressed {', '.join('@' + m for m in mentioned)}"
            )

        addressed = parse_natural_address(message, participants)
        if addressed:
            return RoutingResult(
                target_ids=addressed,
                reason=f"Tag only: addressed by name {', '.join(addressed)}"
            )

        return RoutingResult(
            target_ids=[p.id for p in participants],
            reason="Tag only: no agent addressed, broadcasting to all agents",
            fallback_used=True,
            help_content=roster_help(participants)
        )


class RoleBasedStrategy(RoutingStrategy):
    """The agent whose skills best match the message answers.

    Ties go to the agent declared first. When nothing matches, the default
    agent (or the first agent) answers.
    """

    mode = ConversationMode.ROLE_BASED

    def __init__(self, scorer: SkillScorer = skill_overlap_score, default_agent_id: Optional[str] = None):
        self.scorer = scorer
        self.default_agent_id = default_agent_id

    def route(self, message, participants, state):
        best: Optional[Participant] = None
        best_score = 0.0
        for participant in participants:
            score = self.scorer(message, participant)
            if score > best_score:
                best, best_score = participant, score

        if best is not None:
            return RoutingResult(
                target_ids=[best.id],
                reason=f"Role based: {best.name} matched with score {best_score:g}"
            )

        fallback = participants[0]
        if self.default_agent_id:
            fallback = next((p for p in participants if p.id == self.default_agent_id), fallback)
        return RoutingResult(
            target_ids=[fallback.id],
            reason=f"Role based: no skill matched, routed to {fallback.name}",
            fallback_used=True
        )


class RoutingEngine:
    """Dispatches to the strategy for the routing state's mode."""

    def __init__(self, strategies: Optional[Dict[ConversationMode, RoutingStrategy]] = None):
        self.strategies: Dict[ConversationMode, RoutingStrategy] = {
            ConversationMode.FREE_CHAT: FreeChatStrategy(),
            ConversationMode.SEQUENTIAL: SequentialStrategy(),
            ConversationMode.TAG_ONLY: TagOnlyStrategy(),
            ConversationMode.ROLE_BASED: RoleBasedStrategy()
        }
        if strategies:
            self.strategies.update(strategies)

    def route(
        self,
        message: str,
        participants: Sequence[Participant],
        state: RoutingState
    ) -> RoutingResult:
        """Select the ordered targets for ``message``.

        An empty roster yields an empty result with an explanation, never
        an error.
        """
        if not participants:
            return RoutingResult(
                target_ids=[],
                reason=f"No agents available for {state.mode.value} routing",
                error_code=ErrorCode.ROUTING_UNAVAILABLE
            )

        result = self.strategies[state.mode].route(message, participants, state)
        logger.debug(f"Routed in {state.mode.value} mode to {result.target_ids}: {result.reason}")
        return result

    @staticmethod
    def next_state(
        state: RoutingState,
        result: RoutingResult,
        participants: Sequence[Participant],
        spoken_ids: Sequence[str]
    ) -> RoutingState:
        """Routing state after a round.

        Sequential rotation resumes after the last routed target. Other
        modes remember the last agent that actually completed a message.
        """
        index_of = {p.id: i for i, p in enumerate(participants)}

        last_index: Optional[int] = None
        if state.mode == ConversationMode.SEQUENTIAL and result.target_ids:
            last_index = index_of.get(result.target_ids[-1])
        elif spoken_ids:
            last_index = index_of.get(spoken_ids[-1])

        return state.advanced(last_index)
