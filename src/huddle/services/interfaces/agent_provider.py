"""Abstract interface for invoking an agent's provider."""

from abc import ABC, abstractmethod
from typing import AsyncGenerator, Optional

from huddle.models.participant import Participant
from huddle.models.turn import ApprovalDecision, ConversationContext, ProviderEvent


class IAgentProvider(ABC):
    """Produces one agent turn as a stream of events.

    The stream yields ``ContentDelta``, ``GatedAction`` and ``UsageReport``
    events. After a ``GatedAction`` the scheduler sends an
    ``ApprovalDecision`` back with ``asend``; every other event receives
    None. A provider that hits a denial must not repeat the same action.
    """

    @abstractmethod
    def invoke(
        self,
        participant: Participant,
        context: ConversationContext
    ) -> AsyncGenerator[ProviderEvent, Optional[ApprovalDecision]]:
        """Start a turn for ``participant``."""
        pass

    def estimate_tokens(self, participant: Participant, context: ConversationContext) -> int:
        """Expected token cost of the turn, used for admission. 0 when unknown."""
        return 0
