"""Abstract interface for task planning."""

from abc import ABC, abstractmethod
from typing import List, Optional

from huddle.models.participant import Participant
from huddle.models.plan import TaskAnalysis


class IPlanner(ABC):
    """Decides whether a message is a multi-step task and proposes a plan."""

    @abstractmethod
    async def analyze(self, content: str, participants: List[Participant]) -> Optional[TaskAnalysis]:
        """Return an analysis, or None to route the message normally."""
        pass
