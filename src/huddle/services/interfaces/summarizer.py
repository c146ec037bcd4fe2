"""Abstract interface for history summarization."""

from abc import ABC, abstractmethod
from typing import List, Optional

from huddle.models.message import Message


class ISummarizer(ABC):

    @abstractmethod
    async def summarize(self, messages: List[Message], previous_summary: Optional[str] = None) -> str:
        """Fold ``messages`` (oldest first) into ``previous_summary``."""
        pass
