"""Abstract interface for durable session storage.

Defines the ISessionStore contract: whole-session save and load plus
incremental appends, and a checkpoint store keyed by thread id.
"""

from abc import abstractmethod
from typing import Any, Dict, List, Optional

from huddle.models.checkpoint import Checkpoint
from huddle.models.conversation_session import Session
from huddle.models.message import Message
from huddle.models.participant import Participant
from huddle.services.interfaces.service_lifecycle import IServiceLifecycle


class ISessionStore(IServiceLifecycle):
    """Single writer of durable session state."""

    @abstractmethod
    async def load(self, session_id: str) -> Session:
        """Load a session. Raises SessionNotFoundError."""
        pass

    @abstractmethod
    async def save(self, session: Session) -> None:
        """Persist the whole session; applied atomically against reload."""
        pass

    @abstractmethod
    async def append_message(self, session_id: str, message: Message, index: int) -> None:
        """Persist one message at an absolute index. Idempotent per message id."""
        pass

    @abstractmethod
    async def upsert_participant(self, session_id: str, participant: Participant) -> None:
        pass

    @abstractmethod
    async def get_messages(self, session_id: str) -> List[Message]:
        """Full persisted history, including compacted messages."""
        pass

    @abstractmethod
    async def exists(self, session_id: str) -> bool:
        pass

    @abstractmethod
    async def list_sessions(self) -> List[Dict[str, Any]]:
        """Summaries of every stored session."""
        pass

    @abstractmethod
    async def resolve_session_id(self, prefix: str) -> str:
        """Expand a unique id prefix. Raises SessionNotFoundError or AmbiguousSessionError."""
        pass

    @abstractmethod
    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        pass

    @abstractmethod
    async def load_checkpoint(self, thread_id: str, message_index: Optional[int] = None) -> Optional[Checkpoint]:
        """Checkpoint at ``message_index``, or the latest one when None."""
        pass

    @abstractmethod
    async def list_checkpoints(self, thread_id: str) -> List[int]:
        """Message indices of stored checkpoints, ascending."""
        pass
