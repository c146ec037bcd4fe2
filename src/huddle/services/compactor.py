"""Compactor: checkpoints sessions and folds old history into a summary."""

import hashlib
import logging
import re
from collections import OrderedDict
from typing import List, Optional

from pydantic import BaseModel, Field

from huddle.models.checkpoint import Checkpoint
from huddle.models.conversation_session import CompactionMarker, CompactionSummary, Session
from huddle.models.message import Message, MessageStatus
from huddle.models.team_config import CompactionConfig
from huddle.services.interfaces.summarizer import ISummarizer


logger = logging.getLogger(__name__)

_SENTENCE_END = re.compile(r"(?<=[.!?])\s")

MAX_CACHED_SUMMARIES = 64


class ExtractiveSummarizer(ISummarizer):
    """Deterministic summary: the first sentence of each message, by author."""

    def __init__(self, max_line_chars: int = 200, max_summary_chars: int = 4000):
        self.max_line_chars = max_line_chars
        self.max_summary_chars = max_summary_chars

    def _first_sentence(self, text: str) -> str:
        text = " ".join(text.split())
        sentence = _SENTENCE_END.split(text, maxsplit=1)[0]
        if len(sentence) > self.max_line_chars:
            sentence = sentence[:self.max_line_chars].rstrip() + "..."
        return sentence

    async def summarize(self, messages: List[Message], previous_summary: Optional[str] = None) -> str:
        lines = [previous_summary] if previous_summary else []
        for message in messages:
            if message.status == MessageStatus.ERROR or not message.content.strip():
                continue
            lines.append(f"{message.author}: {self._first_sentence(message.content)}")

        summary = "\n".join(lines)
        if len(summary) > self.max_summary_chars:
            # Oldest lines go first.
            summary = summary[-self.max_summary_chars:]
            summary = summary[summary.find("\n") + 1:] if "\n" in summary else summary
        return summary


class CompactionResult(BaseModel):
    """A checkpoint plus the in-memory state to adopt once it is stored."""

    checkpoint: Checkpoint
    marker: CompactionMarker
    retained: List[Message] = Field(default_factory=list)


class Compactor:
    """Decides when a session is due for a checkpoint and builds it.

    Building a checkpoint never mutates the session; the orchestrator
    stores the checkpoint first and only then adopts the new marker and
    retained history.
    """

    def __init__(
        self,
        config: CompactionConfig,
        summarizer: Optional[ISummarizer] = None,
        cache_size: int = MAX_CACHED_SUMMARIES
    ):
        self.config = config
        self.summarizer = summarizer or ExtractiveSummarizer()
        self.cache_size = max(1, cache_size)
        self._summary_cache: OrderedDict = OrderedDict()

    def is_due(self, session: Session) -> bool:
        if not self.config.enabled:
            return False
        elapsed = session.message_count - session.compaction.last_checkpoint_index
        return elapsed >= self.config.checkpoint_interval

    def should_compact(self, session: Session) -> bool:
        """Due and not blocked by an outstanding approval or plan."""
        if not self.is_due(session):
            return False
        if session.has_open_gates:
            logger.info(f"Compaction of session {session.id} deferred: a decision is pending")
            return False
        return True

    @staticmethod
    def fingerprint(messages: List[Message], previous_summary: Optional[str]) -> str:
        digest = hashlib.sha256()
        digest.update((previous_summary or "").encode("utf-8"))
        for message in messages:
            digest.update(f"\x00{message.id}\x00{message.author}\x00{message.content}".encode("utf-8"))
        return digest.hexdigest()

    async def _summarize(self, overflow: List[Message], previous_summary: Optional[str]) -> CompactionSummary:
        key = self.fingerprint(overflow, previous_summary)
        summary = self._summary_cache.get(key)
        if summary is None:
            summary = await self.summarizer.summarize(overflow, previous_summary)
            self._summary_cache[key] = summary
            # Least recently used fingerprints are evicted first.
            while len(self._summary_cache) > self.cache_size:
                self._summary_cache.popitem(last=False)
        else:
            self._summary_cache.move_to_end(key)
            logger.debug(f"Reusing cached summary {key[:12]}")
        return CompactionSummary(summary=summary, covered_through=0, fingerprint=key)

    async def compact(self, session: Session, thread_id: Optional[str] = None) -> CompactionResult:
        """Build a checkpoint at the session's current message count."""
        marker = session.compaction
        message_index = session.message_count
        history = list(session.messages)
        history_chars = sum(len(m.content) for m in history)

        summary_text = marker.latest_summary
        summaries = list(marker.summaries)
        base_index = marker.base_index
        summarized_count = base_index

        if history_chars > self.config.max_full_history_chars and len(history) > self.config.keep_recent_messages:
            keep = self.config.keep_recent_messages
            overflow, history = history[:-keep], history[-keep:]
            summary = await self._summarize(overflow, summary_text)
            summary.covered_through = base_index + len(overflow)
            summaries.append(summary)
            summary_text = summary.summary
            base_index = summary.covered_through
            summarized_count = base_index

        checkpoint = Checkpoint(
            thread_id=thread_id or session.id,
            session_id=session.id,
            message_index=message_index,
            participants=list(session.participants),
            routing_state=session.routing_state.model_copy(),
            budget=session.budget.model_copy(deep=True),
            history=history,
            history_start_index=base_index,
            summarized=summary_text is not None,
            summary=summary_text,
            summarized_count=summarized_count
        )

        new_marker = CompactionMarker(
            last_checkpoint_index=message_index,
            base_index=base_index,
            summaries=summaries
        )

        logger.info(
            f"Built checkpoint for session {session.id} at message {message_index} "
            f"({len(history)} messages kept, {summarized_count} summarized)"
        )
        return CompactionResult(checkpoint=checkpoint, marker=new_marker, retained=history)
