"""
Unit tests for checkpoint scheduling and history summarization.
"""

from typing import List, Optional

import pytest

from huddle.errors import ErrorCode
from huddle.models.approval import ApprovalKind, ApprovalRequest
from huddle.models.conversation_session import Session
from huddle.models.message import Message
from huddle.models.team_config import CompactionConfig
from huddle.services.compactor import Compactor, ExtractiveSummarizer
from huddle.services.interfaces.summarizer import ISummarizer

from conftest import make_participant


class CountingSummarizer(ISummarizer):
    def __init__(self):
        self.calls = 0

    async def summarize(self, messages: List[Message], previous_summary: Optional[str] = None) -> str:
        self.calls += 1
        return f"summary of {len(messages)} messages"


def session_with(count: int, content: str = "hello there. more text") -> Session:
    session = Session(id="s1", participants=[make_participant("a")])
    for index in range(count):
        session.messages.append(Message.from_human("s1", f"{content} #{index}"))
    return session


class TestScheduling:
    """Checkpoints every interval, never while a decision is open."""

    def test_due_at_interval(self):
        compactor = Compactor(CompactionConfig(checkpoint_interval=5))

        assert not compactor.is_due(session_with(4))
        assert compactor.is_due(session_with(5))

    def test_disabled(self):
        compactor = Compactor(CompactionConfig(enabled=False, checkpoint_interval=1))

        assert not compactor.should_compact(session_with(10))

    def test_deferred_while_approval_pending(self):
        compactor = Compactor(CompactionConfig(checkpoint_interval=1))
        session = session_with(3)
        session.pending_approvals.append(ApprovalRequest(session_id="s1", agent_id="a", kind=ApprovalKind.SHELL))

        assert compactor.is_due(session)
        assert not compactor.should_compact(session)


class TestCompaction:
    """Checkpoint contents."""

    @pytest.mark.asyncio
    async def test_small_history_kept_in_full(self):
        compactor = Compactor(CompactionConfig(checkpoint_interval=3))
        session = session_with(3)

        result = await compactor.compact(session)

        assert result.checkpoint.message_index == 3
        assert len(result.checkpoint.history) == 3
        assert not result.checkpoint.summarized
        assert result.marker.last_checkpoint_index == 3
        assert result.marker.base_index == 0
        assert len(session.messages) == 3

    @pytest.mark.asyncio
    async def test_large_history_is_summarized(self):
        summarizer = CountingSummarizer()
        compactor = Compactor(
            CompactionConfig(checkpoint_interval=1, max_full_history_chars=100, keep_recent_messages=2),
            summarizer
        )
        session = session_with(6, content="x" * 50)

        result = await compactor.compact(session)

        assert result.checkpoint.summarized
        assert result.checkpoint.summary == "summary of 4 messages"
        assert result.checkpoint.history_start_index == 4
        assert result.checkpoint.summarized_count == 4
        assert [m.id for m in result.retained] == [m.id for m in session.messages[-2:]]
        assert result.marker.base_index == 4
        assert result.marker.summaries[0].covered_through == 4
        assert len(session.messages) == 6

    @pytest.mark.asyncio
    async def test_identical_overflow_reuses_cached_summary(self):
        summarizer = CountingSummarizer()
        compactor = Compactor(
            CompactionConfig(checkpoint_interval=1, max_full_history_chars=100, keep_recent_messages=2),
            summarizer
        )
        session = session_with(6, content="x" * 50)

        first = await compactor.compact(session)
        second = await compactor.compact(session)

        assert summarizer.calls == 1
        assert first.marker.summaries[0].fingerprint == second.marker.summaries[0].fingerprint

    @pytest.mark.asyncio
    async def test_summary_cache_keeps_most_recent_fingerprints(self):
        summarizer = CountingSummarizer()
        compactor = Compactor(
            CompactionConfig(checkpoint_interval=1, max_full_history_chars=100, keep_recent_messages=2),
            summarizer,
            cache_size=2
        )
        sessions = [session_with(6, content=f"{letter}" * 50) for letter in "xyz"]

        for session in sessions:
            await compactor.compact(session)
        assert len(compactor._summary_cache) == 2

        await compactor.compact(sessions[2])
        assert summarizer.calls == 3

        await compactor.compact(sessions[0])
        assert summarizer.calls == 4
        assert len(compactor._summary_cache) == 2

    @pytest.mark.asyncio
    async def test_checkpoint_copies_budget(self):
        compactor = Compactor(CompactionConfig(checkpoint_interval=1))
        session = session_with(1)
        session.budget.session_tokens = 42

        result = await compactor.compact(session)
        session.budget.session_tokens = 50

        assert result.checkpoint.budget.session_tokens == 42


class TestExtractiveSummarizer:
    """Default summarizer output."""

    @pytest.mark.asyncio
    async def test_first_sentence_per_message(self):
        messages = [
            Message.from_human("s1", "Build a parser. Use recursive descent."),
            Message(session_id="s1", author="a", content="Done! Tests pass.", status="complete")
        ]

        summary = await ExtractiveSummarizer().summarize(messages, previous_summary="earlier: setup")

        assert summary.splitlines() == ["earlier: setup", "human: Build a parser.", "a: Done!"]

    @pytest.mark.asyncio
    async def test_error_messages_skipped(self):
        failed = Message(session_id="s1", author="a")
        failed.mark_error(ErrorCode.PROVIDER_ERROR, "boom")

        assert await ExtractiveSummarizer().summarize([failed]) == ""
