"""Scheduler services: routing, budgets, approvals, turns, compaction and storage."""

from huddle.services.approval_gate import ApprovalGate, ToolTier
from huddle.services.budget_tracker import BudgetTracker
from huddle.services.compactor import CompactionResult, Compactor, ExtractiveSummarizer
from huddle.services.conversation_orchestrator import ConversationOrchestrator
from huddle.services.event_feed import EventFeed, FeedEvent, FeedEventType
from huddle.services.routing_engine import (
    FreeChatStrategy,
    RoleBasedStrategy,
    RoutingEngine,
    RoutingStrategy,
    SequentialStrategy,
    TagOnlyStrategy,
)
from huddle.services.session_store import FileSessionStore, InMemorySessionStore
from huddle.services.turn_executor import TurnExecutor

__all__ = [
    "ApprovalGate",
    "ToolTier",
    "BudgetTracker",
    "CompactionResult",
    "Compactor",
    "ExtractiveSummarizer",
    "ConversationOrchestrator",
    "EventFeed",
    "FeedEvent",
    "FeedEventType",
    "FreeChatStrategy",
    "RoleBasedStrategy",
    "RoutingEngine",
    "RoutingStrategy",
    "SequentialStrategy",
    "TagOnlyStrategy",
    "FileSessionStore",
    "InMemorySessionStore",
    "TurnExecutor",
]
