"""
huddle - Conversation scheduler for one human and a team of AI agents.

This package routes each human message to the right agents, enforces token
budgets, suspends agent turns on approval gates, supervises multi-step
plans and persists every session so it can be resumed after a restart.
"""

__version__ = "0.1.0"
__author__ = "huddle developers"

from huddle.errors import ErrorCode, HuddleError
from huddle.services.conversation_orchestrator import ConversationOrchestrator

__all__ = [
    "models",
    "services",
    "lib",
    "cli",
    "ErrorCode",
    "HuddleError",
    "ConversationOrchestrator",
]
