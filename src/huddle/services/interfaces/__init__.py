"""Abstract collaborator contracts consumed by the scheduler."""

from huddle.services.interfaces.agent_provider import IAgentProvider
from huddle.services.interfaces.planner import IPlanner
from huddle.services.interfaces.service_lifecycle import IServiceLifecycle
from huddle.services.interfaces.session_store import ISessionStore
from huddle.services.interfaces.summarizer import ISummarizer
