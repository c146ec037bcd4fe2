"""Data models for the huddle conversation scheduler."""

from huddle.models.approval import (
    UNLIMITED_UNTIL_RESPONSE_END,
    ApprovalKind,
    ApprovalRequest,
    ApprovalResolution,
    ApprovalStatus,
)
from huddle.models.audit_record import AuditRecord, EventType, ResultStatus
from huddle.models.budget import BudgetCounters, BudgetDecision, BudgetLimits, RejectionReason, TokenUsage
from huddle.models.checkpoint import Checkpoint
from huddle.models.conversation_session import CompactionMarker, CompactionSummary, PendingPlan, Session
from huddle.models.message import (
    HUMAN_AUTHOR,
    ORCHESTRATOR_AUTHOR,
    ApprovalPayload,
    Message,
    MessageStatus,
    PlanPayload,
    TaskSummaryPayload,
)
from huddle.models.participant import Participant, ProviderBinding
from huddle.models.plan import (
    AgentContribution,
    EstimatedCost,
    Plan,
    PlanStatus,
    PlanStep,
    TaskAnalysis,
    TaskCompletionSummary,
    TaskComplexity,
    TaskMetadata,
)
from huddle.models.routing_state import ConversationMode, RoutingResult, RoutingState
from huddle.models.team_config import (
    CompactionConfig,
    PermissionMode,
    PersistenceConfig,
    SupervisionConfig,
    TeamConfig,
    ToolApprovalConfig,
)
from huddle.models.turn import (
    ApprovalDecision,
    ContentDelta,
    ConversationContext,
    GatedAction,
    RoundResult,
    TurnOutcome,
    UsageReport,
)
