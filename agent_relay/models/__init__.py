"""Data models shared across agent-relay."""

from agent_relay.models.domain import Branch, IssueState, Priority, PullRequest, WorkItem
from agent_relay.models.lifecycle import (
    AgentState,
    AssignedState,
    BundledState,
    Checkpoint,
    DriftKind,
    DriftRecord,
    DriftSeverity,
    IdleState,
    LandedState,
    LifecycleKind,
    MergedState,
    PreFlightIssue,
    ValidationOutcome,
    WorkingState,
)
from agent_relay.models.plans import (
    ExecutionReport,
    ExecutionStatus,
    Operation,
    OperationKind,
    RiskLevel,
    TransitionPlan,
)
from agent_relay.models.results import (
    BundlingOutcome,
    BundlingPreview,
    BundlingResult,
    CommandOutcome,
    CommandResult,
)

__all__ = [
    "AgentState",
    "AssignedState",
    "Branch",
    "BundledState",
    "BundlingOutcome",
    "BundlingPreview",
    "BundlingResult",
    "Checkpoint",
    "CommandOutcome",
    "CommandResult",
    "DriftKind",
    "DriftRecord",
    "DriftSeverity",
    "ExecutionReport",
    "ExecutionStatus",
    "IdleState",
    "IssueState",
    "LandedState",
    "LifecycleKind",
    "MergedState",
    "Operation",
    "OperationKind",
    "PreFlightIssue",
    "Priority",
    "PullRequest",
    "RiskLevel",
    "TransitionPlan",
    "ValidationOutcome",
    "WorkItem",
    "WorkingState",
]
