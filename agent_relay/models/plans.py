"""Transition plans and execution reports.

A ``TransitionPlan`` is an ordered list of ``Operation`` values produced
by the planner and consumed by the executor. Plans are pure data: building
one never touches GitHub or git.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict

from agent_relay.exceptions import ErrorKind
from agent_relay.models.lifecycle import AgentState


class RiskLevel(IntEnum):
    """How much damage a plan can do if it is wrong.

    SAFE and LOW plans run automatically. MEDIUM and HIGH need the caller
    to opt in. CRITICAL plans never run; they become tracking issues.
    """

    SAFE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class OperationKind(str, Enum):
    """Primitive steps a plan is made of."""

    ADD_LABEL = "add_label"
    REMOVE_LABEL = "remove_label"
    CREATE_BRANCH = "create_branch"
    CHECKOUT = "checkout"
    PUSH_BRANCH = "push_branch"
    COMMIT_ALL = "commit_all"
    COMMENT = "comment"
    MERGE_PR = "merge_pr"
    NOTICE = "notice"
    WARNING = "warning"
    ERROR = "error"


class Operation(BaseModel):
    """A single step of a plan. Only the fields its kind needs are set."""

    model_config = ConfigDict(frozen=True)

    kind: OperationKind
    description: str
    issue_number: int | None = None
    label: str | None = None
    branch: str | None = None
    start_point: str | None = None
    pr_number: int | None = None
    message: str | None = None
    force: bool = False


class TransitionPlan(BaseModel):
    """An ordered, risk-rated list of operations moving the worker between states."""

    model_config = ConfigDict(frozen=True)

    plan_id: str
    event: str
    from_state: AgentState
    target_state: AgentState | None = None
    operations: tuple[Operation, ...]
    risk: RiskLevel
    can_auto_execute: bool

    @property
    def requires_confirmation(self) -> bool:
        return RiskLevel.MEDIUM <= self.risk < RiskLevel.CRITICAL

    @property
    def executable(self) -> bool:
        """Whether the executor may run this plan at all."""
        if self.risk >= RiskLevel.CRITICAL:
            return False
        return not any(op.kind == OperationKind.ERROR for op in self.operations)

    @property
    def messages(self) -> list[str]:
        """Human-facing notices, warnings and errors carried by the plan."""
        return [
            op.message or op.description
            for op in self.operations
            if op.kind in (OperationKind.NOTICE, OperationKind.WARNING, OperationKind.ERROR)
        ]


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    HALTED = "halted"
    """An operation failed; later operations did not run."""

    REFUSED = "refused"
    """The plan needed confirmation that was not given."""

    ESCALATED = "escalated"
    """The plan was critical and became a tracking issue instead."""


@dataclass
class FailedOperation:
    operation: Operation
    error: str
    error_kind: ErrorKind


@dataclass
class ExecutionReport:
    """What the executor did with a plan."""

    plan_id: str
    status: ExecutionStatus
    completed: list[Operation] = field(default_factory=list)
    failed: FailedOperation | None = None
    remaining: list[Operation] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    tracking_issue: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    def summary(self) -> dict[str, object]:
        return {
            "plan_id": self.plan_id,
            "status": self.status.value,
            "completed": [op.description for op in self.completed],
            "failed": (
                {"operation": self.failed.operation.description, "error": self.failed.error}
                if self.failed
                else None
            ),
            "remaining": [op.description for op in self.remaining],
            "tracking_issue": self.tracking_issue,
        }
