"""Lifecycle state models.

The worker's lifecycle is a closed set of states. Each state is a frozen
Pydantic model discriminated by ``kind`` so it can be checkpointed to
JSON and read back without ambiguity::

    Idle -> Assigned -> Working -> Landed -> Bundled -> Merged -> Idle

``Idle``, ``Landed``, ``Bundled`` and ``Merged`` are *worker-free*: the
agent holds no issue and may claim new work. Pre-flight issues are the
problems the detector finds before a transition; they are ephemeral and
never persisted.

Example:
    Round-tripping a state through a checkpoint::

        state = WorkingState(issue_number=42, branch="agent001/42-fix-login", commits_ahead=3)
        data = state.model_dump(mode="json")
        assert parse_state(data) == state
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class LifecycleKind(str, Enum):
    """Discriminator values of the lifecycle states."""

    IDLE = "idle"
    ASSIGNED = "assigned"
    WORKING = "working"
    LANDED = "landed"
    BUNDLED = "bundled"
    MERGED = "merged"


WORKER_FREE_KINDS = frozenset(
    {LifecycleKind.IDLE, LifecycleKind.LANDED, LifecycleKind.BUNDLED, LifecycleKind.MERGED}
)


class _StateBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def issue_numbers(self) -> list[int]:
        """Issues this state refers to, empty for Idle."""
        return []

    @property
    def worker_free(self) -> bool:
        return LifecycleKind(self.kind) in WORKER_FREE_KINDS  # type: ignore[attr-defined]

    def describe(self) -> str:
        return str(self.kind)  # type: ignore[attr-defined]


class IdleState(_StateBase):
    kind: Literal["idle"] = "idle"


class AssignedState(_StateBase):
    kind: Literal["assigned"] = "assigned"
    issue_number: int
    branch: str

    @property
    def issue_numbers(self) -> list[int]:
        return [self.issue_number]

    def describe(self) -> str:
        return f"assigned #{self.issue_number} on {self.branch}"


class WorkingState(_StateBase):
    kind: Literal["working"] = "working"
    issue_number: int
    branch: str
    commits_ahead: int = 0

    @property
    def issue_numbers(self) -> list[int]:
        return [self.issue_number]

    def describe(self) -> str:
        return f"working on #{self.issue_number} ({self.commits_ahead} commit(s) on {self.branch})"


class LandedState(_StateBase):
    kind: Literal["landed"] = "landed"
    issue_number: int
    branch: str | None = None

    @property
    def issue_numbers(self) -> list[int]:
        return [self.issue_number]

    def describe(self) -> str:
        return f"landed #{self.issue_number}, waiting for bundling"


class BundledState(_StateBase):
    kind: Literal["bundled"] = "bundled"
    work_items: tuple[int, ...]
    bundle_pr: int

    @property
    def issue_numbers(self) -> list[int]:
        return list(self.work_items)

    def describe(self) -> str:
        items = ", ".join(f"#{n}" for n in self.work_items)
        return f"bundled {items} into PR #{self.bundle_pr}"


class MergedState(_StateBase):
    kind: Literal["merged"] = "merged"
    work_items: tuple[int, ...]
    pr_number: int | None = None

    @property
    def issue_numbers(self) -> list[int]:
        return list(self.work_items)

    def describe(self) -> str:
        items = ", ".join(f"#{n}" for n in self.work_items)
        return f"merged {items}"


AgentState = Annotated[
    IdleState | AssignedState | WorkingState | LandedState | BundledState | MergedState,
    Field(discriminator="kind"),
]

_STATE_ADAPTER: TypeAdapter[Any] = TypeAdapter(AgentState)


def parse_state(data: dict[str, Any]) -> AgentState:
    """Rebuild a lifecycle state from its JSON form."""
    return _STATE_ADAPTER.validate_python(data)


# ---------------------------------------------------------------------------
# Pre-flight issues
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoCommits:
    """The work branch has no commits ahead of the default branch."""

    kind = "no_commits"

    def describe(self) -> str:
        return "Branch has no commits ahead of the default branch"


@dataclass(frozen=True)
class UnpushedCommits:
    """Local commits that are not on the remote branch yet."""

    count: int
    kind = "unpushed_commits"

    def describe(self) -> str:
        return f"{self.count} commit(s) not pushed"


@dataclass(frozen=True)
class BehindMain:
    """The default branch moved on since the work branch was cut."""

    commits: int
    kind = "behind_main"

    def describe(self) -> str:
        return f"Branch is {self.commits} commit(s) behind the default branch"


@dataclass(frozen=True)
class MergeConflicts:
    """Merging the default branch into the work branch would conflict."""

    paths: tuple[str, ...]
    kind = "merge_conflicts"

    def describe(self) -> str:
        return f"Merge conflicts with the default branch in: {', '.join(self.paths)}"


@dataclass(frozen=True)
class BranchMissing:
    """An issue carries the agent label but its work branch is gone."""

    issue_number: int
    branch: str
    kind = "branch_missing"

    def describe(self) -> str:
        return f"Issue #{self.issue_number} is assigned but branch {self.branch} does not exist"


@dataclass(frozen=True)
class LabelMismatch:
    """The routing labels of the tracked issue form no valid combination."""

    issue_number: int
    expected: tuple[str, ...]
    actual: tuple[str, ...]
    kind = "label_mismatch"

    def describe(self) -> str:
        return (
            f"Issue #{self.issue_number} has routing labels {list(self.actual)}, "
            f"expected {list(self.expected)}"
        )


@dataclass(frozen=True)
class IssueMissing:
    """The work branch points at an issue GitHub no longer has."""

    issue_number: int
    branch: str
    kind = "issue_missing"

    def describe(self) -> str:
        return f"Issue #{self.issue_number} for branch {self.branch} was deleted or transferred"


PreFlightIssue = (
    NoCommits | UnpushedCommits | BehindMain | MergeConflicts | BranchMissing | LabelMismatch | IssueMissing
)


# ---------------------------------------------------------------------------
# Persistence records
# ---------------------------------------------------------------------------


class PlanProgress(BaseModel):
    """How far an in-flight plan got before the last checkpoint.

    A plan is rebuilt deterministically from ``from_state`` and
    ``target_state``; if the rebuilt plan has the same ``plan_id`` the
    executor resumes at ``completed_operations``.
    """

    plan_id: str
    event: str
    from_state: AgentState
    target_state: AgentState | None = None
    completed_operations: int = 0


class Checkpoint(BaseModel):
    """The engine's last known belief about the worker."""

    agent_id: str
    sequence: int
    """Monotonic counter; every write increments it."""

    created_at: datetime
    state: AgentState
    head_sha: str | None = None
    """HEAD of the working tree when the checkpoint was written."""

    labels: tuple[str, ...] = ()
    """Labels of the tracked issue at checkpoint time, when known."""

    in_flight: PlanProgress | None = None


class DriftKind(str, Enum):
    """What diverged between the checkpoint and GitHub."""

    ISSUE_CLOSED = "issue_closed"
    ISSUE_REASSIGNED = "issue_reassigned"
    BRANCH_DELETED = "branch_deleted"
    PR_MERGED_EXTERNALLY = "pr_merged_externally"
    PR_CLOSED_EXTERNALLY = "pr_closed_externally"
    BUNDLE_MERGED = "bundle_merged"
    STATE_CHANGED = "state_changed"
    BEHIND_MAIN = "behind_main"
    LABELS_REORDERED = "labels_reordered"
    ISSUE_MISSING = "issue_missing"


class DriftSeverity(str, Enum):
    """How hard the corrector has to work."""

    MINOR = "minor"
    """Cosmetic; the checkpoint is refreshed."""

    MODERATE = "moderate"
    """The checkpoint is stale; state is re-detected."""

    CRITICAL = "critical"
    """Work is at risk; local work is backed up and the worker goes Idle."""

    @property
    def rank(self) -> int:
        return {"minor": 0, "moderate": 1, "critical": 2}[self.value]


class DriftRecord(BaseModel):
    """One observed divergence and what was done about it."""

    kind: DriftKind
    severity: DriftSeverity
    issue_number: int | None = None
    expected: str
    actual: str
    detected_at: datetime
    correction: str | None = None


class HistoryEntry(BaseModel):
    """A line of ``history.jsonl``."""

    entry_type: Literal["transition", "drift"]
    recorded_at: datetime
    plan_id: str | None = None
    event: str | None = None
    from_kind: str | None = None
    to_kind: str | None = None
    drift: DriftRecord | None = None


class ScheduleState(BaseModel):
    """Timers and pending relabels that must survive a restart."""

    last_bundling_at: datetime | None = None
    last_drift_at: datetime | None = None
    unlabelled: dict[int, int] = Field(default_factory=dict)
    """Items already in a pull request (item to PR) whose bundled label is not applied yet."""


class ValidationOutcome(str, Enum):
    """What to do with a restored checkpoint."""

    RESUME = "resume"
    RESYNC_THEN_RESUME = "resync_then_resume"
    START_FRESH = "start_fresh"
