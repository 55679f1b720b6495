"""
Transition planning.

The planner turns a requested lifecycle change into an ordered list of
operations with a risk rating. It is pure: the same inputs always give
the same plan, including the same ``plan_id``, which is what lets an
interrupted plan resume after a crash.

Legal transitions::

    Idle     -> Assigned
    Assigned -> Working | Idle
    Working  -> Landed  | Idle
    Landed   -> Bundled | Merged | Idle
    Bundled  -> Merged  | Idle
    Merged   -> Idle

Every other pair, identity pairs included, yields a non-executable plan
holding a single ERROR operation at CRITICAL risk.
"""

import hashlib
import json
from dataclasses import dataclass

from agent_relay.config.settings import LabelsConfig
from agent_relay.models.lifecycle import (
    AgentState,
    BehindMain,
    BranchMissing,
    IdleState,
    IssueMissing,
    LabelMismatch,
    LifecycleKind,
    MergeConflicts,
    NoCommits,
    PreFlightIssue,
    UnpushedCommits,
)
from agent_relay.models.plans import Operation, OperationKind, RiskLevel, TransitionPlan

K = LifecycleKind

LEGAL_TRANSITIONS: dict[tuple[LifecycleKind, LifecycleKind], str] = {
    (K.IDLE, K.ASSIGNED): "claim",
    (K.ASSIGNED, K.WORKING): "start",
    (K.ASSIGNED, K.IDLE): "abandon",
    (K.WORKING, K.LANDED): "land",
    (K.WORKING, K.IDLE): "abandon",
    (K.LANDED, K.BUNDLED): "bundle",
    (K.LANDED, K.MERGED): "merge",
    (K.LANDED, K.IDLE): "release",
    (K.BUNDLED, K.MERGED): "merge",
    (K.BUNDLED, K.IDLE): "release",
    (K.MERGED, K.IDLE): "release",
}


def is_legal(from_kind: str, to_kind: str) -> bool:
    return (LifecycleKind(from_kind), LifecycleKind(to_kind)) in LEGAL_TRANSITIONS


@dataclass(frozen=True)
class PlanContext:
    """Everything besides the two states that a plan depends on.

    Keep time-dependent values (backup branch names) out of contexts for
    plans that must be resumable.
    """

    agent_id: str
    labels: LabelsConfig
    default_branch: str = "main"
    current_branch: str | None = None
    labelled_issues: tuple[int, ...] = ()
    """Open issues carrying the agent label."""

    has_local_changes: bool = False
    backup_branch: str | None = None
    pr_number: int | None = None
    missing_issues: tuple[int, ...] = ()
    """Issues GitHub no longer has; their labels cannot be released."""


def _op(kind: OperationKind, description: str, **fields: object) -> Operation:
    return Operation(kind=kind, description=description, **fields)


class TransitionPlanner:
    """Build transition, recovery and reset plans."""

    def plan(self, from_state: AgentState, to: AgentState, context: PlanContext) -> TransitionPlan:
        """Plan the transition ``from_state -> to``.

        Returns:
            The plan. Illegal requests yield a CRITICAL plan with a single
            ERROR operation and ``can_auto_execute=False``; they never raise.
        """
        key = (LifecycleKind(from_state.kind), LifecycleKind(to.kind))
        event = LEGAL_TRANSITIONS.get(key)
        if event is None:
            return self._illegal(from_state, to)

        builder = getattr(self, f"_plan_{key[0].value}_to_{key[1].value}")
        operations, risk = builder(from_state, to, context)
        return self._build(event, from_state, to, operations, risk)

    def plan_recovery(
        self,
        issues: list[PreFlightIssue],
        from_state: AgentState,
        context: PlanContext,
    ) -> TransitionPlan:
        """Plan fixes for pre-flight issues. Combined risk is the maximum."""
        operations: list[Operation] = []
        risk = RiskLevel.SAFE

        for issue in issues:
            if isinstance(issue, UnpushedCommits):
                operations.append(
                    _op(
                        OperationKind.PUSH_BRANCH,
                        f"Push {issue.count} unpushed commit(s)",
                        branch=context.current_branch,
                    )
                )
                risk = max(risk, RiskLevel.LOW)
            elif isinstance(issue, BehindMain):
                operations.append(
                    _op(
                        OperationKind.WARNING,
                        "Branch is behind the default branch",
                        message=(
                            f"Branch is {issue.commits} commit(s) behind {context.default_branch}; "
                            "bundling will cherry-pick onto the latest default branch"
                        ),
                    )
                )
                risk = max(risk, RiskLevel.LOW)
            elif isinstance(issue, MergeConflicts):
                operations.append(
                    _op(
                        OperationKind.ERROR,
                        "Merge conflicts with the default branch",
                        message=f"Resolve conflicts with {context.default_branch} in: {', '.join(issue.paths)}",
                    )
                )
                risk = max(risk, RiskLevel.CRITICAL)
            elif isinstance(issue, NoCommits):
                operations.append(
                    _op(
                        OperationKind.WARNING,
                        "No commits on the work branch",
                        message="Nothing has been committed. Continue anyway, or abandon the issue with reset",
                    )
                )
                risk = max(risk, RiskLevel.HIGH)
            elif isinstance(issue, LabelMismatch):
                for label in issue.expected:
                    if label not in issue.actual:
                        operations.append(
                            _op(
                                OperationKind.ADD_LABEL,
                                f"Add {label} to #{issue.issue_number}",
                                issue_number=issue.issue_number,
                                label=label,
                            )
                        )
                for label in issue.actual:
                    if label not in issue.expected:
                        operations.append(
                            _op(
                                OperationKind.REMOVE_LABEL,
                                f"Remove {label} from #{issue.issue_number}",
                                issue_number=issue.issue_number,
                                label=label,
                            )
                        )
                risk = max(risk, RiskLevel.MEDIUM)
            elif isinstance(issue, BranchMissing):
                operations.append(
                    _op(
                        OperationKind.WARNING,
                        f"Work branch for #{issue.issue_number} is missing",
                        message=(
                            f"Branch {issue.branch} does not exist. Run reset to release "
                            f"#{issue.issue_number} and claim it again"
                        ),
                    )
                )
                risk = max(risk, RiskLevel.HIGH)
            elif isinstance(issue, IssueMissing):
                operations.append(
                    _op(
                        OperationKind.WARNING,
                        f"Issue #{issue.issue_number} no longer exists",
                        message=(
                            f"Issue #{issue.issue_number} was deleted or transferred. Run reset to back up "
                            f"{issue.branch} and return to Idle"
                        ),
                    )
                )
                risk = max(risk, RiskLevel.HIGH)

        return self._build("recover", from_state, None, operations, risk)

    def plan_reset(self, from_state: AgentState, context: PlanContext) -> TransitionPlan:
        """Forced return to Idle from any state.

        Local changes are preserved on a backup branch before anything
        else, the agent label is removed from every issue carrying it and
        the default branch is checked out. From Idle this is a cleanup
        rather than a transition.
        """
        operations: list[Operation] = []
        tracked = from_state.issue_numbers[0] if from_state.kind in (K.ASSIGNED, K.WORKING) else None

        if context.has_local_changes or from_state.kind == K.WORKING:
            operations.extend(self._backup_operations(tracked, context))

        to_release = set(context.labelled_issues)
        if tracked is not None:
            to_release.add(tracked)
        for number in sorted(to_release - set(context.missing_issues)):
            operations.append(
                _op(
                    OperationKind.REMOVE_LABEL,
                    f"Release #{number}",
                    issue_number=number,
                    label=context.agent_id,
                )
            )

        if context.current_branch != context.default_branch:
            operations.append(
                _op(OperationKind.CHECKOUT, f"Check out {context.default_branch}", branch=context.default_branch)
            )
        operations.append(_op(OperationKind.NOTICE, "Reset complete", message="Agent reset to Idle"))
        return self._build("reset", from_state, IdleState(), operations, RiskLevel.MEDIUM)

    # ------------------------------------------------------------------
    # Per-transition builders
    # ------------------------------------------------------------------

    def _plan_idle_to_assigned(self, from_state, to, ctx: PlanContext):
        return [
            _op(
                OperationKind.ADD_LABEL,
                f"Assign #{to.issue_number} to {ctx.agent_id}",
                issue_number=to.issue_number,
                label=ctx.agent_id,
            ),
            _op(
                OperationKind.CREATE_BRANCH,
                f"Create branch {to.branch}",
                branch=to.branch,
                start_point=ctx.default_branch,
            ),
            _op(OperationKind.CHECKOUT, f"Check out {to.branch}", branch=to.branch),
            _op(
                OperationKind.NOTICE,
                "Claimed",
                message=f"Claimed #{to.issue_number}; work on branch {to.branch}",
            ),
        ], RiskLevel.LOW

    def _plan_assigned_to_working(self, from_state, to, ctx: PlanContext):
        return [
            _op(
                OperationKind.NOTICE,
                "Work started",
                message=f"First commit on {from_state.branch} for #{from_state.issue_number}",
            )
        ], RiskLevel.SAFE

    def _plan_assigned_to_idle(self, from_state, to, ctx: PlanContext):
        operations = []
        risk = RiskLevel.LOW
        if ctx.has_local_changes:
            operations.extend(self._backup_operations(from_state.issue_number, ctx))
            risk = RiskLevel.MEDIUM
        operations.extend(self._release_operations(from_state.issue_number, ctx))
        return operations, risk

    def _plan_working_to_landed(self, from_state, to, ctx: PlanContext):
        number = from_state.issue_number
        return [
            _op(
                OperationKind.ADD_LABEL,
                f"Mark #{number} for review",
                issue_number=number,
                label=ctx.labels.review,
            ),
            _op(
                OperationKind.REMOVE_LABEL,
                f"Unassign #{number} from {ctx.agent_id}",
                issue_number=number,
                label=ctx.agent_id,
            ),
            _op(
                OperationKind.REMOVE_LABEL,
                f"Remove {ctx.labels.ready} from #{number}",
                issue_number=number,
                label=ctx.labels.ready,
            ),
            _op(OperationKind.CHECKOUT, f"Check out {ctx.default_branch}", branch=ctx.default_branch),
            _op(
                OperationKind.NOTICE,
                "Landed",
                message=f"#{number} landed from {from_state.branch}; it will be bundled on the next pass",
            ),
        ], RiskLevel.LOW

    def _plan_working_to_idle(self, from_state, to, ctx: PlanContext):
        operations = self._backup_operations(from_state.issue_number, ctx)
        operations.extend(self._release_operations(from_state.issue_number, ctx))
        return operations, RiskLevel.MEDIUM

    def _plan_landed_to_bundled(self, from_state, to, ctx: PlanContext):
        number = from_state.issue_number
        return [
            _op(
                OperationKind.ADD_LABEL,
                f"Mark #{number} bundled",
                issue_number=number,
                label=ctx.labels.bundled,
            ),
            _op(
                OperationKind.REMOVE_LABEL,
                f"Remove {ctx.labels.review} from #{number}",
                issue_number=number,
                label=ctx.labels.review,
            ),
            _op(
                OperationKind.COMMENT,
                f"Link #{number} to PR #{to.bundle_pr}",
                issue_number=number,
                message=f"Included in pull request #{to.bundle_pr}.",
            ),
            _op(OperationKind.NOTICE, "Bundled", message=f"#{number} bundled into PR #{to.bundle_pr}"),
        ], RiskLevel.LOW

    def _plan_landed_to_merged(self, from_state, to, ctx: PlanContext):
        return self._merge_operations(ctx.pr_number or to.pr_number, from_state.issue_numbers)

    def _plan_bundled_to_merged(self, from_state, to, ctx: PlanContext):
        return self._merge_operations(from_state.bundle_pr, from_state.issue_numbers)

    def _plan_landed_to_idle(self, from_state, to, ctx: PlanContext):
        operations = []
        if ctx.current_branch != ctx.default_branch:
            operations.append(
                _op(OperationKind.CHECKOUT, f"Check out {ctx.default_branch}", branch=ctx.default_branch)
            )
        operations.append(
            _op(OperationKind.NOTICE, "Released", message=f"#{from_state.issue_number} stays queued for review")
        )
        return operations, RiskLevel.SAFE

    def _plan_bundled_to_idle(self, from_state, to, ctx: PlanContext):
        return [_op(OperationKind.NOTICE, "Released", message=f"PR #{from_state.bundle_pr} left open")], RiskLevel.SAFE

    def _plan_merged_to_idle(self, from_state, to, ctx: PlanContext):
        return [_op(OperationKind.NOTICE, "Released", message="Ready for new work")], RiskLevel.SAFE

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _backup_operations(self, issue_number: int | None, ctx: PlanContext) -> list[Operation]:
        backup = ctx.backup_branch or (
            f"backup/{ctx.agent_id}/{issue_number}" if issue_number is not None else f"backup/{ctx.agent_id}"
        )
        operations = [
            _op(OperationKind.CREATE_BRANCH, f"Create backup branch {backup}", branch=backup, start_point="HEAD"),
            _op(OperationKind.CHECKOUT, f"Check out {backup}", branch=backup),
        ]
        if ctx.has_local_changes:
            target = f" for #{issue_number}" if issue_number is not None else ""
            operations.append(
                _op(
                    OperationKind.COMMIT_ALL,
                    "Commit uncommitted work",
                    message=f"WIP: preserve uncommitted work{target}",
                )
            )
        operations.append(_op(OperationKind.PUSH_BRANCH, f"Push {backup}", branch=backup, force=True))
        return operations

    def _release_operations(self, issue_number: int, ctx: PlanContext) -> list[Operation]:
        operations = []
        if issue_number not in ctx.missing_issues:
            operations.append(
                _op(
                    OperationKind.REMOVE_LABEL,
                    f"Unassign #{issue_number} from {ctx.agent_id}",
                    issue_number=issue_number,
                    label=ctx.agent_id,
                )
            )
        operations.extend(
            [
                _op(OperationKind.CHECKOUT, f"Check out {ctx.default_branch}", branch=ctx.default_branch),
                _op(OperationKind.NOTICE, "Released", message=f"#{issue_number} released; agent is Idle"),
            ]
        )
        return operations

    def _merge_operations(self, pr_number: int | None, issues: list[int]):
        if pr_number is None:
            return [
                _op(OperationKind.ERROR, "No pull request to merge", message="Pass the pull request number")
            ], RiskLevel.CRITICAL
        items = ", ".join(f"#{n}" for n in issues)
        return [
            _op(OperationKind.MERGE_PR, f"Merge PR #{pr_number}", pr_number=pr_number),
            _op(OperationKind.NOTICE, "Merged", message=f"PR #{pr_number} merged ({items})"),
        ], RiskLevel.MEDIUM

    def _illegal(self, from_state: AgentState, to: AgentState) -> TransitionPlan:
        message = f"Illegal transition {from_state.kind} -> {to.kind}"
        operation = _op(OperationKind.ERROR, message, message=message)
        return self._build("illegal", from_state, to, [operation], RiskLevel.CRITICAL)

    def _build(
        self,
        event: str,
        from_state: AgentState,
        target: AgentState | None,
        operations: list[Operation],
        risk: RiskLevel,
    ) -> TransitionPlan:
        payload = json.dumps(
            {
                "event": event,
                "from": from_state.model_dump(mode="json"),
                "to": target.model_dump(mode="json") if target is not None else None,
                "operations": [op.model_dump(mode="json") for op in operations],
            },
            sort_keys=True,
        )
        has_error = any(op.kind == OperationKind.ERROR for op in operations)
        return TransitionPlan(
            plan_id=hashlib.sha256(payload.encode()).hexdigest()[:16],
            event=event,
            from_state=from_state,
            target_state=target,
            operations=tuple(operations),
            risk=risk,
            can_auto_execute=risk <= RiskLevel.LOW and not has_error,
        )
