"""
Plan execution.

The executor runs a plan's operations strictly in order and stops at the
first failure. It never rolls back: completed operations stay completed
and the report names what failed and what never ran. After every
successful operation a checkpoint records how far the plan got, so a
crashed run resumes exactly where it stopped.

Risk gates:
    SAFE, LOW     run automatically
    MEDIUM, HIGH  refused unless the caller confirms
    CRITICAL      never run; a tracking issue is opened instead
"""

import structlog

from agent_relay.config.settings import LabelsConfig
from agent_relay.engine.continuity import ContinuityManager
from agent_relay.engine.gateway import RepositoryGateway
from agent_relay.exceptions import GitOperationError, RelayError
from agent_relay.models.lifecycle import PlanProgress
from agent_relay.models.plans import (
    ExecutionReport,
    ExecutionStatus,
    FailedOperation,
    Operation,
    OperationKind,
    TransitionPlan,
)

log = structlog.get_logger(__name__)


class CommandExecutor:
    """Apply transition plans through the gateway."""

    def __init__(
        self,
        gateway: RepositoryGateway,
        continuity: ContinuityManager,
        labels: LabelsConfig,
    ):
        self.gateway = gateway
        self.continuity = continuity
        self.labels = labels

    async def execute(
        self,
        plan: TransitionPlan,
        confirm: bool = False,
        resume_from: int = 0,
        track_state: bool = True,
    ) -> ExecutionReport:
        """Execute ``plan``.

        Args:
            plan: Plan to run
            confirm: Caller opts in to MEDIUM and HIGH risk plans
            resume_from: Index of the first operation to run; earlier ones
                completed in a previous run
            track_state: Checkpoint the worker's state after each operation.
                Bundling passes relabel items the worker does not hold and
                run with this off.

        Returns:
            ExecutionReport with completed, failed and remaining operations.
        """
        operations = list(plan.operations)

        if not plan.executable:
            return await self._escalate(plan)

        if plan.requires_confirmation and not confirm:
            log.info("plan_needs_confirmation", plan_id=plan.plan_id, transition=plan.event, risk=plan.risk.name)
            return ExecutionReport(
                plan_id=plan.plan_id,
                status=ExecutionStatus.REFUSED,
                remaining=operations,
                warnings=plan.messages,
            )

        report = ExecutionReport(plan_id=plan.plan_id, status=ExecutionStatus.COMPLETED)
        if resume_from:
            log.info("plan_resumed", plan_id=plan.plan_id, transition=plan.event, skipped=resume_from)

        for index in range(resume_from, len(operations)):
            operation = operations[index]
            try:
                await self._apply(operation, report)
            except RelayError as e:
                log.error(
                    "operation_failed",
                    plan_id=plan.plan_id,
                    operation=operation.description,
                    index=index,
                    error=e.message,
                )
                report.status = ExecutionStatus.HALTED
                report.failed = FailedOperation(operation=operation, error=e.message, error_kind=e.kind)
                report.remaining = operations[index + 1 :]
                return report

            report.completed.append(operation)
            if track_state:
                await self._checkpoint_progress(plan, index + 1, len(operations))

        await self.continuity.record_transition(
            plan.plan_id,
            plan.event,
            plan.from_state.kind,
            plan.target_state.kind if plan.target_state is not None else None,
        )
        log.info(
            "plan_executed",
            plan_id=plan.plan_id,
            transition=plan.event,
            operations=len(report.completed),
        )
        return report

    async def _checkpoint_progress(self, plan: TransitionPlan, completed: int, total: int) -> None:
        head_sha = await self.gateway.head_sha()
        if completed >= total:
            state = plan.target_state if plan.target_state is not None else plan.from_state
            await self.continuity.checkpoint(state, head_sha=head_sha)
            return
        await self.continuity.checkpoint(
            plan.from_state,
            head_sha=head_sha,
            in_flight=PlanProgress(
                plan_id=plan.plan_id,
                event=plan.event,
                from_state=plan.from_state,
                target_state=plan.target_state,
                completed_operations=completed,
            ),
        )

    async def _apply(self, op: Operation, report: ExecutionReport) -> None:
        log.debug("operation_started", kind=op.kind.value, description=op.description)

        if op.kind == OperationKind.ADD_LABEL:
            await self.gateway.add_label(self._require(op.issue_number, op), self._require(op.label, op))
        elif op.kind == OperationKind.REMOVE_LABEL:
            await self.gateway.remove_label(self._require(op.issue_number, op), self._require(op.label, op))
        elif op.kind == OperationKind.CREATE_BRANCH:
            branch = self._require(op.branch, op)
            if await self.gateway.local_branch_exists(branch):
                log.debug("branch_already_exists", branch=branch)
            else:
                await self.gateway.create_branch(branch, op.start_point or "HEAD")
        elif op.kind == OperationKind.CHECKOUT:
            await self.gateway.checkout(self._require(op.branch, op))
        elif op.kind == OperationKind.PUSH_BRANCH:
            await self.gateway.push(self._require(op.branch, op), force=op.force)
        elif op.kind == OperationKind.COMMIT_ALL:
            await self.gateway.commit_all(op.message or op.description)
        elif op.kind == OperationKind.COMMENT:
            await self.gateway.add_comment(self._require(op.issue_number, op), op.message or op.description)
        elif op.kind == OperationKind.MERGE_PR:
            pr_number = self._require(op.pr_number, op)
            if not await self.gateway.merge_pull_request(pr_number):
                raise GitOperationError(f"GitHub did not merge PR #{pr_number}")
        elif op.kind == OperationKind.NOTICE:
            report.notices.append(op.message or op.description)
        elif op.kind == OperationKind.WARNING:
            report.warnings.append(op.message or op.description)
        elif op.kind == OperationKind.ERROR:
            raise GitOperationError(op.message or op.description)

    @staticmethod
    def _require(value, op: Operation):
        if value is None:
            raise GitOperationError(f"Operation '{op.description}' is missing a required field")
        return value

    async def _escalate(self, plan: TransitionPlan) -> ExecutionReport:
        """Open a tracking issue for a plan the engine must not run."""
        lines = [
            f"The engine refused to run a {plan.risk.name} plan and needs a human.",
            "",
            f"- Event: `{plan.event}`",
            f"- From state: `{plan.from_state.describe()}`",
        ]
        if plan.target_state is not None:
            lines.append(f"- Target state: `{plan.target_state.describe()}`")
        lines.extend(["", "Planned operations:"])
        lines.extend(f"1. {op.description}" for op in plan.operations)
        messages = [m for m in plan.messages if m]
        if messages:
            lines.extend(["", "Details:"])
            lines.extend(f"- {m}" for m in messages)
        lines.extend(["", f"Plan id: `{plan.plan_id}`"])

        issue = await self.gateway.create_issue(
            title=f"[relay] {self.continuity.agent_id}: cannot run {plan.event} from {plan.from_state.kind}",
            body="\n".join(lines),
            labels=[self.labels.attention],
        )
        log.warning(
            "plan_escalated",
            plan_id=plan.plan_id,
            transition=plan.event,
            risk=plan.risk.name,
            tracking_issue=issue.number,
        )
        return ExecutionReport(
            plan_id=plan.plan_id,
            status=ExecutionStatus.ESCALATED,
            remaining=list(plan.operations),
            warnings=messages,
            tracking_issue=issue.number,
        )
