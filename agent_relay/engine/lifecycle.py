"""
Lifecycle engine - the commands an operator or a worker runs.

``LifecycleEngine`` wires detector, planner, executor, bundling, drift and
continuity around one ``RepositoryGateway`` and exposes the lifecycle
commands. Every command:

    1. holds the workspace lock for its whole duration
    2. establishes the current state with the detector
    3. plans, then executes through the executor
    4. returns a ``CommandResult``; failures are converted, never only logged

Crash Recovery:
    A plan interrupted mid-way leaves its progress in the checkpoint. The
    next ``claim`` or ``land`` rebuilds the same plan (plans for these
    events depend only on stable inputs) and, if the plan id matches,
    resumes after the last completed operation. A different command is
    refused while another command's plan is in flight.

Example:
    >>> engine = LifecycleEngine.create(settings)
    >>> await engine.startup()
    >>> result = await engine.claim_next()
    >>> print(result.render())
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog

from agent_relay.config.settings import RelaySettings
from agent_relay.engine.branching import agent_branch_name, backup_branch_name, parse_agent_branch
from agent_relay.engine.bundling import BundlingEngine
from agent_relay.engine.continuity import ContinuityManager, summarize_checkpoint
from agent_relay.engine.detector import StateDetector
from agent_relay.engine.drift import DriftDetector
from agent_relay.engine.executor import CommandExecutor
from agent_relay.engine.gateway import RepositoryGateway
from agent_relay.engine.planner import PlanContext, TransitionPlanner
from agent_relay.engine.routing import LabelRouter
from agent_relay.engine.scheduler import EngineScheduler, WorkspaceLock
from agent_relay.exceptions import ErrorKind, IllegalTransitionError, InconsistencyError, RelayError
from agent_relay.git.repository import GitRepository
from agent_relay.models.domain import WorkItem
from agent_relay.models.lifecycle import (
    AgentState,
    AssignedState,
    BehindMain,
    DriftSeverity,
    IdleState,
    LandedState,
    LifecycleKind,
    MergedState,
    ValidationOutcome,
    WorkingState,
)
from agent_relay.models.plans import ExecutionReport, ExecutionStatus, TransitionPlan
from agent_relay.models.results import BundlingOutcome, CommandResult
from agent_relay.providers.github_rest import GitHubRestProvider

log = structlog.get_logger(__name__)

GUIDANCE = {
    ErrorKind.TRANSIENT: "GitHub or git was temporarily unavailable; rerun the command",
    ErrorKind.CONFLICT: "Resolve the conflicting files, then rerun",
    ErrorKind.INCONSISTENCY: (
        "Run 'relay drift' to reconcile local state with GitHub, or 'relay reset' to back up and start over"
    ),
    ErrorKind.OPERATION: "Fix the reported problem and rerun; completed steps are not repeated",
    ErrorKind.FATAL: "Inspect the context; 'relay reset' returns the worker to Idle",
}


class LifecycleEngine:
    """Run lifecycle commands for one agent in one repository.

    Attributes:
        settings: Loaded configuration
        gateway: Sole access point to GitHub and the working tree
        detector: Reads the current lifecycle state
        planner: Builds transition, recovery and reset plans
        executor: Applies plans and checkpoints progress
        continuity: Checkpoint, history and timers
        bundling: Bundling passes
        drift: Drift passes
        lock: Workspace lock held by every command
    """

    def __init__(self, settings: RelaySettings, gateway: RepositoryGateway):
        self.settings = settings
        self.gateway = gateway
        self.agent_id = settings.agent_id
        self.default_branch = settings.repository.default_branch
        self.labels = settings.labels
        self.router = LabelRouter(settings.labels)

        self.detector = StateDetector(gateway, settings.labels, self.default_branch)
        self.planner = TransitionPlanner()
        self.continuity = ContinuityManager(self.agent_id, settings.continuity)
        self.executor = CommandExecutor(gateway, self.continuity, settings.labels)
        self.bundling = BundlingEngine(
            gateway,
            self.continuity,
            self.executor,
            self.planner,
            settings.labels,
            settings.bundling,
            self.agent_id,
            self.default_branch,
        )
        self.drift = DriftDetector(gateway, self.detector, self.continuity, self.executor, self.planner, settings)
        self.lock = WorkspaceLock(self.continuity.lock_path, settings.continuity.lock_timeout_seconds)

    @classmethod
    def create(cls, settings: RelaySettings) -> "LifecycleEngine":
        """Build an engine backed by GitHub's REST API and the local git repository."""
        provider = GitHubRestProvider(
            token=settings.github.api_token.get_secret_value(),
            owner=settings.repository.owner,
            repo=settings.repository.name,
            base_url=settings.github.base_url,
        )
        local = GitRepository(settings.repository.path, remote=settings.repository.remote)
        return cls(settings, RepositoryGateway(provider, local, settings.gateway))

    # ------------------------------------------------------------------
    # Startup and shutdown
    # ------------------------------------------------------------------

    async def startup(self) -> ValidationOutcome:
        """Connect, restore the checkpoint and reconcile it with live state."""
        await self.gateway.connect()
        async with self.lock.hold("startup"):
            checkpoint = await self.continuity.restore()
            outcome = self.continuity.validate(checkpoint, await self.gateway.head_sha())

            if outcome == ValidationOutcome.START_FRESH:
                await self.continuity.discard()
                state = await self.detector.detect(self.agent_id)
                await self._checkpoint(state)
            elif outcome == ValidationOutcome.RESYNC_THEN_RESUME:
                await self.drift.run_pass()

        log.info("engine_started", agent_id=self.agent_id, outcome=outcome.value)
        return outcome

    async def shutdown(self) -> None:
        await self.gateway.disconnect()
        log.info("engine_stopped", agent_id=self.agent_id)

    async def run_daemon(self, stop: asyncio.Event) -> None:
        """Run scheduled bundling and drift passes until ``stop`` is set."""
        await EngineScheduler(self).run(stop)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def claim_next(self) -> CommandResult:
        """Claim the highest-priority claimable work item."""
        return await self._guarded("claim", self._claim_next)

    async def peek(self) -> CommandResult:
        """Show the item ``claim`` would take next, without claiming it."""
        return await self._guarded("peek", self._peek)

    async def land(self, confirm: bool = False, dry_run: bool = False) -> CommandResult:
        """Hand the current work off for review and free the worker.

        With ``dry_run`` the pre-flight recovery and landing plans are
        built and returned but nothing is executed.
        """
        if dry_run:
            return await self._guarded("land", self._preview_land)
        return await self._guarded("land", lambda: self._land(confirm))

    async def force_bundle(self, dry_run: bool = False) -> CommandResult:
        """Run a bundling pass now, regardless of the schedule."""
        if dry_run:
            return await self._guarded("bundle", self._preview_bundle)
        return await self._guarded("bundle", lambda: self._bundle(force=True))

    async def run_bundling_pass(self) -> CommandResult:
        """Run a bundling pass if one is due."""
        return await self._guarded("bundle", lambda: self._bundle(force=False))

    async def run_drift_pass(self) -> CommandResult:
        return await self._guarded("drift", self._drift)

    async def status(self) -> CommandResult:
        """Lifecycle and drift status; reads only."""
        return await self._guarded("status", self._status)

    async def force_reset(self) -> CommandResult:
        """Return the worker to Idle from any state, preserving local work."""
        return await self._guarded("reset", self._reset)

    async def merge(self, pr_number: int | None = None, confirm: bool = False) -> CommandResult:
        """Merge the pull request for landed or bundled work."""
        return await self._guarded("merge", lambda: self._merge(pr_number, confirm))

    # ------------------------------------------------------------------
    # Command bodies (run under the workspace lock)
    # ------------------------------------------------------------------

    async def _claim_next(self) -> CommandResult:
        resumed = await self._resume_in_flight("claim")
        if resumed is not None:
            return resumed

        current = await self._tracked_state()
        if current.kind in (LifecycleKind.ASSIGNED, LifecycleKind.WORKING):
            return CommandResult.recoverable(
                f"{self.agent_id} already holds work: {current.describe()}",
                guidance="Land or reset the current work before claiming more",
                state=current.model_dump(mode="json"),
            )

        if current.kind != LifecycleKind.IDLE:
            release = self.planner.plan(current, IdleState(), await self._context())
            report = await self.executor.execute(release)
            if not report.succeeded:
                return self._report_result(release, report, "Released previous work")
            current = IdleState()

        item = await self._next_claimable()
        if item is None:
            return CommandResult.success("No work available", state=current.model_dump(mode="json"))

        target = AssignedState(
            issue_number=item.number,
            branch=agent_branch_name(self.agent_id, item.number, item.title),
        )
        plan = self.planner.plan(current, target, self._base_context())
        report = await self.executor.execute(plan)
        return self._report_result(
            plan,
            report,
            f"Claimed #{item.number}: {item.title}",
            issue=item.number,
            branch=target.branch,
        )

    async def _peek(self) -> CommandResult:
        item = await self._next_claimable()
        if item is None:
            return CommandResult.success("No work available")
        branch = agent_branch_name(self.agent_id, item.number, item.title)
        priority = self.router.priority_of(item)
        return CommandResult.success(
            f"Next: #{item.number} {item.title} ({priority.name.lower()} priority); would work on {branch}",
            issue=item.number,
            title=item.title,
            priority=priority.name.lower(),
            branch=branch,
            url=item.url,
        )

    async def _next_claimable(self) -> WorkItem | None:
        items = await self.gateway.list_issues(labels=[self.labels.ready])
        for item in self.router.order(items):
            if not self.router.is_claimable(item):
                continue
            overlaps = self.router.overlapping_markers(item)
            if overlaps:
                log.warning("overlapping_route_markers", issue=item.number, markers=overlaps)
                continue
            if await self._blocked(item):
                continue
            return item
        return None

    async def _blocked(self, item: WorkItem) -> bool:
        for number in item.dependencies:
            dependency = await self.gateway.find_issue(number)
            if dependency is None:
                log.warning("dependency_not_found", issue=item.number, dependency=number)
                continue
            if dependency.is_open:
                log.info("claim_skipped_blocked", issue=item.number, dependency=number)
                return True
        return False

    async def _land(self, confirm: bool) -> CommandResult:
        resumed = await self._resume_in_flight("land", confirm)
        if resumed is not None:
            return resumed

        current = await self._require_working("land")
        warnings: list[str] = []
        issues = await self.detector.detect_pre_flight_issues(self.agent_id)
        if issues:
            recovery = self.planner.plan_recovery(issues, current, await self._context())
            report = await self.executor.execute(recovery, confirm=confirm, track_state=False)
            if not report.succeeded:
                return self._report_result(recovery, report, "Pre-flight recovery")
            warnings.extend(report.warnings)
            log.info(
                "pre_flight_resolved",
                issues=[i.kind for i in issues],
                behind_main=any(isinstance(i, BehindMain) for i in issues),
            )

        target = LandedState(issue_number=current.issue_number, branch=current.branch)
        plan = self.planner.plan(current, target, self._base_context())
        report = await self.executor.execute(plan, confirm=confirm)
        report.warnings[:0] = warnings
        return self._report_result(
            plan,
            report,
            f"Landed #{current.issue_number}; {self.agent_id} is free for new work",
            issue=current.issue_number,
            branch=current.branch,
        )

    async def _preview_land(self) -> CommandResult:
        current = await self._require_working("land")
        issues = await self.detector.detect_pre_flight_issues(self.agent_id)
        plans = []
        if issues:
            plans.append(self.planner.plan_recovery(issues, current, await self._context()))
        target = LandedState(issue_number=current.issue_number, branch=current.branch)
        plans.append(self.planner.plan(current, target, self._base_context()))

        lines = [f"Dry run: landing #{current.issue_number} would run"]
        for plan in plans:
            if not plan.executable:
                gate = "refused; a tracking issue would be opened"
            elif plan.requires_confirmation:
                gate = "needs --yes"
            else:
                gate = "runs automatically"
            lines.append(f"  {plan.event} ({plan.risk.name} risk, {gate}):")
            lines.extend(f"    - {op.description}" for op in plan.operations)
        return CommandResult.success(
            "\n".join(lines),
            dry_run=True,
            issue=current.issue_number,
            pre_flight=[issue.describe() for issue in issues],
            plans=[plan.model_dump(mode="json") for plan in plans],
        )

    async def _require_working(self, attempted: str) -> WorkingState:
        """The detected Working state, or the error explaining why there is none."""
        current = await self.detector.detect(self.agent_id)
        if current.kind == LifecycleKind.WORKING:
            return current

        branch = await self.gateway.current_branch()
        parsed = parse_agent_branch(branch, self.agent_id)
        if parsed is not None and await self.gateway.find_issue(parsed.issue_number) is None:
            raise InconsistencyError(
                f"Issue #{parsed.issue_number} for branch {branch} was deleted or transferred",
                context={"issue": parsed.issue_number, "branch": branch, "attempted": attempted},
            )
        raise IllegalTransitionError(
            f"Cannot {attempted} from {current.describe()}; only Working can {attempted}",
            current_state=current.kind,
            attempted=attempted,
            last_checkpoint=summarize_checkpoint(await self.continuity.restore()),
        )

    async def _resume_in_flight(self, event: str, confirm: bool = False) -> CommandResult | None:
        """Finish an interrupted ``event`` plan, or refuse if another is in flight."""
        checkpoint = await self.continuity.restore()
        if checkpoint is None or checkpoint.in_flight is None:
            return None

        progress = checkpoint.in_flight
        if progress.event != event:
            return CommandResult.recoverable(
                f"An interrupted '{progress.event}' is still in flight",
                guidance=f"Run 'relay {progress.event}' to finish it, or 'relay reset'",
                in_flight=progress.model_dump(mode="json"),
            )
        if progress.target_state is None:
            return None

        plan = self.planner.plan(progress.from_state, progress.target_state, self._base_context())
        if plan.plan_id != progress.plan_id:
            log.warning("in_flight_plan_changed", expected=progress.plan_id, actual=plan.plan_id)
            return None

        report = await self.executor.execute(plan, confirm=confirm, resume_from=progress.completed_operations)
        return self._report_result(
            plan,
            report,
            f"Resumed interrupted {event} after {progress.completed_operations} completed step(s)",
            resumed=True,
        )

    async def _bundle(self, force: bool) -> CommandResult:
        unblockers_only = False
        if not force and not await self.bundling.should_bundle():
            if not await self.bundling.pending_unblockers():
                return CommandResult.success("Bundling not due yet")
            unblockers_only = True

        result = await self.bundling.execute_bundling(unblockers_only=unblockers_only)
        details = result.to_dict()
        stale = (
            f"; bundled label not applied to {', '.join(f'#{n}' for n in sorted(result.relabel_failed))}"
            if result.relabel_failed
            else ""
        )
        if result.outcome == BundlingOutcome.SUCCESS:
            return CommandResult.success(
                f"Opened bundle PR #{result.bundle_pr} with {len(result.bundled)} item(s)", **details
            )
        if result.outcome == BundlingOutcome.PARTIAL_SUCCESS:
            opened = (
                f"Opened bundle PR #{result.bundle_pr} with {len(result.bundled)} item(s); "
                if result.bundle_pr is not None
                else ""
            )
            return CommandResult.warning(
                f"{opened}{len(result.individual_prs)} individual PR(s), {len(result.failed)} failure(s){stale}",
                guidance="Review the individual PRs and failure comments; stale labels are repaired on the next pass",
                **details,
            )
        if result.outcome == BundlingOutcome.ALL_INDIVIDUAL:
            return CommandResult.success(f"Opened {len(result.individual_prs)} individual PR(s)", **details)
        if result.outcome == BundlingOutcome.NO_WORK_AVAILABLE:
            return CommandResult.success("No landed work to bundle", **details)
        return CommandResult.recoverable(
            f"Bundling failed: {result.reason}",
            guidance="See the failure comments on the items; they stay in review for the next pass",
            **details,
        )

    async def _preview_bundle(self) -> CommandResult:
        preview = await self.bundling.preview()
        lines = [f"Dry run: bundling is {'due' if preview.due else 'not due yet'}"]
        if preview.bundle_branch:
            lines.append(f"  bundle {preview.bundle_branch}: {', '.join(f'#{n}' for n in preview.batch)}")
        if preview.unblockers:
            lines.append(f"  individual PRs for unblockers: {', '.join(f'#{n}' for n in preview.unblockers)}")
        if preview.rolled_over:
            lines.append(f"  rolled over to the next pass: {', '.join(f'#{n}' for n in preview.rolled_over)}")
        if preview.missing_branches:
            lines.append(f"  no work branch: {', '.join(f'#{n}' for n in preview.missing_branches)}")
        for number, paths in sorted(preview.conflicts_with_default.items()):
            lines.append(f"  #{number} conflicts with {self.default_branch} in: {', '.join(paths)}")
        if len(lines) == 1:
            lines.append("  no landed work to bundle")
        return CommandResult.success("\n".join(lines), dry_run=True, **preview.to_dict())

    async def _drift(self) -> CommandResult:
        records = await self.drift.run_pass()
        payload = [r.model_dump(mode="json") for r in records]
        if not records:
            return CommandResult.success("No drift detected", records=payload)

        lines = [f"{len(records)} drift record(s):"]
        lines.extend(
            f"  [{r.severity.value}] {r.kind.value}"
            + (f" #{r.issue_number}" if r.issue_number is not None else "")
            + f": {r.correction}"
            for r in records
        )
        if any(r.severity == DriftSeverity.CRITICAL for r in records):
            return CommandResult.warning(
                "\n".join(lines),
                guidance="Critical drift reset the worker; see the tracking issue",
                records=payload,
            )
        return CommandResult.success("\n".join(lines), records=payload)

    async def _status(self) -> CommandResult:
        detected = await self.detector.detect(self.agent_id)
        checkpoint = await self.continuity.restore()
        issues = await self.detector.detect_pre_flight_issues(self.agent_id)
        drift = await self.continuity.recent_drift(5)
        next_bundling = await self.bundling.next_due()
        next_drift = await self.drift.next_due()

        overlaps: dict[int, list[str]] = {}
        for label in (self.agent_id, self.labels.review):
            for item in await self.gateway.list_issues(labels=[label]):
                markers = self.router.overlapping_markers(item)
                if markers:
                    overlaps[item.number] = markers

        lines = [
            f"Agent: {self.agent_id}",
            f"State: {detected.describe()}",
            f"Checkpoint: {checkpoint.state.describe() if checkpoint else 'none'}",
        ]
        if checkpoint and checkpoint.in_flight:
            lines.append(
                f"In flight: {checkpoint.in_flight.event} "
                f"({checkpoint.in_flight.completed_operations} step(s) completed)"
            )
        lines.append(f"Next bundling: {_when(next_bundling)}")
        lines.append(f"Next drift check: {_when(next_drift)}")
        if issues:
            lines.append("Pre-flight issues:")
            lines.extend(f"  - {issue.describe()}" for issue in issues)
        for number, markers in sorted(overlaps.items()):
            lines.append(f"Overlapping labels on #{number}: {', '.join(markers)}")
        if drift:
            lines.append("Recent drift:")
            lines.extend(f"  - [{r.severity.value}] {r.kind.value}: {r.correction}" for r in drift)

        details = {
            "agent_id": self.agent_id,
            "detected": detected.model_dump(mode="json"),
            "checkpoint": summarize_checkpoint(checkpoint),
            "pre_flight": [issue.describe() for issue in issues],
            "overlapping_markers": {str(k): v for k, v in overlaps.items()},
            "recent_drift": [r.model_dump(mode="json") for r in drift],
            "next_bundling": next_bundling.isoformat() if next_bundling else None,
            "next_drift": next_drift.isoformat() if next_drift else None,
        }
        if issues or overlaps:
            return CommandResult.warning("\n".join(lines), guidance="Run 'relay land' or fix labels", **details)
        return CommandResult.success("\n".join(lines), **details)

    async def _reset(self) -> CommandResult:
        state = await self._tracked_state()
        current_branch = await self.gateway.current_branch()
        if state.kind in (LifecycleKind.ASSIGNED, LifecycleKind.WORKING):
            tracked = state.issue_numbers[0]
        else:
            parsed = parse_agent_branch(current_branch, self.agent_id)
            tracked = parsed.issue_number if parsed else None
        missing = (tracked,) if tracked is not None and await self.gateway.find_issue(tracked) is None else ()
        labelled = tuple(item.number for item in await self.gateway.list_issues(labels=[self.agent_id]))
        context = await self._context(
            labelled_issues=labelled,
            missing_issues=missing,
            backup_branch=backup_branch_name(self.agent_id, tracked, datetime.now(UTC)),
        )
        plan = self.planner.plan_reset(state, context)
        report = await self.executor.execute(plan, confirm=True)
        return self._report_result(plan, report, f"{self.agent_id} reset to Idle", released=list(labelled))

    async def _merge(self, pr_number: int | None, confirm: bool) -> CommandResult:
        state = await self._tracked_state()
        if state.kind not in (LifecycleKind.LANDED, LifecycleKind.BUNDLED):
            raise IllegalTransitionError(
                f"Cannot merge from {state.describe()}; only Landed or Bundled work can merge",
                current_state=state.kind,
                attempted="merge",
                last_checkpoint=summarize_checkpoint(await self.continuity.restore()),
            )

        pr = pr_number if pr_number is not None else getattr(state, "bundle_pr", None)
        target = MergedState(work_items=tuple(state.issue_numbers), pr_number=pr)
        context = PlanContext(
            agent_id=self.agent_id,
            labels=self.labels,
            default_branch=self.default_branch,
            pr_number=pr_number,
        )
        plan = self.planner.plan(state, target, context)
        report = await self.executor.execute(plan, confirm=confirm)
        return self._report_result(plan, report, f"Merged PR #{pr}", pr=pr)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _guarded(self, name: str, body: Callable[[], Awaitable[CommandResult]]) -> CommandResult:
        """Run ``body`` under the workspace lock and convert engine errors."""
        try:
            async with self.lock.hold(name):
                result = await body()
        except RelayError as e:
            context = dict(e.context)
            if e.kind == ErrorKind.FATAL:
                if context.get("last_checkpoint") is None:
                    context["last_checkpoint"] = summarize_checkpoint(await self.continuity.restore())
                log.error("command_failed", command=name, error=e.message, kind=e.kind.value)
                return CommandResult.fatal(e.message, GUIDANCE[e.kind], error_kind=e.kind.value, context=context)
            log.warning("command_failed", command=name, error=e.message, kind=e.kind.value)
            return CommandResult.recoverable(e.message, GUIDANCE[e.kind], error_kind=e.kind.value, context=context)

        log.info("command_completed", command=name, outcome=result.outcome.value)
        return result

    def _base_context(self) -> PlanContext:
        """Context for plans that must rebuild identically after a crash."""
        return PlanContext(agent_id=self.agent_id, labels=self.labels, default_branch=self.default_branch)

    async def _context(self, **overrides: object) -> PlanContext:
        values: dict[str, object] = {
            "agent_id": self.agent_id,
            "labels": self.labels,
            "default_branch": self.default_branch,
            "current_branch": await self.gateway.current_branch(),
            "has_local_changes": bool(await self.gateway.changed_files()),
        }
        values.update(overrides)
        return PlanContext(**values)

    async def _tracked_state(self) -> AgentState:
        """Detected state, or the checkpointed one when detection sees Idle."""
        detected = await self.detector.detect(self.agent_id)
        if detected.kind != LifecycleKind.IDLE:
            return detected
        checkpoint = await self.continuity.restore()
        if checkpoint is not None:
            return checkpoint.state
        return detected

    async def _checkpoint(self, state: AgentState) -> None:
        labels = await self.detector.tracked_labels(state)
        await self.continuity.checkpoint(state, head_sha=await self.gateway.head_sha(), labels=labels)

    def _report_result(
        self,
        plan: TransitionPlan,
        report: ExecutionReport,
        message: str,
        **details: object,
    ) -> CommandResult:
        details["report"] = report.summary()
        if report.status == ExecutionStatus.COMPLETED:
            if report.warnings:
                return CommandResult.warning(message, guidance="; ".join(report.warnings), **details)
            return CommandResult.success(message, **details)

        if report.status == ExecutionStatus.REFUSED:
            return CommandResult.recoverable(
                f"{plan.event} needs confirmation ({plan.risk.name} risk)",
                guidance="Rerun with --yes to proceed" + (f": {'; '.join(report.warnings)}" if report.warnings else ""),
                **details,
            )

        if report.status == ExecutionStatus.ESCALATED:
            return CommandResult.fatal(
                f"{plan.event} cannot run automatically; opened tracking issue #{report.tracking_issue}",
                guidance="; ".join(report.warnings) or f"See issue #{report.tracking_issue}",
                **details,
            )

        failed = report.failed
        return CommandResult.recoverable(
            f"{plan.event} stopped at '{failed.operation.description}': {failed.error}"
            if failed
            else f"{plan.event} stopped",
            guidance=GUIDANCE[failed.error_kind] if failed else None,
            **details,
        )


def _when(moment: datetime | None) -> str:
    if moment is None:
        return "now"
    return moment.isoformat(timespec="seconds")
