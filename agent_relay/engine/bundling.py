"""
Bundling - Fold landed work into one pull request per pass.

A bundling pass collects every open item carrying the review label and
not yet bundled, cherry-picks each item's work branch onto a fresh bundle
branch cut from the default branch, and opens a single pull request for
the result.

Workflow Integration:
    Landing leaves an item with the review label. Bundling moves it on:

    Label Flow: review -> bundled

    The bundled label is added before review is removed, so an item that
    is already in a pull request always carries at least one route label.

Candidate Handling:
    - Unblockers skip the bundle and get an individual PR right away; they
      do not count against the size cap
    - Regular items are taken in priority order up to ``max_bundle_size``;
      the rest roll over untouched to the next pass
    - An item whose commits conflict with the bundle so far gets an
      individual PR instead
    - An item whose work branch cannot be found keeps its review label and
      receives a comment explaining the failure

Schedule:
    Regular passes run once per ``interval_minutes``. Between passes an
    unblocker waiting in review gets its individual PR on its own; the
    regular batch keeps waiting and the timer is not reset.

Individual PRs:
    An item that gets its own PR takes the same Landed -> Bundled path as
    a bundled one: it is labelled bundled and, when it is the worker's own
    item, checkpointed as a bundle of one. Merging it is then the ordinary
    Bundled -> Merged transition.

Failures:
    If the bundle branch cannot be pushed or its PR cannot be opened,
    every item picked for it gets a failure comment and stays in review,
    and the conflicted items still get their individual PRs. An item that
    reached a PR but could not be relabelled is counted as bundled,
    reported in ``relabel_failed`` and relabelled again on the next pass.

Idempotency:
    The bundle branch name is derived from the batch's item numbers. If an
    open PR already exists for that branch, the pass reuses it and only
    repairs the labels of the items it references. Individual PRs are
    reused the same way.

Example:
    Items #10 and #11 in review, where #11 conflicts with #10::

        result = await bundler.execute_bundling()
        result.outcome         # BundlingOutcome.PARTIAL_SUCCESS
        result.bundled         # [10]
        result.individual_prs  # {11: <pr number>}
"""

import re
from datetime import UTC, datetime, timedelta

import structlog

from agent_relay.config.settings import BundlingConfig, LabelsConfig
from agent_relay.engine.branching import bundle_branch_name
from agent_relay.engine.continuity import ContinuityManager
from agent_relay.engine.executor import CommandExecutor
from agent_relay.engine.gateway import RepositoryGateway
from agent_relay.engine.planner import PlanContext, TransitionPlanner
from agent_relay.engine.routing import LabelRouter
from agent_relay.exceptions import ConflictError, ErrorKind, RelayError
from agent_relay.models.domain import Priority, PullRequest, WorkItem
from agent_relay.models.lifecycle import BundledState, LandedState, LifecycleKind
from agent_relay.models.results import BundlingOutcome, BundlingPreview, BundlingResult

log = structlog.get_logger(__name__)


def _reraise_fatal(error: RelayError) -> None:
    if error.kind == ErrorKind.FATAL:
        raise error


class BundlingEngine:
    """Assemble landed work items into bundle pull requests.

    Attributes:
        gateway: Single point of access to GitHub and the working tree
        continuity: Holds the bundling timer and the worker's checkpoint
        executor: Runs the relabelling plans
        planner: Builds Landed -> Bundled plans for each handed-off item
    """

    def __init__(
        self,
        gateway: RepositoryGateway,
        continuity: ContinuityManager,
        executor: CommandExecutor,
        planner: TransitionPlanner,
        labels: LabelsConfig,
        config: BundlingConfig,
        agent_id: str,
        default_branch: str = "main",
    ):
        self.gateway = gateway
        self.continuity = continuity
        self.executor = executor
        self.planner = planner
        self.labels = labels
        self.config = config
        self.agent_id = agent_id
        self.default_branch = default_branch
        self.router = LabelRouter(labels)

    async def candidates(self) -> list[WorkItem]:
        """Open review items not yet bundled, highest priority first.

        Items already in a pull request but still waiting for their bundled
        label are left out.
        """
        items = await self.gateway.list_issues(labels=[self.labels.review])
        schedule = await self.continuity.load_schedule()
        pending = [
            item
            for item in items
            if item.is_open and not item.has_label(self.labels.bundled) and item.number not in schedule.unlabelled
        ]
        return self.router.order(pending)

    async def pending_unblockers(self) -> list[WorkItem]:
        return [item for item in await self.candidates() if self.router.priority_of(item) == Priority.UNBLOCKER]

    async def should_bundle(self, now: datetime | None = None) -> bool:
        """Whether a regular pass is due.

        A pass is due when none has run yet or when the interval has
        elapsed since the last one. Waiting unblockers do not make a pass
        due; see ``execute_bundling(unblockers_only=True)``.
        """
        now = now or datetime.now(UTC)
        schedule = await self.continuity.load_schedule()
        if schedule.last_bundling_at is None:
            return True
        return now - schedule.last_bundling_at >= timedelta(minutes=self.config.interval_minutes)

    async def next_due(self) -> datetime | None:
        schedule = await self.continuity.load_schedule()
        if schedule.last_bundling_at is None:
            return None
        return schedule.last_bundling_at + timedelta(minutes=self.config.interval_minutes)

    async def preview(self, now: datetime | None = None) -> BundlingPreview:
        """Describe the pass ``execute_bundling`` would run, without writing anything."""
        candidates = await self.candidates()
        unblockers = [item for item in candidates if self.router.priority_of(item) == Priority.UNBLOCKER]
        regular = [item for item in candidates if self.router.priority_of(item) != Priority.UNBLOCKER]
        batch = regular[: self.config.max_bundle_size]

        preview = BundlingPreview(
            due=await self.should_bundle(now),
            batch=[item.number for item in batch],
            unblockers=[item.number for item in unblockers],
            rolled_over=[item.number for item in regular[self.config.max_bundle_size :]],
        )
        batch_numbers = set(preview.batch)
        bundleable = []
        for item in [*unblockers, *batch]:
            work_branch = await self.gateway.find_work_branch(item.number)
            if work_branch is None:
                preview.missing_branches.append(item.number)
                continue
            conflicts = await self.gateway.merge_conflicts(self.default_branch, work_branch)
            if conflicts:
                preview.conflicts_with_default[item.number] = conflicts
            if item.number in batch_numbers:
                bundleable.append(item.number)
        if bundleable:
            preview.bundle_branch = bundle_branch_name(bundleable)
        return preview

    async def execute_bundling(self, now: datetime | None = None, unblockers_only: bool = False) -> BundlingResult:
        """Run one bundling pass.

        Args:
            now: Time recorded as the pass time; defaults to the current time
            unblockers_only: Only open individual PRs for waiting unblockers.
                The regular batch is left alone and the pass time is not
                recorded.

        Returns:
            BundlingResult describing which items were bundled, which got
            individual PRs, which failed and which rolled over.
        """
        now = now or datetime.now(UTC)
        result = BundlingResult(outcome=BundlingOutcome.NO_WORK_AVAILABLE)

        await self._repair_labels()
        candidates = await self.candidates()
        unblockers = [item for item in candidates if self.router.priority_of(item) == Priority.UNBLOCKER]
        regular = [item for item in candidates if self.router.priority_of(item) != Priority.UNBLOCKER]
        if unblockers_only:
            regular = []

        if not unblockers and not regular:
            log.info("bundling_no_work", unblockers_only=unblockers_only)
            if not unblockers_only:
                await self._mark_pass(now)
            return result

        batch = regular[: self.config.max_bundle_size]
        result.rolled_over = [item.number for item in regular[self.config.max_bundle_size :]]

        log.info(
            "bundling_started",
            candidates=len(candidates),
            unblockers=[i.number for i in unblockers],
            batch=[i.number for i in batch],
            rolled_over=result.rolled_over,
            unblockers_only=unblockers_only,
        )

        original_branch = await self.gateway.current_branch()
        conflicted: list[WorkItem] = []
        try:
            for item in unblockers:
                await self._open_individual(item, result)
            if batch:
                conflicted = await self._assemble_bundle(batch, result)
        finally:
            if original_branch and original_branch != await self.gateway.current_branch():
                await self.gateway.checkout(original_branch)

        for item in conflicted:
            await self._open_individual(item, result)

        if not unblockers_only:
            await self._mark_pass(now)
        await self._remember_unlabelled(result)
        await self._follow_worker(result)

        result.outcome = self._classify(result, conflicted)
        log.info(
            "bundling_completed",
            outcome=result.outcome.value,
            bundle_pr=result.bundle_pr,
            bundled=result.bundled,
            individual=result.individual_prs,
            failed=list(result.failed),
            relabel_failed=list(result.relabel_failed),
        )
        return result

    async def _assemble_bundle(self, batch: list[WorkItem], result: BundlingResult) -> list[WorkItem]:
        """Build the bundle branch and PR; return items that conflicted."""
        branch = bundle_branch_name(item.number for item in batch)
        result.bundle_branch = branch

        existing = await self.gateway.find_pull_requests(branch)
        if existing:
            pr = existing[0]
            log.info("bundle_pr_reused", pr=pr.number, branch=branch)
            result.bundle_pr = pr.number
            for item in batch:
                if re.search(rf"#{item.number}\b", pr.body):
                    result.bundled.append(item.number)
                    await self._hand_off(item, pr.number, result)
            return []

        # The bundle branch may be checked out from an interrupted pass
        await self.gateway.checkout(self.default_branch)
        await self.gateway.create_branch(branch, self.default_branch, force=True)
        await self.gateway.checkout(branch)

        included: list[tuple[WorkItem, str]] = []
        conflicted: list[WorkItem] = []
        for item in batch:
            work_branch = await self.gateway.find_work_branch(item.number)
            if work_branch is None:
                await self._record_failure(item, "no work branch found", result)
                continue
            try:
                await self.gateway.cherry_pick_range(self.default_branch, work_branch)
            except ConflictError as e:
                log.warning("bundle_conflict", issue=item.number, paths=e.paths)
                conflicted.append(item)
                continue
            except RelayError as e:
                _reraise_fatal(e)
                await self._record_failure(item, e.message, result)
                continue
            included.append((item, work_branch))

        if not included:
            log.info("bundle_empty", branch=branch)
            result.bundle_branch = None
            return conflicted

        try:
            await self.gateway.push(branch, force=True)
            pr = await self.gateway.create_pull_request(
                title=self._bundle_title([item for item, _ in included]),
                body=self._bundle_body(included),
                head=branch,
                base=self.default_branch,
            )
        except RelayError as e:
            _reraise_fatal(e)
            log.error("bundle_pr_failed", branch=branch, error=e.message)
            result.bundle_branch = None
            result.reason = f"bundle pull request not opened: {e.message}"
            for item, _ in included:
                await self._record_failure(item, result.reason, result)
            return conflicted

        result.bundle_pr = pr.number
        log.info("bundle_pr_created", pr=pr.number, branch=branch, items=[i.number for i, _ in included])

        for item, _ in included:
            result.bundled.append(item.number)
            await self._hand_off(item, pr.number, result)
        return conflicted

    async def _open_individual(self, item: WorkItem, result: BundlingResult) -> None:
        """Give ``item`` its own pull request."""
        try:
            work_branch = await self.gateway.find_work_branch(item.number)
            if work_branch is None:
                await self._record_failure(item, "no work branch found", result)
                return

            pr = await self._existing_or_new_pr(item, work_branch)
        except RelayError as e:
            _reraise_fatal(e)
            await self._record_failure(item, e.message, result)
            return

        result.individual_prs[item.number] = pr.number
        await self._hand_off(item, pr.number, result)

    async def _existing_or_new_pr(self, item: WorkItem, work_branch: str) -> PullRequest:
        existing = await self.gateway.find_pull_requests(work_branch)
        if existing:
            log.info("individual_pr_reused", issue=item.number, pr=existing[0].number)
            return existing[0]

        if not await self.gateway.remote_branch_exists(work_branch):
            await self.gateway.push(work_branch)
        pr = await self.gateway.create_pull_request(
            title=f"{item.title} (#{item.number})",
            body=f"Closes #{item.number}\n\nBranch: `{work_branch}`",
            head=work_branch,
            base=self.default_branch,
        )
        log.info("individual_pr_created", issue=item.number, pr=pr.number, branch=work_branch)
        return pr

    async def _hand_off(self, item: WorkItem | int, pr_number: int, result: BundlingResult | None = None) -> bool:
        """Move an item from review to bundled through a relabelling plan."""
        number = item if isinstance(item, int) else item.number
        plan = self.planner.plan(
            LandedState(issue_number=number),
            BundledState(work_items=(number,), bundle_pr=pr_number),
            PlanContext(agent_id=self.agent_id, labels=self.labels, default_branch=self.default_branch),
        )
        report = await self.executor.execute(plan, track_state=False)
        if report.succeeded:
            return True
        reason = report.failed.error if report.failed else report.status.value
        log.warning("bundle_relabel_failed", issue=number, pr=pr_number, reason=reason)
        if result is not None:
            result.relabel_failed[number] = reason
        return False

    async def _repair_labels(self) -> None:
        """Retry the relabelling of items a previous pass left unlabelled."""
        schedule = await self.continuity.load_schedule()
        if not schedule.unlabelled:
            return
        remaining: dict[int, int] = {}
        for number, pr_number in schedule.unlabelled.items():
            if not await self._hand_off(number, pr_number):
                remaining[number] = pr_number
        log.info("bundle_labels_repaired", repaired=sorted(set(schedule.unlabelled) - set(remaining)))
        await self.continuity.save_schedule(schedule.model_copy(update={"unlabelled": remaining}))

    async def _remember_unlabelled(self, result: BundlingResult) -> None:
        if not result.relabel_failed:
            return
        prs = dict(result.individual_prs)
        if result.bundle_pr is not None:
            prs.update({number: result.bundle_pr for number in result.bundled})
        schedule = await self.continuity.load_schedule()
        unlabelled = dict(schedule.unlabelled)
        unlabelled.update({number: prs[number] for number in result.relabel_failed if number in prs})
        await self.continuity.save_schedule(schedule.model_copy(update={"unlabelled": unlabelled}))

    async def _record_failure(self, item: WorkItem, reason: str, result: BundlingResult) -> None:
        result.failed[item.number] = reason
        log.warning("bundle_item_failed", issue=item.number, reason=reason)
        try:
            await self.gateway.add_comment(
                item.number,
                f"Bundling failed: {reason}. The item stays in review and is retried on the next pass.",
            )
        except RelayError as e:
            _reraise_fatal(e)
            log.warning("failure_comment_not_posted", issue=item.number, error=e.message)

    async def _mark_pass(self, now: datetime) -> None:
        schedule = await self.continuity.load_schedule()
        await self.continuity.save_schedule(schedule.model_copy(update={"last_bundling_at": now}))

    async def _follow_worker(self, result: BundlingResult) -> None:
        """Advance the worker's own checkpoint if its landed item was handed off."""
        checkpoint = await self.continuity.restore()
        if checkpoint is None or checkpoint.state.kind != LifecycleKind.LANDED:
            return
        issue_number = checkpoint.state.issue_number
        if issue_number in result.bundled and result.bundle_pr is not None:
            state = BundledState(work_items=tuple(result.bundled), bundle_pr=result.bundle_pr)
        elif issue_number in result.individual_prs:
            state = BundledState(work_items=(issue_number,), bundle_pr=result.individual_prs[issue_number])
        else:
            return
        await self.continuity.checkpoint(state, head_sha=await self.gateway.head_sha())

    @staticmethod
    def _classify(result: BundlingResult, conflicted: list[WorkItem]) -> BundlingOutcome:
        incomplete = bool(result.failed or result.relabel_failed)
        if result.bundle_pr is not None:
            if conflicted or incomplete:
                return BundlingOutcome.PARTIAL_SUCCESS
            return BundlingOutcome.SUCCESS
        if result.individual_prs:
            return BundlingOutcome.PARTIAL_SUCCESS if incomplete else BundlingOutcome.ALL_INDIVIDUAL
        if result.failed:
            result.reason = result.reason or "every candidate failed"
            return BundlingOutcome.FAILED
        return BundlingOutcome.NO_WORK_AVAILABLE

    def _bundle_title(self, items: list[WorkItem]) -> str:
        numbers = ", ".join(f"#{item.number}" for item in items)
        noun = "issue" if len(items) == 1 else "issues"
        return f"[BUNDLE] {len(items)} {noun}: {numbers}"

    def _bundle_body(self, included: list[tuple[WorkItem, str]]) -> str:
        lines = [
            f"Bundled by `{self.agent_id}` from landed work.",
            "",
            "| Issue | Title | Branch |",
            "|-------|-------|--------|",
        ]
        for item, branch in included:
            lines.append(f"| #{item.number} | {item.title} | `{branch}` |")
        lines.append("")
        lines.extend(f"Closes #{item.number}" for item, _ in included)
        return "\n".join(lines)
