"""
State detection from GitHub labels and the local working tree.

The detector never writes. It reads the current branch, the tracked
issue's labels and the commit count, and classifies the worker:

    not on <agent_id>/<issue>[-slug]              -> Idle
    issue deleted or transferred                  -> Idle + IssueMissing
    agent label, no review label, 0 commits       -> Assigned
    agent label, no review label, >0 commits      -> Working
    review label, no agent label                  -> Landed
    anything else                                 -> Idle + LabelMismatch

Pre-flight issues are reported separately so callers can decide whether
to plan a recovery before a transition.
"""

import structlog

from agent_relay.config.settings import LabelsConfig
from agent_relay.engine.branching import agent_branch_name, parse_agent_branch
from agent_relay.engine.gateway import RepositoryGateway
from agent_relay.engine.routing import LabelRouter
from agent_relay.models.domain import WorkItem
from agent_relay.models.lifecycle import (
    AgentState,
    AssignedState,
    BehindMain,
    BranchMissing,
    IdleState,
    IssueMissing,
    LabelMismatch,
    LandedState,
    LifecycleKind,
    MergeConflicts,
    NoCommits,
    PreFlightIssue,
    UnpushedCommits,
    WorkingState,
)

log = structlog.get_logger(__name__)


class StateDetector:
    """Derive the worker's lifecycle state. Pure reads through the gateway."""

    def __init__(self, gateway: RepositoryGateway, labels: LabelsConfig, default_branch: str = "main"):
        self.gateway = gateway
        self.labels = labels
        self.router = LabelRouter(labels)
        self.default_branch = default_branch

    def classify(self, agent_id: str, item: WorkItem, branch: str, commits_ahead: int) -> AgentState | None:
        """Classify a work item's labels; None means the combination is invalid."""
        assigned = item.has_label(agent_id)
        in_review = item.has_label(self.labels.review)

        if assigned and not in_review:
            if commits_ahead == 0:
                return AssignedState(issue_number=item.number, branch=branch)
            return WorkingState(issue_number=item.number, branch=branch, commits_ahead=commits_ahead)
        if in_review and not assigned:
            return LandedState(issue_number=item.number, branch=branch)
        return None

    def expected_labels(self, agent_id: str, item: WorkItem, commits_ahead: int) -> tuple[str, ...]:
        """Routing labels a mislabelled item should carry."""
        if item.has_label(self.labels.review) and commits_ahead > 0:
            return (self.labels.review,)
        return (agent_id,)

    def routing_labels(self, agent_id: str, item: WorkItem) -> tuple[str, ...]:
        return tuple(label for label in item.labels if label in (agent_id, self.labels.review))

    async def detect(self, agent_id: str) -> AgentState:
        """Classify the worker's current lifecycle state.

        Args:
            agent_id: The worker whose state is detected

        Returns:
            One of the lifecycle states; Idle when no work branch is checked out,
            when the branch's issue no longer exists or when the labels form
            no valid combination.
        """
        branch = await self.gateway.current_branch()
        parsed = parse_agent_branch(branch, agent_id)
        if parsed is None or branch is None:
            return IdleState()

        item = await self.gateway.find_issue(parsed.issue_number)
        if item is None:
            log.warning("tracked_issue_missing", issue=parsed.issue_number, branch=branch)
            return IdleState()

        commits = await self.gateway.commits_ahead(self.default_branch, branch)
        state = self.classify(agent_id, item, branch, commits)
        if state is None:
            log.warning(
                "label_mismatch_detected",
                issue=item.number,
                labels=item.labels,
                commits=commits,
            )
            return IdleState()
        log.debug("state_detected", state=state.kind, issue=item.number, commits=commits)
        return state

    async def detect_pre_flight_issues(self, agent_id: str) -> list[PreFlightIssue]:
        """Problems that should be resolved before the next transition."""
        branch = await self.gateway.current_branch()
        parsed = parse_agent_branch(branch, agent_id)
        if parsed is None or branch is None:
            return await self._detect_missing_branches(agent_id)

        item = await self.gateway.find_issue(parsed.issue_number)
        if item is None:
            return [IssueMissing(issue_number=parsed.issue_number, branch=branch)]

        issues: list[PreFlightIssue] = []
        commits = await self.gateway.commits_ahead(self.default_branch, branch)

        if commits == 0:
            issues.append(NoCommits())
        else:
            unpushed = await self.gateway.unpushed_commits(branch, self.default_branch)
            if unpushed:
                issues.append(UnpushedCommits(count=unpushed))

        behind = await self.gateway.commits_behind(self.default_branch, branch)
        if behind:
            issues.append(BehindMain(commits=behind))
            conflicts = await self.gateway.merge_conflicts(self.default_branch, branch)
            if conflicts:
                issues.append(MergeConflicts(paths=tuple(conflicts)))

        if self.classify(agent_id, item, branch, commits) is None:
            issues.append(
                LabelMismatch(
                    issue_number=item.number,
                    expected=self.expected_labels(agent_id, item, commits),
                    actual=self.routing_labels(agent_id, item),
                )
            )
        return issues

    async def _detect_missing_branches(self, agent_id: str) -> list[PreFlightIssue]:
        issues: list[PreFlightIssue] = []
        for item in await self.gateway.list_issues(labels=[agent_id]):
            branch = await self.gateway.find_work_branch(item.number, agent_id)
            if branch is None:
                expected = agent_branch_name(agent_id, item.number, item.title)
                if not await self.gateway.remote_branch_exists(expected):
                    issues.append(BranchMissing(issue_number=item.number, branch=expected))
        return issues

    async def tracked_labels(self, state: AgentState) -> tuple[str, ...]:
        """Labels of the single issue ``state`` tracks, in GitHub's order."""
        if len(state.issue_numbers) != 1 or state.kind == LifecycleKind.BUNDLED:
            return ()
        item = await self.gateway.find_issue(state.issue_numbers[0])
        return tuple(item.labels) if item is not None else ()
