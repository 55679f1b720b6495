"""GitHub provider implementation using PyGithub and REST API."""

import asyncio
from collections.abc import Callable
from typing import Any, TypeVar

import structlog
from github import Github, GithubException
from github.Issue import Issue as GHIssue
from github.PullRequest import PullRequest as GHPullRequest
from github.Repository import Repository as GHRepository

from agent_relay.models.domain import Branch, IssueState, PullRequest, WorkItem
from agent_relay.providers.base import IssueProvider

log = structlog.get_logger(__name__)

T = TypeVar("T")


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a synchronous function in a thread pool.

    This prevents blocking the event loop when calling synchronous
    PyGithub methods.
    """
    return await asyncio.to_thread(func)


class GitHubRestProvider(IssueProvider):
    """GitHub implementation using PyGithub library."""

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        base_url: str = "https://api.github.com",
    ):
        """Initialize GitHub provider.

        Args:
            token: GitHub personal access token or App token
            owner: Repository owner (user or organization)
            repo: Repository name
            base_url: GitHub API base URL (for GitHub Enterprise)
        """
        self.token = token.strip() if token else token
        self.owner = owner
        self.repo = repo
        self.base_url = base_url.rstrip("/")
        self._client: Github | None = None
        self._repo: GHRepository | None = None

    @property
    def repository(self) -> GHRepository:
        if self._repo is None:
            raise ConnectionError("GitHub provider is not connected; call connect() first")
        return self._repo

    async def connect(self) -> None:
        """Initialize GitHub client."""

        def _connect() -> tuple[Github, GHRepository]:
            client = Github(self.token, base_url=self.base_url)
            repo = client.get_repo(f"{self.owner}/{self.repo}")
            return client, repo

        self._client, self._repo = await _run_sync(_connect)
        log.info("github_connected", base_url=self.base_url, owner=self.owner, repo=self.repo)

    async def disconnect(self) -> None:
        """Close GitHub client."""
        if self._client:
            await _run_sync(self._client.close)
            self._client = None
            self._repo = None

    async def get_issue(self, issue_number: int) -> WorkItem:
        log.debug("get_issue", number=issue_number)
        try:
            gh_issue = await _run_sync(lambda: self.repository.get_issue(issue_number))
            return self._convert_issue(gh_issue)
        except GithubException as e:
            log.error("github_get_issue_failed", number=issue_number, error=str(e))
            raise

    async def get_issues(self, labels: list[str] | None = None, state: str = "open") -> list[WorkItem]:
        log.debug("get_issues", labels=labels, state=state)
        gh_state = state if state in ("open", "closed", "all") else "open"

        try:

            def _list() -> list[GHIssue]:
                issues = self.repository.get_issues(state=gh_state, labels=labels or [])
                # The issues endpoint also returns pull requests
                return [issue for issue in issues if issue.pull_request is None]

            gh_issues = await _run_sync(_list)
            return [self._convert_issue(gh_issue) for gh_issue in gh_issues]
        except GithubException as e:
            log.error("github_get_issues_failed", labels=labels, error=str(e))
            raise

    async def add_label(self, issue_number: int, label: str) -> None:
        log.info("add_label", number=issue_number, label=label)
        try:
            await _run_sync(lambda: self.repository.get_issue(issue_number).add_to_labels(label))
        except GithubException as e:
            log.error("github_add_label_failed", number=issue_number, label=label, error=str(e))
            raise

    async def remove_label(self, issue_number: int, label: str) -> None:
        log.info("remove_label", number=issue_number, label=label)
        try:
            await _run_sync(lambda: self.repository.get_issue(issue_number).remove_from_labels(label))
        except GithubException as e:
            if e.status == 404:
                log.debug("github_label_not_present", number=issue_number, label=label)
                return
            log.error("github_remove_label_failed", number=issue_number, label=label, error=str(e))
            raise

    async def create_issue(self, title: str, body: str, labels: list[str] | None = None) -> WorkItem:
        log.info("create_issue", title=title, labels=labels)
        try:
            gh_issue = await _run_sync(
                lambda: self.repository.create_issue(title=title, body=body, labels=labels or [])
            )
            return self._convert_issue(gh_issue)
        except GithubException as e:
            log.error("github_create_issue_failed", error=str(e))
            raise

    async def add_comment(self, issue_number: int, body: str) -> None:
        log.info("add_comment", number=issue_number)
        try:
            await _run_sync(lambda: self.repository.get_issue(issue_number).create_comment(body))
        except GithubException as e:
            log.error("github_add_comment_failed", number=issue_number, error=str(e))
            raise

    async def get_branch(self, branch_name: str) -> Branch | None:
        log.debug("get_branch", branch=branch_name)
        try:
            gh_branch = await _run_sync(lambda: self.repository.get_branch(branch_name))
            return Branch(name=gh_branch.name, sha=gh_branch.commit.sha, protected=gh_branch.protected)
        except GithubException as e:
            if e.status == 404:
                log.debug("github_branch_not_found", branch=branch_name)
                return None
            log.error("github_get_branch_failed", branch=branch_name, error=str(e))
            raise

    async def create_pull_request(
        self,
        title: str,
        body: str,
        head: str,
        base: str,
        labels: list[str] | None = None,
    ) -> PullRequest:
        log.info("create_pull_request", title=title, head=head, base=base)

        try:

            def _create_pr() -> GHPullRequest:
                gh_pr = self.repository.create_pull(title=title, body=body, head=head, base=base)
                if labels:
                    gh_pr.add_to_labels(*labels)
                return gh_pr

            gh_pr = await _run_sync(_create_pr)
            return self._convert_pull_request(gh_pr)
        except GithubException as e:
            log.error("github_create_pr_failed", head=head, error=str(e))
            raise

    async def get_pull_request(self, pr_number: int) -> PullRequest:
        log.debug("get_pull_request", number=pr_number)
        try:
            gh_pr = await _run_sync(lambda: self.repository.get_pull(pr_number))
            return self._convert_pull_request(gh_pr)
        except GithubException as e:
            log.error("github_get_pr_failed", number=pr_number, error=str(e))
            raise

    async def find_pull_requests(self, head: str, state: str = "open") -> list[PullRequest]:
        log.debug("find_pull_requests", head=head, state=state)
        try:
            gh_prs = await _run_sync(
                lambda: list(self.repository.get_pulls(state=state, head=f"{self.owner}:{head}"))
            )
            return [self._convert_pull_request(gh_pr) for gh_pr in gh_prs]
        except GithubException as e:
            log.error("github_find_prs_failed", head=head, error=str(e))
            raise

    async def merge_pull_request(self, pr_number: int, commit_message: str | None = None) -> bool:
        log.info("merge_pull_request", number=pr_number)

        try:

            def _merge() -> bool:
                gh_pr = self.repository.get_pull(pr_number)
                kwargs: dict[str, Any] = {}
                if commit_message:
                    kwargs["commit_message"] = commit_message
                return bool(gh_pr.merge(**kwargs).merged)

            return await _run_sync(_merge)
        except GithubException as e:
            log.error("github_merge_pr_failed", number=pr_number, error=str(e))
            raise

    def _convert_issue(self, gh_issue: GHIssue) -> WorkItem:
        """Convert GitHub Issue to our WorkItem model."""
        state = IssueState.CLOSED if gh_issue.state == "closed" else IssueState.OPEN
        return WorkItem(
            number=gh_issue.number,
            title=gh_issue.title,
            body=gh_issue.body or "",
            state=state,
            labels=[label.name for label in gh_issue.labels],
            assignees=[user.login for user in gh_issue.assignees],
            created_at=gh_issue.created_at,
            url=gh_issue.html_url,
        )

    def _convert_pull_request(self, gh_pr: GHPullRequest) -> PullRequest:
        """Convert GitHub PullRequest to our PullRequest model."""
        return PullRequest(
            number=gh_pr.number,
            title=gh_pr.title,
            body=gh_pr.body or "",
            state=gh_pr.state,
            head=gh_pr.head.ref,
            base=gh_pr.base.ref,
            url=gh_pr.html_url,
            merged=bool(gh_pr.merged),
            created_at=gh_pr.created_at,
        )
