"""
Repository gateway: the only path from the engine to GitHub and git.

The gateway wraps an ``IssueProvider`` and a ``LocalRepository`` and
applies the same rules to every call:

- Calls are serialized by one ``asyncio.Lock``; the engine issues at most
  one external request at a time.
- Each attempt is bounded by ``command_timeout_seconds``.
- Native errors are translated into the relay taxonomy here and nowhere
  else (``GithubException``, ``GitCommandError``, socket errors).
- ``TransientError`` is retried with exponential backoff; when retries
  run out ``RetryExhaustedError`` is raised.

Example:
    >>> gateway = RepositoryGateway(provider, GitRepository("."), settings.gateway)
    >>> item = await gateway.get_issue(42)
    >>> await gateway.add_label(42, "route:review")
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from git.exc import GitCommandError
from github import GithubException, RateLimitExceededException

from agent_relay.config.settings import GatewayConfig
from agent_relay.engine.branching import find_work_branch
from agent_relay.exceptions import (
    ExternalServiceError,
    GitOperationError,
    RelayError,
    RetryExhaustedError,
    TransientError,
)
from agent_relay.models.domain import PullRequest, WorkItem
from agent_relay.providers.base import IssueProvider, LocalRepository
from agent_relay.utils.retry import async_retry

log = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSIENT_HTTP_STATUS = frozenset({429, 500, 502, 503, 504})

TRANSIENT_GIT_MARKERS = (
    "index.lock",
    "could not resolve host",
    "connection timed out",
    "connection reset",
    "operation timed out",
    "unable to access",
    "early eof",
    "the remote end hung up",
)


def classify_github_error(operation: str, error: GithubException) -> RelayError:
    """Map a PyGithub exception onto the relay taxonomy."""
    message = str(error)
    if isinstance(error, RateLimitExceededException) or error.status in TRANSIENT_HTTP_STATUS:
        return TransientError(f"{operation}: GitHub temporarily unavailable ({error.status})")
    if error.status == 403 and "rate limit" in message.lower():
        return TransientError(f"{operation}: GitHub secondary rate limit")
    return ExternalServiceError(
        f"{operation} failed: {message}",
        status_code=error.status,
        response_text=str(error.data) if error.data is not None else None,
    )


def classify_git_error(operation: str, error: GitCommandError) -> RelayError:
    """Map a GitPython command failure onto the relay taxonomy."""
    stderr = str(error.stderr or "").lower()
    if any(marker in stderr for marker in TRANSIENT_GIT_MARKERS):
        return TransientError(f"{operation}: {str(error.stderr).strip()}")
    return GitOperationError(
        f"{operation} failed: {str(error.stderr).strip() or error}",
        context={"command": " ".join(str(part) for part in error.command), "status": error.status},
    )


class RepositoryGateway:
    """Serialized, bounded, retried access to GitHub and the working tree."""

    def __init__(
        self,
        provider: IssueProvider,
        local: LocalRepository,
        config: GatewayConfig | None = None,
    ) -> None:
        self.provider = provider
        self.local = local
        self.config = config or GatewayConfig()
        self._lock = asyncio.Lock()

    async def _call(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run one external call under the gateway rules.

        Args:
            operation: Name used in logs and error messages
            func: Zero-argument callable returning a fresh awaitable per attempt

        Raises:
            RetryExhaustedError: A transient failure outlived every attempt
            RelayError: Any other classified failure
        """
        timeout = self.config.command_timeout_seconds

        @async_retry(
            max_attempts=self.config.max_attempts,
            backoff_factor=self.config.backoff_factor,
            exceptions=(TransientError,),
            operation=operation,
        )
        async def attempt() -> T:
            async with self._lock:
                try:
                    return await asyncio.wait_for(func(), timeout=timeout)
                except TimeoutError as e:
                    raise TransientError(f"{operation} timed out after {timeout}s") from e
                except GithubException as e:
                    raise classify_github_error(operation, e) from e
                except GitCommandError as e:
                    raise classify_git_error(operation, e) from e
                except OSError as e:
                    raise TransientError(f"{operation}: {e}") from e

        try:
            return await attempt()
        except TransientError as e:
            raise RetryExhaustedError(
                f"{operation} kept failing after {self.config.max_attempts} attempt(s): {e.message}",
                attempted=operation,
            ) from e

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        await self._call("connect", self.provider.connect)

    async def disconnect(self) -> None:
        await self._call("disconnect", self.provider.disconnect)

    # ------------------------------------------------------------------
    # Issues and labels
    # ------------------------------------------------------------------

    async def get_issue(self, issue_number: int) -> WorkItem:
        return await self._call("get_issue", lambda: self.provider.get_issue(issue_number))

    async def find_issue(self, issue_number: int) -> WorkItem | None:
        """The issue, or None when GitHub no longer has it (deleted or transferred)."""
        try:
            return await self.get_issue(issue_number)
        except ExternalServiceError as e:
            if e.status_code != 404:
                raise
            log.warning("issue_not_found", issue=issue_number)
            return None

    async def list_issues(self, labels: list[str] | None = None, state: str = "open") -> list[WorkItem]:
        return await self._call("list_issues", lambda: self.provider.get_issues(labels=labels, state=state))

    async def add_label(self, issue_number: int, label: str) -> None:
        await self._call("add_label", lambda: self.provider.add_label(issue_number, label))

    async def remove_label(self, issue_number: int, label: str) -> None:
        await self._call("remove_label", lambda: self.provider.remove_label(issue_number, label))

    async def create_issue(self, title: str, body: str, labels: list[str] | None = None) -> WorkItem:
        return await self._call("create_issue", lambda: self.provider.create_issue(title, body, labels))

    async def add_comment(self, issue_number: int, body: str) -> None:
        await self._call("add_comment", lambda: self.provider.add_comment(issue_number, body))

    # ------------------------------------------------------------------
    # Remote branches and pull requests
    # ------------------------------------------------------------------

    async def remote_branch_exists(self, branch: str) -> bool:
        found = await self._call("get_branch", lambda: self.provider.get_branch(branch))
        return found is not None

    async def create_pull_request(
        self,
        title: str,
        body: str,
        head: str,
        base: str,
        labels: list[str] | None = None,
    ) -> PullRequest:
        return await self._call(
            "create_pull_request",
            lambda: self.provider.create_pull_request(title, body, head, base, labels),
        )

    async def get_pull_request(self, pr_number: int) -> PullRequest:
        return await self._call("get_pull_request", lambda: self.provider.get_pull_request(pr_number))

    async def find_pull_requests(self, head: str, state: str = "open") -> list[PullRequest]:
        return await self._call("find_pull_requests", lambda: self.provider.find_pull_requests(head, state))

    async def merge_pull_request(self, pr_number: int, commit_message: str | None = None) -> bool:
        return await self._call(
            "merge_pull_request",
            lambda: self.provider.merge_pull_request(pr_number, commit_message),
        )

    # ------------------------------------------------------------------
    # Working tree
    # ------------------------------------------------------------------

    async def current_branch(self) -> str | None:
        return await self._call("current_branch", self.local.current_branch)

    async def head_sha(self) -> str | None:
        return await self._call("head_sha", self.local.head_sha)

    async def commits_ahead(self, base: str, head: str) -> int:
        return await self._call("commits_ahead", lambda: self.local.count_commits(base, head))

    async def commits_behind(self, base: str, head: str) -> int:
        return await self._call("commits_behind", lambda: self.local.count_commits(head, base))

    async def unpushed_commits(self, branch: str, base: str) -> int:
        """Commits on ``branch`` the remote does not have yet.

        When the branch was never pushed every commit ahead of ``base``
        counts as unpushed.
        """
        return await self._call("unpushed_commits", lambda: self.local.count_unpushed(branch, base))

    async def local_branch_exists(self, branch: str) -> bool:
        return await self._call("branch_exists", lambda: self.local.branch_exists(branch))

    async def branch_exists_anywhere(self, branch: str) -> bool:
        """Whether ``branch`` exists locally, as a remote-tracking ref, or on GitHub."""
        if await self.local_branch_exists(branch):
            return True
        if await self._call("remote_ref_exists", lambda: self.local.remote_branch_exists(branch)):
            return True
        return await self.remote_branch_exists(branch)

    async def find_work_branch(self, issue_number: int, agent_id: str | None = None) -> str | None:
        branches = await self._call("list_branches", self.local.list_branches)
        return find_work_branch(branches, issue_number, agent_id)

    async def create_branch(self, branch: str, start_point: str, force: bool = False) -> None:
        await self._call("create_branch", lambda: self.local.create_branch(branch, start_point, force))

    async def checkout(self, branch: str) -> None:
        await self._call("checkout", lambda: self.local.checkout(branch))

    async def push(self, branch: str, force: bool = False) -> None:
        await self._call("push", lambda: self.local.push(branch, force))

    async def cherry_pick_range(self, base: str, head: str) -> list[str]:
        return await self._call("cherry_pick", lambda: self.local.cherry_pick_range(base, head))

    async def merge_conflicts(self, base: str, head: str) -> list[str]:
        return await self._call("merge_conflicts", lambda: self.local.merge_conflicts(base, head))

    async def changed_files(self) -> list[str]:
        return await self._call("changed_files", self.local.changed_files)

    async def commit_all(self, message: str) -> str | None:
        return await self._call("commit_all", lambda: self.local.commit_all(message))
