"""
Abstract base classes for the two sides of the repository gateway.

``IssueProvider`` covers the GitHub side (issues, labels, remote branches,
pull requests). ``LocalRepository`` covers the working tree the agent
commits in. The engine never calls either directly; every call goes
through ``RepositoryGateway`` which serializes, bounds and retries it.
"""

from abc import ABC, abstractmethod

from agent_relay.models.domain import Branch, PullRequest, WorkItem


class IssueProvider(ABC):
    """Abstract base class for issue tracker implementations.

    Implementations raise their native exceptions (``GithubException`` for
    PyGithub); the gateway translates them into the relay taxonomy.
    All methods are async so blocking client libraries can be pushed to
    worker threads.
    """

    async def connect(self) -> None:
        """Open the client session. Optional for in-memory implementations."""

    async def disconnect(self) -> None:
        """Close the client session."""

    @abstractmethod
    async def get_issue(self, issue_number: int) -> WorkItem:
        """Get a single issue by number.

        Args:
            issue_number: The repository-scoped issue number.

        Returns:
            WorkItem with labels and assignees populated.
        """
        pass

    @abstractmethod
    async def get_issues(self, labels: list[str] | None = None, state: str = "open") -> list[WorkItem]:
        """List issues carrying ALL of the given labels.

        Args:
            labels: Label filter (intersection). None means no filter.
            state: "open", "closed" or "all".

        Returns:
            Matching issues. Pull requests are never returned.
        """
        pass

    @abstractmethod
    async def add_label(self, issue_number: int, label: str) -> None:
        """Add one label; adding a label that is already present is a no-op."""
        pass

    @abstractmethod
    async def remove_label(self, issue_number: int, label: str) -> None:
        """Remove one label; removing an absent label is a no-op."""
        pass

    @abstractmethod
    async def create_issue(self, title: str, body: str, labels: list[str] | None = None) -> WorkItem:
        """Create a new issue."""
        pass

    @abstractmethod
    async def add_comment(self, issue_number: int, body: str) -> None:
        """Comment on an issue or pull request."""
        pass

    @abstractmethod
    async def get_branch(self, branch_name: str) -> Branch | None:
        """Get a remote branch, or None if it does not exist."""
        pass

    @abstractmethod
    async def create_pull_request(
        self,
        title: str,
        body: str,
        head: str,
        base: str,
        labels: list[str] | None = None,
    ) -> PullRequest:
        """Open a pull request from ``head`` into ``base``."""
        pass

    @abstractmethod
    async def get_pull_request(self, pr_number: int) -> PullRequest:
        """Get a pull request by number."""
        pass

    @abstractmethod
    async def find_pull_requests(self, head: str, state: str = "open") -> list[PullRequest]:
        """Pull requests whose head is ``head`` in this repository."""
        pass

    @abstractmethod
    async def merge_pull_request(self, pr_number: int, commit_message: str | None = None) -> bool:
        """Merge a pull request.

        Returns:
            True if GitHub reports the PR as merged.
        """
        pass


class LocalRepository(ABC):
    """Abstract base class for the agent's local working tree.

    Conflicting cherry-picks raise ``ConflictError`` after the operation
    has been aborted, so the tree is always left clean. Other failures
    raise the implementation's native error for the gateway to classify.
    """

    @abstractmethod
    async def current_branch(self) -> str | None:
        """Name of the checked out branch, None when HEAD is detached."""
        pass

    @abstractmethod
    async def head_sha(self) -> str | None:
        """Commit id of HEAD, None in an empty repository."""
        pass

    @abstractmethod
    async def count_commits(self, base: str, head: str) -> int:
        """Number of commits reachable from ``head`` but not from ``base``."""
        pass

    @abstractmethod
    async def count_unpushed(self, branch: str, base: str) -> int:
        """Commits on ``branch`` missing from its remote-tracking ref.

        A branch that was never pushed counts every commit ahead of ``base``.
        """
        pass

    @abstractmethod
    async def branch_exists(self, branch: str) -> bool:
        """Whether a local branch exists."""
        pass

    @abstractmethod
    async def remote_branch_exists(self, branch: str) -> bool:
        """Whether the remote-tracking ref for ``branch`` exists."""
        pass

    @abstractmethod
    async def list_branches(self) -> list[str]:
        """Local and remote-tracking branch names, remote prefix stripped, deduplicated."""
        pass

    @abstractmethod
    async def create_branch(self, branch: str, start_point: str, force: bool = False) -> None:
        """Create a local branch at ``start_point``. ``force`` resets an existing one."""
        pass

    @abstractmethod
    async def checkout(self, branch: str) -> None:
        """Check out an existing local branch, carrying uncommitted changes along."""
        pass

    @abstractmethod
    async def push(self, branch: str, force: bool = False) -> None:
        """Push a branch to the remote and set its upstream."""
        pass

    @abstractmethod
    async def cherry_pick_range(self, base: str, head: str) -> list[str]:
        """Apply the commits of ``base..head`` onto the current branch.

        Returns:
            Commit ids created on the current branch.

        Raises:
            ConflictError: The pick conflicted; it has been aborted.
        """
        pass

    @abstractmethod
    async def merge_conflicts(self, base: str, head: str) -> list[str]:
        """Paths that would conflict when merging ``base`` into ``head``."""
        pass

    @abstractmethod
    async def changed_files(self) -> list[str]:
        """Uncommitted changes, tracked and untracked."""
        pass

    @abstractmethod
    async def commit_all(self, message: str) -> str | None:
        """Stage and commit everything; returns the new commit id or None if clean."""
        pass
