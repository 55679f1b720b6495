"""Local working tree operations using GitPython.

``GitRepository`` implements ``LocalRepository`` on top of ``git.Repo``.
Every method pushes the blocking GitPython call to a worker thread.
``git.GitCommandError`` is left to propagate so the gateway can decide
whether a failure is transient (``index.lock``, network) or final, except
for cherry-pick conflicts which are aborted here and raised as
``ConflictError`` so the working tree is never left mid-pick.

Example:
    >>> repo = GitRepository(".", remote="origin")
    >>> await repo.count_commits("main", "agent001/42-fix-login")
    3
"""

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import git
import structlog
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from agent_relay.exceptions import ConflictError, GitOperationError
from agent_relay.providers.base import LocalRepository

log = structlog.get_logger(__name__)

T = TypeVar("T")


async def _run_sync(func: Callable[[], T]) -> T:
    return await asyncio.to_thread(func)


class GitRepository(LocalRepository):
    """GitPython-backed working tree."""

    def __init__(self, path: str | Path = ".", remote: str = "origin") -> None:
        self.path = Path(path).resolve()
        self.remote = remote
        self._repo: git.Repo | None = None

    def _get_repo(self) -> git.Repo:
        """Get the Git repository object, initializing if needed.

        Raises:
            GitOperationError: If the path is not within a Git repository.
        """
        if self._repo is None:
            try:
                self._repo = git.Repo(self.path, search_parent_directories=True)
            except (InvalidGitRepositoryError, NoSuchPathError) as e:
                raise GitOperationError(f"Not a git repository: {self.path}") from e
        return self._repo

    async def current_branch(self) -> str | None:
        def _current() -> str | None:
            repo = self._get_repo()
            if repo.head.is_detached:
                return None
            return repo.active_branch.name

        return await _run_sync(_current)

    async def head_sha(self) -> str | None:
        def _head() -> str | None:
            try:
                return self._get_repo().head.commit.hexsha
            except ValueError:
                # Unborn branch in an empty repository
                return None

        return await _run_sync(_head)

    async def count_commits(self, base: str, head: str) -> int:
        return await _run_sync(lambda: int(self._get_repo().git.rev_list("--count", f"{base}..{head}")))

    async def count_unpushed(self, branch: str, base: str) -> int:
        if await self.remote_branch_exists(branch):
            return await self.count_commits(f"{self.remote}/{branch}", branch)
        return await self.count_commits(base, branch)

    async def branch_exists(self, branch: str) -> bool:
        return await _run_sync(lambda: any(h.name == branch for h in self._get_repo().heads))

    async def remote_branch_exists(self, branch: str) -> bool:
        def _exists() -> bool:
            try:
                self._get_repo().git.show_ref("--verify", "--quiet", f"refs/remotes/{self.remote}/{branch}")
            except GitCommandError:
                return False
            return True

        return await _run_sync(_exists)

    async def list_branches(self) -> list[str]:
        def _list() -> list[str]:
            repo = self._get_repo()
            names = [h.name for h in repo.heads]
            prefix = f"{self.remote}/"
            output = repo.git.for_each_ref("--format=%(refname:short)", f"refs/remotes/{self.remote}")
            for line in output.splitlines():
                line = line.strip()
                if not line.startswith(prefix):
                    continue
                name = line[len(prefix) :]
                if name != "HEAD" and name not in names:
                    names.append(name)
            return names

        return await _run_sync(_list)

    async def create_branch(self, branch: str, start_point: str, force: bool = False) -> None:
        log.info("git_create_branch", branch=branch, start_point=start_point, force=force)
        args = ["-f", branch, start_point] if force else [branch, start_point]
        await _run_sync(lambda: self._get_repo().git.branch(*args))

    async def checkout(self, branch: str) -> None:
        log.info("git_checkout", branch=branch)
        await _run_sync(lambda: self._get_repo().git.checkout(branch))

    async def push(self, branch: str, force: bool = False) -> None:
        log.info("git_push", branch=branch, remote=self.remote, force=force)
        args = ["--set-upstream"]
        if force:
            args.append("--force")
        args.extend([self.remote, branch])
        await _run_sync(lambda: self._get_repo().git.push(*args))

    async def cherry_pick_range(self, base: str, head: str) -> list[str]:
        def _pick() -> list[str]:
            repo = self._get_repo()
            ref = head if head in repo.heads else f"{self.remote}/{head}"
            commits = repo.git.rev_list("--reverse", f"{base}..{ref}").split()
            if not commits:
                return []

            before = repo.head.commit.hexsha
            try:
                repo.git.cherry_pick("-x", *commits)
            except GitCommandError as e:
                conflicted = [p for p in repo.git.diff("--name-only", "--diff-filter=U").splitlines() if p]
                if (Path(repo.git_dir) / "CHERRY_PICK_HEAD").exists():
                    repo.git.cherry_pick("--abort")
                if conflicted:
                    raise ConflictError(
                        f"Cherry-pick of {base}..{head} conflicted",
                        paths=conflicted,
                    ) from e
                raise

            return repo.git.rev_list("--reverse", f"{before}..HEAD").split()

        picked = await _run_sync(_pick)
        log.info("git_cherry_picked", base=base, head=head, commits=len(picked))
        return picked

    async def merge_conflicts(self, base: str, head: str) -> list[str]:
        def _merge_tree() -> list[str]:
            status, stdout, stderr = self._get_repo().git.merge_tree(
                "--write-tree",
                "--name-only",
                "--no-messages",
                head,
                base,
                with_extended_output=True,
                with_exceptions=False,
            )
            if status == 0:
                return []
            if status == 1:
                # First line is the resulting tree id; conflicted paths follow
                return [line for line in stdout.splitlines()[1:] if line.strip()]
            log.warning("git_merge_tree_unavailable", status=status, stderr=stderr)
            return []

        return await _run_sync(_merge_tree)

    async def changed_files(self) -> list[str]:
        def _changed() -> list[str]:
            repo = self._get_repo()
            paths = {d.a_path for d in repo.index.diff(None)}
            if repo.head.is_valid():
                paths.update(d.a_path for d in repo.index.diff("HEAD"))
            paths.update(repo.untracked_files)
            return sorted(p for p in paths if p)

        return await _run_sync(_changed)

    async def commit_all(self, message: str) -> str | None:
        def _commit() -> str | None:
            repo = self._get_repo()
            if not repo.is_dirty(untracked_files=True):
                return None
            repo.git.add("--all")
            repo.git.commit("-m", message, "--no-verify")
            return repo.head.commit.hexsha

        sha = await _run_sync(_commit)
        if sha:
            log.info("git_committed_all", sha=sha)
        return sha
