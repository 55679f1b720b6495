"""Tests for agent_relay/git/repository.py against real git repositories.

Each test gets a working clone and a bare "origin" in a temporary
directory.
"""

import re
import shutil
import subprocess
from pathlib import Path

import pytest

from agent_relay.exceptions import ConflictError, GitOperationError
from agent_relay.git.repository import GitRepository

pytestmark = [pytest.mark.git, pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")]


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def _commit(cwd: Path, files: dict[str, str], message: str = "change") -> str:
    for name, content in files.items():
        path = cwd / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    _git(cwd, "add", "--all")
    _git(cwd, "commit", "-m", message)
    return _git(cwd, "rev-parse", "HEAD")


def _supports_merge_tree_write_tree() -> bool:
    if shutil.which("git") is None:
        return False
    version = subprocess.run(["git", "--version"], capture_output=True, text=True).stdout
    match = re.search(r"(\d+)\.(\d+)", version)
    return bool(match) and (int(match.group(1)), int(match.group(2))) >= (2, 38)


@pytest.fixture
def workdir(tmp_path):
    """Create a working repository with a pushed ``main`` branch.

    Yields:
        Path to the working tree
    """
    origin = tmp_path / "origin.git"
    work = tmp_path / "work"
    work.mkdir()

    _git(tmp_path, "init", "--bare", str(origin))
    _git(work, "init")
    _git(work, "config", "user.email", "test@example.com")
    _git(work, "config", "user.name", "Test User")
    _git(work, "config", "commit.gpgsign", "false")
    _git(work, "checkout", "-B", "main")
    _commit(work, {"README.md": "# Test Repository\n"}, "Initial commit")
    _git(work, "remote", "add", "origin", str(origin))
    _git(work, "push", "--set-upstream", "origin", "main")

    yield work


@pytest.fixture
def repo(workdir):
    return GitRepository(workdir)


class TestInspection:
    """Tests for read-only queries."""

    @pytest.mark.asyncio
    async def test_current_branch_and_head(self, repo, workdir):
        assert await repo.current_branch() == "main"
        assert await repo.head_sha() == _git(workdir, "rev-parse", "HEAD")

    @pytest.mark.asyncio
    async def test_detached_head_has_no_branch(self, repo, workdir):
        _git(workdir, "checkout", "--detach")

        assert await repo.current_branch() is None

    @pytest.mark.asyncio
    async def test_count_commits(self, repo, workdir):
        """Commits reachable from head but not base."""
        _git(workdir, "checkout", "-b", "agent001/42")
        _commit(workdir, {"a.py": "a"})
        _commit(workdir, {"b.py": "b"})

        assert await repo.count_commits("main", "agent001/42") == 2
        assert await repo.count_commits("agent001/42", "main") == 0

    @pytest.mark.asyncio
    async def test_list_branches_includes_remote_only(self, repo, workdir):
        """Branches that exist only on origin are listed once, without the prefix."""
        _git(workdir, "checkout", "-b", "agent002/7")
        _commit(workdir, {"x.py": "x"})
        _git(workdir, "push", "origin", "agent002/7")
        _git(workdir, "checkout", "main")
        _git(workdir, "branch", "-D", "agent002/7")

        branches = await repo.list_branches()

        assert "main" in branches
        assert "agent002/7" in branches
        assert branches.count("main") == 1
        assert not await repo.branch_exists("agent002/7")
        assert await repo.remote_branch_exists("agent002/7")

    @pytest.mark.asyncio
    async def test_not_a_repository(self, tmp_path):
        """A plain directory is reported as a git operation error."""
        plain = tmp_path / "plain"
        plain.mkdir()

        with pytest.raises(GitOperationError, match="Not a git repository"):
            await GitRepository(plain).current_branch()


class TestBranchesAndPush:
    """Tests for branch creation, checkout and push."""

    @pytest.mark.asyncio
    async def test_unpushed_counts(self, repo, workdir):
        """Never-pushed branches count against the base; pushed ones against origin."""
        await repo.create_branch("agent001/42", "main")
        await repo.checkout("agent001/42")
        _commit(workdir, {"a.py": "a"})

        assert await repo.count_unpushed("agent001/42", "main") == 1

        await repo.push("agent001/42")
        assert await repo.count_unpushed("agent001/42", "main") == 0

        _commit(workdir, {"b.py": "b"})
        assert await repo.count_unpushed("agent001/42", "main") == 1

    @pytest.mark.asyncio
    async def test_force_create_resets_branch(self, repo, workdir):
        """Force moves an existing branch to the new start point."""
        await repo.create_branch("bundle-1", "main")
        await repo.checkout("bundle-1")
        _commit(workdir, {"stale.py": "old"})
        await repo.checkout("main")

        await repo.create_branch("bundle-1", "main", force=True)

        assert await repo.count_commits("main", "bundle-1") == 0


class TestCherryPick:
    """Tests for cherry_pick_range() and merge_conflicts()."""

    @pytest.mark.asyncio
    async def test_clean_pick(self, repo, workdir):
        """Every commit of the range lands on the current branch."""
        _git(workdir, "checkout", "-b", "agent001/42")
        _commit(workdir, {"a.py": "a"})
        _commit(workdir, {"b.py": "b"})
        _git(workdir, "checkout", "main")
        _commit(workdir, {"c.py": "c"})
        _git(workdir, "checkout", "-b", "bundle-42")

        picked = await repo.cherry_pick_range("main", "agent001/42")

        assert len(picked) == 2
        assert (workdir / "a.py").exists()
        assert (workdir / "b.py").exists()

    @pytest.mark.asyncio
    async def test_empty_range(self, repo):
        assert await repo.cherry_pick_range("main", "main") == []

    @pytest.mark.asyncio
    async def test_conflict_aborts_and_raises(self, repo, workdir):
        """A conflicting pick is aborted and the paths reported."""
        _commit(workdir, {"app.py": "base\n"})
        _git(workdir, "checkout", "-b", "agent001/42")
        _commit(workdir, {"app.py": "ours\n"})
        _git(workdir, "checkout", "main")
        _commit(workdir, {"app.py": "theirs\n"})
        head_before = _git(workdir, "rev-parse", "HEAD")

        with pytest.raises(ConflictError) as exc_info:
            await repo.cherry_pick_range("main", "agent001/42")

        assert exc_info.value.paths == ["app.py"]
        assert _git(workdir, "rev-parse", "HEAD") == head_before
        assert not (workdir / ".git" / "CHERRY_PICK_HEAD").exists()
        assert (workdir / "app.py").read_text() == "theirs\n"

    @pytest.mark.asyncio
    @pytest.mark.skipif(not _supports_merge_tree_write_tree(), reason="git merge-tree --write-tree needs git 2.38")
    async def test_merge_conflicts_dry_merge(self, repo, workdir):
        """A dry merge reports conflicting paths without touching the tree."""
        _commit(workdir, {"app.py": "base\n"})
        _git(workdir, "checkout", "-b", "agent001/42")
        _commit(workdir, {"app.py": "ours\n"})
        _git(workdir, "checkout", "main")
        _commit(workdir, {"app.py": "theirs\n"})

        assert await repo.merge_conflicts("main", "agent001/42") == ["app.py"]
        assert await repo.merge_conflicts("main", "main") == []
        assert await repo.changed_files() == []


class TestWorkingTree:
    """Tests for changed_files() and commit_all()."""

    @pytest.mark.asyncio
    async def test_changed_files(self, repo, workdir):
        """Modified, staged and untracked files are all reported."""
        (workdir / "README.md").write_text("edited\n")
        (workdir / "staged.py").write_text("s")
        _git(workdir, "add", "staged.py")
        (workdir / "new.py").write_text("n")

        assert await repo.changed_files() == ["README.md", "new.py", "staged.py"]

    @pytest.mark.asyncio
    async def test_commit_all(self, repo, workdir):
        """Everything is committed; a clean tree commits nothing."""
        (workdir / "notes.md").write_text("half done")

        sha = await repo.commit_all("wip")

        assert sha == _git(workdir, "rev-parse", "HEAD")
        assert await repo.changed_files() == []
        assert await repo.commit_all("again") is None
