"""Tests for agent_relay/providers/github_rest.py - GitHub provider implementation."""

from datetime import UTC, datetime
from unittest.mock import Mock, patch

import pytest
from github import GithubException

from agent_relay.models.domain import IssueState
from agent_relay.providers.github_rest import GitHubRestProvider


@pytest.fixture
def provider():
    """Create GitHubRestProvider instance."""
    return GitHubRestProvider(
        token="ghp_test_token_123",
        owner="test-owner",
        repo="test-repo",
        base_url="https://api.github.com",
    )


def _label(name):
    label = Mock()
    label.name = name
    return label


def _gh_issue(number=42, title="Add login", state="open", labels=(), body="Depends on #7"):
    issue = Mock()
    issue.number = number
    issue.title = title
    issue.body = body
    issue.state = state
    issue.labels = [_label(name) for name in labels]
    issue.assignees = []
    issue.created_at = datetime(2026, 1, 1, tzinfo=UTC)
    issue.html_url = f"https://github.com/test-owner/test-repo/issues/{number}"
    issue.pull_request = None
    return issue


def _gh_pull(number=7, state="open", merged=False, head="bundle-42"):
    pr = Mock()
    pr.number = number
    pr.title = "[BUNDLE] 1 issue: #42"
    pr.body = None
    pr.state = state
    pr.merged = merged
    pr.head.ref = head
    pr.base.ref = "main"
    pr.html_url = f"https://github.com/test-owner/test-repo/pull/{number}"
    pr.created_at = datetime(2026, 1, 1, tzinfo=UTC)
    return pr


async def _connected(mock_github_class, provider, repo):
    mock_client = Mock()
    mock_client.get_repo = Mock(return_value=repo)
    mock_github_class.return_value = mock_client
    await provider.connect()
    return mock_client


class TestGitHubRestProviderInit:
    """Tests for GitHubRestProvider initialization."""

    def test_init_with_defaults(self):
        """Should initialize with default base URL."""
        provider = GitHubRestProvider(token="test-token", owner="owner", repo="repo")

        assert provider.token == "test-token"
        assert provider.base_url == "https://api.github.com"
        assert provider._client is None
        assert provider._repo is None

    def test_strips_token_and_trailing_slash(self):
        """Whitespace around tokens and trailing slashes on URLs are removed."""
        provider = GitHubRestProvider(
            token="  ghe-token\n",
            owner="enterprise-org",
            repo="private-repo",
            base_url="https://github.enterprise.com/api/v3/",
        )

        assert provider.token == "ghe-token"
        assert provider.base_url == "https://github.enterprise.com/api/v3"

    def test_repository_requires_connect(self, provider):
        """Using the provider before connect() fails clearly."""
        with pytest.raises(ConnectionError, match="connect"):
            _ = provider.repository


class TestGitHubRestProviderConnection:
    """Tests for connection management."""

    @pytest.mark.asyncio
    @patch("agent_relay.providers.github_rest.Github")
    async def test_connect(self, mock_github_class, provider):
        """Should initialize GitHub client on connect."""
        repo = Mock()
        mock_client = await _connected(mock_github_class, provider, repo)

        mock_github_class.assert_called_once_with("ghp_test_token_123", base_url="https://api.github.com")
        mock_client.get_repo.assert_called_once_with("test-owner/test-repo")
        assert provider._repo is repo

    @pytest.mark.asyncio
    @patch("agent_relay.providers.github_rest.Github")
    async def test_disconnect(self, mock_github_class, provider):
        """Should close client and clear references on disconnect."""
        mock_client = await _connected(mock_github_class, provider, Mock())

        await provider.disconnect()

        mock_client.close.assert_called_once()
        assert provider._client is None
        assert provider._repo is None

    @pytest.mark.asyncio
    async def test_disconnect_when_not_connected(self, provider):
        """Should handle disconnect when not connected."""
        await provider.disconnect()
        assert provider._client is None


class TestGitHubRestProviderIssues:
    """Tests for issue and label operations."""

    @pytest.mark.asyncio
    @patch("agent_relay.providers.github_rest.Github")
    async def test_get_issue_converts_fields(self, mock_github_class, provider):
        """GitHub issues become WorkItems with label names and dependencies."""
        repo = Mock()
        repo.get_issue.return_value = _gh_issue(labels=("route:ready", "agent001"))
        await _connected(mock_github_class, provider, repo)

        item = await provider.get_issue(42)

        assert item.number == 42
        assert item.state == IssueState.OPEN
        assert item.labels == ["route:ready", "agent001"]
        assert item.dependencies == [7]

    @pytest.mark.asyncio
    @patch("agent_relay.providers.github_rest.Github")
    async def test_get_issues_skips_pull_requests(self, mock_github_class, provider):
        """The issues endpoint also lists PRs; those are dropped."""
        issue = _gh_issue(number=1)
        pr_issue = _gh_issue(number=2)
        pr_issue.pull_request = Mock()
        repo = Mock()
        repo.get_issues.return_value = [issue, pr_issue]
        await _connected(mock_github_class, provider, repo)

        items = await provider.get_issues(labels=["route:ready"])

        repo.get_issues.assert_called_once_with(state="open", labels=["route:ready"])
        assert [item.number for item in items] == [1]

    @pytest.mark.asyncio
    @patch("agent_relay.providers.github_rest.Github")
    async def test_remove_missing_label_is_ignored(self, mock_github_class, provider):
        """Removing a label the issue does not carry is not an error."""
        gh_issue = _gh_issue()
        gh_issue.remove_from_labels.side_effect = GithubException(404, {"message": "Label does not exist"}, None)
        repo = Mock()
        repo.get_issue.return_value = gh_issue
        await _connected(mock_github_class, provider, repo)

        await provider.remove_label(42, "agent001")

        gh_issue.remove_from_labels.assert_called_once_with("agent001")

    @pytest.mark.asyncio
    @patch("agent_relay.providers.github_rest.Github")
    async def test_add_label_error_propagates(self, mock_github_class, provider):
        """Other GitHub errors are re-raised for the gateway to classify."""
        gh_issue = _gh_issue()
        gh_issue.add_to_labels.side_effect = GithubException(502, {"message": "Bad gateway"}, None)
        repo = Mock()
        repo.get_issue.return_value = gh_issue
        await _connected(mock_github_class, provider, repo)

        with pytest.raises(GithubException):
            await provider.add_label(42, "route:review")

    @pytest.mark.asyncio
    @patch("agent_relay.providers.github_rest.Github")
    async def test_create_issue(self, mock_github_class, provider):
        """Tracking issues are created with their labels."""
        repo = Mock()
        repo.create_issue.return_value = _gh_issue(number=99, title="[relay] agent001: issue closed on #55")
        await _connected(mock_github_class, provider, repo)

        item = await provider.create_issue("[relay] agent001: issue closed on #55", "body", ["relay:attention"])

        repo.create_issue.assert_called_once_with(
            title="[relay] agent001: issue closed on #55", body="body", labels=["relay:attention"]
        )
        assert item.number == 99


class TestGitHubRestProviderBranches:
    """Tests for branch lookups."""

    @pytest.mark.asyncio
    @patch("agent_relay.providers.github_rest.Github")
    async def test_get_branch(self, mock_github_class, provider):
        """Existing branches are returned with their head sha."""
        gh_branch = Mock()
        gh_branch.name = "agent001/42-add-login"
        gh_branch.commit.sha = "abc123"
        gh_branch.protected = False
        repo = Mock()
        repo.get_branch.return_value = gh_branch
        await _connected(mock_github_class, provider, repo)

        branch = await provider.get_branch("agent001/42-add-login")

        assert branch.sha == "abc123"

    @pytest.mark.asyncio
    @patch("agent_relay.providers.github_rest.Github")
    async def test_missing_branch_is_none(self, mock_github_class, provider):
        """A 404 means the branch does not exist."""
        repo = Mock()
        repo.get_branch.side_effect = GithubException(404, {"message": "Branch not found"}, None)
        await _connected(mock_github_class, provider, repo)

        assert await provider.get_branch("gone") is None


class TestGitHubRestProviderPullRequests:
    """Tests for pull request operations."""

    @pytest.mark.asyncio
    @patch("agent_relay.providers.github_rest.Github")
    async def test_find_pull_requests_by_head(self, mock_github_class, provider):
        """PRs are looked up by owner-qualified head branch."""
        repo = Mock()
        repo.get_pulls.return_value = [_gh_pull()]
        await _connected(mock_github_class, provider, repo)

        prs = await provider.find_pull_requests("bundle-42")

        repo.get_pulls.assert_called_once_with(state="open", head="test-owner:bundle-42")
        assert prs[0].number == 7
        assert prs[0].head == "bundle-42"
        assert prs[0].body == ""

    @pytest.mark.asyncio
    @patch("agent_relay.providers.github_rest.Github")
    async def test_create_pull_request_with_labels(self, mock_github_class, provider):
        """Labels are applied after the PR is created."""
        gh_pr = _gh_pull()
        repo = Mock()
        repo.create_pull.return_value = gh_pr
        await _connected(mock_github_class, provider, repo)

        pr = await provider.create_pull_request("title", "body", "bundle-42", "main", labels=["relay:bundle"])

        repo.create_pull.assert_called_once_with(title="title", body="body", head="bundle-42", base="main")
        gh_pr.add_to_labels.assert_called_once_with("relay:bundle")
        assert pr.is_open

    @pytest.mark.asyncio
    @patch("agent_relay.providers.github_rest.Github")
    async def test_merge_pull_request(self, mock_github_class, provider):
        """Merging reports GitHub's merged flag."""
        gh_pr = _gh_pull()
        gh_pr.merge.return_value = Mock(merged=True)
        repo = Mock()
        repo.get_pull.return_value = gh_pr
        await _connected(mock_github_class, provider, repo)

        assert await provider.merge_pull_request(7) is True
        gh_pr.merge.assert_called_once_with()
