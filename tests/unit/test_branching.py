"""Tests for agent_relay/engine/branching.py - branch naming."""

from datetime import UTC, datetime

import pytest

from agent_relay.engine.branching import (
    AgentBranch,
    agent_branch_name,
    backup_branch_name,
    bundle_branch_name,
    find_work_branch,
    parse_agent_branch,
    slugify,
)


class TestSlugify:
    """Tests for slugify()."""

    @pytest.mark.parametrize(
        ("title", "expected"),
        [
            ("Fix: login fails with SSO!", "fix-login-fails-with-sso"),
            ("  Already-slugged  ", "already-slugged"),
            ("!!!", ""),
        ],
    )
    def test_slugify(self, title, expected):
        assert slugify(title) == expected

    def test_long_titles_cut_at_word_boundary(self):
        """Slugs never end in the middle of a word."""
        slug = slugify("Refactor the authentication middleware to support multiple identity providers")

        assert len(slug) <= 40
        assert slug == "refactor-the-authentication-middleware"


class TestAgentBranches:
    """Tests for work branch names."""

    def test_name_with_slug(self):
        assert agent_branch_name("agent001", 42, "Add login") == "agent001/42-add-login"

    def test_name_without_title(self):
        assert agent_branch_name("agent001", 42) == "agent001/42"

    def test_parse(self):
        """The agent and issue are read back from the name."""
        assert parse_agent_branch("agent001/42-add-login") == AgentBranch("agent001", 42)

    @pytest.mark.parametrize("branch", [None, "", "main", "bundle-10-11", "agent001/not-a-number"])
    def test_parse_non_work_branches(self, branch):
        assert parse_agent_branch(branch) is None

    def test_parse_filters_by_agent(self):
        """Another agent's branch does not match when an agent is given."""
        assert parse_agent_branch("agent002/42", agent_id="agent001") is None
        assert parse_agent_branch("agent001/42", agent_id="agent001") == AgentBranch("agent001", 42)

    def test_find_work_branch(self):
        """The issue's branch is found, this agent's first."""
        branches = ["main", "agent002/42-x", "agent001/43", "agent001/42-x"]

        assert find_work_branch(branches, 42, "agent001") == "agent001/42-x"
        assert find_work_branch(branches, 42, "agent003") == "agent002/42-x"
        assert find_work_branch(branches, 99) is None

    def test_find_work_branch_keeps_listing_order(self):
        """Other agents' branches are taken in the order listed, not by name."""
        branches = ["agent009/42-late", "agent002/42-x", "agent001/42-y"]

        assert find_work_branch(branches, 42, "agent005") == "agent009/42-late"
        assert find_work_branch(branches, 42) == "agent009/42-late"
        assert find_work_branch(branches, 42, "agent001") == "agent001/42-y"


class TestOtherBranches:
    """Tests for bundle and backup branch names."""

    def test_bundle_name_is_sorted_and_unique(self):
        assert bundle_branch_name([11, 10, 11]) == "bundle-10-11"

    def test_backup_name(self):
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

        assert backup_branch_name("agent001", 55, now) == "backup/agent001/55-20260101-120000"
        assert backup_branch_name("agent001", None, now) == "backup/agent001/20260101-120000"
