"""Tests for agent_relay/engine/bundling.py - bundle assembly and hand-off."""

from datetime import UTC, datetime, timedelta

import pytest

from agent_relay.engine.bundling import BundlingEngine
from agent_relay.exceptions import ExternalServiceError, GitOperationError
from agent_relay.models.domain import PullRequest
from agent_relay.models.lifecycle import BundledState, LandedState
from agent_relay.models.results import BundlingOutcome
from tests.fakes import land_work

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def bundler(gateway, continuity, executor, planner, settings):
    return BundlingEngine(
        gateway,
        continuity,
        executor,
        planner,
        settings.labels,
        settings.bundling,
        settings.agent_id,
    )


class TestCandidates:
    """Tests for candidate selection."""

    @pytest.mark.asyncio
    async def test_only_unbundled_review_items(self, bundler, provider, local):
        """Ready and already-bundled items are ignored."""
        land_work(provider, local, 10)
        provider.add_issue(11, labels=["route:ready"])
        provider.add_issue(12, labels=["route:review", "route:bundled"])

        assert [item.number for item in await bundler.candidates()] == [10]

    @pytest.mark.asyncio
    async def test_priority_order(self, bundler, provider, local):
        """Higher priority comes first, then age."""
        land_work(provider, local, 10)
        land_work(provider, local, 11, extra_labels=["route:priority-high"])

        assert [item.number for item in await bundler.candidates()] == [11, 10]


class TestExecuteBundling:
    """Tests for a full bundling pass."""

    @pytest.mark.asyncio
    async def test_single_item_bundle(self, bundler, provider, local):
        """One landed item yields one bundle PR and the bundled label."""
        branch = land_work(provider, local, 42, title="Add login")

        result = await bundler.execute_bundling(NOW)

        assert result.outcome == BundlingOutcome.SUCCESS
        assert result.bundled == [42]
        pr = provider.pull_requests[result.bundle_pr]
        assert pr.head == "bundle-42"
        assert pr.title == "[BUNDLE] 1 issue: #42"
        assert "Closes #42" in pr.body
        assert branch in pr.body
        assert provider.labels_of(42) == ["route:bundled"]
        assert "bundle-42" in local.remote

    @pytest.mark.asyncio
    async def test_conflicting_item_gets_individual_pr(self, bundler, provider, local):
        """A conflicting item is split out instead of blocking the bundle."""
        land_work(provider, local, 10, files={"shared.py": "ten"})
        land_work(provider, local, 11, files={"shared.py": "eleven"})

        result = await bundler.execute_bundling(NOW)

        assert result.outcome == BundlingOutcome.PARTIAL_SUCCESS
        assert result.bundled == [10]
        assert list(result.individual_prs) == [11]
        individual = provider.pull_requests[result.individual_prs[11]]
        assert individual.head.startswith("agent001/11")
        assert "Closes #11" in individual.body
        assert provider.labels_of(11) == ["route:bundled"]
        assert provider.pull_requests[result.bundle_pr].head == "bundle-10-11"

    @pytest.mark.asyncio
    async def test_every_item_conflicting_is_all_individual(self, bundler, provider, local):
        """When nothing lands in the bundle, no bundle PR is opened."""
        land_work(provider, local, 10, files={"app.py": "ten"})
        local.commit("main", {"app.py": "main"})

        result = await bundler.execute_bundling(NOW)

        assert result.outcome == BundlingOutcome.ALL_INDIVIDUAL
        assert result.bundle_pr is None
        assert result.bundle_branch is None
        assert 10 in result.individual_prs

    @pytest.mark.asyncio
    async def test_size_cap_rolls_over(self, bundler, provider, local, settings):
        """Items beyond the cap wait for the next pass untouched."""
        settings.bundling.max_bundle_size = 2
        for number in (1, 2, 3):
            land_work(provider, local, number)

        result = await bundler.execute_bundling(NOW)

        assert result.bundled == [1, 2]
        assert result.rolled_over == [3]
        assert provider.labels_of(3) == ["route:review"]

    @pytest.mark.asyncio
    async def test_unblocker_bypasses_bundle(self, bundler, provider, local):
        """Unblockers get their own PR and stay out of the bundle."""
        land_work(provider, local, 10)
        land_work(provider, local, 11, extra_labels=["route:unblocker"])

        result = await bundler.execute_bundling(NOW)

        assert result.bundled == [10]
        assert 11 in result.individual_prs
        assert "#11" not in provider.pull_requests[result.bundle_pr].title
        assert result.outcome == BundlingOutcome.SUCCESS

    @pytest.mark.asyncio
    async def test_missing_branch_comments_and_keeps_review(self, bundler, provider):
        """An item without a work branch is reported and stays in review."""
        provider.add_issue(7, labels=["route:review"])

        result = await bundler.execute_bundling(NOW)

        assert result.outcome == BundlingOutcome.FAILED
        assert result.failed == {7: "no work branch found"}
        assert result.reason == "every candidate failed"
        assert provider.labels_of(7) == ["route:review"]
        assert "Bundling failed" in provider.comments[7][0]

    @pytest.mark.asyncio
    async def test_existing_bundle_pr_is_reused(self, bundler, provider, local):
        """A rerun after a crash relabels from the open PR instead of opening another."""
        land_work(provider, local, 42)
        provider.pull_requests[900] = PullRequest(
            number=900,
            title="[BUNDLE] 1 issue: #42",
            body="Closes #42",
            state="open",
            head="bundle-42",
            base="main",
        )

        result = await bundler.execute_bundling(NOW)

        assert result.bundle_pr == 900
        assert result.bundled == [42]
        assert provider.count("create_pull_request") == 0
        assert provider.labels_of(42) == ["route:bundled"]

    @pytest.mark.asyncio
    async def test_original_branch_restored(self, bundler, provider, local):
        """The worker's branch is checked out again after the pass."""
        land_work(provider, local, 10)
        local.branches["scratch"] = list(local.branches["main"])
        local.current = "scratch"

        await bundler.execute_bundling(NOW)

        assert local.current == "scratch"

    @pytest.mark.asyncio
    async def test_push_failure_fails_the_pass(self, bundler, provider, local, continuity):
        """A rejected bundle push is reported on the items and the original branch is restored."""
        land_work(provider, local, 10)
        local.fail("push", GitOperationError("remote rejected"))

        result = await bundler.execute_bundling(NOW)

        assert result.outcome == BundlingOutcome.FAILED
        assert result.failed == {10: "bundle pull request not opened: remote rejected"}
        assert result.bundle_branch is None
        assert "Bundling failed" in provider.comments[10][0]
        assert local.current == "main"
        assert provider.count("create_pull_request") == 0
        assert (await continuity.load_schedule()).last_bundling_at == NOW

    @pytest.mark.asyncio
    async def test_rejected_bundle_pr_fails_the_pass(self, bundler, provider, local):
        """GitHub refusing the bundle PR leaves the items in review with a comment."""
        land_work(provider, local, 10)
        provider.fail("create_pull_request", ExternalServiceError("Validation Failed", status_code=422))

        result = await bundler.execute_bundling(NOW)

        assert result.outcome == BundlingOutcome.FAILED
        assert result.bundle_pr is None
        assert result.reason == "bundle pull request not opened: Validation Failed"
        assert "Validation Failed" in provider.comments[10][0]
        assert provider.labels_of(10) == ["route:review"]

    @pytest.mark.asyncio
    async def test_rejected_bundle_pr_still_opens_individual_prs(self, bundler, provider, local):
        """Conflicting items get their own PR even when the bundle PR is refused."""
        land_work(provider, local, 10, files={"shared.py": "ten"})
        land_work(provider, local, 11, files={"shared.py": "eleven"})
        provider.fail("create_pull_request", ExternalServiceError("Validation Failed", status_code=422))

        result = await bundler.execute_bundling(NOW)

        assert result.outcome == BundlingOutcome.PARTIAL_SUCCESS
        assert list(result.failed) == [10]
        assert list(result.individual_prs) == [11]
        assert provider.labels_of(10) == ["route:review"]
        assert provider.labels_of(11) == ["route:bundled"]

    @pytest.mark.asyncio
    async def test_failed_relabel_is_repaired_next_pass(self, bundler, provider, local, continuity):
        """An item in a PR whose label could not be moved is not bundled again, only relabelled."""
        land_work(provider, local, 10)
        provider.fail("add_label", ExternalServiceError("Server said no", status_code=422))

        result = await bundler.execute_bundling(NOW)

        assert result.outcome == BundlingOutcome.PARTIAL_SUCCESS
        assert result.bundled == [10]
        assert 10 in result.relabel_failed
        assert provider.labels_of(10) == ["route:review"]
        assert (await continuity.load_schedule()).unlabelled == {10: result.bundle_pr}
        assert await bundler.candidates() == []

        again = await bundler.execute_bundling(NOW + timedelta(minutes=10))

        assert again.outcome == BundlingOutcome.NO_WORK_AVAILABLE
        assert provider.labels_of(10) == ["route:bundled"]
        assert provider.count("create_pull_request") == 1
        assert (await continuity.load_schedule()).unlabelled == {}

    @pytest.mark.asyncio
    async def test_unblockers_only_pass(self, bundler, provider, local, continuity):
        """An unblocker-only pass leaves the regular batch and the timer alone."""
        await bundler.execute_bundling(NOW)
        land_work(provider, local, 10)
        land_work(provider, local, 12, extra_labels=["route:unblocker"])

        result = await bundler.execute_bundling(NOW + timedelta(minutes=1), unblockers_only=True)

        assert result.outcome == BundlingOutcome.ALL_INDIVIDUAL
        assert list(result.individual_prs) == [12]
        assert result.bundled == []
        assert provider.labels_of(10) == ["route:review"]
        assert (await continuity.load_schedule()).last_bundling_at == NOW

    @pytest.mark.asyncio
    async def test_no_work(self, bundler, continuity):
        """An empty pass still records its time."""
        result = await bundler.execute_bundling(NOW)

        assert result.outcome == BundlingOutcome.NO_WORK_AVAILABLE
        assert (await continuity.load_schedule()).last_bundling_at == NOW

    @pytest.mark.asyncio
    async def test_worker_checkpoint_follows_bundle(self, bundler, provider, local, continuity):
        """The worker's own landed item moves its checkpoint to Bundled."""
        branch = land_work(provider, local, 42)
        await continuity.checkpoint(LandedState(issue_number=42, branch=branch))

        result = await bundler.execute_bundling(NOW)

        checkpoint = await continuity.restore()
        assert checkpoint.state == BundledState(work_items=(42,), bundle_pr=result.bundle_pr)


class TestShouldBundle:
    """Tests for the bundling schedule."""

    @pytest.mark.asyncio
    async def test_first_pass_is_due(self, bundler):
        """With no recorded pass a bundle is due."""
        assert await bundler.should_bundle(NOW)

    @pytest.mark.asyncio
    async def test_not_due_within_interval(self, bundler):
        """A recent pass defers the next one."""
        await bundler.execute_bundling(NOW)

        assert not await bundler.should_bundle(NOW + timedelta(minutes=5))
        assert await bundler.next_due() == NOW + timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_due_after_interval(self, bundler):
        """The interval elapsing makes a pass due."""
        await bundler.execute_bundling(NOW)

        assert await bundler.should_bundle(NOW + timedelta(minutes=10))

    @pytest.mark.asyncio
    async def test_unblocker_does_not_make_pass_due(self, bundler, provider, local):
        """A waiting unblocker is reported but does not restart the regular schedule."""
        await bundler.execute_bundling(NOW)
        land_work(provider, local, 5, extra_labels=["route:unblocker"])

        assert not await bundler.should_bundle(NOW + timedelta(minutes=1))
        assert [item.number for item in await bundler.pending_unblockers()] == [5]


class TestPreview:
    """Tests for the bundling dry run."""

    @pytest.mark.asyncio
    async def test_preview_writes_nothing(self, bundler, provider, local, continuity):
        """The preview names the batch, unblockers and conflicts without touching GitHub."""
        land_work(provider, local, 10)
        land_work(provider, local, 11, files={"app.py": "eleven"})
        land_work(provider, local, 12, extra_labels=["route:unblocker"])
        local.commit("main", {"app.py": "main"})

        preview = await bundler.preview(NOW)

        assert preview.due
        assert preview.batch == [10, 11]
        assert preview.unblockers == [12]
        assert preview.bundle_branch == "bundle-10-11"
        assert preview.conflicts_with_default == {11: ["app.py"]}
        assert provider.count("create_pull_request") == 0
        assert provider.count("add_label") == 0
        assert local.count("push") == 0
        assert local.current == "main"
        assert (await continuity.load_schedule()).last_bundling_at is None
