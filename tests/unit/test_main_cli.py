"""Unit tests for the agent_relay.main CLI module.

This module tests the CLI entry point including:
- Every command and its options
- Exit codes for success, recoverable and fatal results
- Error handling for missing or invalid config
- JSON output
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from agent_relay.exceptions import GitOperationError, RetryExhaustedError
from agent_relay.main import cli
from agent_relay.models.results import CommandResult

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def keep_logging_config():
    """Keep the CLI from pointing cached loggers at the runner's streams."""
    with patch("agent_relay.main.configure_logging"):
        yield


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    """Write a minimal configuration file."""
    path = tmp_path / "relay.yaml"
    path.write_text(
        """
github:
  api_token: test-token

repository:
  owner: test-owner
  name: test-repo

agent:
  agent_id: agent001

continuity:
  state_directory: {state}
""".format(state=tmp_path / "state")
    )
    return str(path)


@pytest.fixture
def engine_class():
    """Patch the engine class used by the CLI."""
    with patch("agent_relay.main.LifecycleEngine") as engine_class:
        yield engine_class


@pytest.fixture
def mock_engine(engine_class):
    """Engine returned by LifecycleEngine.create, with async commands."""
    engine = MagicMock()
    engine.agent_id = "agent001"
    for name in (
        "startup",
        "shutdown",
        "claim_next",
        "peek",
        "land",
        "force_bundle",
        "status",
        "force_reset",
        "merge",
        "run_drift_pass",
        "run_daemon",
    ):
        setattr(engine, name, AsyncMock(return_value=CommandResult.success(f"{name} done")))
    engine_class.create.return_value = engine
    return engine


# =============================================================================
# Configuration handling
# =============================================================================


class TestConfiguration:
    """Tests for config loading in the CLI group."""

    def test_missing_config_exits_fatal(self, cli_runner, tmp_path):
        """A missing config file exits with code 2."""
        result = cli_runner.invoke(cli, ["--config", str(tmp_path / "nope.yaml"), "status"])

        assert result.exit_code == 2
        assert "Configuration file not found" in result.output

    def test_invalid_config_exits_fatal(self, cli_runner, tmp_path):
        """Invalid YAML exits with code 2."""
        path = tmp_path / "relay.yaml"
        path.write_text("github: [unclosed")

        result = cli_runner.invoke(cli, ["--config", str(path), "status"])

        assert result.exit_code == 2
        assert "Invalid YAML" in result.output

    def test_agent_id_override(self, cli_runner, config_file, engine_class, mock_engine):
        """--agent-id replaces the configured agent."""
        cli_runner.invoke(cli, ["--config", config_file, "--agent-id", "agent002", "status"])

        settings = engine_class.create.call_args.args[0]
        assert settings.agent_id == "agent002"

    def test_bad_agent_id_override(self, cli_runner, config_file):
        """An invalid --agent-id exits with code 2."""
        result = cli_runner.invoke(cli, ["--config", config_file, "--agent-id", "bad/id", "status"])

        assert result.exit_code == 2


# =============================================================================
# Commands
# =============================================================================


class TestCommands:
    """Tests for command dispatch."""

    def test_claim(self, cli_runner, config_file, mock_engine):
        """claim runs startup, the command and shutdown."""
        result = cli_runner.invoke(cli, ["--config", config_file, "claim"])

        assert result.exit_code == 0
        assert "claim_next done" in result.output
        mock_engine.startup.assert_awaited_once()
        mock_engine.claim_next.assert_awaited_once()
        mock_engine.shutdown.assert_awaited_once()

    def test_land_passes_confirmation(self, cli_runner, config_file, mock_engine):
        """--yes confirms risky landing steps."""
        cli_runner.invoke(cli, ["--config", config_file, "land", "--yes"])

        mock_engine.land.assert_awaited_once_with(confirm=True, dry_run=False)

    def test_land_dry_run(self, cli_runner, config_file, mock_engine):
        """--dry-run asks the engine for the plan only."""
        result = cli_runner.invoke(cli, ["--config", config_file, "land", "--dry-run"])

        assert result.exit_code == 0
        mock_engine.land.assert_awaited_once_with(confirm=False, dry_run=True)

    def test_peek(self, cli_runner, config_file, mock_engine):
        """peek shows the next item without claiming."""
        result = cli_runner.invoke(cli, ["--config", config_file, "peek"])

        assert result.exit_code == 0
        assert "peek done" in result.output
        mock_engine.peek.assert_awaited_once()
        mock_engine.claim_next.assert_not_awaited()

    def test_bundle(self, cli_runner, config_file, mock_engine):
        """bundle forces a pass."""
        result = cli_runner.invoke(cli, ["--config", config_file, "bundle"])

        assert result.exit_code == 0
        mock_engine.force_bundle.assert_awaited_once_with(dry_run=False)

    def test_bundle_dry_run(self, cli_runner, config_file, mock_engine):
        """bundle --dry-run previews the pass."""
        cli_runner.invoke(cli, ["--config", config_file, "bundle", "--dry-run"])

        mock_engine.force_bundle.assert_awaited_once_with(dry_run=True)

    def test_merge_with_pr(self, cli_runner, config_file, mock_engine):
        """merge forwards the PR number and confirmation."""
        cli_runner.invoke(cli, ["--config", config_file, "merge", "--pr", "17", "--yes"])

        mock_engine.merge.assert_awaited_once_with(17, confirm=True)

    def test_drift(self, cli_runner, config_file, mock_engine):
        """drift runs a drift pass."""
        cli_runner.invoke(cli, ["--config", config_file, "drift"])

        mock_engine.run_drift_pass.assert_awaited_once()

    def test_reset_prompts(self, cli_runner, config_file, mock_engine):
        """reset asks before resetting and aborts on no."""
        result = cli_runner.invoke(cli, ["--config", config_file, "reset"], input="n\n")

        assert result.exit_code == 1
        mock_engine.force_reset.assert_not_awaited()

    def test_reset_with_yes(self, cli_runner, config_file, mock_engine):
        """reset --yes skips the prompt."""
        result = cli_runner.invoke(cli, ["--config", config_file, "reset", "--yes"])

        assert result.exit_code == 0
        mock_engine.force_reset.assert_awaited_once()

    def test_status_json(self, cli_runner, config_file, mock_engine):
        """status --json prints the result as JSON."""
        mock_engine.status.return_value = CommandResult.success("State: idle", detected={"kind": "idle"})

        result = cli_runner.invoke(cli, ["--config", config_file, "status", "--json"])

        payload = json.loads(result.output)
        assert payload["outcome"] == "success"
        assert payload["details"]["detected"] == {"kind": "idle"}

    def test_help_lists_commands(self, cli_runner):
        """Top-level help names every command."""
        result = cli_runner.invoke(cli, ["--help"])

        for command in ("claim", "peek", "land", "bundle", "status", "reset", "merge", "drift", "daemon"):
            assert command in result.output


# =============================================================================
# Exit codes
# =============================================================================


class TestExitCodes:
    """Tests for mapping results and errors to exit codes."""

    def test_recoverable_result(self, cli_runner, config_file, mock_engine):
        """Recoverable failures exit 1 with guidance."""
        mock_engine.claim_next.return_value = CommandResult.recoverable(
            "agent001 already holds work", guidance="Land or reset the current work"
        )

        result = cli_runner.invoke(cli, ["--config", config_file, "claim"])

        assert result.exit_code == 1
        assert "Land or reset" in result.output

    def test_fatal_result(self, cli_runner, config_file, mock_engine):
        """Fatal failures exit 2."""
        mock_engine.land.return_value = CommandResult.fatal("Cannot land from idle")

        result = cli_runner.invoke(cli, ["--config", config_file, "land"])

        assert result.exit_code == 2

    def test_fatal_error_during_startup(self, cli_runner, config_file, mock_engine):
        """A fatal relay error escaping the engine exits 2."""
        mock_engine.startup.side_effect = RetryExhaustedError("connect kept failing", attempted="connect")

        result = cli_runner.invoke(cli, ["--config", config_file, "status"])

        assert result.exit_code == 2
        assert "connect kept failing" in result.output
        mock_engine.shutdown.assert_awaited_once()

    def test_operation_error_is_recoverable(self, cli_runner, config_file, mock_engine):
        """A non-fatal relay error exits 1."""
        mock_engine.force_bundle.side_effect = GitOperationError("push rejected")

        result = cli_runner.invoke(cli, ["--config", config_file, "bundle"])

        assert result.exit_code == 1

    def test_keyboard_interrupt(self, cli_runner, config_file, mock_engine):
        """Ctrl+C exits 130."""
        mock_engine.claim_next.side_effect = KeyboardInterrupt

        result = cli_runner.invoke(cli, ["--config", config_file, "claim"])

        assert result.exit_code == 130
