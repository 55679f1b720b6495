"""CLI entry point for agent-relay."""

import asyncio
import json
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import click
import structlog

from agent_relay.config.settings import AgentConfig, RelaySettings
from agent_relay.engine.lifecycle import LifecycleEngine
from agent_relay.exceptions import ConfigurationError, ErrorKind, RelayError
from agent_relay.models.results import CommandResult
from agent_relay.utils.logging_config import bind_agent, configure_logging

log = structlog.get_logger(__name__)

Action = Callable[[LifecycleEngine], Awaitable[CommandResult]]


@click.group()
@click.option("--config", default="relay.yaml", help="Path to configuration file")
@click.option("--log-level", default="WARNING", help="Logging level")
@click.option("--agent-id", default=None, help="Override the configured agent id")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str, agent_id: str | None) -> None:
    """agent-relay: move agents through the work lifecycle on GitHub."""
    configure_logging(log_level)

    config_path = Path(config)
    if not config_path.exists():
        click.echo(f"Error: Configuration file not found: {config}", err=True)
        sys.exit(2)

    try:
        settings = RelaySettings.from_yaml(str(config_path))
        if agent_id:
            settings.agent = AgentConfig(agent_id=agent_id)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(2)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    ctx.obj = {"settings": settings}


@cli.command()
@click.pass_context
def claim(ctx: click.Context) -> None:
    """Claim the highest-priority available work item."""
    _run(ctx, "claim", lambda engine: engine.claim_next())


@cli.command()
@click.pass_context
def peek(ctx: click.Context) -> None:
    """Show the work item claim would take next."""
    _run(ctx, "peek", lambda engine: engine.peek())


@cli.command()
@click.option("--yes", "confirm", is_flag=True, help="Confirm medium and high risk steps")
@click.option("--dry-run", is_flag=True, help="Show the steps without running them")
@click.pass_context
def land(ctx: click.Context, confirm: bool, dry_run: bool) -> None:
    """Hand the current work off for review and free the agent."""
    _run(ctx, "land", lambda engine: engine.land(confirm=confirm, dry_run=dry_run))


@cli.command()
@click.option("--dry-run", is_flag=True, help="Show what the pass would do without running it")
@click.pass_context
def bundle(ctx: click.Context, dry_run: bool) -> None:
    """Run a bundling pass now."""
    _run(ctx, "bundle", lambda engine: engine.force_bundle(dry_run=dry_run))


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable output")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show lifecycle state, pre-flight issues and recent drift."""
    _run(ctx, "status", lambda engine: engine.status(), as_json=as_json)


@cli.command()
@click.option("--yes", "confirm", is_flag=True, help="Skip the confirmation prompt")
@click.pass_context
def reset(ctx: click.Context, confirm: bool) -> None:
    """Force the agent back to Idle, backing up local work first."""
    agent_id = ctx.obj["settings"].agent_id
    if not confirm:
        click.confirm(
            f"Reset {agent_id} to Idle? Local work is pushed to a backup branch first.",
            abort=True,
        )
    _run(ctx, "reset", lambda engine: engine.force_reset())


@cli.command()
@click.option("--pr", "pr_number", type=int, default=None, help="Pull request to merge")
@click.option("--yes", "confirm", is_flag=True, help="Confirm the merge")
@click.pass_context
def merge(ctx: click.Context, pr_number: int | None, confirm: bool) -> None:
    """Merge the pull request for landed or bundled work."""
    _run(ctx, "merge", lambda engine: engine.merge(pr_number, confirm=confirm))


@cli.command()
@click.pass_context
def drift(ctx: click.Context) -> None:
    """Run a drift pass now."""
    _run(ctx, "drift", lambda engine: engine.run_drift_pass())


@cli.command()
@click.pass_context
def daemon(ctx: click.Context) -> None:
    """Run scheduled bundling and drift passes until interrupted."""
    _run(ctx, "daemon", _daemon_mode)


def _run(ctx: click.Context, command: str, action: Action, as_json: bool = False) -> None:
    """Run ``action`` against a started engine and exit with its code."""
    settings: RelaySettings = ctx.obj["settings"]
    bind_agent(settings.agent_id, command=command)

    try:
        result = asyncio.run(_execute(settings, action))
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except RelayError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{command}_error", exc_info=True)
        sys.exit(2 if e.kind == ErrorKind.FATAL else 1)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{command}_unexpected", exc_info=True)
        sys.exit(2)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        click.echo(result.render(), err=not result.ok)
    sys.exit(result.exit_code)


async def _execute(settings: RelaySettings, action: Action) -> CommandResult:
    engine = LifecycleEngine.create(settings)
    try:
        await engine.startup()
        return await action(engine)
    finally:
        await engine.shutdown()


async def _daemon_mode(engine: LifecycleEngine) -> CommandResult:
    """Run the scheduler until SIGINT or SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    log.info("daemon_mode_started", agent_id=engine.agent_id)
    click.echo(f"Relay daemon running for {engine.agent_id}; press Ctrl+C to stop")
    await engine.run_daemon(stop)
    return CommandResult.success("Daemon stopped")


if __name__ == "__main__":
    cli()
