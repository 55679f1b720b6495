"""
Cooperative scheduling of lifecycle commands and periodic passes.

Lifecycle commands, bundling passes and drift passes all touch the same
working tree and checkpoint. ``WorkspaceLock`` serializes them: an
``asyncio.Lock`` orders tasks inside one process and a ``filelock``
advisory lock next to the checkpoint keeps a second relay process (for
example a CLI command run while the daemon is up) from interleaving.

``EngineScheduler`` drives the two periodic passes as independent tasks
until its stop event is set.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from filelock import FileLock, Timeout

from agent_relay.exceptions import RelayError, TransientError

if TYPE_CHECKING:
    from agent_relay.engine.lifecycle import LifecycleEngine

log = structlog.get_logger(__name__)


class WorkspaceLock:
    """Process-local and cross-process mutual exclusion for one agent."""

    def __init__(self, lock_path: str | Path, timeout: float = 10.0):
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self._local = asyncio.Lock()
        self._file = FileLock(str(self.lock_path), timeout=timeout, thread_local=False)

    @asynccontextmanager
    async def hold(self, operation: str = "command") -> AsyncIterator[None]:
        """Hold the workspace for the duration of the block.

        Raises:
            TransientError: Another relay process kept the lock past the timeout
        """
        async with self._local:
            try:
                await asyncio.to_thread(self._file.acquire)
            except Timeout as e:
                raise TransientError(
                    "Workspace is locked by another relay process",
                    context={"lock_path": str(self.lock_path), "operation": operation},
                ) from e
            log.debug("workspace_locked", operation=operation)
            try:
                yield
            finally:
                self._file.release()
                log.debug("workspace_released", operation=operation)


class EngineScheduler:
    """Run bundling and drift passes on their own timers."""

    def __init__(self, engine: "LifecycleEngine"):
        self.engine = engine

    async def run(self, stop: asyncio.Event) -> None:
        """Run both loops until ``stop`` is set."""
        log.info("scheduler_started")
        await asyncio.gather(self._bundling_loop(stop), self._drift_loop(stop))
        log.info("scheduler_stopped")

    async def _bundling_loop(self, stop: asyncio.Event) -> None:
        poll = self.engine.settings.bundling.poll_seconds
        while not stop.is_set():
            try:
                result = await self.engine.run_bundling_pass()
                if result.details.get("outcome"):
                    log.info("scheduled_bundling", outcome=result.details["outcome"])
            except RelayError as e:
                log.error("scheduled_bundling_failed", error=e.message, kind=e.kind.value)
            await self._sleep(stop, poll)

    async def _drift_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.engine.run_drift_pass()
            except RelayError as e:
                log.error("scheduled_drift_failed", error=e.message, kind=e.kind.value)
            checkpoint = await self.engine.continuity.restore()
            interval = self.engine.drift.next_interval(checkpoint.state if checkpoint else None)
            await self._sleep(stop, interval.total_seconds())

    @staticmethod
    async def _sleep(stop: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(stop.wait(), timeout=seconds)
        except TimeoutError:
            pass
