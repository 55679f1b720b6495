"""
Continuity: checkpoints, history and timers that survive restarts.

Layout under ``<state_directory>/<agent_id>/``::

    checkpoint.json   last belief about the worker, replaced atomically
    history.jsonl     transitions and drift records, most recent N kept
    schedule.json     bundling and drift timers
    workspace.lock    advisory lock (see scheduler.WorkspaceLock)

Writes use the write-to-``.tmp``-then-rename pattern so a crash never
leaves a half-written file behind. Checkpoints are best-effort: a failed
write is logged and reported as ``False``, never raised, because GitHub
remains the source of truth and the next detection pass rebuilds belief.

Validation Rules:
    - no checkpoint, older than the max age, or HEAD moved -> START_FRESH
    - Idle, no plan in flight, younger than the fresh window -> RESUME
    - anything else -> RESYNC_THEN_RESUME (one drift pass first)
"""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiofiles
import structlog
from pydantic import ValidationError

from agent_relay.config.settings import ContinuityConfig
from agent_relay.models.lifecycle import (
    AgentState,
    Checkpoint,
    DriftRecord,
    HistoryEntry,
    LifecycleKind,
    PlanProgress,
    ScheduleState,
    ValidationOutcome,
)

log = structlog.get_logger(__name__)


class ContinuityManager:
    """Persist and validate the worker's checkpoint, history and timers.

    Attributes:
        agent_dir: Directory holding this agent's files.
    """

    def __init__(self, agent_id: str, config: ContinuityConfig | None = None) -> None:
        self.agent_id = agent_id
        self.config = config or ContinuityConfig()
        self.agent_dir = Path(self.config.state_directory) / agent_id
        self.agent_dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._last: Checkpoint | None = None
        self._history_count: int | None = None

    @property
    def checkpoint_path(self) -> Path:
        return self.agent_dir / "checkpoint.json"

    @property
    def history_path(self) -> Path:
        return self.agent_dir / "history.jsonl"

    @property
    def schedule_path(self) -> Path:
        return self.agent_dir / "schedule.json"

    @property
    def lock_path(self) -> Path:
        return self.agent_dir / "workspace.lock"

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def checkpoint(
        self,
        state: AgentState,
        head_sha: str | None = None,
        in_flight: PlanProgress | None = None,
        labels: tuple[str, ...] = (),
    ) -> bool:
        """Atomically replace the checkpoint.

        Sequence numbers strictly increase and timestamps never go
        backwards, even if the wall clock does.

        Returns:
            True if the checkpoint was written.
        """
        async with self._lock:
            previous = self._last if self._last is not None else await self._read_checkpoint()
            now = datetime.now(UTC)
            if previous is not None and previous.created_at > now:
                now = previous.created_at

            checkpoint = Checkpoint(
                agent_id=self.agent_id,
                sequence=(previous.sequence + 1) if previous else 1,
                created_at=now,
                state=state,
                head_sha=head_sha,
                labels=labels,
                in_flight=in_flight,
            )
            try:
                await self._write_atomic(self.checkpoint_path, checkpoint.model_dump_json(indent=2))
            except OSError as e:
                log.error("checkpoint_write_failed", path=str(self.checkpoint_path), error=str(e))
                return False

            self._last = checkpoint
            log.info(
                "checkpoint_written",
                sequence=checkpoint.sequence,
                state=state.kind,
                in_flight=in_flight.plan_id if in_flight else None,
            )
            return True

    async def restore(self) -> Checkpoint | None:
        """Read the last checkpoint; None if absent or unreadable."""
        async with self._lock:
            checkpoint = await self._read_checkpoint()
            self._last = checkpoint
            return checkpoint

    async def discard(self) -> None:
        """Forget the checkpoint, keeping the sequence counter."""
        async with self._lock:
            if self.checkpoint_path.exists():
                self.checkpoint_path.unlink()
                log.info("checkpoint_discarded", path=str(self.checkpoint_path))

    def validate(
        self,
        checkpoint: Checkpoint | None,
        head_sha: str | None,
        now: datetime | None = None,
    ) -> ValidationOutcome:
        """Decide what to do with a restored checkpoint."""
        if checkpoint is None:
            log.info("checkpoint_validation", outcome="start_fresh", reason="no_checkpoint")
            return ValidationOutcome.START_FRESH

        now = now or datetime.now(UTC)
        age = now - checkpoint.created_at
        if age > timedelta(hours=self.config.max_checkpoint_age_hours):
            log.info("checkpoint_validation", outcome="start_fresh", reason="too_old", age=str(age))
            return ValidationOutcome.START_FRESH

        if checkpoint.head_sha and head_sha and checkpoint.head_sha != head_sha:
            log.info(
                "checkpoint_validation",
                outcome="start_fresh",
                reason="head_moved",
                expected=checkpoint.head_sha,
                actual=head_sha,
            )
            return ValidationOutcome.START_FRESH

        fresh = age <= timedelta(seconds=self.config.fresh_resume_seconds)
        if checkpoint.state.kind == LifecycleKind.IDLE and checkpoint.in_flight is None and fresh:
            log.info("checkpoint_validation", outcome="resume")
            return ValidationOutcome.RESUME

        log.info("checkpoint_validation", outcome="resync_then_resume", state=checkpoint.state.kind)
        return ValidationOutcome.RESYNC_THEN_RESUME

    async def _read_checkpoint(self) -> Checkpoint | None:
        if not self.checkpoint_path.exists():
            return None
        try:
            async with aiofiles.open(self.checkpoint_path) as f:
                content = await f.read()
            return Checkpoint.model_validate_json(content)
        except (OSError, ValidationError) as e:
            log.warning("checkpoint_unreadable", path=str(self.checkpoint_path), error=str(e))
            return None

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def record_transition(self, plan_id: str, event: str, from_kind: str, to_kind: str | None) -> None:
        await self._append_history(
            HistoryEntry(
                entry_type="transition",
                recorded_at=datetime.now(UTC),
                plan_id=plan_id,
                event=event,
                from_kind=from_kind,
                to_kind=to_kind,
            )
        )

    async def record_drift(self, record: DriftRecord) -> None:
        await self._append_history(HistoryEntry(entry_type="drift", recorded_at=record.detected_at, drift=record))

    async def load_history(self, entry_type: str | None = None) -> list[HistoryEntry]:
        """History entries oldest first; unparseable lines are skipped."""
        if not self.history_path.exists():
            return []
        async with aiofiles.open(self.history_path) as f:
            content = await f.read()

        entries = []
        for line in content.splitlines():
            if not line.strip():
                continue
            try:
                entry = HistoryEntry.model_validate_json(line)
            except ValidationError:
                log.warning("history_line_skipped", line=line[:80])
                continue
            if entry_type is None or entry.entry_type == entry_type:
                entries.append(entry)
        return entries

    async def recent_drift(self, limit: int = 10) -> list[DriftRecord]:
        entries = await self.load_history("drift")
        return [entry.drift for entry in entries[-limit:] if entry.drift is not None]

    async def _append_history(self, entry: HistoryEntry) -> None:
        async with self._lock:
            if self._history_count is None:
                self._history_count = len(await self._read_history_lines())

            async with aiofiles.open(self.history_path, "a") as f:
                await f.write(entry.model_dump_json() + "\n")
            self._history_count += 1

            if self._history_count > self.config.history_limit:
                lines = await self._read_history_lines()
                kept = lines[-self.config.history_limit :]
                await self._write_atomic(self.history_path, "".join(line + "\n" for line in kept))
                self._history_count = len(kept)

    async def _read_history_lines(self) -> list[str]:
        if not self.history_path.exists():
            return []
        async with aiofiles.open(self.history_path) as f:
            content = await f.read()
        return [line for line in content.splitlines() if line.strip()]

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    async def load_schedule(self) -> ScheduleState:
        if not self.schedule_path.exists():
            return ScheduleState()
        try:
            async with aiofiles.open(self.schedule_path) as f:
                return ScheduleState.model_validate_json(await f.read())
        except (OSError, ValidationError) as e:
            log.warning("schedule_unreadable", error=str(e))
            return ScheduleState()

    async def save_schedule(self, schedule: ScheduleState) -> None:
        await self._write_atomic(self.schedule_path, schedule.model_dump_json(indent=2))

    async def _write_atomic(self, path: Path, content: str) -> None:
        """Write to a sibling ``.tmp`` file, then rename over the target."""
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(content)
        tmp_path.replace(path)


def summarize_checkpoint(checkpoint: Checkpoint | None) -> dict[str, object] | None:
    """Compact JSON-safe view used in error context and status output."""
    if checkpoint is None:
        return None
    return json.loads(
        checkpoint.model_dump_json(include={"sequence", "created_at", "state", "head_sha", "in_flight"})
    )
