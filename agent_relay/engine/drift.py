"""
Drift detection and correction.

A drift pass compares the last checkpoint against live state: the tracked
issue's status and labels, the work branch, pull requests and a fresh
``StateDetector.detect()``. Each mismatch becomes a ``DriftRecord`` with a
severity that decides the correction:

    MINOR     labels reordered              -> checkpoint refreshed
    MODERATE  state moved, far behind main,
              bundle merged                 -> re-detect, checkpoint
    CRITICAL  issue closed, deleted or reassigned,
              branch deleted, PR merged or
              closed outside the engine     -> back up local work,
                                               open a tracking issue,
                                               worker to Idle

A correction for the same (kind, issue) pair is not repeated inside the
cooldown window, and at most one critical correction runs per pass. Every
applied correction is appended to the history.
"""

import json
from datetime import UTC, datetime, timedelta

import structlog

from agent_relay.config.settings import RelaySettings
from agent_relay.engine.branching import backup_branch_name
from agent_relay.engine.continuity import ContinuityManager, summarize_checkpoint
from agent_relay.engine.detector import StateDetector
from agent_relay.engine.executor import CommandExecutor
from agent_relay.engine.gateway import RepositoryGateway
from agent_relay.engine.planner import PlanContext, TransitionPlanner
from agent_relay.engine.routing import LabelRouter
from agent_relay.models.lifecycle import (
    AgentState,
    BundledState,
    Checkpoint,
    DriftKind,
    DriftRecord,
    DriftSeverity,
    HistoryEntry,
    IdleState,
    LifecycleKind,
    MergedState,
)

log = structlog.get_logger(__name__)

ACTIVE_KINDS = (LifecycleKind.ASSIGNED, LifecycleKind.WORKING)


class DriftDetector:
    """Compare the checkpoint with live state and correct divergences."""

    def __init__(
        self,
        gateway: RepositoryGateway,
        detector: StateDetector,
        continuity: ContinuityManager,
        executor: CommandExecutor,
        planner: TransitionPlanner,
        settings: RelaySettings,
    ):
        self.gateway = gateway
        self.detector = detector
        self.continuity = continuity
        self.executor = executor
        self.planner = planner
        self.settings = settings
        self.config = settings.drift
        self.agent_id = settings.agent_id
        self.router = LabelRouter(settings.labels)

    def next_interval(self, state: AgentState | None) -> timedelta:
        """Shorter while work is in progress, longer while worker-free."""
        if state is not None and state.kind in ACTIVE_KINDS:
            return timedelta(minutes=self.config.active_interval_minutes)
        return timedelta(minutes=self.config.idle_interval_minutes)

    async def next_due(self) -> datetime | None:
        schedule = await self.continuity.load_schedule()
        if schedule.last_drift_at is None:
            return None
        checkpoint = await self.continuity.restore()
        state = checkpoint.state if checkpoint else None
        return schedule.last_drift_at + self.next_interval(state)

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def detect_drift(self, now: datetime | None = None) -> list[DriftRecord]:
        """Mismatches between the last checkpoint and live state.

        Returns:
            Drift records, empty when there is no checkpoint or nothing
            diverged.
        """
        now = now or datetime.now(UTC)
        checkpoint = await self.continuity.restore()
        if checkpoint is None:
            return []

        state = checkpoint.state
        records: list[DriftRecord] = []
        if state.kind in ACTIVE_KINDS:
            records.extend(await self._check_work_item(state, now))
        elif state.kind == LifecycleKind.BUNDLED:
            records.extend(await self._check_bundle(state, now))

        if any(r.severity == DriftSeverity.CRITICAL or r.kind == DriftKind.BUNDLE_MERGED for r in records):
            return records

        # Labels and state are mid-change while a plan is in flight
        if checkpoint.in_flight is None:
            records.extend(await self._compare_detected(checkpoint, now))

        if records:
            log.info("drift_detected", records=[(r.kind.value, r.severity.value, r.issue_number) for r in records])
        return records

    async def _check_work_item(self, state: AgentState, now: datetime) -> list[DriftRecord]:
        number = state.issue_number
        branch = state.branch
        records: list[DriftRecord] = []

        item = await self.gateway.find_issue(number)
        if item is None:
            return [
                self._record(
                    DriftKind.ISSUE_MISSING,
                    DriftSeverity.CRITICAL,
                    number,
                    "exists",
                    "deleted or transferred",
                    now,
                )
            ]
        if not item.is_open:
            records.append(self._record(DriftKind.ISSUE_CLOSED, DriftSeverity.CRITICAL, number, "open", "closed", now))
        elif self.router.assigned_elsewhere(item, self.agent_id):
            holders = self.router.agent_labels(item)
            if item.has_label(self.settings.labels.human_only):
                holders.append(self.settings.labels.human_only)
            records.append(
                self._record(
                    DriftKind.ISSUE_REASSIGNED,
                    DriftSeverity.CRITICAL,
                    number,
                    self.agent_id,
                    ", ".join(holders),
                    now,
                )
            )

        if not await self.gateway.branch_exists_anywhere(branch):
            records.append(
                self._record(DriftKind.BRANCH_DELETED, DriftSeverity.CRITICAL, number, branch, "missing", now)
            )
        else:
            closed = await self.gateway.find_pull_requests(branch, state="closed")
            merged = [pr for pr in closed if pr.merged]
            if merged:
                records.append(
                    self._record(
                        DriftKind.PR_MERGED_EXTERNALLY,
                        DriftSeverity.CRITICAL,
                        number,
                        "unmerged",
                        f"merged in PR #{merged[0].number}",
                        now,
                    )
                )

        if records or state.kind != LifecycleKind.WORKING:
            return records

        if await self.gateway.local_branch_exists(branch):
            behind = await self.gateway.commits_behind(self.settings.repository.default_branch, branch)
            if behind > self.config.behind_main_threshold:
                records.append(
                    self._record(
                        DriftKind.BEHIND_MAIN,
                        DriftSeverity.MODERATE,
                        number,
                        f"<= {self.config.behind_main_threshold} commits behind",
                        f"{behind} commits behind",
                        now,
                    )
                )
        return records

    async def _check_bundle(self, state: BundledState, now: datetime) -> list[DriftRecord]:
        pr = await self.gateway.get_pull_request(state.bundle_pr)
        first = state.work_items[0] if state.work_items else None
        if pr.merged:
            return [
                self._record(
                    DriftKind.BUNDLE_MERGED, DriftSeverity.MODERATE, first, "open", f"PR #{pr.number} merged", now
                )
            ]
        if not pr.is_open:
            return [
                self._record(
                    DriftKind.PR_CLOSED_EXTERNALLY,
                    DriftSeverity.CRITICAL,
                    first,
                    "open",
                    f"PR #{pr.number} closed without merge",
                    now,
                )
            ]
        return []

    async def _compare_detected(self, checkpoint: Checkpoint, now: datetime) -> list[DriftRecord]:
        expected = checkpoint.state
        actual = await self.detector.detect(self.agent_id)
        number = expected.issue_numbers[0] if expected.issue_numbers else None

        if actual.kind != expected.kind:
            if actual.worker_free and expected.worker_free:
                return []
            return [
                self._record(
                    DriftKind.STATE_CHANGED,
                    DriftSeverity.MODERATE,
                    number,
                    expected.describe(),
                    actual.describe(),
                    now,
                )
            ]

        if checkpoint.labels and len(expected.issue_numbers) == 1:
            current = await self.detector.tracked_labels(expected)
            if current != checkpoint.labels and sorted(current) == sorted(checkpoint.labels):
                return [
                    self._record(
                        DriftKind.LABELS_REORDERED,
                        DriftSeverity.MINOR,
                        number,
                        ",".join(checkpoint.labels),
                        ",".join(current),
                        now,
                    )
                ]
        return []

    # ------------------------------------------------------------------
    # Correction
    # ------------------------------------------------------------------

    async def correct(self, records: list[DriftRecord], now: datetime | None = None) -> list[DriftRecord]:
        """Apply the correction for each record, most severe first.

        Returns:
            The records with ``correction`` filled in. Records skipped for
            cooldown are returned but not written to the history.
        """
        now = now or datetime.now(UTC)
        history = await self.continuity.load_history("drift")
        handled: list[DriftRecord] = []
        critical_applied = False

        for record in sorted(records, key=lambda r: r.severity.rank, reverse=True):
            if self._cooling_down(record, history, now):
                log.info("drift_correction_deferred", kind=record.kind.value, issue=record.issue_number)
                handled.append(record.model_copy(update={"correction": "deferred: cooldown"}))
                continue

            if record.severity == DriftSeverity.CRITICAL:
                if critical_applied:
                    handled.append(record.model_copy(update={"correction": "deferred: worker already reset"}))
                    continue
                correction = await self._correct_critical(record, now)
                critical_applied = True
            elif record.severity == DriftSeverity.MODERATE:
                if critical_applied:
                    handled.append(record.model_copy(update={"correction": "superseded by reset"}))
                    continue
                correction = await self._correct_moderate(record)
            else:
                correction = await self._refresh_checkpoint()

            corrected = record.model_copy(update={"correction": correction})
            await self.continuity.record_drift(corrected)
            log.info(
                "drift_corrected",
                kind=record.kind.value,
                severity=record.severity.value,
                issue=record.issue_number,
                correction=correction,
            )
            handled.append(corrected)
        return handled

    async def run_pass(self, now: datetime | None = None) -> list[DriftRecord]:
        """Detect, correct and stamp the drift timer."""
        now = now or datetime.now(UTC)
        records = await self.detect_drift(now)
        handled = await self.correct(records, now) if records else []
        schedule = await self.continuity.load_schedule()
        await self.continuity.save_schedule(schedule.model_copy(update={"last_drift_at": now}))
        return handled

    def _cooling_down(self, record: DriftRecord, history: list[HistoryEntry], now: datetime) -> bool:
        window = timedelta(minutes=self.config.cooldown_minutes)
        for entry in reversed(history):
            previous = entry.drift
            if previous is None or previous.correction is None:
                continue
            if previous.kind == record.kind and previous.issue_number == record.issue_number:
                return now - previous.detected_at < window
        return False

    async def _refresh_checkpoint(self) -> str:
        checkpoint = await self.continuity.restore()
        if checkpoint is None:
            return "no checkpoint to refresh"
        labels = await self.detector.tracked_labels(checkpoint.state)
        await self.continuity.checkpoint(checkpoint.state, head_sha=await self.gateway.head_sha(), labels=labels)
        return "checkpoint refreshed"

    async def _correct_moderate(self, record: DriftRecord) -> str:
        checkpoint = await self.continuity.restore()
        if record.kind == DriftKind.BUNDLE_MERGED and checkpoint and checkpoint.state.kind == LifecycleKind.BUNDLED:
            state = checkpoint.state
            merged = MergedState(work_items=state.work_items, pr_number=state.bundle_pr)
            await self.continuity.checkpoint(merged, head_sha=await self.gateway.head_sha())
            return "checkpoint advanced to merged"

        detected = await self.detector.detect(self.agent_id)
        labels = await self.detector.tracked_labels(detected)
        await self.continuity.checkpoint(detected, head_sha=await self.gateway.head_sha(), labels=labels)
        if record.kind == DriftKind.BEHIND_MAIN:
            return f"state re-detected as {detected.kind}; rebase onto the default branch recommended"
        return f"state re-detected as {detected.kind}"

    async def _correct_critical(self, record: DriftRecord, now: datetime) -> str:
        """Preserve local work, open a tracking issue and go Idle."""
        checkpoint = await self.continuity.restore()
        state = checkpoint.state if checkpoint else IdleState()
        issue_number = record.issue_number
        backup = backup_branch_name(self.agent_id, issue_number, now)

        report_summary = None
        if state.kind != LifecycleKind.IDLE:
            context = PlanContext(
                agent_id=self.agent_id,
                labels=self.settings.labels,
                default_branch=self.settings.repository.default_branch,
                current_branch=await self.gateway.current_branch(),
                has_local_changes=bool(await self.gateway.changed_files()),
                backup_branch=backup,
                missing_issues=(issue_number,) if record.kind == DriftKind.ISSUE_MISSING else (),
            )
            plan = self.planner.plan(state, IdleState(), context)
            report = await self.executor.execute(plan, confirm=True, track_state=False)
            report_summary = report.summary()
            backed_up = any(op.branch == backup for op in report.completed)
        else:
            backed_up = False

        tracking = await self.gateway.create_issue(
            title=self._tracking_title(record),
            body=self._tracking_body(record, checkpoint, backup if backed_up else None, report_summary),
            labels=[self.settings.labels.attention],
        )
        await self.continuity.checkpoint(IdleState(), head_sha=await self.gateway.head_sha())
        log.warning(
            "critical_drift_corrected",
            kind=record.kind.value,
            issue=issue_number,
            backup_branch=backup if backed_up else None,
            tracking_issue=tracking.number,
        )

        parts = []
        if backed_up:
            parts.append(f"local work backed up to {backup}")
        parts.append(f"tracking issue #{tracking.number}")
        parts.append("worker reset to Idle")
        return "; ".join(parts)

    def _tracking_title(self, record: DriftRecord) -> str:
        target = f" on #{record.issue_number}" if record.issue_number is not None else ""
        return f"[relay] {self.agent_id}: {record.kind.value.replace('_', ' ')}{target}"

    def _tracking_body(
        self,
        record: DriftRecord,
        checkpoint: Checkpoint | None,
        backup: str | None,
        report: dict[str, object] | None,
    ) -> str:
        lines = [
            f"Critical drift detected by `{self.agent_id}` at {record.detected_at.isoformat()}.",
            "",
            f"- Kind: `{record.kind.value}`",
            f"- Expected: {record.expected}",
            f"- Actual: {record.actual}",
        ]
        if record.issue_number is not None:
            lines.append(f"- Work item: #{record.issue_number}")
        if backup:
            lines.append(f"- Local work preserved on branch `{backup}`")
        lines.append("")
        lines.append("The worker was reset to Idle. Review the work item and decide how to continue.")

        summary = summarize_checkpoint(checkpoint)
        if summary is not None:
            lines.extend(["", "Last checkpoint:", "", f"```json\n{_json(summary)}\n```"])
        if report is not None:
            lines.extend(["", "Correction plan:", "", f"```json\n{_json(report)}\n```"])
        return "\n".join(lines)

    @staticmethod
    def _record(
        kind: DriftKind,
        severity: DriftSeverity,
        issue_number: int | None,
        expected: str,
        actual: str,
        now: datetime,
    ) -> DriftRecord:
        return DriftRecord(
            kind=kind,
            severity=severity,
            issue_number=issue_number,
            expected=expected,
            actual=actual,
            detected_at=now,
        )


def _json(data: dict[str, object]) -> str:
    return json.dumps(data, indent=2, default=str)
