"""Results returned by bundling passes and lifecycle commands.

Every command returns a ``CommandResult``; nothing is only logged. The
outcome maps directly onto the CLI exit code.

Example:
    Printing a result::

        result = await engine.land()
        click.echo(result.render())
        sys.exit(result.exit_code)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class BundlingOutcome(str, Enum):
    SUCCESS = "success"
    """A bundle PR was opened and every candidate was handled as planned."""

    PARTIAL_SUCCESS = "partial_success"
    """Some items reached a pull request; others conflicted, failed or kept stale labels."""

    ALL_INDIVIDUAL = "all_individual"
    """No bundle; every handled item got its own PR."""

    NO_WORK_AVAILABLE = "no_work_available"
    FAILED = "failed"


@dataclass
class BundlingResult:
    """Outcome of one bundling pass.

    Attributes:
        outcome: Overall classification of the pass
        bundle_pr: Number of the bundle PR, if one was opened or reused
        bundle_branch: Name of the bundle branch, if one was assembled
        bundled: Items included in the bundle PR
        individual_prs: Item number to the individual PR opened for it
        failed: Item number to the reason it could not be handled
        relabel_failed: Items in a pull request whose labels could not be moved
            to bundled; the next pass retries them
        rolled_over: Items left for the next pass because of the size cap
    """

    outcome: BundlingOutcome
    bundle_pr: int | None = None
    bundle_branch: str | None = None
    bundled: list[int] = field(default_factory=list)
    individual_prs: dict[int, int] = field(default_factory=dict)
    failed: dict[int, str] = field(default_factory=dict)
    relabel_failed: dict[int, str] = field(default_factory=dict)
    rolled_over: list[int] = field(default_factory=list)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "bundle_pr": self.bundle_pr,
            "bundle_branch": self.bundle_branch,
            "bundled": self.bundled,
            "individual_prs": {str(k): v for k, v in self.individual_prs.items()},
            "failed": {str(k): v for k, v in self.failed.items()},
            "relabel_failed": {str(k): v for k, v in self.relabel_failed.items()},
            "rolled_over": self.rolled_over,
            "reason": self.reason,
        }


@dataclass
class BundlingPreview:
    """What a bundling pass would do right now. Computed without writing."""

    due: bool
    bundle_branch: str | None = None
    batch: list[int] = field(default_factory=list)
    unblockers: list[int] = field(default_factory=list)
    rolled_over: list[int] = field(default_factory=list)
    missing_branches: list[int] = field(default_factory=list)
    conflicts_with_default: dict[int, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "due": self.due,
            "bundle_branch": self.bundle_branch,
            "batch": self.batch,
            "unblockers": self.unblockers,
            "rolled_over": self.rolled_over,
            "missing_branches": self.missing_branches,
            "conflicts_with_default": {str(k): v for k, v in self.conflicts_with_default.items()},
        }


class CommandOutcome(str, Enum):
    SUCCESS = "success"
    SUCCESS_WITH_WARNING = "success_with_warning"
    RECOVERABLE_FAILURE = "recoverable_failure"
    FATAL_FAILURE = "fatal_failure"


EXIT_CODES = {
    CommandOutcome.SUCCESS: 0,
    CommandOutcome.SUCCESS_WITH_WARNING: 0,
    CommandOutcome.RECOVERABLE_FAILURE: 1,
    CommandOutcome.FATAL_FAILURE: 2,
}


@dataclass
class CommandResult:
    """Result of a lifecycle command.

    Attributes:
        outcome: Success or failure classification
        message: One-line summary for humans
        guidance: What the operator should do next, if anything
        details: Machine-readable payload (states, reports, PR numbers)
    """

    outcome: CommandOutcome
    message: str
    guidance: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome in (CommandOutcome.SUCCESS, CommandOutcome.SUCCESS_WITH_WARNING)

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.outcome]

    def render(self) -> str:
        lines = [self.message]
        if self.guidance:
            lines.append(f"Next: {self.guidance}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "message": self.message,
            "guidance": self.guidance,
            "details": self.details,
        }

    @classmethod
    def success(cls, message: str, **details: Any) -> "CommandResult":
        return cls(CommandOutcome.SUCCESS, message, details=details)

    @classmethod
    def warning(cls, message: str, guidance: str | None = None, **details: Any) -> "CommandResult":
        return cls(CommandOutcome.SUCCESS_WITH_WARNING, message, guidance=guidance, details=details)

    @classmethod
    def recoverable(cls, message: str, guidance: str | None = None, **details: Any) -> "CommandResult":
        return cls(CommandOutcome.RECOVERABLE_FAILURE, message, guidance=guidance, details=details)

    @classmethod
    def fatal(cls, message: str, guidance: str | None = None, **details: Any) -> "CommandResult":
        return cls(CommandOutcome.FATAL_FAILURE, message, guidance=guidance, details=details)
