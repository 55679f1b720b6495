"""
Domain models for GitHub entities the engine works with.

These dataclasses are the normalized internal representation converted
from PyGithub objects. Nothing outside ``agent_relay.providers`` should
touch a PyGithub type.

Example:
    Creating a work item from provider data::

        item = WorkItem(
            number=42,
            title="Fix login bug",
            body="Users cannot log in with SSO",
            state=IssueState.OPEN,
            labels=["route:ready", "route:priority-high"],
            assignees=[],
            created_at=datetime.now(UTC),
            url="https://github.com/org/repo/issues/42",
        )
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum

DEPENDENCY_PATTERN = re.compile(r"(?:depends on|blocked by)\s+#(\d+)", re.IGNORECASE)


class IssueState(str, Enum):
    """Enumeration of possible issue states."""

    OPEN = "open"
    """Issue is active and awaiting resolution."""

    CLOSED = "closed"
    """Issue has been resolved or dismissed."""


class Priority(IntEnum):
    """Scheduling priority derived from routing labels.

    Higher values are served first. Unblockers sit far above the regular
    scale because they bypass bundling entirely.
    """

    NORMAL = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    UNBLOCKER = 10


@dataclass
class WorkItem:
    """A GitHub issue as seen by the engine.

    The lifecycle classification of an item is derived from its labels;
    labels are re-read from GitHub every cycle and never cached across
    cycles.
    """

    number: int
    """Human-readable issue number (e.g., #42)."""

    title: str
    """Issue title, used to derive the work branch slug."""

    body: str
    """Full issue description in markdown. Dependency lines are parsed from here."""

    state: IssueState
    """Current state of the issue (open or closed)."""

    labels: list[str]
    """Label names attached to the issue, in the order GitHub returned them."""

    assignees: list[str] = field(default_factory=list)
    """GitHub logins assigned to the issue."""

    created_at: datetime | None = None
    """Creation timestamp; used as the age tie-breaker when ordering work."""

    url: str = ""
    """Web URL of the issue."""

    @property
    def is_open(self) -> bool:
        return self.state == IssueState.OPEN

    def has_label(self, label: str) -> bool:
        return label in self.labels

    @property
    def dependencies(self) -> list[int]:
        """Issue numbers referenced by ``depends on #N`` or ``blocked by #N`` lines."""
        seen: list[int] = []
        for match in DEPENDENCY_PATTERN.finditer(self.body or ""):
            number = int(match.group(1))
            if number != self.number and number not in seen:
                seen.append(number)
        return seen


@dataclass
class Branch:
    """A remote branch."""

    name: str
    sha: str
    protected: bool = False


@dataclass
class PullRequest:
    """A GitHub pull request."""

    number: int
    title: str
    body: str
    state: str
    """Either "open" or "closed"; a merged PR is closed with ``merged`` set."""

    head: str
    base: str
    url: str = ""
    merged: bool = False
    created_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.state == "open"
