"""Branch naming conventions.

Work branches are ``<agent_id>/<issue>`` with an optional slug derived
from the issue title (``agent001/42-fix-login``). Bundle branches are
``bundle-<issue numbers>`` in ascending order (``bundle-10-11``). Backup
branches created when work is rescued live under
``backup/<agent_id>/<issue>-<UTC timestamp>``.

All names are deterministic for the same inputs so a plan rebuilt after a
crash refers to the same branches.
"""

import re
from collections.abc import Iterable
from datetime import datetime
from typing import NamedTuple

AGENT_BRANCH_PATTERN = re.compile(r"^(?P<agent>[A-Za-z][A-Za-z0-9_-]*)/(?P<issue>\d+)(?:-(?P<slug>.+))?$")

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


class AgentBranch(NamedTuple):
    agent_id: str
    issue_number: int


def slugify(title: str, max_length: int = 40) -> str:
    """Lowercase, dash-separated slug of an issue title.

    >>> slugify("Fix: login fails with SSO!")
    'fix-login-fails-with-sso'
    """
    slug = _SLUG_STRIP.sub("-", title.lower()).strip("-")
    if len(slug) <= max_length:
        return slug
    cut = slug[:max_length]
    if "-" in cut:
        cut = cut.rsplit("-", 1)[0]
    return cut.strip("-")


def agent_branch_name(agent_id: str, issue_number: int, title: str = "") -> str:
    slug = slugify(title)
    if slug:
        return f"{agent_id}/{issue_number}-{slug}"
    return f"{agent_id}/{issue_number}"


def parse_agent_branch(branch: str | None, agent_id: str | None = None) -> AgentBranch | None:
    """Parse a work branch name.

    Args:
        branch: Branch name, or None for a detached HEAD
        agent_id: If given, only branches of this agent match

    Returns:
        The owning agent and issue number, or None if the branch is not a
        work branch (of this agent).
    """
    if not branch:
        return None
    match = AGENT_BRANCH_PATTERN.match(branch)
    if not match:
        return None
    if agent_id is not None and match.group("agent") != agent_id:
        return None
    return AgentBranch(agent_id=match.group("agent"), issue_number=int(match.group("issue")))


def find_work_branch(branches: Iterable[str], issue_number: int, agent_id: str | None = None) -> str | None:
    """First work branch for ``issue_number``, preferring ``agent_id``'s own.

    Among branches of equal preference the one listed first wins.
    """
    candidates = []
    for index, name in enumerate(branches):
        parsed = parse_agent_branch(name)
        if parsed and parsed.issue_number == issue_number:
            candidates.append((parsed.agent_id != agent_id, index, name))
    if not candidates:
        return None
    return min(candidates)[2]


def bundle_branch_name(issue_numbers: Iterable[int]) -> str:
    return "bundle-" + "-".join(str(n) for n in sorted(set(issue_numbers)))


def backup_branch_name(agent_id: str, issue_number: int | None, now: datetime) -> str:
    stamp = now.strftime("%Y%m%d-%H%M%S")
    if issue_number is None:
        return f"backup/{agent_id}/{stamp}"
    return f"backup/{agent_id}/{issue_number}-{stamp}"
