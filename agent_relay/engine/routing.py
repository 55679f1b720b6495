"""
Label-based routing of work items.

Labels are the only place lifecycle information lives on GitHub. This
module turns a label set into answers: what priority an item has, whether
an agent may claim it, and whether its route markers contradict each
other. Labels are treated as eventually consistent and re-read on every
cycle; nothing here caches.
"""

import re

import structlog

from agent_relay.config.settings import LabelsConfig
from agent_relay.models.domain import Priority, WorkItem

log = structlog.get_logger(__name__)


class LabelRouter:
    """Interpret routing labels for one repository's label vocabulary."""

    def __init__(self, labels: LabelsConfig):
        self.labels = labels
        self._agent_pattern = re.compile(labels.agent_pattern)

    @property
    def route_markers(self) -> tuple[str, ...]:
        """Labels that place an item at one step of the pipeline."""
        return (self.labels.ready, self.labels.review, self.labels.bundled)

    def is_agent_label(self, label: str) -> bool:
        return bool(self._agent_pattern.match(label))

    def agent_labels(self, item: WorkItem) -> list[str]:
        return [label for label in item.labels if self.is_agent_label(label)]

    def priority_of(self, item: WorkItem) -> Priority:
        labels = set(item.labels)
        if self.labels.unblocker in labels:
            return Priority.UNBLOCKER
        if self.labels.priority_high in labels:
            return Priority.HIGH
        if self.labels.priority_medium in labels:
            return Priority.MEDIUM
        if self.labels.priority_low in labels:
            return Priority.LOW
        return Priority.NORMAL

    def sort_key(self, item: WorkItem) -> tuple[int, float, int]:
        """Highest priority first, then oldest, then lowest number."""
        created = item.created_at.timestamp() if item.created_at else float("inf")
        return (-int(self.priority_of(item)), created, item.number)

    def order(self, items: list[WorkItem]) -> list[WorkItem]:
        return sorted(items, key=self.sort_key)

    def overlapping_markers(self, item: WorkItem) -> list[str]:
        """Route markers that contradict each other on ``item``.

        ``ready`` may coexist with the agent label while work is in
        progress, but ``review`` and ``bundled`` are exclusive with every
        other marker. Overlaps are reported, never silently resolved.
        """
        present = [marker for marker in self.route_markers if marker in item.labels]
        exclusive = {self.labels.review, self.labels.bundled}
        if len(present) > 1 and exclusive.intersection(present):
            return present
        return []

    def is_claimable(self, item: WorkItem) -> bool:
        """Whether any agent may pick up ``item`` right now."""
        if not item.is_open or not item.has_label(self.labels.ready):
            return False
        if item.has_label(self.labels.human_only):
            return False
        if self.agent_labels(item):
            return False
        if item.has_label(self.labels.review) or item.has_label(self.labels.bundled):
            return False
        return True

    def assigned_elsewhere(self, item: WorkItem, agent_id: str) -> bool:
        """True if another agent, or a human, took over ``item``."""
        if item.has_label(self.labels.human_only):
            return True
        return any(label != agent_id for label in self.agent_labels(item))
