"""agent-relay: route GitHub issues to one autonomous agent and keep it unstuck."""

__version__ = "0.3.0"
