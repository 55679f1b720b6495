"""Provider interfaces and the PyGithub implementation."""

from agent_relay.providers.base import IssueProvider, LocalRepository

__all__ = ["IssueProvider", "LocalRepository"]
