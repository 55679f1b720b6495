"""Local git working tree access."""

from agent_relay.git.repository import GitRepository

__all__ = ["GitRepository"]
