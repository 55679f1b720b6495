"""Configuration for agent-relay."""

from agent_relay.config.settings import (
    AgentConfig,
    BundlingConfig,
    ContinuityConfig,
    DriftConfig,
    GatewayConfig,
    GitHubConfig,
    LabelsConfig,
    RelaySettings,
    RepositoryConfig,
)

__all__ = [
    "AgentConfig",
    "BundlingConfig",
    "ContinuityConfig",
    "DriftConfig",
    "GatewayConfig",
    "GitHubConfig",
    "LabelsConfig",
    "RelaySettings",
    "RepositoryConfig",
]
