"""
Configuration system using Pydantic for type-safe settings management.

Settings are read from a YAML file with ``${VAR}`` interpolation and can
be overridden from the environment with the ``RELAY_`` prefix, e.g.
``RELAY_AGENT__AGENT_ID=agent002``.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_relay.exceptions import ConfigurationError

AGENT_ID_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")


class GitHubConfig(BaseModel):
    """GitHub API access."""

    api_token: SecretStr = Field(..., description="Personal access or App token")
    base_url: str = Field(default="https://api.github.com", description="API base URL (GitHub Enterprise)")


class RepositoryConfig(BaseModel):
    """Repository configuration."""

    owner: str = Field(..., description="Repository owner/organization")
    name: str = Field(..., description="Repository name")
    default_branch: str = Field(default="main", description="Default branch name")
    remote: str = Field(default="origin", description="Git remote the agent pushes to")
    path: str = Field(default=".", description="Path to the local working tree")


class AgentConfig(BaseModel):
    """Identity of the single worker in this repository."""

    agent_id: str = Field(default="agent001", description="Agent id; doubles as its assignment label")

    @field_validator("agent_id")
    @classmethod
    def validate_agent_id(cls, value: str) -> str:
        """Agent ids become branch prefixes and labels, so keep them simple."""
        if not AGENT_ID_PATTERN.match(value):
            raise ValueError(f"agent_id must match {AGENT_ID_PATTERN.pattern}, got: {value!r}")
        return value


class LabelsConfig(BaseModel):
    """Routing label vocabulary."""

    ready: str = Field(default="route:ready", description="Issue is ready for work")
    review: str = Field(default="route:review", description="Work landed, waiting to be bundled")
    bundled: str = Field(default="route:bundled", description="Work handed off to a pull request")
    unblocker: str = Field(default="route:unblocker", description="Urgent work that bypasses bundling")
    human_only: str = Field(default="route:human-only", description="Never claimed by an agent")
    attention: str = Field(default="relay:attention", description="Tracking issues opened by the engine")
    priority_high: str = Field(default="route:priority-high")
    priority_medium: str = Field(default="route:priority-medium")
    priority_low: str = Field(default="route:priority-low")
    agent_pattern: str = Field(default=r"^agent\d+$", description="Regex identifying any agent's label")


class BundlingConfig(BaseModel):
    """Bundling schedule and limits."""

    interval_minutes: int = Field(default=10, ge=1, description="Minimum time between bundling passes")
    max_bundle_size: int = Field(default=8, ge=1, le=50, description="Items per bundle; extras roll over")
    poll_seconds: int = Field(default=60, ge=1, description="How often the scheduler asks whether to bundle")


class DriftConfig(BaseModel):
    """Drift detection cadence and thresholds."""

    active_interval_minutes: int = Field(default=5, ge=1, description="Interval while Assigned or Working")
    idle_interval_minutes: int = Field(default=10, ge=1, description="Interval while worker-free")
    cooldown_minutes: int = Field(default=5, ge=0, description="Minimum time between corrections of one drift")
    behind_main_threshold: int = Field(default=10, ge=1, description="Commits behind main that count as drift")


class ContinuityConfig(BaseModel):
    """Checkpoint and history persistence."""

    state_directory: str = Field(default=".relay/state", description="Directory for checkpoints and history")
    max_checkpoint_age_hours: int = Field(default=48, ge=1, description="Older checkpoints are discarded")
    history_limit: int = Field(default=200, ge=10, description="History entries kept")
    fresh_resume_seconds: int = Field(default=300, ge=0, description="Idle checkpoints younger than this resume")
    lock_timeout_seconds: float = Field(default=10.0, ge=0.0, description="Wait for the workspace lock")


class GatewayConfig(BaseModel):
    """Limits applied to every external call."""

    command_timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_factor: float = Field(default=2.0, ge=0.0)


class RelaySettings(BaseSettings):
    """Main agent-relay settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    github: GitHubConfig
    repository: RepositoryConfig
    agent: AgentConfig = Field(default_factory=AgentConfig)
    labels: LabelsConfig = Field(default_factory=LabelsConfig)
    bundling: BundlingConfig = Field(default_factory=BundlingConfig)
    drift: DriftConfig = Field(default_factory=DriftConfig)
    continuity: ContinuityConfig = Field(default_factory=ContinuityConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)

    @property
    def state_dir(self) -> Path:
        """Get state directory as Path object."""
        return Path(self.continuity.state_directory)

    @property
    def agent_id(self) -> str:
        return self.agent.agent_id

    @classmethod
    def from_yaml(cls, config_path: str) -> RelaySettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            RelaySettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except ValueError as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        YAML comment lines are left untouched so documentation examples
        like ${GITHUB_TOKEN} in comments do not need to be set.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
