"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest

from agent_relay.config.settings import RelaySettings
from agent_relay.engine.continuity import ContinuityManager
from agent_relay.engine.detector import StateDetector
from agent_relay.engine.executor import CommandExecutor
from agent_relay.engine.gateway import RepositoryGateway
from agent_relay.engine.lifecycle import LifecycleEngine
from agent_relay.engine.planner import PlanContext, TransitionPlanner
from tests.fakes import AGENT_ID, FakeIssueProvider, FakeLocalRepository


@pytest.fixture
def settings(tmp_path: Path) -> RelaySettings:
    """Settings with a temporary state directory and no retry backoff."""
    return RelaySettings(
        github={"api_token": "test-token"},
        repository={"owner": "test-owner", "name": "test-repo"},
        agent={"agent_id": AGENT_ID},
        continuity={"state_directory": str(tmp_path / "state"), "lock_timeout_seconds": 1.0},
        gateway={"backoff_factor": 0, "command_timeout_seconds": 5},
    )


@pytest.fixture
def local() -> FakeLocalRepository:
    return FakeLocalRepository()


@pytest.fixture
def provider(local: FakeLocalRepository) -> FakeIssueProvider:
    return FakeIssueProvider(local)


@pytest.fixture
def gateway(provider: FakeIssueProvider, local: FakeLocalRepository, settings: RelaySettings) -> RepositoryGateway:
    return RepositoryGateway(provider, local, settings.gateway)


@pytest.fixture
def continuity(settings: RelaySettings) -> ContinuityManager:
    return ContinuityManager(AGENT_ID, settings.continuity)


@pytest.fixture
def executor(gateway: RepositoryGateway, continuity: ContinuityManager, settings: RelaySettings) -> CommandExecutor:
    return CommandExecutor(gateway, continuity, settings.labels)


@pytest.fixture
def planner() -> TransitionPlanner:
    return TransitionPlanner()


@pytest.fixture
def plan_context(settings: RelaySettings) -> PlanContext:
    return PlanContext(agent_id=AGENT_ID, labels=settings.labels, default_branch="main", current_branch="main")


@pytest.fixture
def detector(gateway: RepositoryGateway, settings: RelaySettings) -> StateDetector:
    return StateDetector(gateway, settings.labels, "main")


@pytest.fixture
def engine(settings: RelaySettings, gateway: RepositoryGateway) -> LifecycleEngine:
    return LifecycleEngine(settings, gateway)
