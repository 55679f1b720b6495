"""Agent lifecycle orchestration engine.

This package moves a worker through its lifecycle on a GitHub repository,
keeps its belief about that lifecycle consistent with GitHub, and resumes
safely after interruption.

Key Components:
    - LifecycleEngine: Command facade used by the CLI and the daemon
    - StateDetector: Derives the lifecycle state from labels and git
    - TransitionPlanner: Builds ordered, risk-rated operation plans
    - CommandExecutor: Applies plans in order and checkpoints progress
    - BundlingEngine: Folds landed work into bundle pull requests
    - DriftDetector: Reconciles the checkpoint with live state
    - ContinuityManager: Checkpoints, history and timers on disk
    - RepositoryGateway: Serialized, retried access to GitHub and git

Lifecycle:
    Idle -> Assigned -> Working -> Landed -> Bundled -> Merged -> Idle

Example:
    >>> from agent_relay.engine import LifecycleEngine
    >>> engine = LifecycleEngine.create(settings)
    >>> await engine.startup()
    >>> result = await engine.land(confirm=True)
"""

from agent_relay.engine.bundling import BundlingEngine
from agent_relay.engine.continuity import ContinuityManager
from agent_relay.engine.detector import StateDetector
from agent_relay.engine.drift import DriftDetector
from agent_relay.engine.executor import CommandExecutor
from agent_relay.engine.gateway import RepositoryGateway
from agent_relay.engine.lifecycle import LifecycleEngine
from agent_relay.engine.planner import PlanContext, TransitionPlanner

__all__ = [
    "BundlingEngine",
    "CommandExecutor",
    "ContinuityManager",
    "DriftDetector",
    "LifecycleEngine",
    "PlanContext",
    "RepositoryGateway",
    "StateDetector",
    "TransitionPlanner",
]
