"""Agents, pipelines, coordination patterns and recipe orchestration."""

from .agent import Agent, AgentConfig, ProgressCallback
from .chain import AgentChain
from .coordination import (
    AgentFactory,
    CoordinationContext,
    broadcast,
    map_reduce,
    supervisor_worker,
)
from .orchestrator import WorkflowOrchestrator

__all__ = [
    "Agent",
    "AgentChain",
    "AgentConfig",
    "AgentFactory",
    "CoordinationContext",
    "ProgressCallback",
    "WorkflowOrchestrator",
    "broadcast",
    "map_reduce",
    "supervisor_worker",
]
