"""Agent package exports."""

from .base import Agent, AgentAction, PlanningConfig, PlanningLoop, SubtaskOutcome
from .decomposer import TaskDecomposer
from .orchestrator import Orchestrator

__all__ = ["Agent", "AgentAction", "PlanningConfig", "PlanningLoop", "SubtaskOutcome", "TaskDecomposer", "Orchestrator"]
