"""Boot-time agent that prepares a fleet machine and starts k3s."""

from fleet_manager.agent.environment import AgentEnvironment, AgentPaths
from fleet_manager.agent.runner import AgentStep, NodeAgent

__all__ = ["AgentEnvironment", "AgentPaths", "AgentStep", "NodeAgent"]
