"""Data models for cluster configuration and fleet state."""

from fleet_manager.models.cluster import REQUIRED_KEYS, ClusterConfig
from fleet_manager.models.node import (
    CONTROL_PLANE_TAINT,
    JoinTarget,
    Machine,
    Node,
    NodeTaint,
    Volume,
)

__all__ = [
    "REQUIRED_KEYS",
    "ClusterConfig",
    "CONTROL_PLANE_TAINT",
    "JoinTarget",
    "Machine",
    "Node",
    "NodeTaint",
    "Volume",
]
