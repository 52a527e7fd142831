"""Data models for cluster configuration."""

import ipaddress
import re

from pydantic import BaseModel, ConfigDict, field_validator

# Config file keys in validation order, mapped to model fields
REQUIRED_KEYS: dict[str, str] = {
    "CLUSTER_NAME": "cluster_name",
    "CLUSTER_CIDR": "cluster_cidr",
    "SERVICE_CIDR": "service_cidr",
    "CLUSTER_DNS": "cluster_dns",
    "REGION": "region",
    "NODE_GROUP_SIZE": "node_group_size",
    "VOLUME_SIZE": "volume_size",
    "VOLUME_NAME": "volume_name",
    "WORKER_VM_SIZE": "worker_vm_size",
    "WORKER_VM_MEMORY": "worker_vm_memory",
    "CP_VM_SIZE": "cp_vm_size",
    "CP_VM_MEMORY": "cp_vm_memory",
    "K3S_VERSION": "k3s_version",
    "ORG_NAME": "org_name",
}

CONTROL_PLANE_SIZE = 3
CONTROLLER_NODE_PREFIX = "ctrl-"
WORKER_NODE_PREFIX = "worker-ng-"
K3S_API_PORT = 6443

# Target that names the control plane in list and ssh operations
CONTROL_PLANE_TARGET = "cp"

# Fly app names are lowercase DNS labels
APP_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class ClusterConfig(BaseModel):
    """Immutable configuration of one cluster, loaded from its config file."""

    model_config = ConfigDict(frozen=True)

    cluster_name: str
    cluster_cidr: str
    service_cidr: str
    cluster_dns: str
    region: str
    node_group_size: int
    volume_size: int
    volume_name: str
    worker_vm_size: str
    worker_vm_memory: str
    cp_vm_size: str
    cp_vm_memory: str
    k3s_version: str
    org_name: str

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, v: str) -> str:
        """Validate cluster name can be used as a Fly app name prefix."""
        if not APP_NAME_PATTERN.fullmatch(v):
            raise ValueError(
                f"cluster_name '{v}' must contain only lowercase alphanumeric characters "
                "and hyphens, and cannot start or end with a hyphen"
            )
        return v

    @field_validator("cluster_cidr", "service_cidr")
    @classmethod
    def validate_cidr_pair(cls, v: str) -> str:
        """Validate a comma separated (dual-stack) list of networks."""
        for cidr in v.split(","):
            try:
                ipaddress.ip_network(cidr.strip(), strict=False)
            except ValueError:
                raise ValueError(f"'{cidr.strip()}' is not a valid CIDR")
        return v

    @field_validator("cluster_dns")
    @classmethod
    def validate_cluster_dns(cls, v: str) -> str:
        """Validate the cluster DNS address is an IP address."""
        try:
            ipaddress.ip_address(v)
        except ValueError:
            raise ValueError(f"cluster_dns '{v}' is not a valid IP address")
        return v

    @field_validator("node_group_size", "volume_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate sizes are positive."""
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @property
    def control_plane_app(self) -> str:
        """Fly app holding the control-plane machines."""
        return f"{self.cluster_name}-cp"

    @property
    def control_plane_dns(self) -> str:
        """Stable internal DNS name resolving to all control-plane machines."""
        return f"{self.control_plane_app}.internal"

    def worker_app(self, group_id: str) -> str:
        """Fly app holding the machines of a worker node group."""
        return f"{self.cluster_name}-ng-{group_id}"

    def machine_address(self, machine_id: str) -> str:
        """Internal DNS name of a single control-plane machine."""
        return f"{machine_id}.vm.{self.control_plane_dns}"

    def app_for(self, target: str) -> str:
        """Resolve a CLI target (``cp`` or a node group id) to an app name."""
        if target == CONTROL_PLANE_TARGET:
            return self.control_plane_app
        return self.worker_app(target)
