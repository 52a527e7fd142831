"""Machine environment and host path layout for the node agent."""

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from fleet_manager.exceptions import NodeAgentError

# Environment variable -> model field
ENVIRONMENT_KEYS = {
    "ROLE": "role",
    "K3S_VERSION": "k3s_version",
    "BOOTSTRAP": "bootstrap",
    "CLUSTER_CIDR": "cluster_cidr",
    "SERVICE_CIDR": "service_cidr",
    "CLUSTER_DNS": "cluster_dns",
    "SERVER": "server",
    "TOKEN": "token",
    "REGION": "region",
    "ZONE": "zone",
    "FLY_MACHINE_ID": "machine_id",
    "FLY_ALLOC_ID": "alloc_id",
    "FLY_APP_NAME": "app_name",
}


class AgentEnvironment(BaseModel):
    """Values injected into the machine when it was created."""

    role: str  # server or agent
    k3s_version: str
    bootstrap: bool = False
    cluster_cidr: str | None = None
    service_cidr: str | None = None
    cluster_dns: str | None = None
    server: str | None = None
    token: str | None = None
    region: str
    zone: str
    machine_id: str
    alloc_id: str | None = None
    app_name: str

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        """Validate role is either server or agent."""
        allowed_roles = ["server", "agent"]
        if v not in allowed_roles:
            raise ValueError(f"role must be one of {allowed_roles}, got '{v}'")
        return v

    @model_validator(mode="after")
    def check_role_requirements(self) -> "AgentEnvironment":
        if self.role == "server":
            for field in ("cluster_cidr", "service_cidr", "cluster_dns"):
                if not getattr(self, field):
                    raise ValueError(f"{field.upper()} is required for server nodes")
        if self.role == "agent" or not self.bootstrap:
            for field in ("server", "token"):
                if not getattr(self, field):
                    raise ValueError(f"{field.upper()} is required to join the cluster")
        if not self.alloc_id:
            self.alloc_id = self.machine_id
        return self

    @property
    def service_name(self) -> str:
        """systemd unit installed for this role."""
        system_name = "k3s" if self.role == "server" else f"k3s-{self.role}"
        return f"{system_name}.service"

    @property
    def app_dns_name(self) -> str:
        return f"{self.app_name}.internal"

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> "AgentEnvironment":
        """Build the environment from process variables.

        Raises:
            NodeAgentError: If required values are missing or invalid
        """
        environ = os.environ if environ is None else environ
        data = {
            field: environ[key]
            for key, field in ENVIRONMENT_KEYS.items()
            if environ.get(key, "") != ""
        }
        try:
            return cls(**data)
        except ValidationError as e:
            problems = []
            for error in e.errors():
                field = ".".join(str(x) for x in error["loc"]) or "environment"
                problems.append(f"{field}: {error['msg']}")
            raise NodeAgentError("Invalid machine environment", "\n".join(problems))


class AgentPaths:
    """Host paths used during boot, optionally below an alternate root."""

    DATA_DIR = "/data"
    K3S_DATA_DIR = "/data/k3s"
    K3S_CONFIG_FILE = "/data/k3s/config.yaml"
    K3S_CONFIG_DIR = "/etc/rancher/k3s"
    K3S_CONFIG_LINK = "/etc/rancher/k3s/config.yaml"
    K3S_NODE_DIR = "/data/k3s/node"
    K3S_NODE_LINK = "/etc/rancher/node"
    OPENEBS_DATA_DIR = "/data/openebs"
    POD_LOG_SOURCE = "/data/logs"
    POD_LOG_DIR = "/var/log/pods"
    POD_TEMP_SOURCE = "/data/podtemp"
    POD_TEMP_DIR = "/var/lib/kubelet/pods"
    PROGRESS_FILE = "/data/k3s/.node-agent-state.json"
    SYSTEMD_DIR = "/etc/systemd/system"
    SYSTEMD_LIB_DIR = "/lib/systemd/system"
    INSTALL_SCRIPT = "/install_k3s.sh"
    K3S_BIN = "/usr/local/bin/k3s"
    MACHINE_ID = "/etc/machine-id"
    HOSTS = "/etc/hosts"
    BOOT_ID = "/proc/sys/kernel/random/boot_id"
    SYSTEMD = "/lib/systemd/systemd"

    def __init__(self, root: str | Path = "/"):
        self.root = Path(root)

    def __call__(self, path: str) -> Path:
        """Resolve an absolute host path below the root."""
        return self.root / path.lstrip("/")

    def service_file(self, service: str) -> Path:
        return self(self.SYSTEMD_DIR) / service

    def service_link(self, service: str, target: str = "multi-user.target") -> Path:
        return self(self.SYSTEMD_DIR) / f"{target}.wants" / service
