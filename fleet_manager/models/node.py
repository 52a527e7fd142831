"""Data models for fleet nodes, volumes and machines."""

from pydantic import BaseModel, Field, field_validator

VOLUME_ID_PREFIX = "vol_"


class NodeTaint(BaseModel):
    """Kubernetes node taint configuration."""

    key: str
    value: str
    effect: str  # NoSchedule, PreferNoSchedule, NoExecute

    @field_validator("effect")
    @classmethod
    def validate_effect(cls, v: str) -> str:
        """Validate taint effect is one of the allowed values."""
        allowed = ["NoSchedule", "PreferNoSchedule", "NoExecute"]
        if v not in allowed:
            raise ValueError(f"effect must be one of {allowed}, got {v}")
        return v

    def __str__(self) -> str:
        return f"{self.key}={self.value}:{self.effect}"


CONTROL_PLANE_TAINT = NodeTaint(key="CriticalAddonsOnly", value="true", effect="NoExecute")


class Volume(BaseModel):
    """A persistent volume as returned by the platform."""

    id: str
    zone: str
    region: str
    size_gb: int
    name: str

    @classmethod
    def from_platform(cls, data: dict) -> "Volume":
        """Parse a ``fly volumes create -j`` response."""
        return cls(
            id=data["id"],
            zone=data["zone"],
            region=data.get("region", ""),
            size_gb=data.get("size_gb", 0),
            name=data.get("name", ""),
        )


class Machine(BaseModel):
    """A machine as listed by the platform."""

    id: str
    name: str
    state: str = "unknown"
    region: str = ""

    @classmethod
    def from_platform(cls, data: dict) -> "Machine":
        """Parse one entry of ``fly machine list -j``."""
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            state=data.get("state", "unknown"),
            region=data.get("region", ""),
        )


class JoinTarget(BaseModel):
    """Server address and token a node uses to join the cluster."""

    server: str
    token: str = Field(repr=False)

    @field_validator("token")
    @classmethod
    def validate_token(cls, v: str) -> str:
        """Validate the token is not empty."""
        if not v.strip():
            raise ValueError("token cannot be empty")
        return v.strip()


class Node(BaseModel):
    """A node created in the fleet."""

    name: str
    role: str  # control or worker
    index: int
    group: str | None = None
    app_name: str
    zone: str
    volume_id: str
    bootstrap: bool = False

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        """Validate role is either control or worker."""
        allowed_roles = ["control", "worker"]
        if v not in allowed_roles:
            raise ValueError(f"role must be one of {allowed_roles}, got '{v}'")
        return v

    @property
    def k3s_role(self) -> str:
        """The k3s install role passed to the node agent."""
        return "server" if self.role == "control" else "agent"
