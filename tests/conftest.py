"""Pytest configuration and shared fixtures."""

import itertools
from pathlib import Path

import pytest
from hypothesis import Verbosity, settings

from fleet_manager.bootstrap import READINESS_QUERY
from fleet_manager.exceptions import ProviderError
from fleet_manager.models.node import Machine

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


SAMPLE_CONFIG = {
    "CLUSTER_NAME": "fly-k3s-test",
    "CLUSTER_CIDR": "10.42.0.0/16,fd00:42::/56",
    "SERVICE_CIDR": "10.43.0.0/16,fd00:43::/112",
    "CLUSTER_DNS": "10.43.0.10",
    "REGION": "ams",
    "NODE_GROUP_SIZE": "6",
    "VOLUME_SIZE": "20",
    "VOLUME_NAME": "k3s_data",
    "WORKER_VM_SIZE": "shared-cpu-4x",
    "WORKER_VM_MEMORY": "4096",
    "CP_VM_SIZE": "shared-cpu-2x",
    "CP_VM_MEMORY": "2048",
    "K3S_VERSION": "v1.28.5+k3s1",
    "ORG_NAME": "test-org",
}

SAMPLE_TOKEN = "K10f3c1e5::server:0123456789abcdef"

SAMPLE_KUBECONFIG = """apiVersion: v1
clusters:
- cluster:
    certificate-authority-data: ZmFrZS1jYQ==
    server: https://127.0.0.1:6443
  name: default
contexts:
- context:
    cluster: default
    user: default
  name: default
current-context: default
kind: Config
preferences: {}
users:
- name: default
  user:
    client-certificate-data: ZmFrZS1jZXJ0
    client-key-data: ZmFrZS1rZXk=
"""


class FakeFleetProvider:
    """In-memory machine platform recording every call."""

    def __init__(self, token: str = SAMPLE_TOKEN, ready_after: int = 1):
        self.token = token
        self.ready_after = ready_after
        self.kubeconfig = SAMPLE_KUBECONFIG
        self.apps: dict[str, str] = {}
        self.machines: dict[str, list[Machine]] = {}
        self.volumes: dict[str, dict] = {}
        self.runs: list[tuple[str, object]] = []
        self.events: list[tuple[str, str]] = []
        self.readiness_checks = 0
        self.fail_run = False
        self.volume_response: dict | None = None
        self._ids = itertools.count()

    def list_apps(self, org):
        return [name for name, app_org in self.apps.items() if app_org == org]

    def create_app(self, name, org):
        self.events.append(("create_app", name))
        self.apps[name] = org

    def list_machines(self, app):
        return list(self.machines.get(app, []))

    def create_volume(self, app, name, region, size_gb, require_unique_zone=True):
        if self.volume_response is not None:
            return self.volume_response
        zones_in_use = {v["zone"] for v in self.volumes.values() if v["app"] == app}
        zone = f"zone{len(zones_in_use)}"
        volume_id = f"vol_{next(self._ids)}"
        self.volumes[volume_id] = {
            "id": volume_id,
            "app": app,
            "zone": zone,
            "region": region,
            "size_gb": size_gb,
            "name": name,
            "snapshots": True,
        }
        self.events.append(("create_volume", volume_id))
        return dict(self.volumes[volume_id])

    def update_volume(self, app, volume_id, scheduled_snapshots):
        self.volumes[volume_id]["snapshots"] = scheduled_snapshots

    def destroy_volume(self, app, volume_id):
        self.events.append(("destroy_volume", volume_id))
        del self.volumes[volume_id]

    def run_machine(self, app, spec):
        if self.fail_run:
            raise ProviderError("fly command failed")
        machine = Machine(id=f"m{next(self._ids)}", name=spec.name, state="started", region=spec.region)
        self.machines.setdefault(app, []).append(machine)
        self.runs.append((app, spec))
        self.events.append(("run_machine", spec.name))

    def exec_on_machine(self, app, machine_id, command):
        if command == READINESS_QUERY:
            self.readiness_checks += 1
            ready = self.readiness_checks >= self.ready_after
            self.events.append(("ready_check", "True" if ready else "False"))
            return "True" if ready else "False"

        self.events.append(("exec", command))
        if command == "cat /data/k3s/server/token":
            return self.token
        if command == "cat /etc/rancher/k3s/k3s.yaml":
            return self.kubeconfig
        return ""

    def ssh_console(self, app):
        self.events.append(("ssh", app))
        return 0

    def machine_env(self, name):
        """Environment a machine was launched with."""
        for _, spec in self.runs:
            if spec.name == name:
                return spec.env
        raise KeyError(name)


@pytest.fixture
def sample_config_values():
    """Raw config file values for a valid cluster."""
    return dict(SAMPLE_CONFIG)


@pytest.fixture
def cluster_config():
    """A validated cluster configuration."""
    from fleet_manager.config import ConfigStore

    return ConfigStore.validate(dict(SAMPLE_CONFIG))


@pytest.fixture
def fake_provider():
    """An empty in-memory machine platform."""
    return FakeFleetProvider()


@pytest.fixture
def write_cluster_dir(tmp_path):
    """Write a cluster directory with the given config values."""

    def _write(values: dict, name: str = "cluster") -> Path:
        cluster_dir = tmp_path / name
        cluster_dir.mkdir(exist_ok=True)
        lines = [f'{key}="{value}"' for key, value in values.items()]
        (cluster_dir / "config").write_text("\n".join(lines) + "\n")
        return cluster_dir

    return _write


@pytest.fixture
def provider_factory():
    """Build fake providers with custom token or readiness behaviour."""
    return FakeFleetProvider
