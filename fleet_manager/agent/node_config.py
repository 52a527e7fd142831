"""k3s node configuration rendering and reconciliation.

The configuration is rendered on every boot because machine addresses can
change when a machine migrates. Deciding what to do with the rendered text is
a pure function; only :func:`apply_reconcile` touches the filesystem.
"""

import os
import time
from collections.abc import Callable
from enum import Enum
from io import StringIO
from pathlib import Path

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap

from fleet_manager.agent.environment import AgentEnvironment, AgentPaths
from fleet_manager.logging_config import get_logger
from fleet_manager.models.cluster import K3S_API_PORT

logger = get_logger(__name__)


class ReconcileAction(str, Enum):
    """Outcome of comparing the rendered config with the active one."""

    ADOPT = "adopt"  # no active config yet
    REPLACE = "replace"  # content changed, back up and swap
    NOOP = "noop"  # content unchanged


def build_node_config(env: AgentEnvironment, ipv4: str, ipv6: str) -> CommentedMap:
    """Assemble the k3s config fields for this machine.

    Args:
        env: Machine environment
        ipv4: Private IPv4 address of the machine
        ipv6: Private 6PN IPv6 address of the machine
    """
    doc = CommentedMap()
    doc["node-name"] = f"{env.alloc_id}.vm.{env.app_dns_name}"
    doc["kubelet-arg"] = ["node-ip=::"]
    doc["data-dir"] = AgentPaths.K3S_DATA_DIR
    doc["node-ip"] = f"{ipv6},{ipv4}"
    doc["node-external-ip"] = ipv6
    doc["node-label"] = [
        f"topology.kubernetes.io/region={env.region}",
        f"topology.kubernetes.io/zone={env.zone}",
    ]

    if env.role == "server":
        # Pushed to agents by the servers
        doc["cluster-cidr"] = env.cluster_cidr
        doc["service-cidr"] = env.service_cidr
        doc["cluster-dns"] = env.cluster_dns
        doc["flannel-backend"] = "wireguard-native"
        doc["flannel-external-ip"] = True
        doc["flannel-ipv6-masq"] = True
        doc["etcd-expose-metrics"] = True
        if env.bootstrap:
            doc["cluster-init"] = True
        else:
            doc["server"] = f"https://{env.server}:{K3S_API_PORT}"
            doc["token"] = env.token
        # Lets agents use the app DNS name as a fixed server address
        doc["tls-san"] = [env.app_dns_name]
    else:
        doc["server"] = f"https://{env.server}:{K3S_API_PORT}"
        doc["token"] = env.token

    return doc


def render_node_config(doc: CommentedMap) -> str:
    """Serialize the config document to YAML text."""
    yaml = YAML()
    yaml.default_flow_style = False
    yaml.indent(mapping=2, sequence=2, offset=0)
    stream = StringIO()
    yaml.dump(doc, stream)
    return stream.getvalue()


def plan_reconcile(current: str | None, rendered: str) -> ReconcileAction:
    """Decide how to bring the active config in line with the rendered one."""
    if current is None:
        return ReconcileAction.ADOPT
    if current == rendered:
        return ReconcileAction.NOOP
    return ReconcileAction.REPLACE


def apply_reconcile(
    config_path: Path,
    rendered: str,
    action: ReconcileAction,
    clock: Callable[[], float] = time.time,
) -> Path | None:
    """Carry out a reconcile decision.

    New content is written to a ``.wip`` file and moved into place, so the
    active config is never partially written.

    Returns:
        Path of the backup made for a REPLACE, otherwise None
    """
    if action is ReconcileAction.NOOP:
        logger.info(f"No changes to configuration {config_path}")
        return None

    config_path.parent.mkdir(parents=True, exist_ok=True)
    wip_path = config_path.with_name(config_path.name + ".wip")
    with open(wip_path, "w") as f:
        f.write(rendered)
        f.flush()
        os.fsync(f.fileno())

    backup_path = None
    if action is ReconcileAction.REPLACE:
        backup_path = config_path.with_name(f"{config_path.name}.backup.{int(clock())}")
        logger.info(f"Backing up and updating configuration {config_path}")
        os.replace(config_path, backup_path)
    else:
        logger.info(f"Creating new configuration {config_path}")

    os.replace(wip_path, config_path)
    return backup_path


def reconcile_node_config(
    config_path: Path, rendered: str, clock: Callable[[], float] = time.time
) -> ReconcileAction:
    """Compare the rendered config with the file on disk and apply the result."""
    current = config_path.read_text() if config_path.is_file() else None
    action = plan_reconcile(current, rendered)
    apply_reconcile(config_path, rendered, action, clock=clock)
    return action
