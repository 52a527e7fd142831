"""Top-level fleet operations."""

import os
from pathlib import Path

import yaml

from fleet_manager.bootstrap import KUBECONFIG_PATH, BootstrapCoordinator
from fleet_manager.exceptions import ConfigurationError
from fleet_manager.logging_config import get_logger
from fleet_manager.models.cluster import (
    APP_NAME_PATTERN,
    CONTROL_PLANE_SIZE,
    CONTROL_PLANE_TARGET,
    CONTROLLER_NODE_PREFIX,
    K3S_API_PORT,
    WORKER_NODE_PREFIX,
    ClusterConfig,
)
from fleet_manager.models.node import CONTROL_PLANE_TAINT, Machine, Node
from fleet_manager.provisioner import NodeProvisioner

logger = get_logger(__name__)

LOOPBACK_SERVER = f"https://127.0.0.1:{K3S_API_PORT}"
DEFAULT_KUBE_DIR = Path.home() / ".kube"


def rewrite_kubeconfig(kubeconfig: str, server_host: str, cluster_name: str) -> dict:
    """Point a k3s kubeconfig at the fleet and rename its default entries.

    Args:
        kubeconfig: Raw k3s.yaml content
        server_host: Host that replaces the loopback API address
        cluster_name: Name for the cluster, context and user entries

    Returns:
        The rewritten kubeconfig document
    """
    data = yaml.safe_load(kubeconfig) or {}
    server = f"https://{server_host}:{K3S_API_PORT}"

    def rename(name):
        return cluster_name if name == "default" else name

    for cluster in data.get("clusters") or []:
        cluster["name"] = rename(cluster.get("name"))
        spec = cluster.get("cluster") or {}
        if spec.get("server") == LOOPBACK_SERVER:
            spec["server"] = server

    for context in data.get("contexts") or []:
        context["name"] = rename(context.get("name"))
        spec = context.get("context") or {}
        if "cluster" in spec:
            spec["cluster"] = rename(spec["cluster"])
        if "user" in spec:
            spec["user"] = rename(spec["user"])

    for user in data.get("users") or []:
        user["name"] = rename(user.get("name"))

    if "current-context" in data:
        data["current-context"] = rename(data["current-context"])

    return data


class FleetOrchestrator:
    """Drives cluster creation and maintenance operations."""

    def __init__(
        self,
        config: ClusterConfig,
        provisioner: NodeProvisioner,
        coordinator: BootstrapCoordinator,
    ):
        self.config = config
        self.provisioner = provisioner
        self.provider = provisioner.provider
        self.coordinator = coordinator

    def control_plane_order(self) -> list[int]:
        """Creation order of control-plane indexes: bootstrap first, then ascending."""
        bootstrap = self.coordinator.bootstrap_index
        return [bootstrap] + [i for i in range(CONTROL_PLANE_SIZE) if i != bootstrap]

    def create_cluster(self) -> list[Node]:
        """Create the control-plane app and its nodes, then taint them.

        Nodes are created one at a time; every node after the bootstrap node
        joins through the bootstrap node's token.

        Returns:
            Nodes created by this call
        """
        app = self.config.control_plane_app
        self.provisioner.ensure_app(app)

        created = []
        for index in self.control_plane_order():
            node = self._create_control_node(index)
            if node is not None:
                created.append(node)

        self.taint_control_plane()
        return created

    def _create_control_node(self, index: int) -> Node | None:
        app = self.config.control_plane_app
        node_name = f"{CONTROLLER_NODE_PREFIX}{index}"

        if index == self.coordinator.bootstrap_index:
            node = self.provisioner.create_node(node_name, "control", app, index, bootstrap=True)
            # An earlier run may have stopped before the bootstrap node was ready
            if node is not None or self.pending_control_nodes():
                machine_id = self.coordinator.await_ready()
                self.coordinator.install_addons(machine_id)
                logger.info("Bootstrap node ready")
            return node

        if self.provisioner.node_exists(app, node_name):
            logger.info(f"Node {node_name} already exists, skipping")
            return None

        join = self.coordinator.control_join_target()
        return self.provisioner.create_node(node_name, "control", app, index, join=join)

    def pending_control_nodes(self) -> list[str]:
        """Names of joining control-plane nodes that do not exist yet."""
        app = self.config.control_plane_app
        names = [
            f"{CONTROLLER_NODE_PREFIX}{i}"
            for i in range(CONTROL_PLANE_SIZE)
            if i != self.coordinator.bootstrap_index
        ]
        return [name for name in names if not self.provisioner.node_exists(app, name)]

    def add_worker_nodegroup(self, group_id: str) -> list[Node]:
        """Create or extend a worker node group up to NODE_GROUP_SIZE nodes.

        Returns:
            Nodes created by this call

        Raises:
            ConfigurationError: If the group id cannot name a worker app
        """
        if group_id == CONTROL_PLANE_TARGET or not APP_NAME_PATTERN.fullmatch(group_id):
            raise ConfigurationError(
                f"Invalid node group id '{group_id}'",
                f"Use lowercase letters, digits and hyphens; '{CONTROL_PLANE_TARGET}' "
                "is reserved for the control plane",
            )

        app = self.config.worker_app(group_id)
        self.provisioner.ensure_app(app)

        join = self.coordinator.worker_join_target()

        created = []
        for i in range(self.config.node_group_size):
            node_name = f"{WORKER_NODE_PREFIX}{group_id}-{i}"
            node = self.provisioner.create_node(
                node_name, "worker", app, i, group=group_id, join=join
            )
            if node is not None:
                created.append(node)

        logger.info(f"Node group {group_id}: {len(created)} nodes created")
        return created

    def taint_control_plane(self) -> None:
        """Keep general workloads off every control-plane node."""
        for index in range(CONTROL_PLANE_SIZE):
            self.taint_control_node(index)

    def taint_control_node(self, index: int) -> None:
        node_name = f"{CONTROLLER_NODE_PREFIX}{index}"
        machine_id = self.coordinator.locate(node_name)
        k8s_node = self.config.machine_address(machine_id)

        logger.info(f"Tainting {node_name} ({k8s_node}) with {CONTROL_PLANE_TAINT}")
        self.coordinator.run(
            machine_id,
            f"k3s kubectl taint node {k8s_node} {CONTROL_PLANE_TAINT} --overwrite",
        )

    def list_nodes(self, target: str) -> list[Machine]:
        """List machines of the control plane (``cp``) or a node group."""
        return self.provider.list_machines(self.config.app_for(target))

    def ssh_node(self, target: str) -> int:
        """Open an interactive console on a machine of the target app."""
        return self.provider.ssh_console(self.config.app_for(target))

    def fetch_kubeconfig(self, kube_dir: str | Path | None = None) -> Path:
        """Fetch cluster credentials from the bootstrap node and store them locally.

        Returns:
            Path of the written kubeconfig
        """
        raw = self.coordinator.read_remote_file(KUBECONFIG_PATH, "kubeconfig")
        data = rewrite_kubeconfig(raw, self.config.control_plane_dns, self.config.cluster_name)

        kube_dir = Path(kube_dir) if kube_dir else DEFAULT_KUBE_DIR
        kube_dir.mkdir(parents=True, exist_ok=True)
        path = kube_dir / self.config.cluster_name

        logger.info(f"Writing kubeconfig to {path}")
        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        os.chmod(path, 0o600)
        return path
