"""Bootstrap node discovery, readiness and join token distribution."""

import threading
import time
from collections.abc import Callable

from pydantic import BaseModel

from fleet_manager.exceptions import (
    BootstrapError,
    ConfigurationError,
    NodeNotFoundError,
    ProviderError,
)
from fleet_manager.logging_config import get_logger
from fleet_manager.models.cluster import CONTROL_PLANE_SIZE, CONTROLLER_NODE_PREFIX
from fleet_manager.models.node import JoinTarget
from fleet_manager.provisioner import NodeProvisioner

logger = get_logger(__name__)

READINESS_QUERY = "k3s kubectl get nodes -o jsonpath='{.items..status.conditions[-1:].status}'"
ADDON_MANIFEST_DIR = "/etc/kubernetes/manifests/openebs/"
TOKEN_PATH = "/data/k3s/server/token"
KUBECONFIG_PATH = "/etc/rancher/k3s/k3s.yaml"


class ReadinessPolicy(BaseModel):
    """How long to wait for the bootstrap node.

    A ``timeout`` or ``max_attempts`` of None removes that bound.
    """

    interval: float = 5.0
    max_attempts: int | None = None
    timeout: float | None = 900.0


class BootstrapCoordinator:
    """Locates the bootstrap node, waits for it and hands out its join token."""

    def __init__(
        self,
        provisioner: NodeProvisioner,
        bootstrap_index: int = 0,
        policy: ReadinessPolicy | None = None,
        cancel: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the coordinator.

        Args:
            provisioner: Provisioner for the cluster
            bootstrap_index: Control-plane index initialised with cluster-init
            policy: Readiness polling bounds
            cancel: Event that aborts a readiness wait when set
            clock: Monotonic time source

        Raises:
            ConfigurationError: If the index is not a control-plane index
        """
        if not 0 <= bootstrap_index < CONTROL_PLANE_SIZE:
            raise ConfigurationError(
                f"Invalid bootstrap node id {bootstrap_index}",
                f"Must be a control-plane index between 0 and {CONTROL_PLANE_SIZE - 1}",
            )
        self.provisioner = provisioner
        self.config = provisioner.config
        self.provider = provisioner.provider
        self.bootstrap_index = bootstrap_index
        self.policy = policy or ReadinessPolicy()
        self.cancel = cancel or threading.Event()
        self.clock = clock
        self.addons_installed = False

    @property
    def bootstrap_node_name(self) -> str:
        return f"{CONTROLLER_NODE_PREFIX}{self.bootstrap_index}"

    def locate(self, node_name: str) -> str:
        """Resolve a control-plane node name to its machine id.

        Raises:
            NodeNotFoundError: If no machine has this name
        """
        machine = self.provisioner.find_machine(self.config.control_plane_app, node_name)
        if machine is None:
            logger.error(f"Node {node_name} not found")
            raise NodeNotFoundError(
                f"Node not found: {node_name}",
                f"No machine named '{node_name}' in app {self.config.control_plane_app}",
            )
        return machine.id

    def locate_bootstrap(self) -> str:
        """Resolve the bootstrap node to its machine id."""
        return self.locate(self.bootstrap_node_name)

    def run(self, machine_id: str, command: str) -> str:
        """Execute a command on a control-plane machine."""
        return self.provider.exec_on_machine(self.config.control_plane_app, machine_id, command)

    def is_ready(self, machine_id: str) -> bool:
        """Check whether the node reports the Ready condition."""
        try:
            status = self.run(machine_id, READINESS_QUERY)
        except ProviderError as e:
            logger.debug(f"Readiness query failed, node still starting: {e.message}")
            return False
        return status.strip() == "True"

    def await_ready(self, machine_id: str | None = None) -> str:
        """Block until the bootstrap node is ready.

        Returns:
            The bootstrap machine id

        Raises:
            BootstrapError: On timeout, attempt exhaustion or cancellation
        """
        machine_id = machine_id or self.locate_bootstrap()
        logger.info("Waiting for bootstrap node to be ready...")

        started = self.clock()
        attempt = 0
        while True:
            attempt += 1
            if self.is_ready(machine_id):
                logger.info(f"Bootstrap node ready after {attempt} checks")
                return machine_id

            if self.policy.max_attempts is not None and attempt >= self.policy.max_attempts:
                raise BootstrapError(
                    "Bootstrap node did not become ready",
                    f"Gave up after {attempt} readiness checks",
                )
            if self.policy.timeout is not None and self.clock() - started >= self.policy.timeout:
                raise BootstrapError(
                    "Bootstrap node did not become ready",
                    f"Timed out after {self.policy.timeout:.0f} seconds. "
                    "Raise --ready-timeout or use 0 to wait indefinitely",
                )

            logger.debug(f"Bootstrap node not ready (check {attempt})")
            if self.cancel.wait(self.policy.interval):
                raise BootstrapError("Waiting for bootstrap node was cancelled")

    def install_addons(self, machine_id: str) -> bool:
        """Apply the base storage addon manifests once.

        Returns:
            True if the manifests were applied by this call
        """
        if self.addons_installed:
            logger.debug("Addons already installed in this run")
            return False

        logger.info("Installing openebs...")
        self.run(machine_id, f"k3s kubectl apply -f {ADDON_MANIFEST_DIR}")
        self.addons_installed = True
        return True

    def read_remote_file(self, path: str, what: str) -> str:
        """Read a file from the bootstrap node.

        Raises:
            BootstrapError: If the content is empty
        """
        machine_id = self.locate_bootstrap()
        content = self.run(machine_id, f"cat {path}")
        if not content.strip():
            logger.error(f"Failed to get {what} from bootstrap node")
            raise BootstrapError(
                f"Failed to get {what} from bootstrap node",
                f"{path} on {self.bootstrap_node_name} ({machine_id}) is empty or missing",
            )
        return content

    def fetch_token(self) -> str:
        """Read the persisted join token from the bootstrap node."""
        return self.read_remote_file(TOKEN_PATH, "token").strip()

    def control_join_target(self) -> JoinTarget:
        """Join target for additional control-plane nodes: the bootstrap machine itself."""
        machine_id = self.locate_bootstrap()
        return JoinTarget(server=self.config.machine_address(machine_id), token=self.fetch_token())

    def worker_join_target(self) -> JoinTarget:
        """Join target for workers: the control-plane app's stable DNS name."""
        return JoinTarget(server=self.config.control_plane_dns, token=self.fetch_token())
