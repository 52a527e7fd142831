"""Creation of apps, volumes and machines with existence checks."""

from fleet_manager.exceptions import FleetManagerError, ProvisioningError
from fleet_manager.logging_config import get_logger
from fleet_manager.models.cluster import ClusterConfig
from fleet_manager.models.node import VOLUME_ID_PREFIX, JoinTarget, Machine, Node, Volume
from fleet_manager.provider import FleetProvider, MachineSpec

logger = get_logger(__name__)

DATA_MOUNT_PATH = "/data"


class NodeProvisioner:
    """Creates fleet resources idempotently.

    Every creation is preceded by a lookup, so re-running an operation never
    produces a second app or machine with the same name.
    """

    def __init__(self, config: ClusterConfig, provider: FleetProvider):
        self.config = config
        self.provider = provider

    def ensure_app(self, app_name: str) -> bool:
        """Create the app if it does not exist.

        Returns:
            True if the app was created, False if it already existed
        """
        if app_name in self.provider.list_apps(self.config.org_name):
            logger.debug(f"App {app_name} already exists")
            return False

        logger.info(f"Creating fly app... (name: {app_name})")
        self.provider.create_app(app_name, self.config.org_name)
        return True

    def create_volume(self, app_name: str) -> Volume:
        """Create a data volume in a zone not used by other volumes of the app.

        Scheduled snapshots are always disabled on the new volume.

        Raises:
            ProvisioningError: If the response has no volume id or zone
        """
        logger.info(
            f"Creating volume... (name: {self.config.volume_name}, "
            f"region: {self.config.region}, size: {self.config.volume_size})"
        )
        info = self.provider.create_volume(
            app_name,
            self.config.volume_name,
            self.config.region,
            self.config.volume_size,
            require_unique_zone=True,
        )

        volume_id = (info or {}).get("id") or ""
        if not str(volume_id).startswith(VOLUME_ID_PREFIX):
            raise ProvisioningError("Failed to create volume", f"Unexpected response: {info}")

        if info.get("zone") is None:
            raise ProvisioningError(
                "Failed to fetch zone info for volume", f"Volume {volume_id} has no zone"
            )

        self.provider.update_volume(app_name, volume_id, scheduled_snapshots=False)
        return Volume.from_platform(info)

    def find_machine(self, app_name: str, node_name: str) -> Machine | None:
        """Look up a machine of the app by name."""
        for machine in self.provider.list_machines(app_name):
            if machine.name == node_name:
                return machine
        return None

    def node_exists(self, app_name: str, node_name: str) -> bool:
        """Check whether a machine with this name already exists in the app."""
        return self.find_machine(app_name, node_name) is not None

    def node_environment(
        self, role: str, zone: str, bootstrap: bool = False, join: JoinTarget | None = None
    ) -> dict[str, str]:
        """Compose the environment the node agent reads at boot."""
        env = {
            "REGION": self.config.region,
            "ZONE": zone,
            "K3S_VERSION": self.config.k3s_version,
            "ROLE": "server" if role == "control" else "agent",
        }
        if role == "control":
            env["BOOTSTRAP"] = "true" if bootstrap else "false"
            env["CLUSTER_CIDR"] = self.config.cluster_cidr
            env["SERVICE_CIDR"] = self.config.service_cidr
            env["CLUSTER_DNS"] = self.config.cluster_dns
        if join is not None:
            env["SERVER"] = join.server
            env["TOKEN"] = join.token
        return env

    def create_node(
        self,
        node_name: str,
        role: str,
        app_name: str,
        index: int,
        group: str | None = None,
        bootstrap: bool = False,
        join: JoinTarget | None = None,
    ) -> Node | None:
        """Create a volume and a machine for the node unless it already exists.

        If launching the machine fails, the freshly created volume is destroyed
        before the error is re-raised.

        Returns:
            The created node, or None if a machine with this name exists
        """
        if role == "control":
            vm_size, vm_memory = self.config.cp_vm_size, self.config.cp_vm_memory
        else:
            vm_size, vm_memory = self.config.worker_vm_size, self.config.worker_vm_memory

        logger.info(f"Checking if node exists... (name: {node_name}, vm-size: {vm_size})")
        if self.node_exists(app_name, node_name):
            logger.info(f"Node {node_name} already exists, skipping")
            return None

        volume = self.create_volume(app_name)
        spec = MachineSpec(
            name=node_name,
            vm_size=vm_size,
            vm_memory=vm_memory,
            region=self.config.region,
            env=self.node_environment(role, volume.zone, bootstrap=bootstrap, join=join),
            volume_id=volume.id,
            mount_path=DATA_MOUNT_PATH,
        )

        kind = "bootstrap" if bootstrap else ("control plane" if role == "control" else "worker")
        logger.info(
            f"Creating {kind} node... (name: {node_name}, vm-size: {vm_size}, zone: {volume.zone})"
        )
        try:
            self.provider.run_machine(app_name, spec)
        except FleetManagerError:
            self._discard_volume(app_name, volume)
            raise

        return Node(
            name=node_name,
            role=role,
            index=index,
            group=group,
            app_name=app_name,
            zone=volume.zone,
            volume_id=volume.id,
            bootstrap=bootstrap,
        )

    def _discard_volume(self, app_name: str, volume: Volume) -> None:
        logger.warning(f"Machine creation failed, destroying volume {volume.id}")
        try:
            self.provider.destroy_volume(app_name, volume.id)
        except FleetManagerError as e:
            logger.error(f"Failed to destroy orphaned volume {volume.id}: {e.message}")
