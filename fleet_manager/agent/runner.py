"""Per-boot setup sequence run on every fleet machine before systemd starts.

The sequence is a linear state machine. Progress is recorded after each step
together with the kernel boot id, so an agent restarted during the same boot
resumes after the last completed step, while a fresh boot starts over.
"""

import time
from collections.abc import Callable
from enum import Enum

from fleet_manager.agent.environment import AgentEnvironment, AgentPaths
from fleet_manager.agent.host import (
    RESOURCE_LIMITS,
    SYSCTLS,
    HostShell,
    ensure_symlink,
    read_6pn_address,
)
from fleet_manager.agent.node_config import (
    ReconcileAction,
    build_node_config,
    reconcile_node_config,
    render_node_config,
)
from fleet_manager.agent.state import ProgressMarker
from fleet_manager.exceptions import NodeAgentError
from fleet_manager.logging_config import get_logger

logger = get_logger(__name__)

ISCSI_SERVICE = "iscsid.service"


class AgentStep(str, Enum):
    """States of the boot sequence, in order."""

    INIT = "Init"
    IDENTITY_SET = "IdentitySet"
    SYSCTLS_APPLIED = "SysctlsApplied"
    LIMITS_APPLIED = "LimitsApplied"
    MOUNT_SHARED = "MountShared"
    RUNTIME_INSTALLED = "RuntimeInstalled"
    CONFIG_RECONCILED = "ConfigReconciled"
    IDENTITY_LINKED = "IdentityLinked"
    LOG_MOUNTED = "LogMounted"
    TMP_MOUNTED = "TmpMounted"
    DEPENDENT_SERVICE_ENABLED = "DependentServiceEnabled"
    SELF_CHECKED = "SelfChecked"
    HANDED_OFF = "HandedOff"


# Limits belong to the process and are lost when the agent restarts
PROCESS_SCOPED = {AgentStep.LIMITS_APPLIED}


class NodeAgent:
    """Prepares the machine, installs and configures k3s, then starts systemd."""

    def __init__(
        self,
        env: AgentEnvironment,
        paths: AgentPaths | None = None,
        shell: HostShell | None = None,
        clock: Callable[[], float] = time.time,
        handoff: bool = True,
    ):
        """Initialize the agent.

        Args:
            env: Machine environment
            paths: Host path layout
            shell: Host command runner
            clock: Wall clock used for backup suffixes
            handoff: Exec systemd at the end of the sequence
        """
        self.env = env
        self.paths = paths or AgentPaths()
        self.shell = shell or HostShell()
        self.clock = clock
        self.handoff = handoff
        self.marker = ProgressMarker(self.paths(AgentPaths.PROGRESS_FILE))
        self.state = AgentStep.INIT
        self.config_action: ReconcileAction | None = None

    def steps(self) -> list[tuple[AgentStep, Callable[[], None]]]:
        """Step functions paired with the state they lead to."""
        return [
            (AgentStep.IDENTITY_SET, self.set_machine_id),
            (AgentStep.SYSCTLS_APPLIED, self.apply_sysctls),
            (AgentStep.LIMITS_APPLIED, self.apply_limits),
            (AgentStep.MOUNT_SHARED, self.make_root_shared),
            (AgentStep.RUNTIME_INSTALLED, self.install_k3s),
            (AgentStep.CONFIG_RECONCILED, self.configure_k3s),
            (AgentStep.IDENTITY_LINKED, self.link_node_dir),
            (AgentStep.LOG_MOUNTED, self.mount_pod_logs),
            (AgentStep.TMP_MOUNTED, self.mount_pod_temp),
            (AgentStep.DEPENDENT_SERVICE_ENABLED, self.enable_iscsid),
            (AgentStep.SELF_CHECKED, self.run_config_check),
        ]

    def completed_steps(self, boot_id: str) -> set[AgentStep]:
        """Steps already completed during this boot according to the marker."""
        progress = self.marker.load()
        if progress is None or progress.boot_id != boot_id:
            return set()

        order = [step for step, _ in self.steps()]
        try:
            last = order.index(AgentStep(progress.last_completed))
        except ValueError:
            return set()
        return set(order[: last + 1])

    def run(self) -> AgentStep:
        """Run the boot sequence.

        Returns:
            The final state, SELF_CHECKED when hand-off is disabled. With
            hand-off enabled the process is replaced and this does not return.

        Raises:
            NodeAgentError: If any step fails
        """
        boot_id = self.shell.read_text(self.paths(AgentPaths.BOOT_ID)).strip()
        done = self.completed_steps(boot_id)
        if done:
            logger.info(f"Resuming boot sequence, {len(done)} steps already completed")

        for step, action in self.steps():
            if step in done and step not in PROCESS_SCOPED:
                logger.info(f"{step.value}: already completed during this boot")
            else:
                action()
                self.marker.record(boot_id, step.value)
            self.state = step

        if self.handoff:
            self.hand_off()
        return self.state

    def set_machine_id(self) -> None:
        path = self.paths(AgentPaths.MACHINE_ID)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{self.env.machine_id}\n")

    def apply_sysctls(self) -> None:
        logger.info("setting sysctl settings")
        for key, value in SYSCTLS.items():
            self.shell.sysctl(key, value)

    def apply_limits(self) -> None:
        logger.info("setting limits")
        self.shell.set_limits(RESOURCE_LIMITS)

    def make_root_shared(self) -> None:
        # Kubernetes mount propagation requires shared mounts
        logger.info("setting shared mount")
        self.shell.run(["mount", "--make-rshared", "/"])

    def install_k3s(self) -> None:
        service = self.env.service_name
        link = self.paths.service_link(service)
        if link.is_symlink():
            logger.info("k3s already installed")
            return

        logger.info("installing k3s")
        self.shell.run(
            [str(self.paths(AgentPaths.INSTALL_SCRIPT))],
            env={
                "INSTALL_K3S_SKIP_ENABLE": "true",
                "INSTALL_K3S_EXEC": self.env.role,
                "INSTALL_K3S_VERSION": self.env.k3s_version,
            },
        )
        # systemd is not running yet, so enable the unit by hand
        ensure_symlink(self.paths.service_file(service), link)

    def configure_k3s(self) -> None:
        logger.info("configuring k3s")
        for directory in (
            AgentPaths.K3S_DATA_DIR,
            AgentPaths.K3S_CONFIG_DIR,
            AgentPaths.OPENEBS_DATA_DIR,
        ):
            self.paths(directory).mkdir(parents=True, exist_ok=True)

        ipv4 = self.shell.private_ipv4("eth0")
        ipv6 = read_6pn_address(self.shell.read_text(self.paths(AgentPaths.HOSTS)))
        rendered = render_node_config(build_node_config(self.env, ipv4, ipv6))

        config_file = self.paths(AgentPaths.K3S_CONFIG_FILE)
        self.config_action = reconcile_node_config(config_file, rendered, clock=self.clock)
        ensure_symlink(config_file, self.paths(AgentPaths.K3S_CONFIG_LINK))

    def link_node_dir(self) -> None:
        node_dir = self.paths(AgentPaths.K3S_NODE_DIR)
        link = self.paths(AgentPaths.K3S_NODE_LINK)
        logger.info(f"setting up k3s node dir, linking {node_dir} to {link}")
        node_dir.mkdir(parents=True, exist_ok=True)
        ensure_symlink(node_dir, link)

    def bind_mount(self, source: str, target: str) -> None:
        source_dir, target_dir = self.paths(source), self.paths(target)
        source_dir.mkdir(parents=True, exist_ok=True)
        target_dir.mkdir(parents=True, exist_ok=True)
        if self.shell.is_mount(target_dir):
            logger.info(f"{target_dir} already mounted")
            return
        self.shell.run(["mount", "--bind", str(source_dir), str(target_dir)])

    def mount_pod_logs(self) -> None:
        logger.info("mounting pod log directory")
        self.bind_mount(AgentPaths.POD_LOG_SOURCE, AgentPaths.POD_LOG_DIR)

    def mount_pod_temp(self) -> None:
        logger.info("mounting pod temp directory")
        self.bind_mount(AgentPaths.POD_TEMP_SOURCE, AgentPaths.POD_TEMP_DIR)

    def enable_iscsid(self) -> None:
        # Required by the storage addon
        link = self.paths.service_link(ISCSI_SERVICE, target="sysinit.target")
        if link.is_symlink():
            return
        logger.info("setting up iscsid service")
        ensure_symlink(self.paths(AgentPaths.SYSTEMD_LIB_DIR) / ISCSI_SERVICE, link)

    def run_config_check(self) -> None:
        logger.info("running k3s config check")
        result = self.shell.run([str(self.paths(AgentPaths.K3S_BIN)), "check-config"], check=False)
        if result.returncode != 0:
            raise NodeAgentError(
                "k3s config check failed", f"check-config exited with code {result.returncode}"
            )

    def hand_off(self) -> None:
        logger.info("starting systemd")
        self.state = AgentStep.HANDED_OFF
        self.shell.exec_init(
            ["unshare", "--pid", "--fork", "--mount-proc", AgentPaths.SYSTEMD]
        )
