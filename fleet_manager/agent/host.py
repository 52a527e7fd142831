"""Host-level operations performed by the node agent."""

import json
import os
import resource
import subprocess
from collections.abc import Mapping
from pathlib import Path

from fleet_manager.exceptions import NodeAgentError
from fleet_manager.logging_config import get_logger

logger = get_logger(__name__)

SYSCTLS = {
    "net.bridge.bridge-nf-call-iptables": "1",
    "net.bridge.bridge-nf-call-ip6tables": "1",
    "net.ipv4.ip_forward": "1",
    "net.ipv4.conf.all.src_valid_mark": "1",
    "net.ipv6.conf.all.forwarding": "1",
    "net.ipv6.conf.all.disable_ipv6": "0",
    "net.ipv4.tcp_congestion_control": "bbr",
    "vm.overcommit_memory": "1",
    "kernel.panic": "10",
    "net.ipv4.conf.all.rp_filter": "1",
    "kernel.panic_on_oops": "1",
}

RESOURCE_LIMITS = {
    resource.RLIMIT_NOFILE: 1048576,  # open files
    resource.RLIMIT_NPROC: resource.RLIM_INFINITY,  # num processes
}

SIXPN_HOST_ALIAS = "fly-local-6pn"


class HostShell:
    """Thin wrapper over commands and syscalls that change the host."""

    def run(
        self, argv: list[str], env: Mapping[str, str] | None = None, check: bool = True
    ) -> subprocess.CompletedProcess:
        """Run a command, streaming its output to the boot log.

        Raises:
            NodeAgentError: If the command is missing, or fails and check is set
        """
        logger.debug(f"Running: {' '.join(argv)}")
        full_env = {**os.environ, **env} if env else None
        try:
            return subprocess.run(argv, env=full_env, check=check)
        except subprocess.CalledProcessError as e:
            logger.error(f"Command failed with return code {e.returncode}: {' '.join(argv)}")
            raise NodeAgentError(f"Command failed: {' '.join(argv)}", f"Exit code {e.returncode}")
        except FileNotFoundError:
            logger.error(f"Command not found: {argv[0]}")
            raise NodeAgentError(f"Command not found: {argv[0]}")

    def capture(self, argv: list[str]) -> str:
        """Run a command and return its stdout."""
        try:
            result = subprocess.run(argv, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            raise NodeAgentError(f"Command failed: {' '.join(argv)}", e.stderr)
        except FileNotFoundError:
            raise NodeAgentError(f"Command not found: {argv[0]}")
        return result.stdout

    def sysctl(self, key: str, value: str) -> None:
        self.run(["sysctl", "-w", f"{key}={value}"])

    def set_limits(self, limits: Mapping[int, int]) -> None:
        for limit, value in limits.items():
            resource.setrlimit(limit, (value, value))

    def is_mount(self, path: Path) -> bool:
        return os.path.ismount(path)

    def private_ipv4(self, interface: str = "eth0") -> str:
        """Primary (non-secondary) IPv4 address of an interface."""
        output = self.capture(["ip", "-4", "-j", "addr", "show", interface])
        try:
            links = json.loads(output)
        except json.JSONDecodeError:
            raise NodeAgentError(f"Failed to parse address list of {interface}", output[:200])

        for link in links:
            for addr in link.get("addr_info", []):
                if not addr.get("secondary"):
                    return addr["local"]
        raise NodeAgentError(f"No primary IPv4 address on {interface}")

    def read_text(self, path: Path) -> str:
        return Path(path).read_text()

    def exec_init(self, argv: list[str]) -> None:
        """Replace the current process. Does not return on success."""
        logger.info(f"Executing: {' '.join(argv)}")
        os.execvp(argv[0], argv)


def read_6pn_address(hosts_text: str) -> str:
    """Find the private 6PN IPv6 address in an /etc/hosts file.

    Raises:
        NodeAgentError: If the alias is not present
    """
    for line in hosts_text.splitlines():
        fields = line.split("#", 1)[0].split()
        if len(fields) >= 2 and SIXPN_HOST_ALIAS in fields[1:]:
            return fields[0]
    raise NodeAgentError(f"No {SIXPN_HOST_ALIAS} entry in /etc/hosts")


def ensure_symlink(target: Path, link: Path) -> bool:
    """Point ``link`` at ``target``.

    An existing symlink to another target is replaced; a real file or
    directory at ``link`` is left alone.

    Returns:
        True if the link was created or changed
    """
    if link.is_symlink():
        if os.readlink(link) == str(target):
            return False
        logger.warning(f"Replacing symlink {link} -> {os.readlink(link)} with {target}")
        link.unlink()
    elif link.exists():
        logger.warning(f"{link} exists and is not a symlink, leaving it in place")
        return False

    link.parent.mkdir(parents=True, exist_ok=True)
    link.symlink_to(target)
    return True
