"""Machine platform access.

The orchestration code only talks to a :class:`FleetProvider`. The production
implementation shells out to the ``fly`` CLI; tests substitute an in-memory
fake.
"""

import json
import shutil
import subprocess
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from fleet_manager.exceptions import MissingToolError, ProviderError
from fleet_manager.logging_config import get_logger
from fleet_manager.models.node import Machine

logger = get_logger(__name__)


class MachineSpec(BaseModel):
    """Everything needed to launch one machine."""

    name: str
    vm_size: str
    vm_memory: str
    region: str
    env: dict[str, str] = Field(default_factory=dict)
    volume_id: str
    mount_path: str = "/data"


class FleetProvider(Protocol):
    """Capabilities the orchestrator needs from the machine platform."""

    def list_apps(self, org: str) -> list[str]: ...

    def create_app(self, name: str, org: str) -> None: ...

    def list_machines(self, app: str) -> list[Machine]: ...

    def create_volume(
        self, app: str, name: str, region: str, size_gb: int, require_unique_zone: bool = True
    ) -> dict: ...

    def update_volume(self, app: str, volume_id: str, scheduled_snapshots: bool) -> None: ...

    def destroy_volume(self, app: str, volume_id: str) -> None: ...

    def run_machine(self, app: str, spec: MachineSpec) -> None: ...

    def exec_on_machine(self, app: str, machine_id: str, command: str) -> str: ...

    def ssh_console(self, app: str) -> int: ...


class FlyctlProvider:
    """FleetProvider backed by the ``fly`` command line tool."""

    def __init__(self, binary: str = "fly", build_context: str | Path = ".", timeout: int = 900):
        """Initialize the provider.

        Args:
            binary: Name or path of the fly CLI
            build_context: Directory holding the machine image Dockerfile
            timeout: Seconds to wait for any single non-interactive command
        """
        self.binary = binary
        self.build_context = str(build_context)
        self.timeout = timeout

    def ensure_available(self) -> None:
        """Verify the fly CLI is installed.

        Raises:
            MissingToolError: If the binary is not in PATH
        """
        if shutil.which(self.binary) is None:
            logger.error(f"{self.binary} binary not found in PATH")
            raise MissingToolError(
                f"I require {self.binary} but it's not installed. Aborting.",
                "Install flyctl from https://fly.io/docs/flyctl/install/\n"
                f"Or ensure the '{self.binary}' command is in your PATH",
            )

    def _run(self, args: list[str], app: str | None = None) -> str:
        """Run a fly command and return its stdout.

        Raises:
            ProviderError: If the command fails or times out
            MissingToolError: If the binary is missing
        """
        cmd = [self.binary]
        if app:
            cmd += ["-a", app]
        cmd += args
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"fly command timed out after {self.timeout} seconds: {args}")
            raise ProviderError(
                "fly command timed out",
                f"'{' '.join(cmd)}' did not finish within {self.timeout} seconds",
            )
        except subprocess.CalledProcessError as e:
            logger.error(f"fly command failed with return code {e.returncode}: {e.stderr}")
            raise ProviderError(
                "fly command failed",
                f"Command: {' '.join(cmd)}\nOutput: {e.stderr}\n\n"
                "Check that you are logged in (run: fly auth login)",
            )
        except FileNotFoundError:
            logger.error(f"{self.binary} binary not found in PATH")
            raise MissingToolError(f"I require {self.binary} but it's not installed. Aborting.")

        return result.stdout

    def _run_json(self, args: list[str], app: str | None = None):
        output = self._run(args, app=app)
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse fly JSON output: {e}")
            raise ProviderError(
                "Failed to parse fly output",
                f"Expected JSON from 'fly {' '.join(args)}', got: {output[:200]}",
            )

    def list_apps(self, org: str) -> list[str]:
        apps = self._run_json(["apps", "list", "-o", org, "-j"])
        return [a["ID"] for a in apps or [] if "ID" in a]

    def create_app(self, name: str, org: str) -> None:
        self._run(["apps", "create", name, "-o", org])

    def list_machines(self, app: str) -> list[Machine]:
        machines = self._run_json(["machine", "list", "-j"], app=app)
        return [Machine.from_platform(m) for m in machines or []]

    def create_volume(
        self, app: str, name: str, region: str, size_gb: int, require_unique_zone: bool = True
    ) -> dict:
        args = ["volumes", "create", name, "--region", region, "--size", str(size_gb)]
        if require_unique_zone:
            args.append("--require-unique-zone")
        args += ["--yes", "-j"]
        return self._run_json(args, app=app)

    def update_volume(self, app: str, volume_id: str, scheduled_snapshots: bool) -> None:
        flag = "true" if scheduled_snapshots else "false"
        self._run(["volume", "update", volume_id, f"--scheduled-snapshots={flag}"], app=app)

    def destroy_volume(self, app: str, volume_id: str) -> None:
        self._run(["volumes", "destroy", volume_id, "--yes"], app=app)

    def run_machine(self, app: str, spec: MachineSpec) -> None:
        args = [
            "machine",
            "run",
            self.build_context,
            "--name",
            spec.name,
            "--vm-size",
            spec.vm_size,
            "--vm-memory",
            spec.vm_memory,
            "--region",
            spec.region,
        ]
        for key, value in spec.env.items():
            args += ["--env", f"{key}={value}"]
        args += ["--volume", f"{spec.volume_id}:{spec.mount_path}"]
        self._run(args, app=app)

    def exec_on_machine(self, app: str, machine_id: str, command: str) -> str:
        return self._run(["machine", "exec", machine_id, command], app=app).strip()

    def ssh_console(self, app: str) -> int:
        """Open an interactive console; stdio is inherited."""
        try:
            return subprocess.run([self.binary, "-a", app, "ssh", "console", "--select"]).returncode
        except FileNotFoundError:
            raise MissingToolError(f"I require {self.binary} but it's not installed. Aborting.")
