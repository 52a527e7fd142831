"""Unit tests for the fly CLI provider."""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from fleet_manager.exceptions import MissingToolError, ProviderError
from fleet_manager.provider import FlyctlProvider, MachineSpec


def completed(stdout: str = "") -> MagicMock:
    result = MagicMock()
    result.stdout = stdout
    result.returncode = 0
    return result


def test_ensure_available_missing_binary():
    """Test that a missing fly binary raises MissingToolError."""
    with patch("shutil.which", return_value=None):
        with pytest.raises(MissingToolError) as exc_info:
            FlyctlProvider().ensure_available()

    assert "fly" in exc_info.value.message
    assert "Aborting" in exc_info.value.message


def test_ensure_available_found():
    """Test that ensure_available passes when fly is installed."""
    with patch("shutil.which", return_value="/usr/local/bin/fly"):
        FlyctlProvider().ensure_available()


def test_list_apps_parses_json():
    """Test that app names are read from the JSON app list."""
    apps = [{"ID": "fly-k3s-test-cp"}, {"ID": "fly-k3s-test-ng-0"}, {"Name": "other"}]
    with patch("subprocess.run", return_value=completed(json.dumps(apps))) as mock_run:
        result = FlyctlProvider().list_apps("test-org")

    assert result == ["fly-k3s-test-cp", "fly-k3s-test-ng-0"]
    assert mock_run.call_args[0][0] == ["fly", "apps", "list", "-o", "test-org", "-j"]


def test_list_machines_parses_json():
    """Test that machines are parsed from the JSON machine list."""
    machines = [
        {"id": "148ed1", "name": "ctrl-0", "state": "started", "region": "ams"},
        {"id": "9080e4", "name": "ctrl-1", "state": "stopped", "region": "ams"},
    ]
    with patch("subprocess.run", return_value=completed(json.dumps(machines))) as mock_run:
        result = FlyctlProvider().list_machines("fly-k3s-test-cp")

    assert [m.name for m in result] == ["ctrl-0", "ctrl-1"]
    assert result[1].state == "stopped"
    assert mock_run.call_args[0][0] == ["fly", "-a", "fly-k3s-test-cp", "machine", "list", "-j"]


def test_list_machines_empty_output():
    """Test that a null JSON machine list is an empty list."""
    with patch("subprocess.run", return_value=completed("null")):
        assert FlyctlProvider().list_machines("fly-k3s-test-cp") == []


def test_invalid_json_raises_provider_error():
    """Test that non-JSON output is reported as a provider error."""
    with patch("subprocess.run", return_value=completed("Error: unauthorized")):
        with pytest.raises(ProviderError) as exc_info:
            FlyctlProvider().list_apps("test-org")

    assert exc_info.value.message == "Failed to parse fly output"
    assert "unauthorized" in exc_info.value.details


def test_command_failure_raises_provider_error():
    """Test that a failing fly command raises ProviderError."""
    with patch("subprocess.run") as mock_run:
        mock_run.side_effect = subprocess.CalledProcessError(1, ["fly"], stderr="boom")

        with pytest.raises(ProviderError, match="fly command failed"):
            FlyctlProvider().create_app("fly-k3s-test-cp", "test-org")


def test_command_timeout_raises_provider_error():
    """Test that a hung fly command raises ProviderError."""
    with patch("subprocess.run") as mock_run:
        mock_run.side_effect = subprocess.TimeoutExpired(["fly"], 5)

        with pytest.raises(ProviderError, match="timed out"):
            FlyctlProvider(timeout=5).list_machines("fly-k3s-test-cp")


def test_binary_missing_at_runtime():
    """Test that a vanished fly binary raises MissingToolError."""
    with patch("subprocess.run", side_effect=FileNotFoundError()):
        with pytest.raises(MissingToolError):
            FlyctlProvider().list_apps("test-org")


def test_create_volume_arguments():
    """Test that volumes are created with a unique zone and JSON output."""
    volume = {"id": "vol_abc", "zone": "a1b2", "region": "ams", "size_gb": 20}
    with patch("subprocess.run", return_value=completed(json.dumps(volume))) as mock_run:
        result = FlyctlProvider().create_volume("fly-k3s-test-cp", "k3s_data", "ams", 20)

    assert result["id"] == "vol_abc"
    cmd = mock_run.call_args[0][0]
    assert cmd[:5] == ["fly", "-a", "fly-k3s-test-cp", "volumes", "create"]
    assert "--require-unique-zone" in cmd
    assert cmd[-2:] == ["--yes", "-j"]
    assert cmd[cmd.index("--size") + 1] == "20"


def test_update_volume_disables_snapshots():
    """Test the scheduled snapshot flag."""
    with patch("subprocess.run", return_value=completed()) as mock_run:
        FlyctlProvider().update_volume("app", "vol_abc", scheduled_snapshots=False)

    assert mock_run.call_args[0][0][-1] == "--scheduled-snapshots=false"


def test_run_machine_arguments(tmp_path):
    """Test that machines are launched from the build context with env and volume."""
    spec = MachineSpec(
        name="ctrl-0",
        vm_size="shared-cpu-2x",
        vm_memory="2048",
        region="ams",
        env={"ROLE": "server", "BOOTSTRAP": "true"},
        volume_id="vol_abc",
    )
    with patch("subprocess.run", return_value=completed()) as mock_run:
        FlyctlProvider(build_context=tmp_path).run_machine("fly-k3s-test-cp", spec)

    cmd = mock_run.call_args[0][0]
    assert cmd[3:6] == ["machine", "run", str(tmp_path)]
    assert cmd[cmd.index("--name") + 1] == "ctrl-0"
    assert "ROLE=server" in cmd
    assert "BOOTSTRAP=true" in cmd
    assert cmd[-2:] == ["--volume", "vol_abc:/data"]


def test_exec_on_machine_strips_output():
    """Test that remote command output is stripped."""
    with patch("subprocess.run", return_value=completed("True\n")) as mock_run:
        output = FlyctlProvider().exec_on_machine("app", "148ed1", "hostname")

    assert output == "True"
    assert mock_run.call_args[0][0] == ["fly", "-a", "app", "machine", "exec", "148ed1", "hostname"]


def test_ssh_console_returns_exit_code():
    """Test that the interactive console exit code is passed through."""
    result = MagicMock(returncode=3)
    with patch("subprocess.run", return_value=result) as mock_run:
        assert FlyctlProvider().ssh_console("fly-k3s-test-ng-0") == 3

    assert mock_run.call_args[0][0][-3:] == ["ssh", "console", "--select"]
