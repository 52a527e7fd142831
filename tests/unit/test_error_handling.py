"""Tests for error handling across components."""

import logging
import subprocess
from unittest.mock import patch

import pytest

from fleet_manager.exceptions import (
    BootstrapError,
    ConfigurationError,
    FleetManagerError,
    MissingToolError,
    NodeAgentError,
    NodeNotFoundError,
    ProviderError,
    ProvisioningError,
)
from fleet_manager.logging_config import get_logger, setup_logging


def test_custom_exception_with_details():
    """Test that custom exceptions support message and details."""
    error = ProviderError("fly command failed", "Run: fly auth login")

    assert error.message == "fly command failed"
    assert error.details == "Run: fly auth login"
    assert "fly command failed" in str(error)
    assert "Run: fly auth login" in str(error)


def test_custom_exception_without_details():
    """Test that custom exceptions work without details."""
    error = ConfigurationError("REGION not specified in config")

    assert error.message == "REGION not specified in config"
    assert error.details is None
    assert str(error) == "REGION not specified in config"


def test_exception_hierarchy():
    """Test that all custom exceptions inherit from FleetManagerError."""
    for exc in (
        ConfigurationError,
        MissingToolError,
        ProviderError,
        ProvisioningError,
        NodeNotFoundError,
        BootstrapError,
        NodeAgentError,
    ):
        assert issubclass(exc, FleetManagerError)


def test_logging_setup():
    """Test that logging can be configured."""
    setup_logging(level="INFO", verbose=False)

    logger = get_logger("test")
    assert logger is not None
    assert logger.name == "test"


def test_logging_with_verbose():
    """Test that verbose mode sets DEBUG level."""
    setup_logging(verbose=True)

    assert logging.getLogger().level == logging.DEBUG
    get_logger("test").debug("This is a debug message")


def test_logging_setup_only_configures_root():
    """Test that setup leaves library loggers inheriting the root level."""
    setup_logging(verbose=True)

    root = logging.getLogger()
    assert any(type(h) is logging.StreamHandler for h in root.handlers)
    for name in ("markdown_it", "urllib3", "fleet_manager"):
        assert logging.getLogger(name).level == logging.NOTSET
        assert logging.getLogger(name).getEffectiveLevel() == logging.DEBUG


def test_logging_to_file(tmp_path):
    """Test that a log file receives debug output."""
    log_file = tmp_path / "logs" / "fleet.log"
    setup_logging(log_file=log_file, verbose=True)

    get_logger("fleet_manager.test").debug("written to file")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "written to file" in log_file.read_text()


def test_missing_config_error_names_path(tmp_path):
    """Test that a missing config file error names the expected path."""
    from fleet_manager.config import ConfigStore

    cluster_dir = tmp_path / "mycluster"
    cluster_dir.mkdir()

    with pytest.raises(ConfigurationError) as exc_info:
        ConfigStore(cluster_dir).load()

    assert str(cluster_dir / "config") in exc_info.value.message


def test_provider_error_context():
    """Test that fly failures carry the command and a login hint."""
    from fleet_manager.provider import FlyctlProvider

    provider = FlyctlProvider()
    with patch("subprocess.run") as mock_run:
        mock_run.side_effect = subprocess.CalledProcessError(
            1, ["fly"], stderr="Error: not logged in"
        )

        with pytest.raises(ProviderError) as exc_info:
            provider.list_machines("fly-k3s-test-cp")

    assert "not logged in" in exc_info.value.details
    assert "fly auth login" in exc_info.value.details
    assert "machine list" in exc_info.value.details


def test_agent_error_from_environment():
    """Test that an invalid machine environment produces a NodeAgentError."""
    from fleet_manager.agent.environment import AgentEnvironment

    with pytest.raises(NodeAgentError) as exc_info:
        AgentEnvironment.from_environ({"ROLE": "server"})

    assert exc_info.value.message == "Invalid machine environment"
    assert exc_info.value.details
