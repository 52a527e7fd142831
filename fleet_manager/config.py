"""Cluster configuration loading.

Each cluster lives in its own directory holding a ``config`` file of
``KEY=value`` lines. All required keys are validated before anything talks to
the machine platform.
"""

from pathlib import Path

from dotenv import dotenv_values
from pydantic import ValidationError

from fleet_manager.exceptions import ConfigurationError
from fleet_manager.logging_config import get_logger
from fleet_manager.models.cluster import REQUIRED_KEYS, ClusterConfig

logger = get_logger(__name__)

CONFIG_FILE_NAME = "config"


class ConfigStore:
    """Loads and validates the configuration of a named cluster."""

    def __init__(self, cluster_dir: str | Path):
        """Initialize the store.

        Args:
            cluster_dir: Directory containing the cluster ``config`` file
        """
        self.cluster_dir = Path(cluster_dir)
        self.config_path = self.cluster_dir / CONFIG_FILE_NAME

    def read(self) -> dict[str, str | None]:
        """Read the raw key/value pairs of the config file.

        Raises:
            ConfigurationError: If the directory or file does not exist
        """
        if not self.cluster_dir.is_dir():
            raise ConfigurationError(f"Cluster directory {self.cluster_dir} does not exist")

        if not self.config_path.is_file():
            raise ConfigurationError(
                f"Config {self.config_path} does not exist",
                "Each cluster directory must contain a 'config' file with KEY=value lines",
            )

        logger.info(f"Importing cluster config {self.config_path}")
        return dotenv_values(self.config_path, interpolate=False)

    def load(self) -> ClusterConfig:
        """Load and validate the cluster configuration.

        Returns:
            The validated, immutable cluster configuration

        Raises:
            ConfigurationError: On the first missing key or an invalid value
        """
        values = self.read()
        return self.validate(values)

    @staticmethod
    def validate(values: dict[str, str | None]) -> ClusterConfig:
        """Validate raw config values and build a ClusterConfig.

        Args:
            values: Raw key/value pairs

        Raises:
            ConfigurationError: On the first missing key or an invalid value
        """
        for key in REQUIRED_KEYS:
            value = values.get(key)
            if value is None or not value.strip():
                logger.error(f"{key} not specified in config")
                raise ConfigurationError(f"{key} not specified in config")

        data = {field: values[key].strip() for key, field in REQUIRED_KEYS.items()}
        try:
            return ClusterConfig(**data)
        except ValidationError as e:
            field_to_key = {field: key for key, field in REQUIRED_KEYS.items()}
            problems = []
            for error in e.errors():
                field = ".".join(str(x) for x in error["loc"])
                problems.append(f"{field_to_key.get(field, field)}: {error['msg']}")
            logger.error(f"Invalid cluster config: {problems}")
            raise ConfigurationError("Invalid cluster config", "\n".join(problems))
