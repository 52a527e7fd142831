"""Custom exceptions for fleet manager."""


class FleetManagerError(Exception):
    """Base exception for all fleet manager errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ConfigurationError(FleetManagerError):
    """Exception raised for missing or invalid cluster configuration."""

    pass


class MissingToolError(FleetManagerError):
    """Exception raised when a required external binary is not installed."""

    pass


class ProviderError(FleetManagerError):
    """Exception raised when the machine platform CLI fails."""

    pass


class ProvisioningError(FleetManagerError):
    """Exception raised when a volume or machine cannot be created."""

    pass


class NodeNotFoundError(FleetManagerError):
    """Exception raised when a node name cannot be resolved to a machine."""

    pass


class BootstrapError(FleetManagerError):
    """Exception raised for bootstrap node readiness and token errors."""

    pass


class NodeAgentError(FleetManagerError):
    """Exception raised by the per-machine boot sequence."""

    pass
