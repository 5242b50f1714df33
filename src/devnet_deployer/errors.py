"""Error taxonomy for deployment runs.

Every fatal error carries the unit and stage it happened in, so the CLI can
report "op-batcher failed during workload_nodes" without guessing.
"""


class DeployError(Exception):
    """Base class for all deployer errors."""

    def __init__(self, message: str, unit: str | None = None, stage: str | None = None):
        super().__init__(message)
        self.message = message
        self.unit = unit
        self.stage = stage

    def tag(self, unit: str, stage: str) -> "DeployError":
        """Attach unit/stage if not already set."""
        self.unit = self.unit or unit
        self.stage = self.stage or stage
        return self

    def __str__(self) -> str:
        location = []
        if self.unit:
            location.append(f"unit={self.unit}")
        if self.stage:
            location.append(f"stage={self.stage}")
        if not location:
            return self.message
        return f"{self.message} ({', '.join(location)})"


class ConfigurationError(DeployError):
    """Invalid parameter combination. Raised before any container exists."""

    pass


class StageOrderError(ConfigurationError):
    """Raised when a chain is composed out of stage order."""

    pass


class RuntimeClientError(DeployError):
    """Container engine failure (unreachable, pull/build failed, start failed)."""

    pass


class BootstrapError(DeployError):
    """Contract/genesis generation failed."""

    pass


class HealthCheckError(DeployError):
    """Endpoint unreachable or reporting unexpected data."""

    pass


class CleanupError(DeployError):
    """Container or network already gone. Always swallowed by cleanup."""

    pass


class DeploymentCancelled(DeployError):
    """The run was interrupted."""

    pass
