"""Domain errors for SQLHA Deployer."""


class DeployerError(RuntimeError):
    """Raised when a deployment stage cannot continue safely."""
