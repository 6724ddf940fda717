"""Exception hierarchy for the deployment engine.

Lower layers raise these; only the lifecycle manager catches them and
decides on compensation (teardown, revert, rollback).
"""


class DeploymentError(Exception):
    """Raised when a deployment step fails."""
    pass


class ConfigurationError(DeploymentError):
    """Registry document missing, unreadable or invalid."""


class TopologyNotFoundError(ConfigurationError):
    pass


class StateError(DeploymentError):
    """State document could not be read or written."""


class StateVerificationError(StateError):
    """Persisted state does not match what was just written."""


class DeploymentLockedError(DeploymentError):
    """Another deployment of the same service holds the lock."""


class InfrastructureError(DeploymentError):
    """A shared dependency (database, cache) is not available."""


class CommandError(DeploymentError):
    """An external command failed or timed out."""

    def __init__(self, message: str, returncode: int = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class BuildError(DeploymentError):
    def __init__(self, message: str, failed=None):
        super().__init__(message)
        self.failed = list(failed or [])


class ContainerStartError(DeploymentError):
    pass


class HealthCheckError(DeploymentError):
    def __init__(self, message: str, rolled_back: bool = False):
        super().__init__(message)
        self.rolled_back = rolled_back


class SwitchError(DeploymentError):
    """Proxy switch failed; the live pointer is unchanged or was reverted."""


class SwitchRevertedError(SwitchError):
    def __init__(self, message: str, previous=None, target=None, reloaded: bool = True):
        super().__init__(message)
        self.previous = previous
        self.target = target
        self.reloaded = reloaded


class DeploymentAborted(DeploymentError):
    """The deployment was cancelled from outside (signal or keyboard)."""
