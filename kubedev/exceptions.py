"""
Error taxonomy for kubedev.

Every failure raised by the orchestration layer derives from KubedevError so the
CLI can report it with a single handler. Fatal vs. non-fatal is decided by the
caller: polling loops and port-forward bootstrap log and continue on the
conditions they can recover from, everything else propagates.
"""

from typing import Optional


class KubedevError(Exception):
    """Base class for all kubedev errors."""
    pass


class ConfigurationError(KubedevError):
    """Project or cluster configuration is missing or unusable."""
    pass


class TransientClusterError(KubedevError):
    """A cluster API call failed (connectivity, server error)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class PodReadyTimeoutError(KubedevError, TimeoutError):
    """A pod did not become ready within the allowed time."""
    pass


class StreamError(KubedevError):
    """An exec or port-forward transport failed."""
    pass


class CommandExitError(KubedevError):
    """A remote command finished with a non-zero exit code."""

    def __init__(self, exit_code: int, stdout: bytes = b"", stderr: bytes = b""):
        super().__init__(f"Command terminated with exit code {exit_code}")
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class BuildError(KubedevError):
    """An image build engine failed to authenticate, build or push."""
    pass


class DeployError(KubedevError):
    """The chart deployer failed to install or upgrade a release."""
    pass


class OperationCancelled(KubedevError):
    """A polling loop was interrupted through its cancel event."""
    pass
