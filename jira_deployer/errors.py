"""
Error kinds raised while provisioning a cluster.

The orchestrator re-raises stage failures as ``Cluster*`` variants which are
both an :class:`OrchestrationError` (carrying the partial resource handle) and
the original kind, so callers can keep catching ``HealthGateTimeout`` or
``ConfigurationError`` directly.
"""

from datetime import timedelta
from typing import Any, Optional


class DeployerError(Exception):
    """Base class for all deployer errors"""


class ConfigurationError(DeployerError):
    """Invalid input or cluster shape. Never retried."""


class TransientRemoteError(DeployerError):
    """A remote operation failed in a way that may succeed on retry"""


class ProvisioningError(DeployerError):
    """A provisioning stage failed"""

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        elapsed: Optional[timedelta] = None,
    ):
        super().__init__(message)
        self.stage = stage
        self.elapsed = elapsed

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage is None:
            return message
        if self.elapsed is None:
            return f"[{self.stage}] {message}"
        return f"[{self.stage} after {self.elapsed.total_seconds():.1f}s] {message}"


class HealthGateTimeout(DeployerError):
    """The cluster was built but the load balancer never reported it healthy"""

    def __init__(self, message: str, timeout: Optional[timedelta] = None):
        super().__init__(message)
        self.timeout = timeout


class OrchestrationError(DeployerError):
    """
    Raised by the orchestrator when a cluster could not be brought up.

    Attributes:
        cause: the first fatal error
        stage: name of the stage that failed
        elapsed: time since the orchestration started
        state: orchestration state at the time of failure
        resource: everything created so far; the caller must release it
    """

    def __init__(
        self,
        cause: BaseException,
        stage: str,
        elapsed: timedelta,
        state: Any,
        resource: Any,
    ):
        Exception.__init__(self, str(cause))
        self.cause = cause
        self.stage = stage
        self.elapsed = elapsed
        self.state = state
        self.resource = resource
        self.timeout = getattr(cause, "timeout", None)

    def __str__(self) -> str:
        return f"[{self.stage} after {self.elapsed.total_seconds():.1f}s, {self.state}] {self.cause}"

    @classmethod
    def wrap(
        cls,
        cause: BaseException,
        stage: str,
        elapsed: timedelta,
        state: Any,
        resource: Any,
    ) -> "OrchestrationError":
        if isinstance(cause, HealthGateTimeout):
            kind = ClusterHealthGateTimeout
        elif isinstance(cause, ConfigurationError):
            kind = ClusterConfigurationError
        else:
            kind = ClusterProvisioningError
        return kind(cause, stage, elapsed, state, resource)


class ClusterConfigurationError(OrchestrationError, ConfigurationError):
    pass


class ClusterProvisioningError(OrchestrationError, ProvisioningError):
    pass


class ClusterHealthGateTimeout(OrchestrationError, HealthGateTimeout):
    pass
