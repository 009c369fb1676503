"""Exceptions raised while bootstrapping a cluster.

Every error raised by the orchestrator derives from :class:`BootstrapError`, so
callers can catch one type and still inspect the specific failure.
"""
from typing import Optional


class BootstrapError(Exception):
    """Base class for all bootstrap errors."""
    pass


class InvalidVersion(BootstrapError):
    """Raised when a distro rejects a version string."""

    def __init__(self, version: str, distro: str):
        self.version = version
        self.distro = distro
        super().__init__(f"Invalid {distro} version: {version!r}")


class UnsupportedCNI(BootstrapError):
    """Raised when a distro does not recognise a CNI plugin name."""

    def __init__(self, name: str, distro: str):
        self.name = name
        self.distro = distro
        super().__init__(f"Unsupported CNI plugin for {distro}: {name!r}")


class CertGenFailure(BootstrapError):
    """Raised when CA or peer certificate generation fails."""
    pass


class TokenGenFailure(BootstrapError):
    """Raised when a bootstrap token or certificate key cannot be generated."""
    pass


class ScriptExecFailure(BootstrapError):
    """Raised when a remote script step fails for good.

    Args:
        step: Name of the script that failed
        attempts: Number of attempts made before giving up
        host: Address the script ran against
        reason: Last error reported by the executor
        index: Node index within its role, filled in by the orchestrator
        role: 'controlplane' or 'workerplane', filled in by the orchestrator
    """

    def __init__(
        self,
        step: str,
        attempts: int,
        host: str,
        reason: str = "",
        index: Optional[int] = None,
        role: Optional[str] = None,
    ):
        self.step = step
        self.attempts = attempts
        self.host = host
        self.reason = reason
        self.index = index
        self.role = role
        super().__init__(self._message())

    def _message(self) -> str:
        where = self.host
        if self.role is not None and self.index is not None:
            where = f"{self.role}-[{self.index}] ({self.host})"
        msg = f"Script '{self.step}' failed on {where} after {self.attempts} attempt(s)"
        if self.reason:
            msg += f": {self.reason}"
        return msg

    def for_node(self, role: str, index: int) -> "ScriptExecFailure":
        """Return a copy annotated with the node the failure happened on."""
        return ScriptExecFailure(self.step, self.attempts, self.host, self.reason, index=index, role=role)


class StorageFailure(BootstrapError):
    """Raised when the state document cannot be read or written."""
    pass


class ProgressNotRecorded(StorageFailure):
    """The remote node was configured but its progress marker was not persisted.

    Re-run the same configuration step once storage is reachable again.
    """

    def __init__(self, role: str, index: int, cause: Exception):
        self.role = role
        self.index = index
        super().__init__(
            f"{role}-[{index}] was configured but its progress could not be saved: {cause}"
        )


class StateInconsistency(BootstrapError):
    """Raised when the state document contradicts itself or the request."""
    pass
