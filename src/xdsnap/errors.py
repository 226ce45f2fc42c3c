"""Exception hierarchy for the capture engine."""

from __future__ import annotations


class XdsnapError(Exception):
    """Base class for all xdsnap errors."""


class ConfigValidationError(XdsnapError):
    """Invalid capture options; raised before any remote call."""


class TransientRemoteError(XdsnapError):
    """A remote primitive hiccuped; may succeed on retry."""


class ExecutionError(TransientRemoteError):
    """Remote exec could not be established, timed out, or exited nonzero."""

    def __init__(self, message: str, exit_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class LogStreamError(TransientRemoteError):
    """A container log stream could not be opened or broke mid-read."""


class TunnelError(TransientRemoteError):
    """Port-forward tunnel was not ready in time or the request through it failed."""


class ClusterApiError(TransientRemoteError):
    """A plain API read (pod, container status, task output) failed."""


class ResourceLifecycleError(XdsnapError):
    """An ephemeral task failed to progress through its lifecycle."""


class DeadlineExceeded(ResourceLifecycleError):
    """An ephemeral task did not terminate before its deadline."""


class TransferDecodeError(XdsnapError):
    """Artifact bytes pulled through a retrieval channel could not be decoded."""


class CaptureError(XdsnapError):
    """Every fetch strategy for an admin endpoint was exhausted."""

    def __init__(self, endpoint: str, attempts: int) -> None:
        super().__init__(f"failed to capture {endpoint} after {attempts} attempts")
        self.endpoint = endpoint
        self.attempts = attempts


class ArchiveError(XdsnapError):
    """Bundling the cycle's working directory failed."""
