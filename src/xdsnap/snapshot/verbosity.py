"""Envoy log level changes, scoped to a capture cycle as a lease."""

from __future__ import annotations

import contextlib
import logging
from typing import Iterator

from xdsnap.cluster.models import CaptureTarget
from xdsnap.collection.ephemeral import EphemeralResourceController
from xdsnap.errors import ResourceLifecycleError, TransientRemoteError

logger = logging.getLogger(__name__)

RESET_LEVEL = "info"


class VerbosityControl:
    """Sets the sidecar log level through its admin ``/logging`` endpoint."""

    def __init__(self, controller: EphemeralResourceController, admin_port: int = 19000, timeout: float = 30.0) -> None:
        self._controller = controller
        self.admin_port = admin_port
        self.timeout = timeout

    def set_level(self, target: CaptureTarget, level: str) -> bool:
        """Best effort; returns False and logs on failure."""
        url = f"http://127.0.0.1:{self.admin_port}/logging?level={level}"
        try:
            self._controller.run_to_completion(
                target, ["curl", "-s", "-f", "-X", "POST", url], privileged=False, timeout=self.timeout
            )
        except (ResourceLifecycleError, TransientRemoteError) as e:
            logger.warning("Failed to set Envoy log level to '%s' on pod %s: %s", level, target.pod_name, e)
            return False
        logger.info("Envoy log level on pod %s is now '%s'", target.pod_name, level)
        return True

    @contextlib.contextmanager
    def lease(self, target: CaptureTarget, level: str | None, reset: bool) -> Iterator[None]:
        """Raise to ``level`` on entry; reset on every exit path when ``reset`` is set."""
        if level:
            logger.info("Setting Envoy log level to '%s' on pod %s", level, target.pod_name)
            self.set_level(target, level)
        try:
            yield
        finally:
            if reset:
                self.reset(target)

    def reset(self, target: CaptureTarget) -> bool:
        logger.info("Resetting Envoy log level back to '%s' on pod %s", RESET_LEVEL, target.pod_name)
        return self.set_level(target, RESET_LEVEL)
