"""Concurrent, deadline-bound container log collection."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Iterator, Protocol, Sequence

from xdsnap.cluster.models import CaptureTarget
from xdsnap.collection.models import LogArtifact
from xdsnap.errors import TransientRemoteError

logger = logging.getLogger(__name__)

# Extra seconds each stream may run past the capture duration
DEFAULT_GRACE = 10.0


class CancellableStream(Protocol):
    def __iter__(self) -> Iterator[bytes]: ...

    def cancel(self) -> None: ...


class LogGateway(Protocol):
    def stream_logs(self, target: CaptureTarget, container: str, follow: bool, timeout: float) -> CancellableStream: ...


class LogCollector:
    """Streams logs of several containers at once; one failure never cancels the others."""

    def __init__(self, gateway: LogGateway, grace: float = DEFAULT_GRACE) -> None:
        self._gateway = gateway
        self.grace = grace

    def collect_all(
        self,
        target: CaptureTarget,
        containers: Sequence[str] | Iterable[str],
        duration: float,
    ) -> dict[str, LogArtifact]:
        """Follow each container's log for ``duration + grace`` seconds and join them all."""
        names = list(dict.fromkeys(c for c in containers if c))
        if not names:
            return {}
        bound = max(duration, 0.0) + self.grace
        with ThreadPoolExecutor(max_workers=len(names), thread_name_prefix="xdsnap-logs") as executor:
            futures = {name: executor.submit(self._collect_one, target, name, bound) for name in names}
            return {name: future.result() for name, future in futures.items()}

    def _collect_one(self, target: CaptureTarget, container: str, bound: float) -> LogArtifact:
        logger.info("Starting log stream for container %s", container)
        try:
            stream = self._gateway.stream_logs(target, container, follow=True, timeout=bound)
        except TransientRemoteError as e:
            logger.warning("Failed to stream logs for container %s: %s", container, e)
            return LogArtifact(container=container, failed=True, error=str(e))

        timer = threading.Timer(bound, stream.cancel)
        timer.daemon = True
        timer.start()
        buf = bytearray()
        try:
            for chunk in stream:
                buf.extend(chunk)
        except TransientRemoteError as e:
            logger.warning("Failed to stream logs for container %s: %s", container, e)
            return LogArtifact(container=container, failed=True, error=str(e))
        finally:
            timer.cancel()
        logger.info("Collected %d bytes of logs from container %s", len(buf), container)
        return LogArtifact(container=container, payload=bytes(buf))
