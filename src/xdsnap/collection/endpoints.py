"""Envoy admin endpoint retrieval through an ordered chain of fetch strategies."""

from __future__ import annotations

import logging
import time
from typing import Callable, Protocol, Sequence

from xdsnap.cluster.gateway import Tunnel
from xdsnap.cluster.models import CaptureTarget
from xdsnap.collection.ephemeral import EphemeralResourceController
from xdsnap.collection.models import EndpointResult, FetchMethod
from xdsnap.errors import CaptureError, ResourceLifecycleError, TransientRemoteError

logger = logging.getLogger(__name__)


class TunnelGateway(Protocol):
    def open_tunnel(self, target: CaptureTarget, port: int) -> Tunnel: ...


class FetchStrategy(Protocol):
    """One tier of the chain: a bounded number of attempts with a fixed delay between them."""

    method: FetchMethod
    max_attempts: int
    retry_delay: float

    def attempt(self, target: CaptureTarget, port: int, path: str) -> bytes: ...


class TunnelStrategy:
    """GET through a fresh port-forward per attempt; cheap but races pod readiness."""

    method = FetchMethod.TUNNEL

    def __init__(
        self,
        gateway: TunnelGateway,
        max_attempts: int = 5,
        retry_delay: float = 2.0,
        http_timeout: float = 10.0,
    ) -> None:
        self._gateway = gateway
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.http_timeout = http_timeout

    def attempt(self, target: CaptureTarget, port: int, path: str) -> bytes:
        with self._gateway.open_tunnel(target, port) as tunnel:
            return tunnel.get(path, timeout=self.http_timeout)


class ExecFallbackStrategy:
    """curl from an ephemeral container sharing the pod network namespace."""

    method = FetchMethod.FALLBACK_EXEC

    def __init__(
        self,
        controller: EphemeralResourceController,
        timeout: float = 15.0,
        max_attempts: int = 1,
    ) -> None:
        self._controller = controller
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delay = 0.0

    def attempt(self, target: CaptureTarget, port: int, path: str) -> bytes:
        command = ["curl", "-s", "-f", f"http://127.0.0.1:{port}{path}"]
        return self._controller.run_to_completion(target, command, privileged=False, timeout=self.timeout)


class EndpointFetcher:
    """Walks the strategy chain in order until one attempt yields a non-empty payload."""

    def __init__(
        self,
        strategies: Sequence[FetchStrategy],
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not strategies:
            raise ValueError("at least one fetch strategy is required")
        self.strategies = list(strategies)
        self._sleep = sleep

    def fetch_endpoint(self, target: CaptureTarget, port: int, path: str) -> EndpointResult:
        attempts = 0
        for strategy in self.strategies:
            for i in range(strategy.max_attempts):
                if i > 0 and strategy.retry_delay > 0:
                    self._sleep(strategy.retry_delay)
                attempts += 1
                try:
                    payload = strategy.attempt(target, port, path)
                except (TransientRemoteError, ResourceLifecycleError) as e:
                    logger.debug(
                        "%s attempt %d/%d for %s on %s failed: %s",
                        strategy.method.value, i + 1, strategy.max_attempts, path, target.pod_name, e,
                    )
                    continue
                if not payload:
                    logger.debug("%s attempt for %s on %s returned no data", strategy.method.value, path, target.pod_name)
                    continue
                if strategy.method is not FetchMethod.TUNNEL:
                    logger.info("Fetched %s from pod %s via %s", path, target.pod_name, strategy.method.value)
                return EndpointResult(path=path, payload=payload, fetch_method=strategy.method, attempts=attempts)
            logger.debug("%s exhausted for %s on %s", strategy.method.value, path, target.pod_name)
        raise CaptureError(path, attempts)
