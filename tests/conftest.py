"""Shared fakes and fixtures for the xdsnap test suite."""

from __future__ import annotations

import threading
from collections import Counter
from typing import Callable

import pytest

from xdsnap.cluster.models import CaptureTarget, EphemeralContainerSpec, TaskState
from xdsnap.errors import ClusterApiError, LogStreamError


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeLogStream:
    def __init__(self, chunks: list[bytes], hold: bool = False, error: Exception | None = None) -> None:
        self._chunks = list(chunks)
        self._hold = hold
        self._error = error
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def __iter__(self):
        yield from self._chunks
        if self._error is not None:
            raise self._error
        if self._hold:
            # A live stream: nothing more until cancelled
            self._cancelled.wait(timeout=10)

    def cancel(self) -> None:
        self._cancelled.set()


class FakeTunnel:
    def __init__(self, gateway: FakeGateway) -> None:
        self._gateway = gateway

    def __enter__(self) -> FakeTunnel:
        return self

    def __exit__(self, *exc: object) -> None:
        pass

    def get(self, path: str, timeout: float) -> bytes:
        with self._gateway.lock:
            if self._gateway.tunnel_results:
                result = self._gateway.tunnel_results.pop(0)
            else:
                result = self._gateway.endpoint_payloads.get(path, b"")
        if isinstance(result, Exception):
            raise result
        return result


class FakeGateway:
    """In-memory stand-in for ClusterGateway."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        # Tunnel behaviour: queued results first, then per-path payloads
        self.tunnel_results: list[bytes | Exception] = []
        self.endpoint_payloads: dict[str, bytes] = {}
        self.tunnel_opens = 0
        # Ephemeral containers
        self.created: list[EphemeralContainerSpec] = []
        self.deleted: list[str] = []
        self.create_error: Exception | None = None
        self.state_script: Callable[[str, int], TaskState] | None = None
        self.outputs: dict[str, bytes | Exception] = {}
        self._polls: Counter[str] = Counter()
        # Logs
        self.logs: dict[str, Callable[[], FakeLogStream] | Exception] = {}
        self.log_calls: list[str] = []
        # Pods
        self.containers: dict[str, list[str]] = {}
        self.annotated: list[str] = []

    def open_tunnel(self, target: CaptureTarget, port: int) -> FakeTunnel:
        with self.lock:
            self.tunnel_opens += 1
        return FakeTunnel(self)

    def create_ephemeral_container(self, target: CaptureTarget, spec: EphemeralContainerSpec) -> str:
        with self.lock:
            self.created.append(spec)
        if self.create_error is not None:
            raise self.create_error
        return spec.name

    def poll_ephemeral_state(self, target: CaptureTarget, task_id: str) -> TaskState:
        with self.lock:
            self._polls[task_id] += 1
            count = self._polls[task_id]
        if self.state_script is not None:
            return self.state_script(task_id, count)
        return TaskState.RUNNING if count == 1 else TaskState.TERMINATED

    def fetch_ephemeral_output(self, target: CaptureTarget, task_id: str) -> bytes:
        with self.lock:
            spec = next(s for s in self.created if s.name == task_id)
        joined = " ".join(spec.command)
        for key, output in self.outputs.items():
            if key in joined:
                if isinstance(output, Exception):
                    raise output
                return output
        return b""

    def delete_ephemeral_container(self, target: CaptureTarget, task_id: str) -> None:
        with self.lock:
            self.deleted.append(task_id)

    def stream_logs(self, target: CaptureTarget, container: str, follow: bool, timeout: float) -> FakeLogStream:
        with self.lock:
            self.log_calls.append(container)
        entry = self.logs.get(container)
        if entry is None:
            raise LogStreamError(f"no logs for {target.pod_name}/{container}")
        if isinstance(entry, Exception):
            raise entry
        return entry()

    def list_containers(self, pod_name: str, namespace: str) -> list[str]:
        if pod_name not in self.containers:
            raise ClusterApiError(f"failed to get pod {pod_name}: Not Found")
        return list(self.containers[pod_name])

    def list_annotated_pods(self, namespace: str, annotation: str, value: str = "true") -> list[str]:
        return list(self.annotated)

    # Helpers for assertions

    def commands_containing(self, needle: str) -> list[EphemeralContainerSpec]:
        with self.lock:
            return [s for s in self.created if needle in " ".join(s.command)]


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def target() -> CaptureTarget:
    return CaptureTarget(
        pod_name="web-7d9f",
        primary_container="web",
        extra_containers=("consul-dataplane",),
        namespace="mesh",
    )
