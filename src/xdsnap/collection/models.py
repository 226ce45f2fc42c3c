"""Structured results produced by the collection layer."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from xdsnap.cluster.models import CaptureTarget, TaskState
from xdsnap.errors import ResourceLifecycleError

# Allowed lifecycle moves; Failed is reachable from any unfinished state
_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.RUNNING, TaskState.TERMINATED, TaskState.FAILED}),
    TaskState.RUNNING: frozenset({TaskState.TERMINATED, TaskState.FAILED}),
    TaskState.TERMINATED: frozenset(),
    TaskState.FAILED: frozenset(),
}


class EphemeralTask(BaseModel):
    """A transient diagnostic container, owned by the controller until deleted."""

    id: str
    target: CaptureTarget
    command: list[str]
    privileged: bool = False
    state: TaskState = TaskState.PENDING
    deadline: float = Field(..., description="time.monotonic() value after which the task is abandoned")
    deleted: bool = False

    def transition(self, new_state: TaskState) -> None:
        if new_state is self.state:
            return
        if new_state not in _TRANSITIONS[self.state]:
            raise ResourceLifecycleError(f"task {self.id}: illegal transition {self.state.value} -> {new_state.value}")
        self.state = new_state


class FetchMethod(str, Enum):
    """How an admin endpoint payload was obtained."""

    TUNNEL = "tunnel"
    FALLBACK_EXEC = "fallback_exec"


class EndpointResult(BaseModel):
    """Payload of one admin endpoint."""

    path: str
    payload: bytes
    fetch_method: FetchMethod
    attempts: int = Field(..., ge=1)

    @property
    def file_name(self) -> str:
        """``/config_dump`` -> ``config_dump.json``; nested paths and queries are flattened."""
        stem = self.path.lstrip("/")
        for ch in "/?&=":
            stem = stem.replace(ch, "_")
        return f"{stem or 'root'}.json"


class LogArtifact(BaseModel):
    """Logs of one container; ``failed`` artifacts carry no payload."""

    container: str
    payload: bytes = b""
    failed: bool = False
    error: str | None = None

    @property
    def file_name(self) -> str:
        return f"{self.container}-logs.txt"
