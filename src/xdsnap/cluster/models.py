"""Structured models describing what the gateway talks to."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class CaptureTarget(BaseModel):
    """One workload instance; immutable for a capture cycle."""

    model_config = ConfigDict(frozen=True)

    pod_name: str
    primary_container: str = ""
    extra_containers: tuple[str, ...] = Field(default_factory=tuple)
    namespace: str = "default"

    @property
    def log_containers(self) -> list[str]:
        """Primary then extra containers, without empties or duplicates."""
        seen: list[str] = []
        for name in (self.primary_container, *self.extra_containers):
            if name and name not in seen:
                seen.append(name)
        return seen


class TaskState(str, Enum):
    """Lifecycle of an ephemeral diagnostic container."""

    PENDING = "Pending"
    RUNNING = "Running"
    TERMINATED = "Terminated"
    FAILED = "Failed"

    @property
    def finished(self) -> bool:
        return self in (TaskState.TERMINATED, TaskState.FAILED)


class EphemeralContainerSpec(BaseModel):
    """What to run inside a transient container attached to the target pod."""

    model_config = ConfigDict(frozen=True)

    name: str
    image: str
    command: list[str]
    privileged: bool = False
