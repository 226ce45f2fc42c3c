"""Snapshot artifacts and run results."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from xdsnap.cluster.models import CaptureTarget


class SnapshotBundle(BaseModel):
    """The archived result of one capture cycle for one target."""

    model_config = ConfigDict(frozen=True)

    target: CaptureTarget
    work_dir: Path
    archive_path: Path
    files: tuple[str, ...] = ()


@dataclass
class RunResult:
    """Outcome of a full capture run across cycles and targets."""

    bundles: list[SnapshotBundle] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)
    cycles: int = 0

    @property
    def succeeded(self) -> bool:
        return bool(self.bundles)
