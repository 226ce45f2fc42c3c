"""Snapshot layer: capture cycles, archiving and the outer run loop."""

from xdsnap.snapshot.archive import build_archive
from xdsnap.snapshot.models import RunResult, SnapshotBundle
from xdsnap.snapshot.orchestrator import SnapshotOrchestrator
from xdsnap.snapshot.runner import CaptureRunner, build_runner, discover_pods, print_result, resolve_target
from xdsnap.snapshot.verbosity import VerbosityControl

__all__ = [
    "CaptureRunner",
    "RunResult",
    "SnapshotBundle",
    "SnapshotOrchestrator",
    "VerbosityControl",
    "build_archive",
    "build_runner",
    "discover_pods",
    "print_result",
    "resolve_target",
]
