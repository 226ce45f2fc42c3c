"""Cluster layer: the Kubernetes primitives a capture is built from."""

from xdsnap.cluster.gateway import ClusterGateway, LogStream, Tunnel
from xdsnap.cluster.models import CaptureTarget, EphemeralContainerSpec, TaskState

__all__ = [
    "CaptureTarget",
    "ClusterGateway",
    "EphemeralContainerSpec",
    "LogStream",
    "TaskState",
    "Tunnel",
]
