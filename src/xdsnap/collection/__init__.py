"""Collection layer: ephemeral tasks, admin endpoints, logs and transfer channels."""

from xdsnap.collection.channels import ArtifactChannel, Base64LogChannel, RawLogChannel, decode_base64_log
from xdsnap.collection.endpoints import EndpointFetcher, ExecFallbackStrategy, TunnelStrategy
from xdsnap.collection.ephemeral import EphemeralResourceController
from xdsnap.collection.logs import LogCollector
from xdsnap.collection.models import EndpointResult, EphemeralTask, FetchMethod, LogArtifact

__all__ = [
    "ArtifactChannel",
    "Base64LogChannel",
    "EndpointFetcher",
    "EndpointResult",
    "EphemeralResourceController",
    "EphemeralTask",
    "ExecFallbackStrategy",
    "FetchMethod",
    "LogArtifact",
    "LogCollector",
    "RawLogChannel",
    "TunnelStrategy",
    "decode_base64_log",
]
