"""xdsnap: point-in-time Envoy sidecar snapshots from Kubernetes pods."""

__version__ = "0.3.0"
