"""Configuration and environment for xdsnap."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from xdsnap.errors import ConfigValidationError

DEFAULT_ENDPOINTS = ["/stats", "/config_dump", "/listeners", "/clusters", "/certs"]

# The dataplane container is the sidecar itself and never a valid primary container
DISALLOWED_PRIMARY_CONTAINERS = frozenset({"consul-dataplane"})

MIN_INTERVAL_SECONDS = 5.0


class Settings(BaseSettings):
    """Cluster access and tuning knobs loaded from environment and .env."""

    model_config = SettingsConfigDict(
        env_prefix="XDSNAP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Kubernetes
    kubeconfig: Path | None = Field(
        default=None,
        description="Path to kubeconfig; uses KUBECONFIG env or default location if unset",
    )
    context: str | None = Field(default=None, description="Kubernetes context to use")
    namespace: str = Field(default="default", description="Namespace to capture from")

    # Envoy admin
    admin_port: int = Field(default=19000, ge=1, le=65535, description="Envoy admin listener port")
    debug_image: str = Field(
        default="campvin/netshoot-docker:latest",
        description="Image used for ephemeral diagnostic containers (needs sh, curl, tcpdump, base64)",
    )

    # Remote operation bounds
    tunnel_ready_timeout: float = Field(default=12.0, gt=0, description="Seconds to wait for a port-forward")
    http_timeout: float = Field(default=10.0, gt=0, description="Socket timeout for admin GETs through a tunnel")
    endpoint_attempts: int = Field(default=5, ge=1, le=20, description="Tunnel attempts per admin endpoint")
    endpoint_retry_delay: float = Field(default=2.0, ge=0, description="Seconds between tunnel attempts")
    exec_fallback_timeout: float = Field(default=15.0, gt=0, description="Deadline for the ephemeral curl fallback")
    verbosity_timeout: float = Field(default=30.0, gt=0, description="Deadline for log level changes")
    log_grace: float = Field(default=10.0, ge=0, description="Extra seconds granted to each log stream")
    poll_interval: float = Field(default=0.4, gt=0, le=5, description="Ephemeral container poll interval")


def get_settings() -> Settings:
    """Return validated settings instance."""
    return Settings()


class Verbosity(str, Enum):
    """Envoy log level requested for the duration of a capture cycle."""

    NORMAL = "normal"
    DEBUG = "debug"
    TRACE = "trace"

    @property
    def envoy_level(self) -> str | None:
        """Admin ``/logging`` level, or None when no raise is needed."""
        if self is Verbosity.NORMAL:
            return None
        return self.value


class CaptureConfig(BaseModel):
    """Options for a capture run, validated before any remote call."""

    model_config = ConfigDict(frozen=True)

    endpoints: list[str] = Field(default_factory=lambda: list(DEFAULT_ENDPOINTS))
    duration: float = Field(default=60.0, ge=0, description="Seconds of logs/tcpdump per cycle; run bound without repeat")
    verbosity: Verbosity = Verbosity.DEBUG
    tcpdump_enabled: bool = False
    repeat_count: int = Field(default=0, ge=0, description="Fixed number of cycles; takes precedence over duration")
    interval: float = Field(default=MIN_INTERVAL_SECONDS, ge=MIN_INTERVAL_SECONDS, description="Seconds between cycles")
    skip_log_reset: bool = False
    output_dir: Path = Field(default_factory=Path.cwd)

    @model_validator(mode="after")
    def _check_stop_condition(self) -> CaptureConfig:
        if self.repeat_count == 0 and self.duration <= 0:
            raise ValueError("duration must be greater than 0 when repeat is not set")
        return self

    @model_validator(mode="before")
    @classmethod
    def _normalize_endpoints(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("endpoints"):
            cleaned = []
            for ep in data["endpoints"]:
                ep = str(ep).strip()
                if not ep:
                    continue
                cleaned.append(ep if ep.startswith("/") else f"/{ep}")
            data = {**data, "endpoints": cleaned or list(DEFAULT_ENDPOINTS)}
        elif isinstance(data, dict) and "endpoints" in data:
            data = {**data, "endpoints": list(DEFAULT_ENDPOINTS)}
        return data

    @property
    def repeat_mode(self) -> bool:
        return self.repeat_count > 0


def build_capture_config(**options: Any) -> CaptureConfig:
    """Validate capture options, translating pydantic errors to ConfigValidationError."""
    try:
        return CaptureConfig(**options)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in e.errors()
        )
        raise ConfigValidationError(problems) from e


def validate_primary_container(name: str | None) -> None:
    """Reject sidecar names passed as the application container."""
    if name and name in DISALLOWED_PRIMARY_CONTAINERS:
        raise ConfigValidationError(
            f"'{name}' cannot be used as the container value; specify the application container instead"
        )
