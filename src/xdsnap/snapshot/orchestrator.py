"""One capture cycle: verbosity raise -> logs || tcpdump -> endpoints -> join -> archive -> reset."""

from __future__ import annotations

import logging
import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from xdsnap.cluster.models import CaptureTarget
from xdsnap.collection.channels import ArtifactChannel, Base64LogChannel
from xdsnap.collection.endpoints import EndpointFetcher
from xdsnap.collection.ephemeral import EphemeralResourceController
from xdsnap.collection.logs import LogCollector
from xdsnap.collection.models import LogArtifact
from xdsnap.config import CaptureConfig
from xdsnap.errors import (
    ArchiveError,
    CaptureError,
    ResourceLifecycleError,
    TransferDecodeError,
    TransientRemoteError,
)
from xdsnap.snapshot.archive import build_archive
from xdsnap.snapshot.models import SnapshotBundle
from xdsnap.snapshot.verbosity import VerbosityControl

logger = logging.getLogger(__name__)

PCAP_FILE_NAME = "xdsnap.pcap"
# Seconds the capture task may outlive the tcpdump run before it is abandoned
TCPDUMP_GRACE = 30.0


class SnapshotOrchestrator:
    """Composes the collectors into one consistent snapshot per target."""

    def __init__(
        self,
        controller: EphemeralResourceController,
        log_collector: LogCollector,
        endpoint_fetcher: EndpointFetcher,
        verbosity: VerbosityControl,
        admin_port: int = 19000,
        capture_channel: ArtifactChannel | None = None,
    ) -> None:
        self._controller = controller
        self._logs = log_collector
        self._endpoints = endpoint_fetcher
        self._verbosity = verbosity
        self.admin_port = admin_port
        self._capture_channel = capture_channel or Base64LogChannel()

    def capture(
        self,
        target: CaptureTarget,
        config: CaptureConfig,
        final: bool = True,
        output_dir: Path | None = None,
    ) -> SnapshotBundle:
        """Run one cycle and return the archived bundle.

        The log level is reset after archiving only when ``final`` is set and
        resets are not suppressed. Raises ArchiveError if the bundle cannot be
        written; every other collection failure is logged and skipped.
        """
        logger.info(
            "Capturing snapshot -> pod: %s | container: %s | verbosity: %s | tcpdump: %s | extra logs: %s | final: %s",
            target.pod_name,
            target.primary_container,
            config.verbosity.value,
            config.tcpdump_enabled,
            list(target.extra_containers),
            final,
        )
        archive_path = (output_dir or config.output_dir) / f"{target.pod_name}_snapshot.tar.gz"
        try:
            work_dir = Path(tempfile.mkdtemp(prefix=f"{target.pod_name}-"))
        except OSError as e:
            raise ArchiveError(f"failed to create a working directory for {target.pod_name}: {e}") from e
        try:
            reset = final and not config.skip_log_reset
            with self._verbosity.lease(target, config.verbosity.envoy_level, reset=reset):
                files = self._collect(target, config, work_dir)
                build_archive(work_dir, archive_path)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info("Snapshot for %s saved as %s", target.pod_name, archive_path)
        return SnapshotBundle(target=target, work_dir=work_dir, archive_path=archive_path, files=tuple(files))

    def _collect(self, target: CaptureTarget, config: CaptureConfig, work_dir: Path) -> list[str]:
        written: list[str] = []
        # Leaving the executor joins every fan-out worker, even if the sweep raises
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="xdsnap-cycle") as executor:
            logs_future = executor.submit(self._logs.collect_all, target, target.log_containers, config.duration)
            pcap_future = (
                executor.submit(self._capture_packets, target, config.duration) if config.tcpdump_enabled else None
            )

            for path in config.endpoints:
                try:
                    result = self._endpoints.fetch_endpoint(target, self.admin_port, path)
                except CaptureError as e:
                    logger.error("Error capturing %s for %s: %s", path, target.pod_name, e)
                    continue
                if not result.payload:
                    logger.warning("No data received from endpoint %s for pod %s", path, target.pod_name)
                    continue
                written.append(_write(work_dir, result.file_name, result.payload))
                logger.info("Captured %s for %s (%s, %d attempts)", path, target.pod_name, result.fetch_method.value, result.attempts)

            artifacts = logs_future.result()
            pcap = pcap_future.result() if pcap_future is not None else None

        written.extend(self._write_logs(work_dir, artifacts))
        if pcap:
            written.append(_write(work_dir, PCAP_FILE_NAME, pcap))
            logger.info("Saved packet capture for %s (%d bytes)", target.pod_name, len(pcap))
        return written

    def _write_logs(self, work_dir: Path, artifacts: dict[str, LogArtifact]) -> list[str]:
        written = []
        for artifact in artifacts.values():
            if artifact.failed:
                continue
            written.append(_write(work_dir, artifact.file_name, artifact.payload))
        return written

    def _capture_packets(self, target: CaptureTarget, duration: float) -> bytes | None:
        seconds = max(1, int(round(duration)))
        command = ["timeout", str(seconds), "tcpdump", "-i", "any", "-s", "0", "-U", "-w", "-"]
        logger.info("Starting tcpdump on pod %s for %ds", target.pod_name, seconds)
        try:
            data = self._controller.run_to_completion(
                target,
                command,
                privileged=True,
                timeout=seconds + TCPDUMP_GRACE,
                channel=self._capture_channel,
            )
        except (ResourceLifecycleError, TransientRemoteError, TransferDecodeError) as e:
            logger.warning("Skipping packet capture for %s: %s", target.pod_name, e)
            return None
        if not data:
            logger.warning("No tcpdump data captured for %s", target.pod_name)
            return None
        return data


def _write(work_dir: Path, name: str, payload: bytes) -> str:
    try:
        (work_dir / name).write_bytes(payload)
    except OSError as e:
        raise ArchiveError(f"failed to write {name}: {e}") from e
    return name
