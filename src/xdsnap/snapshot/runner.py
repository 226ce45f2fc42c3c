"""Runner: resolve targets, drive capture cycles (repeat or duration), summarize."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Protocol

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel

from xdsnap.cluster.gateway import ClusterGateway
from xdsnap.cluster.models import CaptureTarget
from xdsnap.collection.endpoints import EndpointFetcher, ExecFallbackStrategy, TunnelStrategy
from xdsnap.collection.ephemeral import EphemeralResourceController
from xdsnap.collection.logs import LogCollector
from xdsnap.config import CaptureConfig, Settings
from xdsnap.errors import ClusterApiError, XdsnapError
from xdsnap.snapshot.models import RunResult, SnapshotBundle
from xdsnap.snapshot.orchestrator import SnapshotOrchestrator
from xdsnap.snapshot.report import (
    REPORT_HEADER,
    REPORT_NO_SNAPSHOT,
    REPORT_SECTION_BUNDLES,
    REPORT_SECTION_FAILURES,
    REPORT_SECTION_RUN,
    REPORT_SECTION_SKIPPED,
)
from xdsnap.snapshot.verbosity import VerbosityControl

logger = logging.getLogger(__name__)

# Envoy sidecar container names, in order of preference
SIDECAR_CONTAINERS = ("consul-dataplane", "envoy-sidecar")
CONNECT_INJECT_ANNOTATION = "consul.hashicorp.com/connect-inject"


class PodDirectory(Protocol):
    def list_containers(self, pod_name: str, namespace: str) -> list[str]: ...

    def list_annotated_pods(self, namespace: str, annotation: str, value: str = "true") -> list[str]: ...


class Capturer(Protocol):
    def capture(
        self, target: CaptureTarget, config: CaptureConfig, final: bool = True, output_dir: Path | None = None
    ) -> SnapshotBundle: ...


class LevelResetter(Protocol):
    def reset(self, target: CaptureTarget) -> bool: ...


def discover_pods(directory: PodDirectory, namespace: str, pod: str | None = None) -> list[str]:
    """The named pod, or every connect-injected pod in the namespace."""
    if pod:
        return [pod]
    pods = directory.list_annotated_pods(namespace, CONNECT_INJECT_ANNOTATION, "true")
    if not pods:
        logger.warning("No pods found with the annotation %s=true in %s", CONNECT_INJECT_ANNOTATION, namespace)
    return pods


def resolve_target(directory: PodDirectory, pod: str, container: str | None, namespace: str) -> CaptureTarget | None:
    """Build the capture target, or None when the pod runs no known Envoy sidecar."""
    containers = directory.list_containers(pod, namespace)
    sidecar = next((c for c in SIDECAR_CONTAINERS if c in containers), None)
    if sidecar is None:
        return None
    return CaptureTarget(
        pod_name=pod,
        primary_container=container or "",
        extra_containers=(sidecar,),
        namespace=namespace,
    )


class CaptureRunner:
    """Outer loop over cycles and targets."""

    def __init__(
        self,
        directory: PodDirectory,
        orchestrator: Capturer,
        verbosity: LevelResetter,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._directory = directory
        self._orchestrator = orchestrator
        self._verbosity = verbosity
        self._clock = clock
        self._sleep = sleep
        self._now = now

    def run(self, pods: list[str], container: str | None, namespace: str, config: CaptureConfig) -> RunResult:
        """Drive cycles until the repeat count or the duration bound is reached.

        In repeat mode the last cycle is designated final and resets the log
        level itself. A duration-bounded run only learns which cycle was its
        natural end once that cycle is done, so targets raised in non-final
        cycles are reset when the loop exits, on every exit path.
        """
        result = RunResult()
        if config.repeat_mode:
            logger.info(
                "Starting snapshot capture with sleep=%ss repeat=%d verbosity=%s tcpdump=%s outputDir=%s",
                config.interval, config.repeat_count, config.verbosity.value, config.tcpdump_enabled, config.output_dir,
            )
        else:
            logger.info(
                "Starting snapshot capture with sleep=%ss duration=%ss verbosity=%s tcpdump=%s outputDir=%s",
                config.interval, config.duration, config.verbosity.value, config.tcpdump_enabled, config.output_dir,
            )

        unreset: dict[str, CaptureTarget] = {}
        started: float | None = None
        try:
            while True:
                if config.repeat_mode and result.cycles >= config.repeat_count:
                    logger.info("Repeat count reached, stopping capture")
                    break
                if not config.repeat_mode and started is not None and self._clock() - started >= config.duration:
                    logger.info("Duration ended, stopping capture")
                    break
                if started is None:
                    started = self._clock()

                final = config.repeat_mode and result.cycles == config.repeat_count - 1
                self._run_cycle(pods, container, namespace, config, final, result, unreset)
                result.cycles += 1

                if config.repeat_mode:
                    if result.cycles < config.repeat_count:
                        logger.info("Sleeping %ss before next snapshot", config.interval)
                        self._sleep(config.interval)
                elif self._clock() - started >= config.duration:
                    logger.info("Duration ended, stopping capture")
                    break
                else:
                    logger.info("Sleeping %ss before next snapshot", config.interval)
                    self._sleep(config.interval)
        finally:
            for target in unreset.values():
                self._verbosity.reset(target)
        return result

    def _run_cycle(
        self,
        pods: list[str],
        container: str | None,
        namespace: str,
        config: CaptureConfig,
        final: bool,
        result: RunResult,
        unreset: dict[str, CaptureTarget],
    ) -> None:
        cycle_dir = config.output_dir / f"snapshot_{self._now():%Y%m%d_%H%M%S}"
        try:
            cycle_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Failed to create snapshot directory %s: %s", cycle_dir, e)
            result.failures.extend((pod, f"snapshot directory unavailable: {e}") for pod in pods)
            return

        for pod in pods:
            try:
                target = resolve_target(self._directory, pod, container, namespace)
            except ClusterApiError as e:
                logger.error("Failed to list containers for pod %s: %s", pod, e)
                result.failures.append((pod, str(e)))
                continue
            if target is None:
                logger.warning("No known Envoy sidecar found in pod %s", pod)
                result.skipped.append((pod, "no Envoy sidecar"))
                continue

            try:
                bundle = self._orchestrator.capture(target, config, final=final, output_dir=cycle_dir)
            except XdsnapError as e:
                logger.error("Error capturing snapshot for pod %s: %s", pod, e)
                result.failures.append((pod, str(e)))
            else:
                result.bundles.append(bundle)
            finally:
                if final or config.skip_log_reset:
                    unreset.pop(pod, None)
                else:
                    unreset[pod] = target


def build_runner(gateway: ClusterGateway, settings: Settings, log_grace: float | None = None) -> CaptureRunner:
    """Wire the capture engine against a live cluster gateway."""
    controller = EphemeralResourceController(gateway, image=settings.debug_image, poll_interval=settings.poll_interval)
    fetcher = EndpointFetcher(
        [
            TunnelStrategy(
                gateway,
                max_attempts=settings.endpoint_attempts,
                retry_delay=settings.endpoint_retry_delay,
                http_timeout=settings.http_timeout,
            ),
            ExecFallbackStrategy(controller, timeout=settings.exec_fallback_timeout),
        ]
    )
    verbosity = VerbosityControl(controller, admin_port=settings.admin_port, timeout=settings.verbosity_timeout)
    orchestrator = SnapshotOrchestrator(
        controller,
        LogCollector(gateway, grace=settings.log_grace if log_grace is None else log_grace),
        fetcher,
        verbosity,
        admin_port=settings.admin_port,
    )
    return CaptureRunner(gateway, orchestrator, verbosity)


def print_result(result: RunResult, config: CaptureConfig, console: Console | None = None) -> None:
    """Print the run summary using Rich."""
    c = console or Console()
    mode = f"repeat={config.repeat_count}" if config.repeat_mode else f"duration={config.duration:g}s"
    parts = [REPORT_HEADER, REPORT_SECTION_RUN.format(cycles=result.cycles, mode=mode, output_dir=config.output_dir)]
    if result.bundles:
        bundles = "\n".join(
            f"- **{b.target.pod_name}**: `{b.archive_path}` ({len(b.files)} files)" for b in result.bundles
        )
        parts.append(REPORT_SECTION_BUNDLES.format(bundles=bundles))
    else:
        parts.append(REPORT_NO_SNAPSHOT)
    if result.failures:
        parts.append(REPORT_SECTION_FAILURES.format(failures="\n".join(f"- **{p}**: {m}" for p, m in result.failures)))
    if result.skipped:
        parts.append(REPORT_SECTION_SKIPPED.format(skipped="\n".join(f"- **{p}**: {m}" for p, m in result.skipped)))
    c.print(Panel(Markdown("\n".join(parts)), title="xdsnap", border_style="blue"))
