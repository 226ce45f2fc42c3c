"""CLI entrypoint for xdsnap."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from kubernetes.config import ConfigException
from rich.console import Console
from rich.logging import RichHandler

from xdsnap import __version__
from xdsnap.cluster.gateway import ClusterGateway
from xdsnap.config import (
    MIN_INTERVAL_SECONDS,
    Verbosity,
    build_capture_config,
    get_settings,
    validate_primary_container,
)
from xdsnap.errors import ClusterApiError, ConfigValidationError
from xdsnap.snapshot import build_runner, discover_pods, print_result

PLUGIN_NAMESPACE_ENV = "KUBECTL_PLUGINS_CURRENT_NAMESPACE"


def _split_endpoints(values: list[str] | None) -> list[str]:
    endpoints: list[str] = []
    for value in values or []:
        endpoints.extend(part.strip() for part in value.split(",") if part.strip())
    return endpoints


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="xdsnap",
        description="xdsnap captures Envoy state snapshots across Kubernetes pods for troubleshooting.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    capture = sub.add_parser(
        "capture",
        help="Capture Envoy snapshots from a Consul service mesh",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    capture.add_argument(
        "--pod",
        default=None,
        help="Pod name (default: all pods annotated consul.hashicorp.com/connect-inject=true)",
    )
    capture.add_argument("--container", default=None, help="Name of the application container")
    capture.add_argument(
        "--namespace",
        "-n",
        default=None,
        help=f"Target namespace (default: ${PLUGIN_NAMESPACE_ENV}, then settings)",
    )
    capture.add_argument(
        "--endpoints",
        action="append",
        default=None,
        help="Envoy admin endpoints to capture, comma-separated or repeated (default: stats, config_dump, listeners, clusters, certs)",
    )
    capture.add_argument("--output-dir", type=Path, default=Path.cwd(), help="Directory to save snapshots")
    capture.add_argument(
        "--sleep",
        type=float,
        default=MIN_INTERVAL_SECONDS,
        help="Sleep duration between captures in seconds (minimum 5)",
    )
    capture.add_argument("--duration", type=float, default=60.0, help="Capture duration in seconds")
    capture.add_argument(
        "--repeat",
        type=int,
        default=0,
        help="Number of snapshot repetitions (takes precedence over duration)",
    )
    capture.add_argument("--enable-trace", action="store_true", help="Enable Envoy trace log level")
    capture.add_argument("--tcpdump", action="store_true", help="Enable tcpdump packet capture")
    capture.add_argument(
        "--skip-log-reset",
        action="store_true",
        help="Leave the raised Envoy log level in place after the run",
    )
    capture.add_argument(
        "--kubeconfig",
        type=Path,
        default=None,
        help="Path to kubeconfig (default: KUBECONFIG env or ~/.kube/config)",
    )
    capture.add_argument("--context", default=None, help="Kubernetes context to use")
    capture.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Entrypoint for xdsnap CLI."""
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )
    logger = logging.getLogger("xdsnap")
    if not args.verbose:
        # kubernetes/urllib3 chatter stays at WARNING
        logging.getLogger().setLevel(logging.WARNING)
        logger.setLevel(logging.INFO)

    try:
        settings = get_settings()
        validate_primary_container(args.container)
        capture_config = build_capture_config(
            endpoints=_split_endpoints(args.endpoints),
            duration=args.duration,
            verbosity=Verbosity.TRACE if args.enable_trace else Verbosity.DEBUG,
            tcpdump_enabled=args.tcpdump,
            repeat_count=args.repeat,
            interval=args.sleep,
            skip_log_reset=args.skip_log_reset,
            output_dir=args.output_dir,
        )
    except ConfigValidationError as e:
        logger.error("Invalid configuration: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 2

    namespace = args.namespace or os.environ.get(PLUGIN_NAMESPACE_ENV) or settings.namespace
    kubeconfig = args.kubeconfig or settings.kubeconfig
    try:
        gateway = ClusterGateway(
            kubeconfig=str(kubeconfig) if kubeconfig else None,
            context=args.context or settings.context,
            tunnel_ready_timeout=settings.tunnel_ready_timeout,
        )
    except (ConfigException, OSError) as e:
        logger.error("Error creating Kubernetes client: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 2

    try:
        pods = discover_pods(gateway, namespace, args.pod)
        if not pods:
            return 1
        runner = build_runner(gateway, settings)
        result = runner.run(pods, args.container, namespace, capture_config)
    except ClusterApiError as e:
        logger.error("Cluster access failed: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except Exception as e:
        logging.exception("Capture failed")
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        gateway.close()

    print_result(result, capture_config, Console())
    return 0 if result.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
