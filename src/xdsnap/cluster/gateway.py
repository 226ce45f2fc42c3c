"""Thin gateway over the Kubernetes primitives a capture needs: exec, logs, ephemeral containers, port-forward."""

from __future__ import annotations

import contextlib
import http.client
import logging
import shlex
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Iterator, Sequence

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import portforward, stream
from urllib3.exceptions import HTTPError as Urllib3HTTPError
from urllib3.exceptions import ReadTimeoutError

from xdsnap.cluster.models import CaptureTarget, EphemeralContainerSpec, TaskState
from xdsnap.errors import ClusterApiError, ExecutionError, LogStreamError, TunnelError, XdsnapError

logger = logging.getLogger(__name__)

# Seconds allowed to establish any API connection
CONNECT_TIMEOUT = 10.0
# Seconds allowed for a single non-streaming API read
API_READ_TIMEOUT = 30.0
LOG_CHUNK_SIZE = 4096

# Written by every ephemeral task so it can be terminated later
TASK_PIDFILE = "/tmp/.xdsnap-task.pid"

# Waiting reasons after which an ephemeral container will never start
_FATAL_WAITING_REASONS = frozenset(
    {
        "ErrImagePull",
        "ImagePullBackOff",
        "InvalidImageName",
        "CreateContainerError",
        "CreateContainerConfigError",
        "RunContainerError",
    }
)

# What the API client raises when a call fails; urllib3 errors pass through its REST layer unwrapped
_API_ERRORS = (ApiException, Urllib3HTTPError)


def _describe(e: Exception) -> str:
    if isinstance(e, ApiException):
        return str(e.reason)
    return str(e) or type(e).__name__


def _load_kube_config(kubeconfig_path: str | None, context: str | None) -> client.Configuration:
    """Load in-cluster or kubeconfig-based configuration."""
    try:
        config.load_incluster_config()
        return client.Configuration.get_default_copy()
    except config.ConfigException:
        pass
    kwargs: dict[str, Any] = {}
    if kubeconfig_path:
        kwargs["config_file"] = str(kubeconfig_path)
    if context:
        kwargs["context"] = context
    config.load_kube_config(**kwargs)
    return client.Configuration.get_default_copy()


def wrap_task_command(command: Sequence[str]) -> list[str]:
    """Record the task's pid before exec'ing the real command."""
    return ["sh", "-c", f"echo $$ > {TASK_PIDFILE}; exec {shlex.join(command)}"]


class LogStream:
    """Iterable over a container log stream, cancellable from another thread."""

    def __init__(self, response: Any, name: str) -> None:
        self._response = response
        self._name = name
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.stream(LOG_CHUNK_SIZE, decode_content=True):
                if chunk:
                    yield chunk
        except ReadTimeoutError:
            # Read bound reached on a quiet stream; what was read so far is the result
            logger.debug("Log stream %s idle until its read bound", self._name)
        except (Urllib3HTTPError, OSError, ValueError, AttributeError) as e:
            if not self.cancelled:
                raise LogStreamError(f"log stream {self._name} broke: {e}") from e
        finally:
            self.close()

    def cancel(self) -> None:
        """Stop the stream; a reader blocked in recv is woken up."""
        self._cancelled.set()
        conn = getattr(self._response, "connection", None) or getattr(self._response, "_connection", None)
        sock = getattr(conn, "sock", None)
        if sock is not None:
            with contextlib.suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)
        self.close()

    def close(self) -> None:
        with contextlib.suppress(Exception):
            self._response.close()
        with contextlib.suppress(Exception):
            self._response.release_conn()


class Tunnel:
    """A single-port port-forward to the target pod, good for one HTTP request."""

    def __init__(self, forward: Any, port: int, target: CaptureTarget) -> None:
        self._forward = forward
        self.port = port
        self.target = target

    def __enter__(self) -> Tunnel:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def get(self, path: str, timeout: float) -> bytes:
        """GET ``path`` through the tunnel and return the response body."""
        sock = self._forward.socket(self.port)
        sock.settimeout(timeout)
        request = (
            f"GET {path} HTTP/1.1\r\n"
            f"Host: 127.0.0.1:{self.port}\r\n"
            "Accept: */*\r\n"
            "Connection: close\r\n\r\n"
        )
        try:
            sock.sendall(request.encode("ascii"))
            response = http.client.HTTPResponse(sock, method="GET")
            response.begin()
            body = response.read()
        except (OSError, http.client.HTTPException) as e:
            detail = self._forward.error(self.port) or str(e)
            raise TunnelError(f"GET {path} via port-forward to {self.target.pod_name} failed: {detail}") from e
        if response.status != 200:
            raise TunnelError(f"GET {path} via port-forward returned HTTP {response.status}")
        return body

    def close(self) -> None:
        with contextlib.suppress(OSError):
            self._forward.socket(self.port).close()


def _discard_late_forward(future: Future) -> None:
    """Close a port-forward that connected after its caller gave up."""
    if future.cancelled() or future.exception() is not None:
        return
    forward = future.result()
    for port in list(getattr(forward, "local_ports", {}) or {}):
        with contextlib.suppress(OSError, ValueError):
            forward.socket(port).close()


class ClusterGateway:
    """Remote exec, log streaming, ephemeral containers and tunnels against one cluster."""

    def __init__(
        self,
        core_api: client.CoreV1Api | None = None,
        *,
        kubeconfig: str | None = None,
        context: str | None = None,
        tunnel_ready_timeout: float = 12.0,
    ) -> None:
        if core_api is None:
            cfg = _load_kube_config(kubeconfig, context)
            core_api = client.CoreV1Api(client.ApiClient(cfg))
        self._core = core_api
        self.tunnel_ready_timeout = tunnel_ready_timeout
        self._tunnel_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="xdsnap-tunnel")

    def close(self) -> None:
        self._tunnel_pool.shutdown(wait=False, cancel_futures=True)

    # Pods

    def list_containers(self, pod_name: str, namespace: str) -> list[str]:
        try:
            pod = self._core.read_namespaced_pod(
                name=pod_name, namespace=namespace, _request_timeout=(CONNECT_TIMEOUT, API_READ_TIMEOUT)
            )
        except _API_ERRORS as e:
            raise ClusterApiError(f"failed to get pod {pod_name}: {_describe(e)}") from e
        return [c.name for c in (getattr(pod.spec, "containers", None) or [])]

    def list_annotated_pods(self, namespace: str, annotation: str, value: str = "true") -> list[str]:
        try:
            pod_list = self._core.list_namespaced_pod(
                namespace=namespace, _request_timeout=(CONNECT_TIMEOUT, API_READ_TIMEOUT)
            )
        except _API_ERRORS as e:
            raise ClusterApiError(f"failed to list pods in {namespace}: {_describe(e)}") from e
        names = []
        for pod in pod_list.items:
            annotations = pod.metadata.annotations or {}
            if annotations.get(annotation) == value:
                names.append(pod.metadata.name)
        return names

    # Exec

    def execute_in_container(
        self,
        target: CaptureTarget,
        container: str,
        command: Sequence[str],
        timeout: float = API_READ_TIMEOUT,
    ) -> tuple[str, str]:
        """Run a one-shot command and return (stdout, stderr).

        Raises ExecutionError if the stream cannot be established, the command
        outlives ``timeout``, or it exits nonzero.
        """
        where = f"{target.pod_name}/{container}"
        try:
            resp = stream(
                self._core.connect_get_namespaced_pod_exec,
                target.pod_name,
                target.namespace,
                container=container,
                command=list(command),
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
            )
        except _API_ERRORS as e:
            raise ExecutionError(f"failed to open exec stream to {where}: {_describe(e)}") from e

        try:
            resp.run_forever(timeout=timeout)
            if resp.is_open():
                raise ExecutionError(f"exec in {where} did not finish within {timeout:.0f}s")
            stdout = resp.read_stdout() or ""
            stderr = resp.read_stderr() or ""
            try:
                exit_code = resp.returncode
            except (TypeError, KeyError, IndexError, ValueError):
                exit_code = None
        finally:
            resp.close()

        if exit_code not in (0, None):
            raise ExecutionError(
                f"command in {where} exited with {exit_code}: {stderr.strip()}",
                exit_code=exit_code,
                stderr=stderr,
            )
        return stdout, stderr

    # Logs

    def stream_logs(
        self,
        target: CaptureTarget,
        container: str,
        follow: bool,
        timeout: float,
    ) -> LogStream:
        """Open a log stream whose reads give up after ``timeout`` seconds of silence."""
        try:
            resp = self._core.read_namespaced_pod_log(
                name=target.pod_name,
                namespace=target.namespace,
                container=container,
                follow=follow,
                timestamps=False,
                _preload_content=False,
                _request_timeout=(CONNECT_TIMEOUT, timeout),
            )
        except _API_ERRORS as e:
            raise LogStreamError(f"no logs for {target.pod_name}/{container}: {_describe(e)}") from e
        return LogStream(resp, f"{target.pod_name}/{container}")

    # Ephemeral containers

    def create_ephemeral_container(self, target: CaptureTarget, spec: EphemeralContainerSpec) -> str:
        """Attach a transient container to the pod; returns once the API accepts it."""
        container: dict[str, Any] = {
            "name": spec.name,
            "image": spec.image,
            "command": wrap_task_command(spec.command),
            "imagePullPolicy": "IfNotPresent",
            "stdin": False,
            "tty": False,
        }
        if target.primary_container:
            container["targetContainerName"] = target.primary_container
        if spec.privileged:
            container["securityContext"] = {"privileged": True}
        body = {"spec": {"ephemeralContainers": [container]}}
        try:
            self._core.patch_namespaced_pod_ephemeralcontainers(
                name=target.pod_name,
                namespace=target.namespace,
                body=body,
                _request_timeout=(CONNECT_TIMEOUT, API_READ_TIMEOUT),
            )
        except _API_ERRORS as e:
            raise ExecutionError(
                f"failed to create ephemeral container {spec.name} in {target.pod_name}: {_describe(e)}"
            ) from e
        logger.debug("Ephemeral container %s accepted by %s", spec.name, target.pod_name)
        return spec.name

    def poll_ephemeral_state(self, target: CaptureTarget, task_id: str) -> TaskState:
        try:
            pod = self._core.read_namespaced_pod(
                name=target.pod_name,
                namespace=target.namespace,
                _request_timeout=(CONNECT_TIMEOUT, API_READ_TIMEOUT),
            )
        except _API_ERRORS as e:
            raise ClusterApiError(f"failed to read pod {target.pod_name}: {_describe(e)}") from e
        for status in getattr(pod.status, "ephemeral_container_statuses", None) or []:
            if status.name != task_id:
                continue
            state = status.state
            if state and state.terminated:
                # A task whose command exited nonzero produced no usable output
                if getattr(state.terminated, "exit_code", 0):
                    logger.debug(
                        "Ephemeral container %s exited with %s", task_id, state.terminated.exit_code
                    )
                    return TaskState.FAILED
                return TaskState.TERMINATED
            if state and state.running:
                return TaskState.RUNNING
            if state and state.waiting and state.waiting.reason in _FATAL_WAITING_REASONS:
                return TaskState.FAILED
            return TaskState.PENDING
        return TaskState.PENDING

    def fetch_ephemeral_output(self, target: CaptureTarget, task_id: str) -> bytes:
        try:
            resp = self._core.read_namespaced_pod_log(
                name=target.pod_name,
                namespace=target.namespace,
                container=task_id,
                timestamps=False,
                _preload_content=False,
                _request_timeout=(CONNECT_TIMEOUT, API_READ_TIMEOUT),
            )
        except _API_ERRORS as e:
            raise ClusterApiError(f"failed to read output of {task_id}: {_describe(e)}") from e
        try:
            return resp.data or b""
        except Urllib3HTTPError as e:
            raise ClusterApiError(f"failed to read output of {task_id}: {_describe(e)}") from e
        finally:
            with contextlib.suppress(Exception):
                resp.release_conn()

    def delete_ephemeral_container(self, target: CaptureTarget, task_id: str) -> None:
        """Terminate the task's processes; ephemeral containers cannot be removed from a pod.

        Best effort: failures are logged, never raised.
        """
        try:
            if self.poll_ephemeral_state(target, task_id) is not TaskState.RUNNING:
                return
            kill = (
                f'p=$(cat {TASK_PIDFILE} 2>/dev/null) || exit 0; '
                'pkill -TERM -P "$p" 2>/dev/null; kill -TERM "$p" 2>/dev/null; exit 0'
            )
            self.execute_in_container(target, task_id, ["sh", "-c", kill], timeout=15.0)
            logger.debug("Terminated ephemeral container %s in %s", task_id, target.pod_name)
        except (XdsnapError, Urllib3HTTPError, OSError) as e:
            logger.warning("Failed to terminate ephemeral container %s: %s", task_id, e)

    # Tunnels

    def open_tunnel(self, target: CaptureTarget, port: int) -> Tunnel:
        """Port-forward a single pod port; raises TunnelError if not ready in time."""
        future = self._tunnel_pool.submit(
            portforward,
            self._core.connect_get_namespaced_pod_portforward,
            target.pod_name,
            target.namespace,
            ports=str(port),
        )
        try:
            forward = future.result(timeout=self.tunnel_ready_timeout)
        except FutureTimeoutError as e:
            future.add_done_callback(_discard_late_forward)
            raise TunnelError(
                f"port-forward to {target.pod_name}:{port} not ready within {self.tunnel_ready_timeout:.0f}s"
            ) from e
        except (*_API_ERRORS, OSError) as e:
            raise TunnelError(f"port-forward to {target.pod_name}:{port} failed: {_describe(e)}") from e
        return Tunnel(forward, port, target)
