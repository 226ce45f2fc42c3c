"""Tests for the Kubernetes gateway, against a mocked CoreV1Api."""

import socket
import threading
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError, ProtocolError, ReadTimeoutError

from xdsnap.cluster import gateway as gateway_module
from xdsnap.cluster.gateway import TASK_PIDFILE, ClusterGateway, LogStream, Tunnel, wrap_task_command
from xdsnap.cluster.models import EphemeralContainerSpec, TaskState
from xdsnap.collection.ephemeral import EphemeralResourceController
from xdsnap.errors import ClusterApiError, ExecutionError, LogStreamError, ResourceLifecycleError, TunnelError
from xdsnap.snapshot.verbosity import VerbosityControl


def _pod_with_status(name, terminated=None, running=None, waiting=None):
    state = SimpleNamespace(terminated=terminated, running=running, waiting=waiting)
    status = SimpleNamespace(name=name, state=state)
    return SimpleNamespace(status=SimpleNamespace(ephemeral_container_statuses=[status]))


class FakeExecResponse:
    def __init__(self, stdout="", stderr="", returncode=0, still_open=False):
        self._stdout = stdout
        self._stderr = stderr
        self.returncode = returncode
        self._open = still_open
        self.closed = False

    def run_forever(self, timeout=None):
        self.timeout = timeout

    def is_open(self):
        return self._open

    def read_stdout(self):
        return self._stdout

    def read_stderr(self):
        return self._stderr

    def close(self):
        self.closed = True


@pytest.fixture()
def core():
    return MagicMock()


@pytest.fixture()
def cluster(core):
    gw = ClusterGateway(core)
    yield gw
    gw.close()


class TestPods:
    def test_list_containers(self, core, cluster):
        core.read_namespaced_pod.return_value = SimpleNamespace(
            spec=SimpleNamespace(containers=[SimpleNamespace(name="web"), SimpleNamespace(name="consul-dataplane")])
        )
        assert cluster.list_containers("web-7d9f", "mesh") == ["web", "consul-dataplane"]

    def test_list_containers_not_found(self, core, cluster):
        core.read_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")
        with pytest.raises(ClusterApiError, match="Not Found"):
            cluster.list_containers("ghost", "mesh")

    def test_list_annotated_pods(self, core, cluster):
        def pod(name, annotations):
            return SimpleNamespace(metadata=SimpleNamespace(name=name, annotations=annotations))

        core.list_namespaced_pod.return_value = SimpleNamespace(
            items=[
                pod("web-7d9f", {"consul.hashicorp.com/connect-inject": "true"}),
                pod("batch-0001", None),
                pod("api-55c1", {"consul.hashicorp.com/connect-inject": "false"}),
            ]
        )
        assert cluster.list_annotated_pods("mesh", "consul.hashicorp.com/connect-inject") == ["web-7d9f"]


class TestEphemeralContainers:
    def test_create_body(self, core, cluster, target):
        spec = EphemeralContainerSpec(name="xdsnap-1", image="netshoot:test", command=["tcpdump", "-i", "any"], privileged=True)

        assert cluster.create_ephemeral_container(target, spec) == "xdsnap-1"

        kwargs = core.patch_namespaced_pod_ephemeralcontainers.call_args.kwargs
        assert kwargs["name"] == "web-7d9f"
        assert kwargs["namespace"] == "mesh"
        container = kwargs["body"]["spec"]["ephemeralContainers"][0]
        assert container["name"] == "xdsnap-1"
        assert container["image"] == "netshoot:test"
        assert container["targetContainerName"] == "web"
        assert container["securityContext"] == {"privileged": True}
        assert container["command"] == wrap_task_command(["tcpdump", "-i", "any"])

    def test_create_unprivileged_without_primary(self, core, cluster, target):
        bare = target.model_copy(update={"primary_container": ""})
        cluster.create_ephemeral_container(bare, EphemeralContainerSpec(name="xdsnap-2", image="i", command=["true"]))
        container = core.patch_namespaced_pod_ephemeralcontainers.call_args.kwargs["body"]["spec"]["ephemeralContainers"][0]
        assert "targetContainerName" not in container
        assert "securityContext" not in container

    def test_create_rejected(self, core, cluster, target):
        core.patch_namespaced_pod_ephemeralcontainers.side_effect = ApiException(status=403, reason="Forbidden")
        with pytest.raises(ExecutionError, match="Forbidden"):
            cluster.create_ephemeral_container(target, EphemeralContainerSpec(name="x", image="i", command=["true"]))

    def test_wrap_task_command_records_pid(self):
        wrapped = wrap_task_command(["curl", "-s", "http://127.0.0.1:19000/logging?level=debug"])
        assert wrapped[:2] == ["sh", "-c"]
        assert wrapped[2].startswith(f"echo $$ > {TASK_PIDFILE}; exec curl -s ")
        assert "'http://127.0.0.1:19000/logging?level=debug'" in wrapped[2]

    @pytest.mark.parametrize(
        "state, expected",
        [
            (dict(terminated=SimpleNamespace(exit_code=0)), TaskState.TERMINATED),
            (dict(running=SimpleNamespace()), TaskState.RUNNING),
            (dict(waiting=SimpleNamespace(reason="ContainerCreating")), TaskState.PENDING),
            (dict(waiting=SimpleNamespace(reason="ImagePullBackOff")), TaskState.FAILED),
        ],
    )
    def test_poll_state(self, core, cluster, target, state, expected):
        core.read_namespaced_pod.return_value = _pod_with_status("xdsnap-1", **state)
        assert cluster.poll_ephemeral_state(target, "xdsnap-1") is expected

    def test_poll_nonzero_exit_is_failed(self, core, cluster, target):
        core.read_namespaced_pod.return_value = _pod_with_status("xdsnap-1", terminated=SimpleNamespace(exit_code=22))
        assert cluster.poll_ephemeral_state(target, "xdsnap-1") is TaskState.FAILED

    def test_poll_unknown_container_is_pending(self, core, cluster, target):
        core.read_namespaced_pod.return_value = SimpleNamespace(status=SimpleNamespace(ephemeral_container_statuses=None))
        assert cluster.poll_ephemeral_state(target, "xdsnap-1") is TaskState.PENDING

    def test_fetch_output(self, core, cluster, target):
        core.read_namespaced_pod_log.return_value = SimpleNamespace(data=b"payload", release_conn=lambda: None)
        assert cluster.fetch_ephemeral_output(target, "xdsnap-1") == b"payload"
        assert core.read_namespaced_pod_log.call_args.kwargs["container"] == "xdsnap-1"

    def test_delete_terminates_running_task(self, core, cluster, target, monkeypatch):
        core.read_namespaced_pod.return_value = _pod_with_status("xdsnap-1", running=SimpleNamespace())
        calls = []

        def fake_stream(fn, name, namespace, **kwargs):
            calls.append((name, kwargs["container"], kwargs["command"]))
            return FakeExecResponse()

        monkeypatch.setattr(gateway_module, "stream", fake_stream)
        cluster.delete_ephemeral_container(target, "xdsnap-1")

        assert len(calls) == 1
        name, container, command = calls[0]
        assert (name, container) == ("web-7d9f", "xdsnap-1")
        assert TASK_PIDFILE in command[-1]

    def test_delete_skips_finished_task(self, core, cluster, target, monkeypatch):
        core.read_namespaced_pod.return_value = _pod_with_status("xdsnap-1", terminated=SimpleNamespace())
        monkeypatch.setattr(gateway_module, "stream", MagicMock(side_effect=AssertionError("no exec expected")))
        cluster.delete_ephemeral_container(target, "xdsnap-1")

    def test_delete_never_raises(self, core, cluster, target):
        core.read_namespaced_pod.side_effect = ApiException(status=500, reason="Internal Server Error")
        cluster.delete_ephemeral_container(target, "xdsnap-1")


class TestExec:
    def test_returns_output(self, cluster, target, monkeypatch):
        response = FakeExecResponse(stdout="ok\n", stderr="")
        monkeypatch.setattr(gateway_module, "stream", lambda *a, **k: response)
        assert cluster.execute_in_container(target, "web", ["echo", "ok"], timeout=5) == ("ok\n", "")
        assert response.timeout == 5
        assert response.closed

    def test_nonzero_exit(self, cluster, target, monkeypatch):
        response = FakeExecResponse(stderr="curl: (7) refused", returncode=7)
        monkeypatch.setattr(gateway_module, "stream", lambda *a, **k: response)
        with pytest.raises(ExecutionError) as excinfo:
            cluster.execute_in_container(target, "web", ["curl", "x"])
        assert excinfo.value.exit_code == 7
        assert "refused" in excinfo.value.stderr

    def test_timeout(self, cluster, target, monkeypatch):
        response = FakeExecResponse(still_open=True)
        monkeypatch.setattr(gateway_module, "stream", lambda *a, **k: response)
        with pytest.raises(ExecutionError, match="did not finish"):
            cluster.execute_in_container(target, "web", ["sleep", "60"], timeout=1)
        assert response.closed

    def test_stream_rejected(self, cluster, target, monkeypatch):
        def refuse(*a, **k):
            raise ApiException(status=0, reason="Handshake status 403 Forbidden")

        monkeypatch.setattr(gateway_module, "stream", refuse)
        with pytest.raises(ExecutionError, match="Forbidden"):
            cluster.execute_in_container(target, "web", ["true"])


class TestLogs:
    def test_stream_logs_open_failure(self, core, cluster, target):
        core.read_namespaced_pod_log.side_effect = ApiException(status=400, reason="Bad Request")
        with pytest.raises(LogStreamError):
            cluster.stream_logs(target, "web", follow=True, timeout=5)

    def test_stream_logs_read_bound(self, core, cluster, target):
        cluster.stream_logs(target, "web", follow=True, timeout=70)
        kwargs = core.read_namespaced_pod_log.call_args.kwargs
        assert kwargs["follow"] is True
        assert kwargs["_preload_content"] is False
        assert kwargs["_request_timeout"][1] == 70

    def test_read_timeout_ends_stream(self):
        def chunks(*args, **kwargs):
            yield b"line 1\n"
            raise ReadTimeoutError(None, "/logs", "timed out")

        response = MagicMock()
        response.stream.side_effect = chunks
        assert b"".join(LogStream(response, "web-7d9f/web")) == b"line 1\n"
        response.release_conn.assert_called()

    def test_broken_stream_raises(self):
        def chunks(*args, **kwargs):
            yield b"line 1\n"
            raise ProtocolError("Connection broken")

        response = MagicMock()
        response.stream.side_effect = chunks
        with pytest.raises(LogStreamError, match="broke"):
            list(LogStream(response, "web-7d9f/web"))

    def test_cancelled_stream_ends_quietly(self):
        stream = None

        def chunks(*args, **kwargs):
            yield b"line 1\n"
            stream.cancel()
            raise ProtocolError("Connection broken")

        response = MagicMock()
        response.stream.side_effect = chunks
        stream = LogStream(response, "web-7d9f/web")
        assert list(stream) == [b"line 1\n"]
        assert stream.cancelled


class FakeForward:
    def __init__(self, sock, error=None):
        self._sock = sock
        self._error = error

    def socket(self, port):
        return self._sock

    def error(self, port):
        return self._error


@pytest.fixture()
def socket_pair():
    ours, theirs = socket.socketpair()
    yield ours, theirs
    ours.close()
    theirs.close()


class TestTunnel:
    def test_get_returns_body(self, socket_pair, target):
        ours, theirs = socket_pair
        theirs.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 14\r\nContent-Type: text/plain\r\n\r\nserver.live: 1")

        body = Tunnel(FakeForward(ours), 19000, target).get("/stats", timeout=2)

        assert body == b"server.live: 1"
        request = theirs.recv(4096)
        assert request.startswith(b"GET /stats HTTP/1.1\r\n")
        assert b"Host: 127.0.0.1:19000" in request

    def test_non_200_is_an_error(self, socket_pair, target):
        ours, theirs = socket_pair
        theirs.sendall(b"HTTP/1.1 404 Not Found\r\nContent-Length: 0\r\n\r\n")
        with pytest.raises(TunnelError, match="404"):
            Tunnel(FakeForward(ours), 19000, target).get("/nope", timeout=2)

    def test_forward_error_is_reported(self, socket_pair, target):
        ours, theirs = socket_pair
        theirs.shutdown(socket.SHUT_WR)
        with pytest.raises(TunnelError, match="connection refused"):
            Tunnel(FakeForward(ours, error="connection refused"), 19000, target).get("/stats", timeout=2)

    def test_context_manager_closes_socket(self, socket_pair, target):
        ours, _ = socket_pair
        with Tunnel(FakeForward(ours), 19000, target):
            pass
        assert ours.fileno() == -1

    def test_open_tunnel_not_ready_in_time(self, core, target, monkeypatch):
        release = threading.Event()

        def slow_portforward(*args, **kwargs):
            release.wait(timeout=5)
            return FakeForward(MagicMock())

        monkeypatch.setattr(gateway_module, "portforward", slow_portforward)
        gw = ClusterGateway(core, tunnel_ready_timeout=0.05)
        started = time.monotonic()
        try:
            with pytest.raises(TunnelError, match="not ready"):
                gw.open_tunnel(target, 19000)
            assert time.monotonic() - started < 2
        finally:
            release.set()
            gw.close()

    def test_open_tunnel(self, core, target, monkeypatch):
        captured = {}

        def fake_portforward(fn, name, namespace, **kwargs):
            captured.update(name=name, namespace=namespace, **kwargs)
            return FakeForward(MagicMock())

        monkeypatch.setattr(gateway_module, "portforward", fake_portforward)
        gw = ClusterGateway(core)
        try:
            tunnel = gw.open_tunnel(target, 19000)
        finally:
            gw.close()
        assert tunnel.port == 19000
        assert captured == {"name": "web-7d9f", "namespace": "mesh", "ports": "19000"}


def _unreachable():
    return MaxRetryError(None, "/api/v1/namespaces/mesh/pods/web-7d9f", reason=None)


def _read_timeout():
    return ReadTimeoutError(None, "/api/v1/namespaces/mesh/pods/web-7d9f", "Read timed out. (read timeout=30)")


class TestTransportErrors:
    """urllib3 errors surface from the API client unwrapped and must be mapped like ApiException."""

    @pytest.mark.parametrize("error", [_unreachable, _read_timeout, lambda: ProtocolError("Connection aborted.")])
    def test_pod_reads(self, core, cluster, target, error):
        core.read_namespaced_pod.side_effect = error()
        core.list_namespaced_pod.side_effect = error()
        core.read_namespaced_pod_log.side_effect = error()

        with pytest.raises(ClusterApiError):
            cluster.list_containers("web-7d9f", "mesh")
        with pytest.raises(ClusterApiError):
            cluster.list_annotated_pods("mesh", "consul.hashicorp.com/connect-inject")
        with pytest.raises(ClusterApiError):
            cluster.poll_ephemeral_state(target, "xdsnap-1")
        with pytest.raises(ClusterApiError):
            cluster.fetch_ephemeral_output(target, "xdsnap-1")
        with pytest.raises(LogStreamError):
            cluster.stream_logs(target, "web", follow=True, timeout=5)

    def test_create(self, core, cluster, target):
        core.patch_namespaced_pod_ephemeralcontainers.side_effect = _unreachable()
        with pytest.raises(ExecutionError):
            cluster.create_ephemeral_container(target, EphemeralContainerSpec(name="x", image="i", command=["true"]))

    def test_delete_stays_best_effort(self, core, cluster, target):
        core.read_namespaced_pod.side_effect = _unreachable()
        cluster.delete_ephemeral_container(target, "xdsnap-1")

    def test_exec_stream_unreachable(self, cluster, target, monkeypatch):
        def unreachable(*a, **k):
            raise _unreachable()

        monkeypatch.setattr(gateway_module, "stream", unreachable)
        with pytest.raises(ExecutionError):
            cluster.execute_in_container(target, "web", ["true"])

    def test_open_tunnel_unreachable(self, core, target, monkeypatch):
        def unreachable(*a, **k):
            raise _unreachable()

        monkeypatch.setattr(gateway_module, "portforward", unreachable)
        gw = ClusterGateway(core)
        try:
            with pytest.raises(TunnelError):
                gw.open_tunnel(target, 19000)
        finally:
            gw.close()

    def test_polling_timeouts_become_lifecycle_error(self, core, cluster, clock, target):
        core.read_namespaced_pod.side_effect = _read_timeout()
        controller = EphemeralResourceController(cluster, image="netshoot:test", clock=clock, sleep=clock.sleep)

        with pytest.raises(ResourceLifecycleError, match="lost track"):
            controller.run_to_completion(target, ["true"], timeout=10)

    def test_verbosity_change_reports_failure(self, core, cluster, clock, target):
        core.patch_namespaced_pod_ephemeralcontainers.side_effect = _unreachable()
        controller = EphemeralResourceController(cluster, image="netshoot:test", clock=clock, sleep=clock.sleep)

        assert VerbosityControl(controller).set_level(target, "debug") is False
