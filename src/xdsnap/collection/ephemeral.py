"""Lifecycle of transient diagnostic containers: create, poll, fetch, delete."""

from __future__ import annotations

import contextlib
import logging
import random
import time
import uuid
from typing import Callable, Iterator, Protocol, Sequence

from xdsnap.cluster.models import CaptureTarget, EphemeralContainerSpec, TaskState
from xdsnap.collection.channels import ArtifactChannel, RawLogChannel
from xdsnap.collection.models import EphemeralTask
from xdsnap.errors import DeadlineExceeded, ResourceLifecycleError, TransientRemoteError, XdsnapError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.4
# Upper bound of the random delay added to each poll
POLL_JITTER = 0.1
# Consecutive poll failures tolerated before a task is declared failed
MAX_POLL_ERRORS = 3


class EphemeralGateway(Protocol):
    def create_ephemeral_container(self, target: CaptureTarget, spec: EphemeralContainerSpec) -> str: ...

    def poll_ephemeral_state(self, target: CaptureTarget, task_id: str) -> TaskState: ...

    def fetch_ephemeral_output(self, target: CaptureTarget, task_id: str) -> bytes: ...

    def delete_ephemeral_container(self, target: CaptureTarget, task_id: str) -> None: ...


class EphemeralResourceController:
    """Runs commands in ephemeral containers and guarantees each one is deleted exactly once."""

    def __init__(
        self,
        gateway: EphemeralGateway,
        image: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._gateway = gateway
        self.image = image
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    @contextlib.contextmanager
    def task(
        self,
        target: CaptureTarget,
        command: Sequence[str],
        privileged: bool = False,
        timeout: float = 30.0,
        channel: ArtifactChannel | None = None,
    ) -> Iterator[EphemeralTask]:
        """Create a task and delete it on every exit path, including a failed create."""
        channel = channel or RawLogChannel()
        task = EphemeralTask(
            id=f"xdsnap-{uuid.uuid4().hex[:8]}",
            target=target,
            command=list(command),
            privileged=privileged,
            deadline=self._clock() + timeout,
        )
        spec = EphemeralContainerSpec(
            name=task.id,
            image=self.image,
            command=channel.wrap(command),
            privileged=privileged,
        )
        try:
            try:
                self._gateway.create_ephemeral_container(target, spec)
            except TransientRemoteError as e:
                task.transition(TaskState.FAILED)
                raise ResourceLifecycleError(f"ephemeral task {task.id} was not accepted: {e}") from e
            logger.debug("Ephemeral task %s accepted in %s: %s", task.id, target.pod_name, task.command)
            yield task
        finally:
            self.delete(task)

    def wait(self, task: EphemeralTask) -> TaskState:
        """Poll until the task terminates; raises DeadlineExceeded past its deadline."""
        poll_errors = 0
        while True:
            try:
                observed = self._gateway.poll_ephemeral_state(task.target, task.id)
                poll_errors = 0
            except TransientRemoteError as e:
                poll_errors += 1
                if poll_errors >= MAX_POLL_ERRORS:
                    task.transition(TaskState.FAILED)
                    raise ResourceLifecycleError(f"lost track of ephemeral task {task.id}: {e}") from e
                logger.debug("Poll of %s failed (%d/%d): %s", task.id, poll_errors, MAX_POLL_ERRORS, e)
                observed = task.state

            if observed is TaskState.FAILED:
                task.transition(TaskState.FAILED)
                raise ResourceLifecycleError(f"ephemeral task {task.id} could not start or exited with an error")
            if observed is not TaskState.PENDING:
                task.transition(observed)
            if task.state is TaskState.TERMINATED:
                return task.state

            remaining = task.deadline - self._clock()
            if remaining <= 0:
                task.transition(TaskState.FAILED)
                raise DeadlineExceeded(f"ephemeral task {task.id} still {observed.value} at its deadline")
            self._sleep(min(remaining, self.poll_interval + random.uniform(0, POLL_JITTER)))

    def delete(self, task: EphemeralTask) -> None:
        """Issue the delete once; later calls are no-ops."""
        if task.deleted:
            return
        task.deleted = True
        try:
            self._gateway.delete_ephemeral_container(task.target, task.id)
        except XdsnapError as e:
            logger.warning("Cleanup of ephemeral task %s failed: %s", task.id, e)

    def run_to_completion(
        self,
        target: CaptureTarget,
        command: Sequence[str],
        privileged: bool = False,
        timeout: float = 30.0,
        channel: ArtifactChannel | None = None,
    ) -> bytes:
        """Create, wait, fetch output and delete as one unit."""
        channel = channel or RawLogChannel()
        with self.task(target, command, privileged, timeout, channel) as task:
            self.wait(task)
            try:
                return channel.retrieve(self._gateway, target, task.id)
            except TransientRemoteError as e:
                raise ResourceLifecycleError(f"output of ephemeral task {task.id} unavailable: {e}") from e
