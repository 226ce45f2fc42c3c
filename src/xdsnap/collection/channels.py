"""Artifact retrieval channels: how an ephemeral task's output gets back to us.

There is no binary copy API for ephemeral containers, so output travels
through the container log. A channel both shapes the task command (so the
output is log-safe) and turns the fetched log back into the artifact bytes.
"""

from __future__ import annotations

import base64
import binascii
import re
import shlex
from typing import Protocol, Sequence

from xdsnap.cluster.models import CaptureTarget
from xdsnap.errors import TransferDecodeError

_NON_BASE64 = re.compile(rb"[^A-Za-z0-9+/=]")


class OutputSource(Protocol):
    def fetch_ephemeral_output(self, target: CaptureTarget, task_id: str) -> bytes: ...


class ArtifactChannel(Protocol):
    """Pluggable transfer of a task's output."""

    name: str

    def wrap(self, command: Sequence[str]) -> list[str]: ...

    def retrieve(self, source: OutputSource, target: CaptureTarget, task_id: str) -> bytes: ...


class RawLogChannel:
    """Task output is its log, byte for byte."""

    name = "raw-log"

    def wrap(self, command: Sequence[str]) -> list[str]:
        return list(command)

    def retrieve(self, source: OutputSource, target: CaptureTarget, task_id: str) -> bytes:
        return source.fetch_ephemeral_output(target, task_id)


class Base64LogChannel:
    """Binary output base64-encoded on stdout, decoded after stripping log noise."""

    name = "base64-log"

    def wrap(self, command: Sequence[str]) -> list[str]:
        # stderr would interleave with the encoded stream in the container log
        return ["sh", "-c", f"{shlex.join(command)} 2>/dev/null | base64 -w 0"]

    def retrieve(self, source: OutputSource, target: CaptureTarget, task_id: str) -> bytes:
        return decode_base64_log(source.fetch_ephemeral_output(target, task_id))


def decode_base64_log(raw: bytes) -> bytes:
    """Decode a base64 payload that went through a container log."""
    if not raw or not raw.strip():
        raise TransferDecodeError("no data in transfer log")
    clean = _NON_BASE64.sub(b"", raw.strip())
    if not clean:
        raise TransferDecodeError(f"no base64 data after sanitizing {len(raw)}B of log")
    try:
        return base64.b64decode(clean, validate=True)
    except (binascii.Error, ValueError) as e:
        raise TransferDecodeError(f"failed to decode base64 stream (raw={len(raw)}B, clean={len(clean)}B): {e}") from e
