"""Deterministic tar.gz bundling of a capture cycle's working directory."""

from __future__ import annotations

import contextlib
import gzip
import logging
import tarfile
from pathlib import Path

from xdsnap.errors import ArchiveError

logger = logging.getLogger(__name__)

FILE_MODE = 0o644


def _regular_files(source: Path) -> list[Path]:
    files = [p for p in source.rglob("*") if p.is_file() and not p.is_symlink()]
    return sorted(files, key=lambda p: p.relative_to(source).as_posix())


def build_archive(source_dir: str | Path, output_path: str | Path) -> Path:
    """Bundle every regular file under ``source_dir`` into ``output_path``.

    Entries keep their path relative to ``source_dir``; directories get no
    entry of their own. Owner, mode and timestamps are normalized so the same
    inputs always produce the same bytes. A partial archive is removed on
    failure.
    """
    source = Path(source_dir)
    output = Path(output_path)
    if not source.is_dir():
        raise ArchiveError(f"source directory {source} does not exist")

    try:
        output.parent.mkdir(parents=True, exist_ok=True)
        with open(output, "wb") as raw, gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.GNU_FORMAT) as tar:
                for path in _regular_files(source):
                    info = tarfile.TarInfo(name=path.relative_to(source).as_posix())
                    info.size = path.stat().st_size
                    info.mode = FILE_MODE
                    info.mtime = 0
                    info.uid = info.gid = 0
                    info.uname = info.gname = ""
                    with open(path, "rb") as fh:
                        tar.addfile(info, fh)
    except (OSError, tarfile.TarError) as e:
        if output.is_file():
            with contextlib.suppress(OSError):
                output.unlink()
        raise ArchiveError(f"failed to create {output}: {e}") from e

    logger.debug("Archived %s into %s", source, output)
    return output
