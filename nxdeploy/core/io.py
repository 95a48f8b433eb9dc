# nxdeploy/core/io.py
"""Crash-safe file replacement for the ignore file, reports and config."""

from __future__ import annotations

import contextlib
import os
import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import TextIO


def _sync_parent(path: Path) -> None:
    # Makes the rename durable; not supported everywhere.
    if not sys.platform.startswith(("darwin", "linux")):
        return
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        dir_fd = os.open(path.parent, flags)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


@contextlib.contextmanager
def atomic_open(path: Path | str, perms: int | None = None) -> Iterator[TextIO]:
    """
    Yield a text handle whose content replaces `path` when the block exits
    cleanly. On any exception the temp file is removed and `path` is left
    exactly as it was.
    """
    final_path = Path(path)
    final_path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(
        dir=final_path.parent, prefix=f".{final_path.name}.", suffix=".tmp", text=True
    )
    temp_path = Path(temp_name)

    try:
        try:
            handle = os.fdopen(fd, "w", encoding="utf-8")
        except BaseException:
            os.close(fd)
            raise
        with handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        if perms is not None:
            os.chmod(temp_path, perms)  # noqa: PTH101
        os.replace(temp_path, final_path)  # noqa: PTH105
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink()
        raise
    _sync_parent(final_path)


def atomic_write_text(path: Path | str, content: str, perms: int | None = None) -> None:
    with atomic_open(path, perms) as handle:
        handle.write(content)
