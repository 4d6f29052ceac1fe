"""File primitives shared by the state store, pause flag and workspace manager."""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

from build_fleet.daemon.errors import StateLockTimeout, StateStoreError

DEFAULT_TAIL_BYTES = 256 * 1024


@contextmanager
def file_lock(
    lock_path: Path,
    *,
    timeout_seconds: float,
    poll_seconds: float = 0.05,
) -> Iterator[None]:
    """Hold an exclusive advisory `flock` on `lock_path`.

    The lock is taken non-blocking in a polling loop so a wedged peer cannot
    stall the caller past `timeout_seconds`. Closing the handle releases it.
    """

    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = lock_path.open("a+", encoding="utf-8")
    except OSError as error:
        raise StateStoreError(f"Cannot open lock file {lock_path}: {error}") from error

    deadline = time.monotonic() + timeout_seconds
    try:
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise StateLockTimeout(
                        f"Timed out after {timeout_seconds:g}s waiting for {lock_path}",
                    ) from None
                time.sleep(poll_seconds)
        yield
    finally:
        handle.close()


def write_json_atomic(path: Path, document: object) -> None:
    """Write JSON through a temp file in the same directory, then rename over `path`."""

    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except OSError as error:
        if tmp_name is not None:
            with suppress(OSError):
                os.unlink(tmp_name)
        raise StateStoreError(f"Cannot write {path}: {error}") from error


def read_log_tail(
    path: Path,
    *,
    max_lines: int = 200,
    max_bytes: int = DEFAULT_TAIL_BYTES,
) -> str:
    """Return at most the last `max_lines` lines, reading no more than `max_bytes`."""

    try:
        with path.open("rb") as handle:
            handle.seek(0, os.SEEK_END)
            size = handle.tell()
            handle.seek(max(0, size - max_bytes))
            chunk = handle.read()
    except FileNotFoundError:
        return ""
    text = chunk.decode("utf-8", errors="replace")
    lines = text.splitlines()
    if size > max_bytes and lines:
        # First line is most likely cut in the middle.
        lines = lines[1:]
    return "\n".join(lines[-max_lines:])
