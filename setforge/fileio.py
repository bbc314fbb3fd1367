"""File helpers shared by the patch engine, the extraction log and the pipeline."""

from __future__ import annotations

import logging
import os
import shutil
import sys
import tempfile
import threading
from pathlib import Path
from typing import Callable, Iterable, List, Tuple

from .errors import CancellationError

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024


def normalize_relative_path(name: str) -> str:
    """Return a normalised relative path using forward slashes."""

    normalised = name.replace("\\", "/")
    return normalised.lstrip("/")


def check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise CancellationError("operation cancelled")


def _temporary_sibling(path: Path) -> Path:
    handle, name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    os.close(handle)
    return Path(name)


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def write_bytes_in_chunks(
    path: Path,
    data: bytes,
    *,
    chunk_size: int = 2 * 1024 * 1024,
    cancel_event: threading.Event | None = None,
    progress_callback: Callable[[int], None] | None = None,
) -> Tuple[str, Exception | None]:
    """Atomically replace *path* with *data*, writing in chunks.

    The payload goes to a temporary sibling first and is moved over *path*
    with :func:`os.replace` only once every chunk is on disk, so readers never
    observe a half-written file.

    Returns a tuple ``(status, error)`` where *status* is ``"success"``,
    ``"cancelled"``, or ``"error"``.  When an error occurs, *error* contains the
    exception raised while attempting to write the file.
    """

    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    total = len(data)
    written = 0
    status = "success"
    temporary: Path | None = None

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temporary = _temporary_sibling(path)
        with temporary.open("wb") as handle:
            if total == 0 and progress_callback is not None:
                progress_callback(0)

            for start in range(0, total, chunk_size):
                if cancel_event is not None and cancel_event.is_set():
                    status = "cancelled"
                    break

                chunk = data[start : start + chunk_size]
                handle.write(chunk)
                written += len(chunk)
                if progress_callback is not None:
                    progress_callback(written)

            if status == "success":
                handle.flush()
                os.fsync(handle.fileno())

        if status != "success":
            _discard(temporary)
            return status, None

        os.replace(temporary, path)
        return status, None

    except OSError as exc:
        if temporary is not None:
            _discard(temporary)
        return "error", exc


def atomic_copy(
    source: Path,
    destination: Path,
    *,
    chunk_size: int = COPY_CHUNK_SIZE,
    cancel_event: threading.Event | None = None,
) -> None:
    """Copy *source* over *destination* through a temporary sibling and ``os.replace``."""

    destination.parent.mkdir(parents=True, exist_ok=True)
    temporary = _temporary_sibling(destination)
    try:
        with source.open("rb") as reader, temporary.open("wb") as writer:
            while True:
                check_cancelled(cancel_event)
                chunk = reader.read(chunk_size)
                if not chunk:
                    break
                writer.write(chunk)
            writer.flush()
            os.fsync(writer.fileno())
        os.replace(temporary, destination)
    except BaseException:
        _discard(temporary)
        raise


def copy_tree(
    source: Path,
    destination: Path,
    *,
    cancel_event: threading.Event | None = None,
    skip: Iterable[str] = (),
) -> List[str]:
    """Copy every file below *source* into *destination*, overwriting.

    Returns the copied paths relative to *source* (forward slashes).  Entries
    listed in *skip* (relative paths, compared case-insensitively) are left out.
    """

    skipped = {normalize_relative_path(name).lower() for name in skip}
    copied: List[str] = []
    for path in sorted(source.rglob("*")):
        if not path.is_file():
            continue
        check_cancelled(cancel_event)
        relative = normalize_relative_path(path.relative_to(source).as_posix())
        if relative.lower() in skipped:
            continue
        target = destination / Path(*relative.split("/"))
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, target)
        copied.append(relative)
    return copied


def remove_tree(path: Path) -> bool:
    """Delete *path* recursively; failures are logged and reported as False."""

    if not path.exists():
        return True

    failures: List[str] = []

    def _on_error(_function, failed_path, error) -> None:
        # onerror passes an exc_info tuple, onexc the exception itself
        if isinstance(error, tuple):
            error = error[1]
        failures.append(f"{failed_path}: {error}")

    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_on_error)
    else:
        shutil.rmtree(path, onerror=_on_error)
    for failure in failures:
        logger.warning("Cleanup could not remove %s", failure)
    return not failures
