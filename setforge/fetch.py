"""Mirror-aware HTTP downloads with bounded retries.

Every asset is published on several mirrors that serve the same tree under
``Assets/``.  :class:`RetryingFetcher` walks the mirrors in order and retries
transient failures on the current mirror with exponential backoff before
moving on.  Backoff waits happen on the job's cancellation event, so a
cancelled job never sits out a delay.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, List, Sequence, Tuple, TypeVar

import requests

from .errors import (
    DL_FILE_NOT_FOUND,
    DL_INVALID_URL,
    DL_NETWORK_ERROR,
    DL_TIMEOUT,
    CancellationError,
    NetworkError,
    ValidationError,
)
from .fileio import check_cancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRIMARY_CDN_BASE = "https://cdn.ardysamods.my.id"
JSDELIVR_BASE = "https://cdn.jsdelivr.net/gh/Anneardysa/ModsPack@main"
RAW_GITHUB_BASE = "https://raw.githubusercontent.com/Anneardysa/ModsPack/main"
DEFAULT_MIRROR_BASES = (PRIMARY_CDN_BASE, JSDELIVR_BASE, RAW_GITHUB_BASE)

ASSETS_MARKER = "/Assets/"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 0.5
DEFAULT_MAX_DELAY = 5.0
DEFAULT_MULTIPLIER = 2.0
DEFAULT_TIMEOUT = 30.0
DOWNLOAD_CHUNK_SIZE = 256 * 1024

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
PERMANENT_STATUS_CODES = frozenset({403, 404})

SPLIT_ARCHIVE_SUFFIX = ".zip.001"
MAX_SPLIT_PARTS = 50

USER_AGENT = "setforge/1.0"

TRANSIENT = "transient"
PERMANENT = "permanent"
OTHER = "other"


def asset_path(url: str) -> str | None:
    """Return ``Assets/...`` for a mirrored asset URL, ``None`` for anything else."""

    if not url:
        return None
    index = url.find(ASSETS_MARKER)
    if index < 0:
        return None
    return url[index + 1 :]


def mirror_urls(url: str, bases: Sequence[str] = DEFAULT_MIRROR_BASES) -> List[str]:
    """Rewrite *url* onto every mirror base, in priority order.

    URLs outside the mirrored asset tree are returned as the only candidate.
    """

    path = asset_path(url)
    if path is None:
        return [url]
    urls: List[str] = []
    for base in bases:
        candidate = f"{base.rstrip('/')}/{path}"
        if candidate not in urls:
            urls.append(candidate)
    return urls or [url]


def status_of(exc: BaseException) -> int | None:
    response = getattr(exc, "response", None)
    if response is None:
        return None
    return getattr(response, "status_code", None)


def classify(exc: BaseException) -> str:
    """Sort a failed attempt into ``transient``, ``permanent`` or ``other``."""

    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return TRANSIENT
    status = status_of(exc)
    if status is not None:
        if status in PERMANENT_STATUS_CODES:
            return PERMANENT
        if status in TRANSIENT_STATUS_CODES or status >= 500:
            return TRANSIENT
    return OTHER


def _error_code_for(failures: Sequence[Tuple[str, BaseException]]) -> str:
    if not failures:
        return DL_NETWORK_ERROR
    if all(status_of(error) == 404 for _url, error in failures):
        return DL_FILE_NOT_FOUND
    if isinstance(failures[-1][1], requests.Timeout):
        return DL_TIMEOUT
    return DL_NETWORK_ERROR


class RetryingFetcher:
    """Fetch a resource from an ordered list of mirrors.

    Per mirror, at most *max_attempts_per_mirror* attempts are made.  Transient
    failures (timeouts, connection errors, HTTP 408/429/5xx) are retried on
    the same mirror after ``initial_delay * multiplier ** n`` seconds, capped
    at *max_delay*.  HTTP 403/404 and every other failure move straight to the
    next mirror.  When all mirrors are exhausted a :class:`NetworkError` is
    raised with every ``(url, error)`` pair.
    """

    def __init__(
        self,
        *,
        max_attempts_per_mirror: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        multiplier: float = DEFAULT_MULTIPLIER,
        timeout: float = DEFAULT_TIMEOUT,
        cancel_event: threading.Event | None = None,
        session: requests.Session | None = None,
    ) -> None:
        if max_attempts_per_mirror < 1:
            raise ValueError("max_attempts_per_mirror must be at least 1")
        self.max_attempts_per_mirror = max_attempts_per_mirror
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.timeout = timeout
        self.cancel_event = cancel_event or threading.Event()
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)

    def _wait(self, delay: float) -> None:
        if self.cancel_event.wait(delay):
            raise CancellationError("cancelled during retry backoff")

    def _get(self, url: str) -> bytes:
        response = self.session.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.content

    def run(self, mirrors: Sequence[str], op: Callable[[str], T]) -> T:
        """Call ``op(url)`` under the mirror and retry policy and return its result."""

        if not mirrors:
            raise ValidationError("no download URL given", error_code=DL_INVALID_URL)

        failures: List[Tuple[str, BaseException]] = []
        for url in mirrors:
            delay = self.initial_delay
            for attempt in range(1, self.max_attempts_per_mirror + 1):
                check_cancelled(self.cancel_event)
                try:
                    return op(url)
                except CancellationError:
                    raise
                except Exception as exc:  # every other failure is judged by classify()
                    failures.append((url, exc))
                    kind = classify(exc)
                    logger.debug("Attempt %d on %s failed (%s): %s", attempt, url, kind, exc)
                    if kind != TRANSIENT or attempt == self.max_attempts_per_mirror:
                        break
                    self._wait(delay)
                    delay = min(delay * self.multiplier, self.max_delay)
            logger.info("Mirror exhausted: %s", url)

        last = failures[-1][1] if failures else None
        raise NetworkError(
            f"all {len(mirrors)} mirror(s) failed, last error: {last}",
            failures,
            error_code=_error_code_for(failures),
        ) from last

    def fetch(self, mirrors: Sequence[str], op: Callable[[str], bytes] | None = None) -> bytes:
        """Return the body of the first mirror that answers."""

        return self.run(mirrors, op or self._get)

    def fetch_to_file(
        self,
        mirrors: Sequence[str],
        dest: Path,
        progress_callback: Callable[[int, int | None], None] | None = None,
    ) -> Path:
        """Stream the resource to *dest*; *dest* only appears once complete."""

        def _stream(url: str) -> Path:
            dest.parent.mkdir(parents=True, exist_ok=True)
            handle, name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".part", dir=dest.parent)
            os.close(handle)
            partial = Path(name)
            try:
                with self.session.get(url, stream=True, timeout=self.timeout) as response:
                    response.raise_for_status()
                    total = response.headers.get("Content-Length")
                    total_bytes = int(total) if total and total.isdigit() else None
                    written = 0
                    with partial.open("wb") as writer:
                        for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                            check_cancelled(self.cancel_event)
                            if not chunk:
                                continue
                            writer.write(chunk)
                            written += len(chunk)
                            if progress_callback is not None:
                                progress_callback(written, total_bytes)
                os.replace(partial, dest)
            except BaseException:
                partial.unlink(missing_ok=True)
                raise
            return dest

        return self.run(mirrors, _stream)

    def download_archive(
        self,
        url: str,
        dest: Path,
        bases: Sequence[str] = DEFAULT_MIRROR_BASES,
        progress_callback: Callable[[int, int | None], None] | None = None,
    ) -> Path:
        """Download a set archive, joining ``.zip.001``, ``.zip.002`` ... parts.

        The first part must exist; the first missing later part ends the
        sequence.
        """

        if not url.lower().endswith(SPLIT_ARCHIVE_SUFFIX):
            return self.fetch_to_file(mirror_urls(url, bases), dest, progress_callback)

        stem = url[: -len("001")]
        dest.parent.mkdir(parents=True, exist_ok=True)
        handle, name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".part", dir=dest.parent)
        os.close(handle)
        joined = Path(name)
        try:
            with joined.open("wb") as writer:
                for part in range(1, MAX_SPLIT_PARTS + 1):
                    part_url = f"{stem}{part:03d}"
                    try:
                        payload = self.fetch(mirror_urls(part_url, bases))
                    except NetworkError as exc:
                        if part == 1 or exc.error_code != DL_FILE_NOT_FOUND:
                            raise
                        logger.info("End of split parts after part %d", part - 1)
                        break
                    writer.write(payload)
                    if progress_callback is not None:
                        progress_callback(writer.tell(), None)
                    del payload
            os.replace(joined, dest)
        except BaseException:
            joined.unlink(missing_ok=True)
            raise
        return dest



def fetch_bytes(url: str, *, timeout: float = DEFAULT_TIMEOUT, session: requests.Session | None = None) -> bytes:
    """Single GET without retries; raises ``requests`` errors unchanged."""

    client = session or requests
    response = client.get(url, timeout=timeout)
    response.raise_for_status()
    return response.content
