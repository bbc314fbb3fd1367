"""Collaborators around the generation pipeline.

The package tools are external executables: the extractor unpacks the base
package into a directory tree and the rebuilder packs a tree back into a
``*.vpk``.  Both are driven through :mod:`subprocess`; their output is logged
and a non-zero exit code counts as failure.  Archives published by sources
are plain zip files handled with :mod:`zipfile`.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import threading
import time
import zipfile
import zlib
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

from .errors import (
    VPK_EXTRACT_FAILED,
    VPK_FILE_NOT_FOUND,
    VPK_TOOL_NOT_FOUND,
    CancellationError,
    ExtractionError,
    NotFoundError,
)
from .fetch import DEFAULT_MIRROR_BASES, RetryingFetcher
from .fileio import atomic_copy, check_cancelled, remove_tree
from .patching import TARGET_CANDIDATES

logger = logging.getLogger(__name__)

PACKAGE_NAME = "pak01_dir.vpk"
BASE_ARCHIVE_NAME = "Original.zip"
EXTRACTOR_ROOT = "root"
TOOL_POLL_INTERVAL = 0.25
OUTPUT_CLOCK_SLACK = 2.0
MIN_ARCHIVE_SIZE = 1024

CONTENT_FOLDERS = ("models", "particles", "materials", "sounds", "scripts", "panorama", "resource")

_UNSAFE_NAME = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def safe_name(value: str) -> str:
    cleaned = _UNSAFE_NAME.sub("_", value).strip(" .")
    return cleaned or "unnamed"


def _run_tool(
    command: Sequence[str],
    *,
    cwd: Path | None = None,
    cancel_event: threading.Event | None = None,
    timeout: float | None = None,
) -> int | None:
    """Run *command*, log its output and return the exit code.

    ``None`` means the tool could not be started or ran past *timeout*.  The
    process is killed and :class:`CancellationError` raised once
    *cancel_event* is set.
    """

    logger.info("Running tool: %s", " ".join(str(part) for part in command))
    try:
        process = subprocess.Popen(
            [str(part) for part in command],
            cwd=str(cwd) if cwd is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
    except FileNotFoundError:
        logger.error("[%s] tool not found: %s", VPK_TOOL_NOT_FOUND, command[0])
        return None
    except OSError as exc:
        logger.error("[%s] could not start %s: %s", VPK_TOOL_NOT_FOUND, command[0], exc)
        return None

    deadline = time.monotonic() + timeout if timeout else None
    while True:
        try:
            stdout, stderr = process.communicate(timeout=TOOL_POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel_event is not None and cancel_event.is_set():
                process.kill()
                process.communicate()
                raise CancellationError(f"{command[0]} cancelled")
            if deadline is not None and time.monotonic() > deadline:
                process.kill()
                process.communicate()
                logger.error("%s timed out after %.0f seconds", command[0], timeout)
                return None

    if stdout:
        logger.debug("Tool stdout:\n%s", stdout)
    if stderr:
        logger.error("Tool stderr:\n%s", stderr)
    logger.info("Tool exited with code %d", process.returncode)
    return process.returncode


def _hoist_root(dest_dir: Path) -> None:
    """Move the extractor's ``root`` folder contents up into *dest_dir*."""

    nested = dest_dir / EXTRACTOR_ROOT
    if not nested.is_dir():
        return
    for child in list(nested.iterdir()):
        target = dest_dir / child.name
        if target.exists():
            if target.is_dir():
                shutil.rmtree(target)
            else:
                target.unlink()
        shutil.move(str(child), str(target))
    nested.rmdir()


def extract(
    tool_path: str,
    archive_path: Path,
    dest_dir: Path,
    *,
    cancel_event: threading.Event | None = None,
    timeout: float | None = None,
) -> bool:
    """Unpack the base package with the external extractor."""

    if not archive_path.is_file():
        logger.error("[%s] package not found: %s", VPK_FILE_NOT_FOUND, archive_path)
        return False

    dest_dir.mkdir(parents=True, exist_ok=True)
    code = _run_tool(
        [tool_path, "-p", archive_path, "-d", dest_dir, "-e", EXTRACTOR_ROOT],
        cancel_event=cancel_event,
        timeout=timeout,
    )
    if code != 0:
        logger.error("[%s] extraction of %s failed", VPK_EXTRACT_FAILED, archive_path.name)
        return False

    check_cancelled(cancel_event)
    _hoist_root(dest_dir)
    if not dest_dir.joinpath(*TARGET_CANDIDATES[0]).is_file():
        logger.error("[%s] items_game.txt missing after extraction", VPK_EXTRACT_FAILED)
        return False
    return True


def find_output_package(search_dirs: Iterable[Path], started_at: float) -> Path | None:
    """Return the newest ``*.vpk`` written after *started_at* in any of *search_dirs*."""

    threshold = started_at - OUTPUT_CLOCK_SLACK
    candidates: List[Tuple[float, Path]] = []
    for directory in search_dirs:
        if not directory.is_dir():
            continue
        for path in directory.glob("*.vpk"):
            modified = path.stat().st_mtime
            if modified >= threshold:
                candidates.append((modified, path))
    if not candidates:
        return None
    return max(candidates, key=lambda item: item[0])[1]


def rebuild(
    tool_path: str,
    source_dir: Path,
    build_dir: Path,
    *,
    work_root: Path | None = None,
    cancel_event: threading.Event | None = None,
    timeout: float | None = None,
) -> str | None:
    """Pack *source_dir* with the external rebuilder; return the new package path."""

    build_dir.mkdir(parents=True, exist_ok=True)
    started_at = time.time()
    code = _run_tool([tool_path, source_dir], cwd=build_dir, cancel_event=cancel_event, timeout=timeout)
    if code != 0:
        logger.error("Rebuild failed for %s", source_dir)
        return None

    search = [build_dir, source_dir, source_dir.parent]
    if work_root is not None:
        search.append(work_root)
    output = find_output_package(search, started_at)
    if output is None:
        logger.error("Rebuild finished but no new package was found")
        return None
    return str(output)


def installed_package_path(target_root: Path, mods_folder: str) -> Path:
    return target_root / "game" / mods_folder / PACKAGE_NAME


def install(target_root: Path, package_path: Path, mods_folder: str = "_ArdysaMods") -> bool:
    """Swap the rebuilt package into the target; ignores cancellation."""

    destination = installed_package_path(target_root, mods_folder)
    try:
        atomic_copy(package_path, destination)
    except OSError as exc:
        logger.error("Install of %s failed: %s", package_path.name, exc)
        return False
    logger.info("Installed %s", destination)
    return True


def extract_zip(
    archive_path: Path,
    dest_dir: Path,
    *,
    cancel_event: threading.Event | None = None,
) -> Path:
    """Extract a zip archive, refusing members that escape *dest_dir*."""

    dest_dir.mkdir(parents=True, exist_ok=True)
    root = dest_dir.resolve()
    try:
        with zipfile.ZipFile(archive_path) as archive:
            for member in archive.infolist():
                check_cancelled(cancel_event)
                target = (dest_dir / member.filename).resolve()
                if target != root and root not in target.parents:
                    raise ExtractionError(f"archive member escapes the destination: {member.filename}")
                archive.extract(member, dest_dir)
    except ExtractionError:
        raise
    except zipfile.BadZipFile as exc:
        raise ExtractionError(f"{archive_path.name} is not a valid zip archive: {exc}") from exc
    except OSError as exc:
        raise ExtractionError(f"could not extract {archive_path.name}: {exc}") from exc
    except (zlib.error, EOFError, RuntimeError, NotImplementedError) as exc:
        # encrypted members, unsupported compression and truncated streams
        raise ExtractionError(f"could not extract {archive_path.name}: {exc}") from exc
    return dest_dir


def find_content_root(folder: Path) -> Path:
    """Return the directory holding the asset folders, one level of nesting allowed."""

    def _has_content(directory: Path) -> bool:
        return any((directory / name).is_dir() for name in CONTENT_FOLDERS)

    if _has_content(folder):
        return folder
    subdirs = sorted(child for child in folder.iterdir() if child.is_dir())
    for child in subdirs:
        if _has_content(child):
            return child
    if len(subdirs) == 1:
        return subdirs[0]
    return folder


def archive_file_name(url: str) -> str:
    name = url.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0]
    if name.lower().endswith(".001"):
        name = name[: -len(".001")]
    return name


class SetArchiveCache:
    """Download source archives once and extract them into a scratch folder."""

    def __init__(
        self,
        fetcher: RetryingFetcher,
        cache_root: Path,
        bases: Sequence[str] = DEFAULT_MIRROR_BASES,
    ) -> None:
        self.fetcher = fetcher
        self.cache_root = cache_root
        self.bases = tuple(bases)

    def archive_path(self, source_id: str, selection_name: str, url: str) -> Path:
        return self.cache_root / safe_name(source_id) / safe_name(selection_name) / archive_file_name(url)

    def download_and_extract(
        self,
        source_id: str,
        selection_name: str,
        url: str,
        scratch_dir: Path,
        cancel_event: threading.Event | None = None,
    ) -> Path:
        archive = self.archive_path(source_id, selection_name, url)
        if archive.is_file():
            logger.info("Using cached archive %s", archive)
        else:
            logger.info("Downloading %s for %s", selection_name, source_id)
            self.fetcher.download_archive(url, archive, self.bases)

        target = scratch_dir / f"{safe_name(source_id)}_{Path(archive.name).stem}"
        remove_tree(target)
        try:
            extract_zip(archive, target, cancel_event=cancel_event)
        except ExtractionError:
            # a corrupt cached archive is fetched again next time
            archive.unlink(missing_ok=True)
            raise
        return target


class BaseDataProvider:
    """Provide the extracted base tree, reusing the cached copy when complete."""

    def __init__(
        self,
        fetcher: RetryingFetcher,
        cache_root: Path,
        extractor_path: str,
        archive_url: str,
        *,
        bases: Sequence[str] = DEFAULT_MIRROR_BASES,
        tool_timeout: float | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.cache_root = cache_root
        self.extractor_path = extractor_path
        self.archive_url = archive_url
        self.bases = tuple(bases)
        self.tool_timeout = tool_timeout

    @property
    def extracted_dir(self) -> Path:
        return self.cache_root / "vpk_extracted"

    def _is_complete(self) -> bool:
        return self.extracted_dir.joinpath(*TARGET_CANDIDATES[0]).is_file()

    def _download(self, archive: Path) -> None:
        self.fetcher.download_archive(self.archive_url, archive, self.bases)
        if archive.stat().st_size < MIN_ARCHIVE_SIZE:
            archive.unlink(missing_ok=True)
            raise ExtractionError("downloaded base archive is incomplete")

    def _find_package(self, folder: Path) -> Path | None:
        direct = folder / PACKAGE_NAME
        if direct.is_file():
            return direct
        for pattern in (PACKAGE_NAME, "*.vpk"):
            for candidate in sorted(folder.rglob(pattern)):
                return candidate
        return None

    def get(self, cancel_event: threading.Event | None = None) -> Path:
        if self._is_complete():
            logger.info("Using cached base files")
            return self.extracted_dir

        archive = self.cache_root / BASE_ARCHIVE_NAME
        contents = self.cache_root / "zip_contents"
        if not archive.is_file():
            self._download(archive)
        check_cancelled(cancel_event)

        package = self._find_package(contents) if contents.is_dir() else None
        if package is None:
            remove_tree(contents)
            try:
                extract_zip(archive, contents, cancel_event=cancel_event)
            except ExtractionError:
                archive.unlink(missing_ok=True)
                raise
            package = self._find_package(contents)
        if package is None:
            archive.unlink(missing_ok=True)
            remove_tree(contents)
            raise NotFoundError(f"{PACKAGE_NAME} not found in {BASE_ARCHIVE_NAME}", error_code=VPK_FILE_NOT_FOUND)

        check_cancelled(cancel_event)
        remove_tree(self.extracted_dir)
        logger.info("Extracting %s (this may take a while)", package.name)
        if not extract(
            self.extractor_path,
            package,
            self.extracted_dir,
            cancel_event=cancel_event,
            timeout=self.tool_timeout,
        ):
            remove_tree(self.extracted_dir)
            raise ExtractionError(f"failed to extract {package.name}", error_code=VPK_EXTRACT_FAILED)
        return self.extracted_dir
