"""Auxiliary localization files copied into the working tree before a rebuild.

Files are fetched with at most three downloads in flight.  A small manifest
(``hashes.json``) remembers the ETag or Last-Modified value of every cached
file so unchanged files are copied from the cache instead of downloaded.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import requests

from .errors import SetforgeError
from .fetch import RetryingFetcher
from .fileio import write_bytes_in_chunks

logger = logging.getLogger(__name__)

LOCALIZATION_DIR = ("resource", "localization")
HASH_MANIFEST_NAME = "hashes.json"
MAX_CONCURRENT_DOWNLOADS = 3


@dataclass
class AuxiliaryResult:
    total: int
    applied: List[str] = field(default_factory=list)
    from_cache: int = 0

    @property
    def healthy(self) -> bool:
        return len(self.applied) >= self.total // 2


class AuxiliaryFetcher:
    def __init__(
        self,
        fetcher: RetryingFetcher,
        base_url: str,
        files: Sequence[str],
        cache_dir: Path,
        *,
        max_workers: int = MAX_CONCURRENT_DOWNLOADS,
    ) -> None:
        self.fetcher = fetcher
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.files = tuple(files)
        self.cache_dir = cache_dir
        self.max_workers = max(1, min(max_workers, MAX_CONCURRENT_DOWNLOADS))
        self._lock = threading.Lock()

    @property
    def manifest_path(self) -> Path:
        return self.cache_dir / HASH_MANIFEST_NAME

    def _load_manifest(self) -> Dict[str, str]:
        try:
            document = json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable hash manifest: %s", exc)
            return {}
        return {str(key): str(value) for key, value in document.items()} if isinstance(document, dict) else {}

    def _save_manifest(self, manifest: Dict[str, str]) -> None:
        payload = json.dumps(manifest, indent=2, sort_keys=True).encode("utf-8")
        status, error = write_bytes_in_chunks(self.manifest_path, payload)
        if status == "error":
            logger.warning("Could not save hash manifest: %s", error)

    def _remote_version(self, url: str) -> str | None:
        try:
            response = self.fetcher.session.head(url, timeout=self.fetcher.timeout, allow_redirects=True)
        except requests.RequestException:
            return None
        if not response.ok:
            return None
        return response.headers.get("ETag") or response.headers.get("Last-Modified")

    def _apply_one(self, name: str, target_dir: Path, manifest: Dict[str, str]) -> Tuple[bool, bool]:
        url = self.base_url + name
        target = target_dir / name
        cached = self.cache_dir / name

        remote = self._remote_version(url)
        with self._lock:
            known = manifest.get(name)
        if remote and known == remote and cached.is_file():
            try:
                shutil.copyfile(cached, target)
                return True, True
            except OSError as exc:
                logger.warning("Cached copy of %s unusable: %s", name, exc)

        try:
            content = self.fetcher.fetch([url])
        except SetforgeError as exc:
            logger.warning("Failed to download %s: %s", name, exc)
            return False, False

        status, error = write_bytes_in_chunks(cached, content)
        if status == "success":
            with self._lock:
                manifest[name] = remote or hashlib.sha1(content).hexdigest()
        else:
            logger.warning("Failed to cache %s: %s", name, error)

        status, error = write_bytes_in_chunks(target, content)
        if status != "success":
            logger.warning("Failed to write %s: %s", name, error)
            return False, False
        return True, False

    def apply(self, tree_root: Path) -> AuxiliaryResult:
        """Place every auxiliary file under ``resource/localization`` of *tree_root*."""

        target_dir = tree_root.joinpath(*LOCALIZATION_DIR)
        target_dir.mkdir(parents=True, exist_ok=True)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        manifest = self._load_manifest()
        result = AuxiliaryResult(total=len(self.files))
        logger.info("Downloading %d localization files", result.total)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="aux") as pool:
            futures = [(name, pool.submit(self._apply_one, name, target_dir, manifest)) for name in self.files]
            for name, future in futures:
                ok, cached = future.result()
                if ok:
                    result.applied.append("/".join(LOCALIZATION_DIR + (name,)))
                    result.from_cache += int(cached)

        self._save_manifest(manifest)
        logger.info(
            "Localization: %d/%d files (%d from cache)", len(result.applied), result.total, result.from_cache
        )
        return result
