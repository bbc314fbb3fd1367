"""Records of what a generation job installed into the target.

Both logs live under ``<target>/game/<mods folder>/_temp`` and are loaded once
per job, mutated while the job runs and saved atomically at the end.  A log
that cannot be read is treated as absent.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List

from .config import DEFAULT_MODS_FOLDER
from .errors import PatchWriteError
from .fileio import write_bytes_in_chunks

logger = logging.getLogger(__name__)

LOG_DIRECTORY = "_temp"
EXTRACTION_LOG_NAME = "hero_extraction_log.json"
OPTIONS_LOG_NAME = "misc_extraction_log.json"


def log_directory(target_root: Path, mods_folder: str = DEFAULT_MODS_FOLDER) -> Path:
    return target_root / "game" / mods_folder / LOG_DIRECTORY


def _read_json(path: Path) -> dict | None:
    if not path.is_file():
        return None
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable log %s: %s", path, exc)
        return None
    return document if isinstance(document, dict) else None


def _write_json(path: Path, document: dict) -> None:
    payload = json.dumps(document, indent=2).encode("utf-8")
    status, error = write_bytes_in_chunks(path, payload)
    if status != "success":
        raise PatchWriteError(f"could not save {path.name}: {error}") from error


@dataclass
class InstalledSet:
    source_id: str
    selection_name: str
    files: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"sourceId": self.source_id, "selectionName": self.selection_name, "files": list(self.files)}

    @classmethod
    def from_dict(cls, data: dict) -> "InstalledSet":
        return cls(
            source_id=str(data.get("sourceId", "")),
            selection_name=str(data.get("selectionName", "")),
            files=[str(name) for name in data.get("files", [])],
        )


@dataclass
class ExtractionLog:
    installed_sets: List[InstalledSet] = field(default_factory=list)

    @staticmethod
    def get_log_path(target_root: Path, mods_folder: str = DEFAULT_MODS_FOLDER) -> Path:
        return log_directory(target_root, mods_folder) / EXTRACTION_LOG_NAME

    @classmethod
    def load(cls, target_root: Path, mods_folder: str = DEFAULT_MODS_FOLDER) -> "ExtractionLog | None":
        document = _read_json(cls.get_log_path(target_root, mods_folder))
        if document is None:
            return None
        entries = document.get("installedSets", [])
        return cls([InstalledSet.from_dict(entry) for entry in entries if isinstance(entry, dict)])

    def save(self, target_root: Path, mods_folder: str = DEFAULT_MODS_FOLDER) -> Path:
        path = self.get_log_path(target_root, mods_folder)
        _write_json(path, {"installedSets": [entry.to_dict() for entry in self.installed_sets]})
        return path

    @classmethod
    def delete(cls, target_root: Path, mods_folder: str = DEFAULT_MODS_FOLDER) -> None:
        cls.get_log_path(target_root, mods_folder).unlink(missing_ok=True)

    def add(self, source_id: str, selection_name: str, files: Iterable[str]) -> None:
        self.installed_sets.append(InstalledSet(source_id, selection_name, list(files)))

    def all_files(self) -> List[str]:
        seen: Dict[str, None] = {}
        for entry in self.installed_sets:
            for name in entry.files:
                seen.setdefault(name, None)
        return list(seen)


@dataclass
class OptionsExtractionLog:
    """Auxiliary-option record: ``{generatedAt, mode, selections, installedFiles}``."""

    generated_at: str = ""
    mode: str = ""
    selections: Dict[str, str] = field(default_factory=dict)
    installed_files: Dict[str, List[str]] = field(default_factory=dict)

    @staticmethod
    def get_log_path(target_root: Path, mods_folder: str = DEFAULT_MODS_FOLDER) -> Path:
        return log_directory(target_root, mods_folder) / OPTIONS_LOG_NAME

    @classmethod
    def load(cls, target_root: Path, mods_folder: str = DEFAULT_MODS_FOLDER) -> "OptionsExtractionLog | None":
        document = _read_json(cls.get_log_path(target_root, mods_folder))
        if document is None:
            return None
        return cls(
            generated_at=str(document.get("generatedAt", "")),
            mode=str(document.get("mode", "")),
            selections={str(key): str(value) for key, value in (document.get("selections") or {}).items()},
            installed_files={
                str(key): [str(name) for name in value]
                for key, value in (document.get("installedFiles") or {}).items()
            },
        )

    def save(self, target_root: Path, mods_folder: str = DEFAULT_MODS_FOLDER) -> Path:
        if not self.generated_at:
            self.generated_at = datetime.now(timezone.utc).isoformat()
        path = self.get_log_path(target_root, mods_folder)
        _write_json(
            path,
            {
                "generatedAt": self.generated_at,
                "mode": self.mode,
                "selections": dict(self.selections),
                "installedFiles": {key: list(value) for key, value in self.installed_files.items()},
            },
        )
        return path

    @classmethod
    def delete(cls, target_root: Path, mods_folder: str = DEFAULT_MODS_FOLDER) -> None:
        cls.get_log_path(target_root, mods_folder).unlink(missing_ok=True)

    def add_files(self, category: str, relative_paths: Iterable[str]) -> None:
        bucket = self.installed_files.setdefault(category, [])
        for name in relative_paths:
            if name not in bucket:
                bucket.append(name)

    def get_files(self, category: str) -> List[str]:
        return list(self.installed_files.get(category, []))

    def clear_files(self, category: str) -> None:
        self.installed_files.pop(category, None)
