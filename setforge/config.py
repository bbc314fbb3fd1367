"""Runtime settings and remote feature switches.

Settings are layered: built-in defaults, then an optional JSON file, then
``SETFORGE_*`` environment variables.  :class:`SettingsStore` caches the
resolved record until it is invalidated, so callers never depend on hidden
module state.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

import requests

from .errors import ValidationError
from .fetch import (
    DEFAULT_INITIAL_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    DEFAULT_MIRROR_BASES,
    DEFAULT_MULTIPLIER,
    DEFAULT_TIMEOUT,
    PRIMARY_CDN_BASE,
    RAW_GITHUB_BASE,
    fetch_bytes,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "SETFORGE_"
SETTINGS_FILE_ENV = "SETFORGE_SETTINGS"

DEFAULT_MODS_FOLDER = "_ArdysaMods"

LOCALIZATION_FILES = (
    "dota_brazilian.txt",
    "dota_english.txt",
    "dota_french.txt",
    "dota_german.txt",
    "dota_italian.txt",
    "dota_japanese.txt",
    "dota_koreana.txt",
    "dota_portuguese.txt",
    "dota_russian.txt",
    "dota_schinese.txt",
    "dota_spanish.txt",
    "dota_tchinese.txt",
    "dota_ukrainian.txt",
)

FEATURE_ACCESS_URL = f"{PRIMARY_CDN_BASE}/config/feature_access.json"
FEATURE_ACCESS_TIMEOUT = 5.0
DEFAULT_DISABLED_MESSAGE = "This feature is temporarily unavailable. Please try again later."


def _default_cache_root() -> Path:
    base = os.environ.get("XDG_CACHE_HOME")
    return (Path(base) if base else Path.home() / ".cache") / "setforge"


@dataclass(frozen=True)
class Settings:
    work_root: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "setforge")
    cache_root: Path = field(default_factory=_default_cache_root)
    extractor_path: str = "hlextract"
    rebuilder_path: str = "vpk"
    mods_folder: str = DEFAULT_MODS_FOLDER
    mirror_bases: Tuple[str, ...] = DEFAULT_MIRROR_BASES
    base_archive_url: str = f"{PRIMARY_CDN_BASE}/Assets/Original.zip"
    localization_base_url: str = f"{RAW_GITHUB_BASE}/remote/localization/"
    localization_files: Tuple[str, ...] = LOCALIZATION_FILES
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    multiplier: float = DEFAULT_MULTIPLIER
    timeout: float = DEFAULT_TIMEOUT
    tool_timeout: float = 600.0
    auxiliary_workers: int = 3

    @property
    def sets_cache(self) -> Path:
        return self.cache_root / "sets"

    @property
    def base_cache(self) -> Path:
        return self.cache_root / "base"

    @property
    def localization_cache(self) -> Path:
        return self.cache_root / "localization"


def _coerce(name: str, current: Any, raw: Any) -> Any:
    try:
        if isinstance(current, Path):
            return Path(raw).expanduser()
        if isinstance(current, tuple):
            if isinstance(raw, str):
                return tuple(part.strip() for part in raw.split(",") if part.strip())
            return tuple(str(part) for part in raw)
        if isinstance(current, bool):
            if isinstance(raw, str):
                return raw.strip().lower() in {"1", "true", "yes", "on"}
            return bool(raw)
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
        return str(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"invalid value for setting {name!r}: {raw!r}") from exc


def _apply(settings: Settings, overrides: Mapping[str, Any], origin: str) -> Settings:
    known = {item.name for item in fields(Settings)}
    changes: Dict[str, Any] = {}
    for name, raw in overrides.items():
        if name not in known:
            logger.warning("Ignoring unknown setting %r from %s", name, origin)
            continue
        changes[name] = _coerce(name, getattr(settings, name), raw)
    return replace(settings, **changes) if changes else settings


def load_settings(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Resolve settings from defaults, *path* (JSON) and *environ*."""

    environ = os.environ if environ is None else environ
    settings = Settings()

    if path is None and environ.get(SETTINGS_FILE_ENV):
        path = Path(environ[SETTINGS_FILE_ENV])
    if path is not None:
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ValidationError(f"settings file not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise ValidationError(f"settings file {path} is not valid JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise ValidationError(f"settings file {path} must contain a JSON object")
        settings = _apply(settings, document, str(path))

    from_env = {
        key[len(ENV_PREFIX) :].lower(): value
        for key, value in environ.items()
        if key.startswith(ENV_PREFIX) and key != SETTINGS_FILE_ENV
    }
    return _apply(settings, from_env, "environment")


class SettingsStore:
    """Explicit cache for the resolved :class:`Settings`."""

    def __init__(self, path: Path | None = None, environ: Mapping[str, str] | None = None) -> None:
        self._path = path
        self._environ = environ
        self._settings: Settings | None = None
        self._lock = threading.Lock()

    def get(self) -> Settings:
        with self._lock:
            if self._settings is None:
                self._settings = load_settings(self._path, self._environ)
            return self._settings

    def invalidate(self) -> None:
        with self._lock:
            self._settings = None

    def reload(self) -> Settings:
        self.invalidate()
        return self.get()


@dataclass(frozen=True)
class FeatureSwitch:
    enabled: bool = True
    disabled_message: str | None = None

    @property
    def display_message(self) -> str:
        return self.disabled_message or DEFAULT_DISABLED_MESSAGE


@dataclass(frozen=True)
class FeatureAccess:
    skin_selector: FeatureSwitch = FeatureSwitch()
    auxiliary_assets: FeatureSwitch = FeatureSwitch()

    @classmethod
    def from_dict(cls, document: Mapping[str, Any]) -> "FeatureAccess":
        """Merge a remote override onto the defaults; unknown keys are ignored."""

        def _switch(key: str) -> FeatureSwitch:
            entry = document.get(key)
            if not isinstance(entry, Mapping):
                return FeatureSwitch()
            message = entry.get("disabledMessage")
            return FeatureSwitch(
                enabled=bool(entry.get("enabled", True)),
                disabled_message=str(message) if message else None,
            )

        return cls(skin_selector=_switch("skinSelector"), auxiliary_assets=_switch("miscellaneous"))


def fetch_feature_access(
    url: str = FEATURE_ACCESS_URL,
    *,
    timeout: float = FEATURE_ACCESS_TIMEOUT,
    session: requests.Session | None = None,
) -> FeatureAccess:
    """Return the remote feature switches, or the all-enabled defaults on any failure."""

    try:
        document = json.loads(fetch_bytes(url, timeout=timeout, session=session))
    except (requests.RequestException, ValueError) as exc:
        logger.info("Feature access unavailable, using defaults: %s", exc)
        return FeatureAccess()
    if not isinstance(document, Mapping):
        logger.info("Feature access document is not an object, using defaults")
        return FeatureAccess()
    return FeatureAccess.from_dict(document)
