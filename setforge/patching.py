"""Validate, merge and apply per-entry replacement blocks.

Sources contribute ``"id" { ... }`` blocks through their manifest
(``index.txt``).  Blocks are accumulated into a :class:`MergeMap` first and the
whole map is applied to the target document in a single pass, so the target
file is written exactly once no matter how many sources took part.
"""

from __future__ import annotations

import codecs
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Tuple

from . import keyvalues
from .errors import (
    GEN_INDEX_NOT_FOUND,
    VPK_ITEMS_GAME_MISSING,
    NotFoundError,
    PatchWriteError,
    StructuralMismatchError,
    ValidationError,
)
from .fileio import check_cancelled, write_bytes_in_chunks

logger = logging.getLogger(__name__)

MISSING_ID = "MissingId"
EXISTING_MISSING_PREFAB = "ExistingMissingPrefab"
REPLACEMENT_MISSING_PREFAB = "ReplacementMissingPrefab"
EXISTING_WRONG_OWNER = "ExistingWrongOwner"
REPLACEMENT_WRONG_OWNER = "ReplacementWrongOwner"
NOT_FOUND_IN_TARGET = "NotFoundInTarget"

TARGET_FILE_NAME = "items_game.txt"
TARGET_CANDIDATES = (
    ("scripts", "items", TARGET_FILE_NAME),
    ("scripts", TARGET_FILE_NAME),
    (TARGET_FILE_NAME,),
)
INDEX_FILE_NAME = "index.txt"


def validate_replacement(
    existing: str,
    candidate: str,
    owner_tag: str,
    expected_id: str,
) -> str | None:
    """Return the first reason *candidate* may not replace *existing*, or ``None``.

    Checks run in a fixed order: the candidate names the id, both blocks carry
    the default-item prefab, both blocks are used by *owner_tag*.
    """

    if f'"{expected_id}"' not in candidate:
        return MISSING_ID
    if not keyvalues.has_default_prefab(existing):
        return EXISTING_MISSING_PREFAB
    if not keyvalues.has_default_prefab(candidate):
        return REPLACEMENT_MISSING_PREFAB
    if not keyvalues.is_owned_by(existing, owner_tag):
        return EXISTING_WRONG_OWNER
    if not keyvalues.is_owned_by(candidate, owner_tag):
        return REPLACEMENT_WRONG_OWNER
    return None


@dataclass
class MergedBlock:
    text: str
    source_tag: str


class MergeMap:
    """Ordered ``id -> MergedBlock`` map where the last writer wins.

    Insertion order is preserved; overwriting an id keeps its original
    position.  Every overwrite by a different source is kept in
    :attr:`overwritten` as ``(id, previous_source, new_source)``.
    """

    def __init__(self) -> None:
        self._blocks: Dict[str, MergedBlock] = {}
        self.overwritten: List[Tuple[str, str, str]] = []

    def __len__(self) -> int:
        return len(self._blocks)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._blocks

    def __getitem__(self, entry_id: str) -> MergedBlock:
        return self._blocks[entry_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._blocks)

    def items(self) -> Iterable[Tuple[str, MergedBlock]]:
        return self._blocks.items()

    def put(self, entry_id: str, block: MergedBlock) -> None:
        previous = self._blocks.get(entry_id)
        if previous is not None and previous.source_tag != block.source_tag:
            logger.warning(
                "Entry %s from %s overrides the block contributed by %s",
                entry_id,
                block.source_tag,
                previous.source_tag,
            )
            self.overwritten.append((entry_id, previous.source_tag, block.source_tag))
        self._blocks[entry_id] = block

    def add_source(self, source_tag: str, ids_of_interest: Iterable[str], index_text: str) -> int:
        """Collect the wanted blocks of one manifest and merge them in.

        Returns the number of blocks the source contributed.
        """

        incoming = collect(source_tag, ids_of_interest, index_text)
        merge(self, incoming)
        return len(incoming)

    def clear(self) -> None:
        self._blocks.clear()
        self.overwritten.clear()


def collect(source_tag: str, ids_of_interest: Iterable[str], index_text: str) -> Dict[str, MergedBlock]:
    """Parse *index_text* once and keep the blocks whose id was asked for."""

    wanted = [str(entry_id) for entry_id in ids_of_interest]
    parsed = keyvalues.parse_kv_blocks(index_text)
    collected: Dict[str, MergedBlock] = {}
    for entry_id in wanted:
        text = parsed.get(entry_id)
        if text is None:
            logger.debug("Entry %s not present in the manifest of %s", entry_id, source_tag)
            continue
        collected[entry_id] = MergedBlock(text, source_tag)
    return collected


def merge(existing: MergeMap, incoming: Mapping[str, MergedBlock]) -> MergeMap:
    for entry_id, block in incoming.items():
        existing.put(entry_id, block)
    return existing


@dataclass
class PatchReport:
    applied: int = 0
    skipped: int = 0
    applied_ids: List[str] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)

    def record_applied(self, entry_id: str) -> None:
        self.applied += 1
        self.applied_ids.append(entry_id)

    def record_skipped(self, entry_id: str, reason: str) -> None:
        self.skipped += 1
        self.failures.append((entry_id, reason))

    def to_dict(self) -> Dict[str, object]:
        return {
            "applied": self.applied,
            "skipped": self.skipped,
            "appliedIds": list(self.applied_ids),
            "failures": [{"id": entry_id, "reason": reason} for entry_id, reason in self.failures],
        }


def apply_merged(
    target_text: str,
    merge_map: MergeMap,
    owner_tags_by_id: Mapping[str, str] | None = None,
    cancel_event: threading.Event | None = None,
    *,
    strict: bool = False,
) -> Tuple[str, PatchReport]:
    """Apply every block of *merge_map* to *target_text* in one pass.

    The owner of an entry is looked up in *owner_tags_by_id* and defaults to
    the block's source tag.  Entries that cannot be located or fail
    validation are recorded in the report and left untouched; with *strict*
    the first validation failure raises :class:`StructuralMismatchError`.
    """

    owner_tags_by_id = owner_tags_by_id or {}
    report = PatchReport()
    text = target_text

    for entry_id, merged in merge_map.items():
        check_cancelled(cancel_event)
        owner_tag = owner_tags_by_id.get(entry_id, merged.source_tag)

        # Prefer the owner's entry; without one the plain match lets the
        # validator name the mismatch.
        existing = keyvalues.find_block(text, entry_id, owner_tag)
        if existing is None:
            existing = keyvalues.find_block(text, entry_id)
        if existing is None:
            logger.info("Entry %s not found in target - skipping", entry_id)
            report.record_skipped(entry_id, NOT_FOUND_IN_TARGET)
            continue

        reason = validate_replacement(existing.text, merged.text, owner_tag, entry_id)
        if reason is not None:
            logger.warning("Entry %s from %s rejected: %s", entry_id, merged.source_tag, reason)
            if strict:
                raise StructuralMismatchError(entry_id, reason)
            report.record_skipped(entry_id, reason)
            continue

        text = keyvalues.splice_block(text, existing, merged.text)
        report.record_applied(entry_id)
        logger.debug("Replaced entry %s with the block from %s", entry_id, merged.source_tag)

    logger.info("Patching complete: %d/%d applied, %d skipped", report.applied, len(merge_map), report.skipped)
    return text, report


def patch_file(
    path: Path,
    merge_map: MergeMap,
    owner_tags_by_id: Mapping[str, str] | None = None,
    *,
    cancel_event: threading.Event | None = None,
    strict: bool = False,
) -> PatchReport:
    """Patch the document at *path* in place, writing it exactly once.

    Line endings and a leading byte order mark are written back as found, so
    entries that were not replaced stay byte-identical.
    """

    try:
        raw = path.read_bytes()
    except FileNotFoundError as exc:
        raise NotFoundError(f"target file not found: {path}", error_code=VPK_ITEMS_GAME_MISSING) from exc
    bom = codecs.BOM_UTF8 if raw.startswith(codecs.BOM_UTF8) else b""
    try:
        original = raw[len(bom) :].decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValidationError(f"target file is not valid UTF-8: {path}") from exc
    del raw

    text, report = apply_merged(original, merge_map, owner_tags_by_id, cancel_event, strict=strict)
    del original
    if report.applied == 0:
        return report

    status, error = write_bytes_in_chunks(path, bom + text.encode("utf-8"), cancel_event=cancel_event)
    if status == "cancelled":
        check_cancelled(cancel_event)
    if status == "error":
        raise PatchWriteError(f"could not write {path}: {error}") from error
    return report


def find_items_game(root: Path) -> Path | None:
    """Return the target document inside an extracted data tree."""

    for parts in TARGET_CANDIDATES:
        candidate = root.joinpath(*parts)
        if candidate.is_file():
            return candidate
    for candidate in sorted(root.rglob(TARGET_FILE_NAME)):
        if candidate.is_file():
            return candidate
    return None


def require_items_game(root: Path) -> Path:
    path = find_items_game(root)
    if path is None:
        raise NotFoundError(f"{TARGET_FILE_NAME} not found under {root}", error_code=VPK_ITEMS_GAME_MISSING)
    return path


def find_index_file(root: Path) -> Path | None:
    """Return a source's manifest: ``index.txt``, any ``*index*.txt``, any ``*.txt``."""

    direct = root / INDEX_FILE_NAME
    if direct.is_file():
        return direct
    for pattern in ("*index*.txt", "*.txt"):
        for candidate in sorted(root.rglob(pattern)):
            if candidate.is_file():
                return candidate
    return None


def require_index_file(root: Path) -> Path:
    path = find_index_file(root)
    if path is None:
        raise NotFoundError(f"no {INDEX_FILE_NAME} found under {root}", error_code=GEN_INDEX_NOT_FOUND)
    return path
