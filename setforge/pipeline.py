"""Generation pipeline: base tree -> merged source sets -> patched entries -> package.

A job walks the stages ``Preparing``, ``Processing``, ``Patching``,
``FetchingAuxiliary``, ``Building``, ``Installing`` and ends in ``Done``,
``Failed`` or ``Cancelled``.  Stages run one after the other on a private
working tree; the target is only touched by the final install, and the
extraction log is written after that install succeeded.

A selection that cannot be processed (missing archive, download failure, bad
archive ...) is recorded as a failed item and the loop continues.  The job
fails only when no selection could be processed at all.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Tuple

from . import tools
from .auxiliary import AuxiliaryFetcher, AuxiliaryResult
from .config import FeatureAccess, Settings
from .errors import (
    GEN_FAILED,
    CancellationError,
    ExtractionError,
    NetworkError,
    SetforgeError,
    ValidationError,
)
from .extraction_log import ExtractionLog, OptionsExtractionLog
from .fetch import RetryingFetcher
from .fileio import check_cancelled, copy_tree, remove_tree
from .patching import INDEX_FILE_NAME, MergeMap, PatchReport, find_index_file, patch_file, require_items_game

logger = logging.getLogger(__name__)

PREPARING = "Preparing"
PROCESSING = "Processing"
PATCHING = "Patching"
FETCHING_AUXILIARY = "FetchingAuxiliary"
BUILDING = "Building"
INSTALLING = "Installing"
DONE = "Done"
FAILED = "Failed"
CANCELLED = "Cancelled"

STAGE_PERCENT = {
    PREPARING: 0,
    PROCESSING: 20,
    PATCHING: 55,
    FETCHING_AUXILIARY: 60,
    BUILDING: 65,
    INSTALLING: 80,
    DONE: 100,
}

DEFAULT_SELECTION = "Default Set"
ARCHIVE_SUFFIXES = (".zip", ".zip.001")
LOCALIZATION_CATEGORY = "localization"


@dataclass
class SetSelection:
    """One source set chosen by the user."""

    source_id: str
    selection_name: str
    archive_urls: List[str] = field(default_factory=list)
    entry_ids: List[str] = field(default_factory=list)
    display_name: str = ""
    owner_tag: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.source_id

    @property
    def owner(self) -> str:
        return self.owner_tag or self.source_id

    @property
    def archive_url(self) -> str | None:
        for url in self.archive_urls:
            if url and url.lower().endswith(ARCHIVE_SUFFIXES):
                return url
        return None

    @property
    def is_default(self) -> bool:
        return self.selection_name.strip().lower() == DEFAULT_SELECTION.lower()

    @classmethod
    def from_dict(cls, data: dict) -> "SetSelection":
        try:
            return cls(
                source_id=str(data["sourceId"]),
                selection_name=str(data.get("selectionName", "")),
                archive_urls=[str(url) for url in data.get("archiveUrls", [])],
                entry_ids=[str(entry_id) for entry_id in data.get("entryIds", [])],
                display_name=str(data.get("displayName", "")),
                owner_tag=data.get("ownerTag"),
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise ValidationError(f"invalid selection: {data!r}") from exc


@dataclass
class PipelineJob:
    selections: List[SetSelection]
    target_path: Path
    work_root: Path | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    stage: str = PREPARING
    include_auxiliary: bool = True
    on_stage: Callable[[int, str], None] | None = None
    on_progress: Callable[[int, int, str], None] | None = None
    log: Callable[[str], None] | None = None

    def cancel(self) -> None:
        self.cancel_event.set()


@dataclass
class JobResult:
    success: bool
    message: str
    success_count: int = 0
    failed_items: List[Tuple[str, str]] | None = None
    patch_report: PatchReport | None = None
    stage: str = DONE
    error: BaseException | None = None
    stale_files: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "successCount": self.success_count,
            "failedItems": (
                [{"name": name, "reason": reason} for name, reason in self.failed_items]
                if self.failed_items
                else None
            ),
        }


class GenerationPipeline:
    """Run generation jobs with injectable collaborators.

    ``rebuild`` and ``install`` accept the plain ``(tool_path, source_dir,
    build_dir)`` and ``(target_root, package_path)`` signatures; when left out
    the subprocess based implementations in :mod:`setforge.tools` are used.
    ``base_provider``, ``archive_cache`` and ``auxiliary`` are built from the
    settings when not given.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        feature_access: FeatureAccess | None = None,
        fetcher: RetryingFetcher | None = None,
        base_provider=None,
        archive_cache=None,
        auxiliary=None,
        rebuild: Callable[[str, Path, Path], str | None] | None = None,
        install: Callable[[Path, Path], bool] | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.feature_access = feature_access or FeatureAccess()
        self.fetcher = fetcher
        self.base_provider = base_provider
        self.archive_cache = archive_cache
        self.auxiliary = auxiliary
        self.rebuild = rebuild
        self.install = install

    # ------------------------------------------------------------------
    def _emit(self, job: PipelineJob, message: str) -> None:
        logger.info(message)
        if job.log is not None:
            job.log(message)

    def _enter(self, job: PipelineJob, stage: str, percent: int | None = None, label: str | None = None) -> None:
        job.stage = stage
        if job.on_stage is not None:
            job.on_stage(STAGE_PERCENT.get(stage, 0) if percent is None else percent, label or stage)

    def _make_fetcher(self, job: PipelineJob) -> RetryingFetcher:
        if self.fetcher is not None:
            return self.fetcher
        settings = self.settings
        return RetryingFetcher(
            max_attempts_per_mirror=settings.max_attempts,
            initial_delay=settings.initial_delay,
            max_delay=settings.max_delay,
            multiplier=settings.multiplier,
            timeout=settings.timeout,
            cancel_event=job.cancel_event,
        )

    def _collaborators(self, job: PipelineJob):
        settings = self.settings
        fetcher = None
        if self.base_provider is None or self.archive_cache is None or self.auxiliary is None:
            fetcher = self._make_fetcher(job)
        base_provider = self.base_provider or tools.BaseDataProvider(
            fetcher,
            settings.base_cache,
            settings.extractor_path,
            settings.base_archive_url,
            bases=settings.mirror_bases,
            tool_timeout=settings.tool_timeout,
        )
        archive_cache = self.archive_cache or tools.SetArchiveCache(fetcher, settings.sets_cache, settings.mirror_bases)
        auxiliary = self.auxiliary or AuxiliaryFetcher(
            fetcher,
            settings.localization_base_url,
            settings.localization_files,
            settings.localization_cache,
            max_workers=settings.auxiliary_workers,
        )
        return base_provider, archive_cache, auxiliary

    def _validate(self, job: PipelineJob) -> List[SetSelection]:
        if not self.feature_access.skin_selector.enabled:
            raise ValidationError(self.feature_access.skin_selector.display_message)
        if not job.selections:
            raise ValidationError("no selections provided")
        if not job.target_path or not Path(job.target_path).is_dir():
            raise ValidationError(f"target path is not a directory: {job.target_path}")

        pending = []
        for selection in job.selections:
            if selection.is_default:
                logger.debug("Skipping %s: default selection needs no work", selection.label)
                continue
            pending.append(selection)
        return pending

    # ------------------------------------------------------------------
    def run(self, job: PipelineJob) -> JobResult:
        try:
            return self._run(job)
        except CancellationError:
            job.stage = CANCELLED
            self._emit(job, "Operation cancelled.")
            return JobResult(False, "Cancelled by user.", stage=CANCELLED)
        except (SetforgeError, OSError) as exc:
            job.stage = FAILED
            message = exc.detail if isinstance(exc, SetforgeError) else str(exc)
            logger.error("Generation failed: %s", exc, exc_info=not isinstance(exc, SetforgeError))
            if job.log is not None:
                job.log(f"Error: {message}")
            return JobResult(False, message, stage=FAILED, error=exc)
        except Exception as exc:
            job.stage = FAILED
            logger.exception("Generation failed unexpectedly")
            if job.log is not None:
                job.log(f"Error: {exc}")
            return JobResult(False, f"Unexpected error: {exc}", stage=FAILED, error=exc)

    def _run(self, job: PipelineJob) -> JobResult:
        check_cancelled(job.cancel_event)
        pending = self._validate(job)
        if not pending:
            self._enter(job, DONE)
            return JobResult(True, "No custom sets selected. Nothing to install.")

        settings = self.settings
        target_root = Path(job.target_path)
        work = (job.work_root or settings.work_root) / f"job_{uuid.uuid4().hex}"
        tree = work / "tree"
        build_dir = work / "build"
        scratch = work / "sets"

        try:
            base_provider, archive_cache, auxiliary = self._collaborators(job)

            self._enter(job, PREPARING)
            self._emit(job, "Preparing base files...")
            previous_log = self._previous_log(target_root)
            base = base_provider.get(job.cancel_event)
            copy_tree(base, tree, cancel_event=job.cancel_event)

            self._enter(job, PROCESSING)
            merge_map = MergeMap()
            owner_tags: Dict[str, str] = {}
            extraction_log = ExtractionLog()
            succeeded: List[str] = []
            failures: List[Tuple[str, str]] = []
            total = len(pending)

            for index, selection in enumerate(pending, start=1):
                check_cancelled(job.cancel_event)
                percent = STAGE_PERCENT[PROCESSING] + int(index * 40 / total)
                self._enter(job, PROCESSING, percent, f"Processing {selection.label}")
                if job.on_progress is not None:
                    job.on_progress(index, total, selection.label)
                self._emit(job, f"Processing {selection.label}...")

                reason = self._precheck(selection)
                if reason is not None:
                    failures.append((selection.label, reason))
                    continue
                try:
                    files = self._process_selection(
                        selection, archive_cache, tree, scratch, merge_map, owner_tags, job.cancel_event
                    )
                except NetworkError as exc:
                    failures.append((selection.label, f"Download failed: {exc.detail}"))
                    continue
                except CancellationError:
                    raise
                except (SetforgeError, OSError) as exc:
                    logger.warning("Selection %s failed: %s", selection.label, exc)
                    failures.append((selection.label, exc.detail if isinstance(exc, SetforgeError) else str(exc)))
                    continue
                except Exception as exc:
                    logger.exception("Selection %s failed unexpectedly", selection.label)
                    failures.append((selection.label, str(exc) or type(exc).__name__))
                    continue
                extraction_log.add(selection.source_id, selection.selection_name, files)
                succeeded.append(selection.label)

            if not succeeded:
                job.stage = FAILED
                summary = ", ".join(f"{name}: {reason}" for name, reason in failures)
                self._emit(job, f"Error: All selections failed: {summary}")
                return JobResult(False, f"All selections failed: {summary}", failed_items=failures, stage=FAILED)

            check_cancelled(job.cancel_event)
            report = None
            if len(merge_map):
                self._enter(job, PATCHING)
                self._emit(job, "Patching...")
                report = patch_file(require_items_game(tree), merge_map, owner_tags, cancel_event=job.cancel_event)
                merge_map.clear()
                owner_tags.clear()

            check_cancelled(job.cancel_event)
            auxiliary_result = None
            if job.include_auxiliary and self.feature_access.auxiliary_assets.enabled:
                self._enter(job, FETCHING_AUXILIARY)
                self._emit(job, "Downloading assets...")
                auxiliary_result = auxiliary.apply(tree)
                if not auxiliary_result.healthy:
                    logger.warning(
                        "Only %d of %d auxiliary files were applied",
                        len(auxiliary_result.applied),
                        auxiliary_result.total,
                    )

            check_cancelled(job.cancel_event)
            self._enter(job, BUILDING)
            self._emit(job, "Building package...")
            output = self._rebuild(job, tree, build_dir, work)
            if not output:
                raise SetforgeError("package rebuild failed", error_code=GEN_FAILED)

            check_cancelled(job.cancel_event)
            # no cancellation checks from here on
            self._enter(job, INSTALLING)
            self._emit(job, "Installing...")
            if not self._install(target_root, Path(output)):
                raise SetforgeError("package install failed", error_code=GEN_FAILED)

            stale_files = self._stale_files(previous_log, extraction_log)
            try:
                extraction_log.save(target_root, settings.mods_folder)
                if auxiliary_result is not None:
                    stale_files.extend(self._save_options_log(target_root, auxiliary_result))
            except SetforgeError as exc:
                logger.warning("Package installed but the extraction log was not saved: %s", exc)

            message = f"Successfully installed {len(succeeded)} set(s)"
            if failures:
                message += f". {len(failures)} failed."
            self._enter(job, DONE)
            self._emit(job, "Done!")
            return JobResult(
                True,
                message,
                success_count=len(succeeded),
                failed_items=failures or None,
                patch_report=report,
                stale_files=stale_files,
            )
        finally:
            if not remove_tree(work):
                logger.warning("Working directory %s was not fully removed", work)

    # ------------------------------------------------------------------
    @staticmethod
    def _precheck(selection: SetSelection) -> str | None:
        if not selection.archive_urls:
            return f"Set '{selection.selection_name}' not found"
        if selection.archive_url is None:
            return f"No .zip file found for set '{selection.selection_name}'"
        if not selection.entry_ids:
            return "No item IDs defined"
        return None

    def _process_selection(
        self,
        selection: SetSelection,
        archive_cache,
        tree: Path,
        scratch: Path,
        merge_map: MergeMap,
        owner_tags: Dict[str, str],
        cancel_event: threading.Event,
    ) -> List[str]:
        folder = archive_cache.download_and_extract(
            selection.source_id,
            selection.selection_name,
            selection.archive_url,
            scratch,
            cancel_event,
        )
        try:
            content_root = tools.find_content_root(folder)
            copied = copy_tree(content_root, tree, cancel_event=cancel_event, skip=(INDEX_FILE_NAME,))
            logger.info("Merged %d files from %s", len(copied), selection.label)

            index_path = find_index_file(content_root)
            if index_path is None:
                logger.warning("%s has no %s; entries keep their base blocks", selection.label, INDEX_FILE_NAME)
            else:
                try:
                    index_text = index_path.read_text(encoding="utf-8-sig")
                except UnicodeDecodeError as exc:
                    raise ExtractionError(f"{index_path.name} of {selection.label} is not valid UTF-8") from exc
                contributed = merge_map.add_source(selection.owner, selection.entry_ids, index_text)
                del index_text
                for entry_id in selection.entry_ids:
                    owner_tags[str(entry_id)] = selection.owner
                logger.info("Collected %d block(s) from %s", contributed, index_path.name)
            return copied
        finally:
            remove_tree(folder)

    def _rebuild(self, job: PipelineJob, tree: Path, build_dir: Path, work: Path) -> str | None:
        if self.rebuild is not None:
            return self.rebuild(self.settings.rebuilder_path, tree, build_dir)
        return tools.rebuild(
            self.settings.rebuilder_path,
            tree,
            build_dir,
            work_root=work,
            cancel_event=job.cancel_event,
            timeout=self.settings.tool_timeout,
        )

    def _install(self, target_root: Path, package: Path) -> bool:
        if self.install is not None:
            return self.install(target_root, package)
        return tools.install(target_root, package, self.settings.mods_folder)

    def _previous_log(self, target_root: Path) -> ExtractionLog | None:
        """Load the log of the current install; drop it when its package is gone."""

        mods_folder = self.settings.mods_folder
        previous = ExtractionLog.load(target_root, mods_folder)
        if previous is None:
            return None
        if not tools.installed_package_path(target_root, mods_folder).is_file():
            logger.info("Installed package is missing, discarding its extraction logs")
            ExtractionLog.delete(target_root, mods_folder)
            OptionsExtractionLog.delete(target_root, mods_folder)
            return None
        logger.info("Previous install carried %d set(s)", len(previous.installed_sets))
        return previous

    @staticmethod
    def _stale_files(previous: ExtractionLog | None, current: ExtractionLog) -> List[str]:
        if previous is None:
            return []
        kept = set(current.all_files())
        stale = [name for name in previous.all_files() if name not in kept]
        if stale:
            logger.info("%d file(s) of the previous install are no longer packaged", len(stale))
        return stale

    def _save_options_log(self, target_root: Path, result: AuxiliaryResult) -> List[str]:
        options_log = OptionsExtractionLog.load(target_root, self.settings.mods_folder) or OptionsExtractionLog()
        stale = [name for name in options_log.get_files(LOCALIZATION_CATEGORY) if name not in result.applied]
        options_log.generated_at = datetime.now(timezone.utc).isoformat()
        options_log.mode = "generate"
        options_log.selections[LOCALIZATION_CATEGORY] = "remote"
        options_log.clear_files(LOCALIZATION_CATEGORY)
        options_log.add_files(LOCALIZATION_CATEGORY, result.applied)
        options_log.save(target_root, self.settings.mods_folder)
        return stale
