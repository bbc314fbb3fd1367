"""Command line entry point: ``setforge`` / ``python -m setforge``."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Iterable, List

from . import keyvalues
from .config import FeatureAccess, SettingsStore, fetch_feature_access
from .errors import CancellationError, NotFoundError, SetforgeError, ValidationError
from .fileio import write_bytes_in_chunks
from .patching import MergeMap, patch_file
from .pipeline import CANCELLED, GenerationPipeline, PipelineJob, SetSelection

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
EXIT_CANCELLED = 130


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8-sig")
    except FileNotFoundError as exc:
        raise NotFoundError(f"file not found: {path}") from exc


def _write_text(path: Path, text: str) -> None:
    status, error = write_bytes_in_chunks(path, text.encode("utf-8"))
    if status != "success":
        raise SetforgeError(f"could not write {path}: {error}")


def load_selections(path: Path) -> List[SetSelection]:
    """Read a job file: a list of selections or ``{"selections": [...]}``."""

    try:
        document = json.loads(_read_text(path))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"{path} is not valid JSON: {exc}") from exc
    if isinstance(document, dict):
        document = document.get("selections")
    if not isinstance(document, list):
        raise ValidationError(f"{path} must contain a list of selections")
    return [SetSelection.from_dict(entry) for entry in document]


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Patch KeyValues item entries and build set packages")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    parser.add_argument("--settings", type=Path, help="JSON settings file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    prettify_parser = subparsers.add_parser("prettify", help="re-emit a minified KeyValues file one pair per line")
    prettify_parser.add_argument("input", type=Path, help="KeyValues file to reformat")
    prettify_parser.add_argument("-o", "--output", type=Path, help="write here instead of stdout")
    prettify_parser.add_argument("--force", action="store_true", help="reformat even when the input is not minified")

    extract_parser = subparsers.add_parser("extract-block", help="print the block of one entry")
    extract_parser.add_argument("input", type=Path, help="KeyValues file to search")
    extract_parser.add_argument("entry_id", help="numeric id of the entry")
    extract_parser.add_argument("--owner", help="only match entries used by this owner tag")

    patch_parser = subparsers.add_parser("patch", help="apply blocks from a manifest to a target file in place")
    patch_parser.add_argument("target", type=Path, help="items_game.txt to patch")
    patch_parser.add_argument("index", type=Path, nargs="+", help="manifest(s) providing replacement blocks")
    patch_parser.add_argument("--ids", nargs="+", required=True, help="entry ids to replace")
    patch_parser.add_argument("--owner", required=True, help="owner tag the entries must be used by")
    patch_parser.add_argument("--strict", action="store_true", help="abort without writing when an entry is rejected")

    generate_parser = subparsers.add_parser("generate", help="run a full generation job")
    generate_parser.add_argument("job", type=Path, help="JSON file describing the selections")
    generate_parser.add_argument("target", type=Path, help="root of the target installation")
    generate_parser.add_argument("--work-root", type=Path, help="directory for temporary working trees")
    generate_parser.add_argument("--no-auxiliary", action="store_true", help="skip the localization download")
    generate_parser.add_argument("--offline", action="store_true", help="do not fetch remote feature switches")

    return parser


def _prettify(args: argparse.Namespace) -> None:
    text = keyvalues.prettify(_read_text(args.input), force=args.force)
    if args.output is None:
        sys.stdout.write(text)
    else:
        _write_text(args.output, text)
        print(f"Prettified text written to {args.output}")


def _extract_block(args: argparse.Namespace) -> None:
    text = keyvalues.normalize_kv_text(_read_text(args.input))
    block = keyvalues.find_block(text, args.entry_id, args.owner)
    if block is None:
        raise NotFoundError(f"entry {args.entry_id} not found in {args.input}")
    sys.stdout.write(block.text.rstrip() + "\n")


def _patch(args: argparse.Namespace) -> None:
    merge_map = MergeMap()
    for index in args.index:
        contributed = merge_map.add_source(args.owner, args.ids, _read_text(index))
        logger.info("%s contributed %d block(s)", index, contributed)
    report = patch_file(args.target, merge_map, strict=args.strict)
    print(f"Patched {args.target}: {report.applied} applied, {report.skipped} skipped")
    for entry_id, reason in report.failures:
        print(f"  {entry_id}: {reason}")


def _generate(args: argparse.Namespace, store: SettingsStore) -> int:
    settings = store.get()
    feature_access = FeatureAccess() if args.offline else fetch_feature_access()
    job = PipelineJob(
        load_selections(args.job),
        args.target,
        work_root=args.work_root,
        include_auxiliary=not args.no_auxiliary,
        on_stage=lambda percent, stage: logger.info("[%3d%%] %s", percent, stage),
    )
    pipeline = GenerationPipeline(settings, feature_access=feature_access)

    results = []
    worker = threading.Thread(target=lambda: results.append(pipeline.run(job)), name="generate")
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.5)
        except KeyboardInterrupt:
            logger.info("Cancellation requested, waiting for the current step to stop")
            job.cancel()
    if not results:
        raise SetforgeError("generation stopped without a result")

    result = results[0]
    print(json.dumps(result.to_dict(), indent=2))
    if result.stage == CANCELLED:
        return EXIT_CANCELLED
    return 0 if result.success else 1


def main(argv: Iterable[str] | None = None) -> None:
    parser = build_cli()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)
    store = SettingsStore(args.settings)

    try:
        if args.command == "prettify":
            _prettify(args)
        elif args.command == "extract-block":
            _extract_block(args)
        elif args.command == "patch":
            _patch(args)
        elif args.command == "generate":
            code = _generate(args, store)
            if code:
                raise SystemExit(code)
        else:
            parser.error("unknown command")
    except CancellationError:
        logger.info("Cancelled")
        raise SystemExit(EXIT_CANCELLED)
    except SetforgeError as exc:
        raise SystemExit(f"error: {exc}")


if __name__ == "__main__":
    main()
