import io
import json
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from setforge import cli
from setforge.errors import ValidationError
from setforge.pipeline import JobResult
from samples import AXE, make_entry, make_index, make_items_game, minified_items_game


class CliTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)

    def run_cli(self, *argv: str) -> str:
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            cli.main(list(argv))
        return buffer.getvalue()


class PrettifyCommandTests(CliTestCase):
    def test_writes_output_file(self) -> None:
        source = self.root / "items_game.txt"
        source.write_text(minified_items_game(["1001"]), encoding="utf-8")
        output = self.root / "pretty.txt"

        printed = self.run_cli("prettify", str(source), "-o", str(output))

        self.assertIn("written to", printed)
        self.assertIn('\t\t"1001"\n', output.read_text(encoding="utf-8"))


class ExtractBlockCommandTests(CliTestCase):
    def test_prints_the_requested_block(self) -> None:
        source = self.root / "items_game.txt"
        source.write_text(make_items_game([make_entry("555", "Sword"), make_entry("556", "Shield")]), encoding="utf-8")

        printed = self.run_cli("extract-block", str(source), "555", "--owner", AXE)

        self.assertIn('"Sword"', printed)
        self.assertNotIn('"Shield"', printed)

    def test_missing_block_exits_with_error(self) -> None:
        source = self.root / "items_game.txt"
        source.write_text(make_items_game([make_entry("555", "Sword")]), encoding="utf-8")

        with self.assertRaises(SystemExit) as raised:
            self.run_cli("extract-block", str(source), "999")

        self.assertIn("999", str(raised.exception.code))


class PatchCommandTests(CliTestCase):
    def test_patches_target_in_place(self) -> None:
        target = self.root / "items_game.txt"
        target.write_text(make_items_game([make_entry("555", "Old Sword"), make_entry("556", "Shield")]), encoding="utf-8")
        index = self.root / "index.txt"
        index.write_text(make_index([make_entry("555", "New Sword", indent="")]), encoding="utf-8")

        printed = self.run_cli("patch", str(target), str(index), "--ids", "555", "--owner", AXE)

        self.assertIn("1 applied, 0 skipped", printed)
        patched = target.read_text(encoding="utf-8")
        self.assertIn('"New Sword"', patched)
        self.assertIn('"Shield"', patched)

    def test_strict_rejection_leaves_target_untouched(self) -> None:
        target = self.root / "items_game.txt"
        original = make_items_game([make_entry("555", "Old Sword")])
        target.write_text(original, encoding="utf-8")
        index = self.root / "index.txt"
        index.write_text(make_index([make_entry("555", "No prefab", prefab=False, indent="")]), encoding="utf-8")

        with self.assertRaises(SystemExit) as raised:
            self.run_cli("patch", str(target), str(index), "--ids", "555", "--owner", AXE, "--strict")

        self.assertIn("ReplacementMissingPrefab", str(raised.exception.code))
        self.assertEqual(target.read_text(encoding="utf-8"), original)

    def test_missing_target_exits_with_error(self) -> None:
        index = self.root / "index.txt"
        index.write_text(make_index([make_entry("555", "New Sword", indent="")]), encoding="utf-8")

        with self.assertRaises(SystemExit) as raised:
            self.run_cli("patch", str(self.root / "absent.txt"), str(index), "--ids", "555", "--owner", AXE)

        self.assertTrue(str(raised.exception.code).startswith("error:"))


class GenerateCommandTests(CliTestCase):
    def write_job(self, document) -> Path:
        path = self.root / "job.json"
        path.write_text(json.dumps(document), encoding="utf-8")
        return path

    def test_load_selections_accepts_both_shapes(self) -> None:
        entry = {"sourceId": AXE, "selectionName": "Fancy", "archiveUrls": ["a.zip"], "entryIds": ["555"]}

        self.assertEqual(len(cli.load_selections(self.write_job([entry]))), 1)
        self.assertEqual(cli.load_selections(self.write_job({"selections": [entry]}))[0].source_id, AXE)
        with self.assertRaises(ValidationError):
            cli.load_selections(self.write_job({"other": 1}))

    def test_result_is_printed_as_json(self) -> None:
        job = self.write_job([])
        result = JobResult(False, "no selections provided", stage="Failed")

        with mock.patch("setforge.cli.GenerationPipeline") as pipeline_class:
            pipeline_class.return_value.run.return_value = result
            with self.assertRaises(SystemExit) as raised:
                self.run_cli("generate", str(job), str(self.root), "--offline")

        self.assertEqual(raised.exception.code, 1)
        submitted = pipeline_class.return_value.run.call_args.args[0]
        self.assertEqual(submitted.target_path, self.root)
        self.assertTrue(submitted.include_auxiliary)


if __name__ == "__main__":
    unittest.main()
