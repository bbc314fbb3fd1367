import sys
import tempfile
import threading
import unittest
from pathlib import Path
from typing import Dict, List
from unittest import mock

import requests

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from setforge import fetch
from setforge.errors import DL_FILE_NOT_FOUND, DL_NETWORK_ERROR, CancellationError, NetworkError, ValidationError


def http_error(status: int) -> requests.HTTPError:
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(f"{status} error", response=response)


class FakeResponse:
    def __init__(self, status: int = 200, content: bytes = b"") -> None:
        self.status_code = status
        self.content = content
        self.headers = {"Content-Length": str(len(content))}

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise http_error(self.status_code)

    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self.content), 4):
            yield self.content[start : start + 4]

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        return None


class ScriptedOp:
    """Callable replaying a list of outcomes per URL."""

    def __init__(self, script: Dict[str, List[object]]) -> None:
        self.script = {url: list(outcomes) for url, outcomes in script.items()}
        self.calls: List[str] = []

    def __call__(self, url: str) -> bytes:
        self.calls.append(url)
        outcomes = self.script[url]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def make_fetcher(**kwargs) -> fetch.RetryingFetcher:
    kwargs.setdefault("initial_delay", 0)
    kwargs.setdefault("max_delay", 0)
    return fetch.RetryingFetcher(**kwargs)


class MirrorUrlTests(unittest.TestCase):
    def test_asset_url_is_rewritten_onto_every_base(self) -> None:
        url = "https://cdn.jsdelivr.net/gh/Anneardysa/ModsPack@main/Assets/models/axe/set.zip"

        urls = fetch.mirror_urls(url)

        self.assertEqual(
            urls,
            [
                "https://cdn.ardysamods.my.id/Assets/models/axe/set.zip",
                "https://cdn.jsdelivr.net/gh/Anneardysa/ModsPack@main/Assets/models/axe/set.zip",
                "https://raw.githubusercontent.com/Anneardysa/ModsPack/main/Assets/models/axe/set.zip",
            ],
        )

    def test_foreign_url_is_kept_as_is(self) -> None:
        self.assertEqual(fetch.mirror_urls("https://example.com/a.zip"), ["https://example.com/a.zip"])


class ClassifyTests(unittest.TestCase):
    def test_status_and_exception_classes(self) -> None:
        self.assertEqual(fetch.classify(http_error(404)), fetch.PERMANENT)
        self.assertEqual(fetch.classify(http_error(403)), fetch.PERMANENT)
        self.assertEqual(fetch.classify(http_error(429)), fetch.TRANSIENT)
        self.assertEqual(fetch.classify(http_error(503)), fetch.TRANSIENT)
        self.assertEqual(fetch.classify(requests.Timeout()), fetch.TRANSIENT)
        self.assertEqual(fetch.classify(requests.ConnectionError()), fetch.TRANSIENT)
        self.assertEqual(fetch.classify(http_error(400)), fetch.OTHER)
        self.assertEqual(fetch.classify(ValueError("bad")), fetch.OTHER)


class RetryingFetcherTests(unittest.TestCase):
    def test_permanent_failures_move_to_next_mirror(self) -> None:
        op = ScriptedOp({"m1": [http_error(404)], "m2": [http_error(404)], "m3": [b"payload"]})

        result = make_fetcher().fetch(["m1", "m2", "m3"], op)

        self.assertEqual(result, b"payload")
        self.assertEqual(op.calls, ["m1", "m2", "m3"])

    def test_transient_failures_retry_same_mirror(self) -> None:
        op = ScriptedOp({"m1": [http_error(503), requests.Timeout(), b"ok"], "m2": [b"unused"]})

        result = make_fetcher().fetch(["m1", "m2"], op)

        self.assertEqual(result, b"ok")
        self.assertEqual(op.calls, ["m1", "m1", "m1"])

    def test_transient_retries_are_limited_per_mirror(self) -> None:
        op = ScriptedOp({"m1": [requests.ConnectionError()], "m2": [b"ok"]})

        result = make_fetcher(max_attempts_per_mirror=2).fetch(["m1", "m2"], op)

        self.assertEqual(result, b"ok")
        self.assertEqual(op.calls, ["m1", "m1", "m2"])

    def test_other_failures_are_not_retried(self) -> None:
        op = ScriptedOp({"m1": [http_error(400)], "m2": [b"ok"]})

        self.assertEqual(make_fetcher().fetch(["m1", "m2"], op), b"ok")
        self.assertEqual(op.calls, ["m1", "m2"])

    def test_exhaustion_reports_every_failure(self) -> None:
        op = ScriptedOp({"m1": [http_error(404)], "m2": [http_error(404)]})

        with self.assertRaises(NetworkError) as raised:
            make_fetcher().fetch(["m1", "m2"], op)

        error = raised.exception
        self.assertEqual([url for url, _ in error.failures], ["m1", "m2"])
        self.assertEqual(error.error_code, DL_FILE_NOT_FOUND)
        self.assertIs(error.__cause__, error.last_cause)

    def test_mixed_exhaustion_is_a_network_error(self) -> None:
        op = ScriptedOp({"m1": [http_error(404)], "m2": [requests.ConnectionError("reset")]})

        with self.assertRaises(NetworkError) as raised:
            make_fetcher(max_attempts_per_mirror=2).fetch(["m1", "m2"], op)

        self.assertEqual(raised.exception.error_code, DL_NETWORK_ERROR)
        self.assertEqual(len(raised.exception.failures), 3)

    def test_cancellation_during_backoff_aborts(self) -> None:
        cancel = threading.Event()
        calls = []

        def op(url: str) -> bytes:
            calls.append(url)
            cancel.set()
            raise http_error(503)

        fetcher = fetch.RetryingFetcher(initial_delay=30, max_delay=30, cancel_event=cancel)

        with self.assertRaises(CancellationError):
            fetcher.fetch(["m1", "m2"], op)
        self.assertEqual(calls, ["m1"])

    def test_no_mirrors_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            make_fetcher().fetch([])

    def test_default_operation_uses_session(self) -> None:
        session = mock.Mock()
        session.headers = {}
        session.get.return_value = FakeResponse(200, b"body")

        result = make_fetcher(session=session, timeout=7).fetch(["https://m1/x"])

        self.assertEqual(result, b"body")
        session.get.assert_called_once_with("https://m1/x", timeout=7)
        self.assertEqual(session.headers["User-Agent"], fetch.USER_AGENT)


class DownloadTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)

    def test_fetch_to_file_streams_and_reports_progress(self) -> None:
        session = mock.Mock()
        session.headers = {}
        session.get.return_value = FakeResponse(200, b"0123456789")
        progress = []

        dest = make_fetcher(session=session).fetch_to_file(
            ["https://m1/a.zip"], self.root / "a.zip", lambda done, total: progress.append((done, total))
        )

        self.assertEqual(dest.read_bytes(), b"0123456789")
        self.assertEqual(progress[-1], (10, 10))
        self.assertEqual([path.name for path in self.root.iterdir()], ["a.zip"])

    def test_failed_stream_leaves_no_partial_file(self) -> None:
        session = mock.Mock()
        session.headers = {}
        session.get.return_value = FakeResponse(404)

        with self.assertRaises(NetworkError):
            make_fetcher(session=session).fetch_to_file(["https://m1/a.zip"], self.root / "a.zip")

        self.assertEqual(list(self.root.iterdir()), [])

    def test_split_archive_parts_are_joined_until_missing(self) -> None:
        parts = {
            "https://m1/Assets/sets/a.zip.001": FakeResponse(200, b"one-"),
            "https://m1/Assets/sets/a.zip.002": FakeResponse(200, b"two"),
        }
        session = mock.Mock()
        session.headers = {}
        session.get.side_effect = lambda url, **kwargs: parts.get(url, FakeResponse(404))

        dest = make_fetcher(session=session).download_archive(
            "https://m1/Assets/sets/a.zip.001", self.root / "a.zip", bases=("https://m1",)
        )

        self.assertEqual(dest.read_bytes(), b"one-two")
        requested = [call.args[0] for call in session.get.call_args_list]
        self.assertEqual(requested[-1], "https://m1/Assets/sets/a.zip.003")

    def test_missing_first_part_fails(self) -> None:
        session = mock.Mock()
        session.headers = {}
        session.get.return_value = FakeResponse(404)

        with self.assertRaises(NetworkError):
            make_fetcher(session=session).download_archive(
                "https://m1/Assets/sets/a.zip.001", self.root / "a.zip", bases=("https://m1",)
            )
        self.assertFalse((self.root / "a.zip").exists())


if __name__ == "__main__":
    unittest.main()
