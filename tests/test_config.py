import json
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import requests

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from setforge import config
from setforge.config import FeatureAccess, FeatureSwitch, SettingsStore, load_settings
from setforge.errors import ValidationError


class LoadSettingsTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)

    def write_settings(self, document) -> Path:
        path = self.root / "settings.json"
        path.write_text(json.dumps(document), encoding="utf-8")
        return path

    def test_defaults_without_overrides(self) -> None:
        settings = load_settings(environ={})

        self.assertEqual(settings.mods_folder, "_ArdysaMods")
        self.assertEqual(settings.max_attempts, 3)
        self.assertEqual(len(settings.localization_files), 13)
        self.assertTrue(settings.base_archive_url.endswith("/Assets/Original.zip"))

    def test_environment_overrides_file(self) -> None:
        path = self.write_settings({"max_attempts": 5, "timeout": 12, "rebuilder_path": "/opt/vpk"})

        settings = load_settings(path, environ={"SETFORGE_MAX_ATTEMPTS": "7"})

        self.assertEqual(settings.max_attempts, 7)
        self.assertEqual(settings.timeout, 12.0)
        self.assertEqual(settings.rebuilder_path, "/opt/vpk")

    def test_settings_file_from_environment(self) -> None:
        path = self.write_settings({"cache_root": str(self.root / "cache")})

        settings = load_settings(environ={"SETFORGE_SETTINGS": str(path)})

        self.assertEqual(settings.cache_root, self.root / "cache")
        self.assertEqual(settings.sets_cache, self.root / "cache" / "sets")

    def test_comma_separated_mirrors(self) -> None:
        settings = load_settings(environ={"SETFORGE_MIRROR_BASES": "https://a, https://b"})

        self.assertEqual(settings.mirror_bases, ("https://a", "https://b"))

    def test_invalid_value_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            load_settings(environ={"SETFORGE_MAX_ATTEMPTS": "many"})

    def test_unknown_keys_are_ignored_with_a_warning(self) -> None:
        path = self.write_settings({"colour": "blue"})

        with self.assertLogs("setforge.config", level="WARNING") as captured:
            settings = load_settings(path, environ={})

        self.assertEqual(settings, config.Settings(work_root=settings.work_root, cache_root=settings.cache_root))
        self.assertIn("colour", captured.output[0])

    def test_broken_settings_files(self) -> None:
        with self.assertRaises(ValidationError):
            load_settings(self.root / "missing.json", environ={})

        bad = self.root / "bad.json"
        bad.write_text("{not json", encoding="utf-8")
        with self.assertRaises(ValidationError):
            load_settings(bad, environ={})

        with self.assertRaises(ValidationError):
            load_settings(self.write_settings([1, 2]), environ={})


class SettingsStoreTests(unittest.TestCase):
    def test_cached_until_invalidated(self) -> None:
        environ = {"SETFORGE_TIMEOUT": "10"}
        store = SettingsStore(environ=environ)

        first = store.get()
        environ["SETFORGE_TIMEOUT"] = "20"

        self.assertIs(store.get(), first)
        self.assertEqual(store.reload().timeout, 20.0)

        environ["SETFORGE_TIMEOUT"] = "30"
        store.invalidate()
        self.assertEqual(store.get().timeout, 30.0)


class FeatureAccessTests(unittest.TestCase):
    def test_from_dict_maps_remote_keys(self) -> None:
        access = FeatureAccess.from_dict(
            {
                "skinSelector": {"enabled": False, "disabledMessage": "Down for maintenance"},
                "miscellaneous": {"enabled": True},
                "somethingElse": {"enabled": False},
            }
        )

        self.assertFalse(access.skin_selector.enabled)
        self.assertEqual(access.skin_selector.display_message, "Down for maintenance")
        self.assertTrue(access.auxiliary_assets.enabled)

    def test_default_message_when_none_given(self) -> None:
        self.assertEqual(FeatureSwitch(enabled=False).display_message, config.DEFAULT_DISABLED_MESSAGE)

    def test_fetch_reads_remote_document(self) -> None:
        session = mock.Mock()
        session.get.return_value.content = b'{"miscellaneous": {"enabled": false}}'

        access = config.fetch_feature_access("https://cfg/feature_access.json", session=session)

        session.get.assert_called_once_with("https://cfg/feature_access.json", timeout=5.0)
        self.assertTrue(access.skin_selector.enabled)
        self.assertFalse(access.auxiliary_assets.enabled)

    def test_fetch_fails_open(self) -> None:
        session = mock.Mock()
        session.get.side_effect = requests.ConnectionError("offline")
        self.assertEqual(config.fetch_feature_access(session=session), FeatureAccess())

        session = mock.Mock()
        session.get.return_value.content = b"{not json"
        self.assertEqual(config.fetch_feature_access(session=session), FeatureAccess())

        session = mock.Mock()
        session.get.return_value.content = b'["not", "an", "object"]'
        self.assertEqual(config.fetch_feature_access(session=session), FeatureAccess())


if __name__ == "__main__":
    unittest.main()
