import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from weekplan.config_manager import ConfigManager
from weekplan.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_missing_file_is_created_with_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            config = manager.load()
            self.assertEqual(config.feeds.interval_seconds, 86400)
            self.assertEqual(config.term.excluded_closing_weeks, 1)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "term": {"name": "Spring 2027", "start_date": "2027-01-11", "end_date": "2027-05-07"},
                    "ai": {"base_url": "https://api.example.com/v1", "api_key": "k", "model": "planner-model"},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(Path(str(config_path) + ".tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["term"]["end_date"], "2027-05-07")
            self.assertEqual(data["ai"]["api_key"], "k")

    def test_update_deep_merges_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"ai": {"api_key": "secret", "model": "m1"}})
            updated = manager.update({"ai": {"model": "m2"}, "planning": {"title_match": "fuzzy"}})
            self.assertEqual(updated.ai.api_key, "secret")
            self.assertEqual(updated.ai.model, "m2")
            self.assertEqual(manager.load().planning.title_match, "fuzzy")

    def test_update_rejects_bad_term_dates(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            with self.assertRaises(ValueError):
                manager.update({"term": {"end_date": "not-a-date"}})
            self.assertEqual(manager.load().term.end_date, "2026-12-18")

    def test_feed_urls_and_masking(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"ai": {"api_key": "secret"}})
            manager.add_feed_url("https://calendar.example.edu/a.ics")
            manager.add_feed_url("https://calendar.example.edu/a.ics")
            manager.add_feed_url("https://calendar.example.edu/b.ics")
            config = manager.remove_feed_url("https://calendar.example.edu/a.ics")
            self.assertEqual(config.feeds.urls, ["https://calendar.example.edu/b.ics"])
            masked = manager.masked()
            self.assertEqual(masked["ai"]["api_key"], "***")
            self.assertEqual(manager.load().ai.api_key, "secret")


if __name__ == "__main__":
    unittest.main()
