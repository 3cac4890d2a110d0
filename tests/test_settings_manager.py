import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from marqueefetch.core.settings_manager import SettingsManager, default_data_dir


class TestSettingsManager(unittest.TestCase):
    def test_defaults_and_persistence(self):
        with tempfile.TemporaryDirectory() as td:
            settings = SettingsManager(td)
            self.assertEqual(settings.get("queue_limit"), 5)
            settings.set("scraper_threads", 3)

            reloaded = SettingsManager(td)
            self.assertEqual(reloaded.get("scraper_threads"), 3)
            self.assertEqual(reloaded.get("queue_keep"), 3)

    def test_new_media_type_defaults_survive_partial_file(self):
        with tempfile.TemporaryDirectory() as td:
            Path(td, "settings.json").write_text(
                json.dumps({"screenscraper_media_types": {"mpv": "screenmarquee"}}),
                encoding="utf-8",
            )
            settings = SettingsManager(td)
            media_types = settings.get("screenscraper_media_types")
            self.assertEqual(media_types["mpv"], "screenmarquee")
            self.assertEqual(media_types["dmd"], "marquee")

    def test_corrupt_file_falls_back_to_defaults(self):
        with tempfile.TemporaryDirectory() as td:
            Path(td, "settings.json").write_text("{broken", encoding="utf-8")
            with self.assertLogs("marqueefetch.core.settings_manager", level="WARNING"):
                settings = SettingsManager(td)
            self.assertEqual(settings.get("queue_limit"), 5)

    def test_pipeline_config_clamps_keep_below_limit(self):
        with tempfile.TemporaryDirectory() as td:
            settings = SettingsManager(td)
            settings.update({"queue_limit": 4, "queue_keep": 9, "scraper_threads": 0})
            config = settings.pipeline_config()
            self.assertEqual(config.queue_limit, 4)
            self.assertEqual(config.queue_keep, 3)
            self.assertEqual(config.scraper_threads, 1)

    def test_pipeline_config_invalid_values_use_defaults(self):
        with tempfile.TemporaryDirectory() as td:
            settings = SettingsManager(td)
            settings.update({"queue_limit": "many", "scraper_threads": None})
            config = settings.pipeline_config()
            self.assertEqual(config.queue_limit, 5)
            self.assertEqual(config.scraper_threads, 1)

    def test_provider_priority_accepts_comma_string(self):
        with tempfile.TemporaryDirectory() as td:
            settings = SettingsManager(td)
            settings.set("provider_priority", "ScreenScraper, arcadeitalia ,screenscraper,")
            self.assertEqual(settings.provider_priority(), ["ScreenScraper", "arcadeitalia"])

    def test_storage_paths_default_inside_data_dir(self):
        with tempfile.TemporaryDirectory() as td:
            settings = SettingsManager(td)
            self.assertEqual(settings.media_root, Path(td) / "medias")
            self.assertEqual(settings.failure_cache_path, Path(td) / "_cache" / "scraps_failed.jsonl")
            settings.set("media_root", str(Path(td) / "elsewhere"))
            self.assertEqual(settings.media_root, Path(td) / "elsewhere")

    def test_reset_restores_defaults(self):
        with tempfile.TemporaryDirectory() as td:
            settings = SettingsManager(td)
            settings.set("queue_limit", 9)
            settings.reset()
            self.assertEqual(settings.get("queue_limit"), 5)
            self.assertEqual(SettingsManager(td).get("queue_limit"), 5)

    def test_data_dir_from_environment(self):
        with tempfile.TemporaryDirectory() as td:
            with mock.patch.dict(os.environ, {"MARQUEEFETCH_DATA_DIR": td}):
                self.assertEqual(default_data_dir(), Path(td))
                self.assertEqual(SettingsManager().settings_dir, Path(td))


if __name__ == "__main__":
    unittest.main()
