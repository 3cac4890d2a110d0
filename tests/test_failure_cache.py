import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from marqueefetch.core.failure_cache import FailureCache
from marqueefetch.models.scrape_request import RequestKey


class TestFailureCache(unittest.TestCase):
    def test_record_persists_across_instances(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "_cache" / "scraps_failed.jsonl"
            cache = FailureCache(path)
            key = RequestKey.of("nes", "Zelda", "marquee")
            cache.record(key, failed_at=1000.0)

            reloaded = FailureCache(path)
            self.assertTrue(reloaded.contains(key))
            self.assertTrue(reloaded.contains(RequestKey.of("NES", " zelda ", "Marquee")))
            self.assertEqual(reloaded.failed_at(key), 1000.0)
            self.assertEqual(len(reloaded), 1)

    def test_file_is_json_lines(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "failed.jsonl"
            cache = FailureCache(path)
            cache.record(RequestKey.of("nes", "Zelda", "marquee"), failed_at=1.0)
            cache.record(RequestKey.of("snes", "Mario", "marquee"), failed_at=2.0)

            rows = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
            self.assertEqual(len(rows), 2)
            self.assertEqual(rows[0]["game_name"], "zelda")
            self.assertIn("failed_at", rows[1])

    def test_clear_empties_memory_and_disk(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "failed.jsonl"
            cache = FailureCache(path)
            cache.record(RequestKey.of("nes", "Zelda", "marquee"))
            cache.record(RequestKey.of("nes", "Metroid", "marquee"))

            self.assertEqual(cache.clear(), 2)
            self.assertEqual(len(cache), 0)
            self.assertEqual(len(FailureCache(path)), 0)

    def test_malformed_lines_are_skipped(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "failed.jsonl"
            path.write_text(
                "not json\n"
                + json.dumps({"system_name": "nes", "game_name": "zelda", "media_type": "marquee", "failed_at": 5}) + "\n"
                + json.dumps({"system_name": "nes"}) + "\n\n",
                encoding="utf-8",
            )
            cache = FailureCache(path)
            self.assertEqual(len(cache), 1)
            self.assertTrue(cache.contains(RequestKey.of("nes", "zelda", "marquee")))

    def test_write_failure_keeps_entry_in_memory(self):
        with tempfile.TemporaryDirectory() as td:
            cache = FailureCache(Path(td) / "failed.jsonl")
            key = RequestKey.of("nes", "Zelda", "marquee")
            with mock.patch("marqueefetch.core.failure_cache.atomic_write_text", side_effect=OSError("disk full")):
                cache.record(key)

            self.assertTrue(cache.contains(key))
            self.assertIn("disk full", cache.last_error)

    def test_failed_write_leaves_previous_file_intact(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "failed.jsonl"
            cache = FailureCache(path)
            cache.record(RequestKey.of("nes", "Zelda", "marquee"))
            before = path.read_text(encoding="utf-8")

            with mock.patch("marqueefetch.utils.file_utils.os.replace", side_effect=OSError("boom")):
                cache.record(RequestKey.of("nes", "Metroid", "marquee"))

            self.assertEqual(path.read_text(encoding="utf-8"), before)
            self.assertEqual([p.name for p in Path(td).iterdir()], ["failed.jsonl"])

    def test_memory_only_cache(self):
        cache = FailureCache()
        key = RequestKey.of("nes", "Zelda", "marquee")
        cache.record(key)
        self.assertTrue(cache.contains(key))
        self.assertEqual(cache.entries()[0]["game_name"], "zelda")


if __name__ == "__main__":
    unittest.main()
