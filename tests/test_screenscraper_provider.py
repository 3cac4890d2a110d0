import http.server
import json
import socketserver
import tempfile
import threading
import unittest
import zlib
from pathlib import Path
from urllib.parse import parse_qs, urlparse

from marqueefetch.core.settings_manager import SettingsManager
from marqueefetch.providers.screenscraper import ScreenScraperProvider, clean_game_name, crc32_of_file

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"s" * 512
ROM_BYTES = b"NES\x1a" + bytes(range(256)) * 4


class FakeScreenScraperHandler(http.server.BaseHTTPRequestHandler):
    seen = []
    expected_crc = ""
    throttle_next = 0

    def do_GET(self):
        parsed = urlparse(self.path)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        cls = type(self)
        cls.seen.append((parsed.path, params))

        if parsed.path.startswith("/media/"):
            return self._send(200, "image/png", PNG_BYTES)
        if cls.throttle_next > 0:
            cls.throttle_next -= 1
            return self._send(429, "text/plain", b"The maximum threads is already used")

        if parsed.path == "/api2/jeuInfos.php":
            if cls.expected_crc and params.get("crc") == cls.expected_crc:
                return self._json({"response": {"jeu": self._game("3", "zelda")}})
            return self._send(404, "text/plain", b"Erreur : Rom/Iso/Dossier non trouvee !")

        if parsed.path == "/api2/jeuRecherche.php":
            term = params.get("recherche", "")
            if term == "Metroid":
                return self._json({"response": {"jeux": [self._game("4", "metroid-snes"), self._game("3", "metroid-nes")]}})
            if term == "Kirby":
                return self._json({"response": {"jeux": [self._game("4", "kirby-snes")]}})
            return self._json({"response": {"jeux": []}})

        self._send(404, "text/plain", b"")

    def _game(self, system_id, slug):
        port = self.server.server_address[1]
        return {
            "id": slug,
            "systeme": {"id": system_id, "text": "console"},
            "noms": [{"region": "jp", "text": f"{slug} jp"}, {"region": "us", "text": slug}],
            "medias": [
                {"type": "ss", "url": f"http://127.0.0.1:{port}/media/{slug}-ss.png", "format": "png"},
                {"type": "marquee", "url": f"http://127.0.0.1:{port}/media/{slug}.png", "format": "png"},
            ],
        }

    def _json(self, payload):
        self._send(200, "application/json", json.dumps(payload).encode("utf-8"))

    def _send(self, status, content_type, body):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        return


class TestScreenScraperHelpers(unittest.TestCase):
    def test_clean_game_name(self):
        self.assertEqual(clean_game_name("Metroid (USA) [!]"), "Metroid")
        self.assertEqual(clean_game_name("Super  Mario   Bros (Rev 1)"), "Super Mario Bros")

    def test_crc32_of_file(self):
        with tempfile.TemporaryDirectory() as td:
            rom = Path(td) / "zelda.nes"
            rom.write_bytes(ROM_BYTES)
            self.assertEqual(crc32_of_file(str(rom)), f"{zlib.crc32(ROM_BYTES) & 0xFFFFFFFF:08X}")
            self.assertIsNone(crc32_of_file(td))
            self.assertIsNone(crc32_of_file(""))


class TestScreenScraperProvider(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.httpd = socketserver.ThreadingTCPServer(("127.0.0.1", 0), FakeScreenScraperHandler)
        cls.httpd.daemon_threads = True
        cls.port = cls.httpd.server_address[1]
        threading.Thread(target=cls.httpd.serve_forever, daemon=True).start()

    @classmethod
    def tearDownClass(cls):
        cls.httpd.shutdown()
        cls.httpd.server_close()

    def setUp(self):
        FakeScreenScraperHandler.seen = []
        FakeScreenScraperHandler.expected_crc = ""
        FakeScreenScraperHandler.throttle_next = 0
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.root = Path(self._td.name)
        self.media_root = self.root / "medias"
        self.settings = SettingsManager(self.root / "data")
        self.settings.update({
            "screenscraper_api_url": f"http://127.0.0.1:{self.port}/api2",
            "screenscraper_user": "player1",
            "screenscraper_password": "secret",
            "screenscraper_retry_backoff_seconds": 0.0,
            "media_root": str(self.media_root),
            "http_timeout_seconds": 5.0,
        })
        self.provider = ScreenScraperProvider(self.settings)

    def api_calls(self):
        return [(path, params) for path, params in FakeScreenScraperHandler.seen if path.startswith("/api2/")]

    def write_rom(self, name="zelda.nes"):
        rom = self.root / "roms" / name
        rom.parent.mkdir(parents=True, exist_ok=True)
        rom.write_bytes(ROM_BYTES)
        FakeScreenScraperHandler.expected_crc = f"{zlib.crc32(ROM_BYTES) & 0xFFFFFFFF:08X}"
        return rom

    def test_missing_credentials_returns_none(self):
        self.settings.update({"screenscraper_user": "", "screenscraper_password": ""})
        self.provider.reload_from_settings()

        with self.assertLogs("marqueefetch.providers.screenscraper", level="WARNING"):
            self.assertIsNone(self.provider.resolve("nes", "Zelda", "", "marquee"))
        self.assertIn("credentials", self.provider.last_error)
        self.assertEqual(FakeScreenScraperHandler.seen, [])
        self.assertFalse(self.provider.healthcheck()["configured"])

    def test_unknown_system_fails_fast(self):
        self.assertIsNone(self.provider.resolve("not-a-system", "Zelda", "", "marquee"))
        self.assertIn("not-a-system", self.provider.last_error)
        self.assertEqual(FakeScreenScraperHandler.seen, [])

    def test_crc_stage_downloads_media(self):
        rom = self.write_rom()

        path = self.provider.resolve("nes", "The Legend of Zelda", str(rom), "marquee")

        expected = self.media_root / "screenscraper" / "nes" / "zelda_marquee.png"
        self.assertEqual(path, str(expected))
        self.assertEqual(expected.read_bytes(), PNG_BYTES)
        calls = self.api_calls()
        self.assertEqual(len(calls), 1)
        endpoint, params = calls[0]
        self.assertEqual(endpoint, "/api2/jeuInfos.php")
        self.assertEqual(params["systemeid"], "3")
        self.assertEqual(params["ssid"], "player1")
        self.assertEqual(params["output"], "json")
        self.assertEqual(params["romnom"], "zelda.nes")
        self.assertEqual(params["romtaille"], str(len(ROM_BYTES)))

    def test_search_prefers_target_system(self):
        path = self.provider.resolve("nes", "Metroid (USA)", "", "marquee")

        self.assertIsNotNone(path)
        downloads = [p for p, _ in FakeScreenScraperHandler.seen if p.startswith("/media/")]
        self.assertEqual(downloads, ["/media/metroid-nes.png"])
        first_search = self.api_calls()[0]
        self.assertEqual(first_search[0], "/api2/jeuRecherche.php")
        self.assertEqual(first_search[1]["recherche"], "Metroid")

    def test_other_system_result_ignored_without_global_search(self):
        self.assertIsNone(self.provider.resolve("nes", "Kirby", "", "marquee"))
        searches = [params["recherche"] for _, params in self.api_calls()]
        self.assertEqual(searches, ["Kirby", "Kirby nes"])
        self.assertIn("not found", self.provider.last_error)

    def test_global_search_uses_other_system_match(self):
        self.settings.set("screenscraper_global_search", True)
        self.provider.reload_from_settings()

        path = self.provider.resolve("nes", "Kirby", "", "marquee")

        self.assertIsNotNone(path)
        downloads = [p for p, _ in FakeScreenScraperHandler.seen if p.startswith("/media/")]
        self.assertEqual(downloads, ["/media/kirby-snes.png"])

    def test_thread_limit_is_retried(self):
        rom = self.write_rom()
        FakeScreenScraperHandler.throttle_next = 1

        path = self.provider.resolve("nes", "Zelda", str(rom), "marquee")

        self.assertIsNotNone(path)
        info_calls = [c for c in self.api_calls() if c[0] == "/api2/jeuInfos.php"]
        self.assertEqual(len(info_calls), 2)

    def test_thread_limit_answer_shrinks_capacity(self):
        self.settings.set("screenscraper_max_threads", 3)
        self.provider.reload_from_settings()
        self.assertEqual(self.provider.thread_limit, 3)
        rom = self.write_rom()
        FakeScreenScraperHandler.throttle_next = 1

        with self.assertLogs("marqueefetch.providers.screenscraper", level="WARNING") as logs:
            self.assertIsNotNone(self.provider.resolve("nes", "Zelda", str(rom), "marquee"))

        self.assertEqual(self.provider.thread_limit, 1)
        self.assertEqual(self.provider.healthcheck()["thread_limit"], 1)
        self.assertTrue(any("capacity reduced to 1" in line for line in logs.output))

        self.provider.reload_from_settings()
        self.assertEqual(self.provider.thread_limit, 3)

    def test_lookups_wait_for_a_free_slot(self):
        rom = self.write_rom()
        done = threading.Event()

        def worker():
            self.provider.resolve("nes", "Zelda", str(rom), "marquee")
            done.set()

        with self.provider._api_slot():
            thread = threading.Thread(target=worker, daemon=True)
            thread.start()
            self.assertFalse(done.wait(0.3))
            self.assertEqual(self.api_calls(), [])

        self.assertTrue(done.wait(5.0))
        self.assertEqual(len(self.api_calls()), 1)

    def test_requested_media_type_is_mapped(self):
        rom = self.write_rom()
        path = self.provider.resolve("nes", "Zelda", str(rom), "mpv")
        self.assertTrue(path.endswith("zelda_marquee.png"))

    def test_cached_media_skips_api(self):
        cached = self.media_root / "screenscraper" / "nes" / "zelda_marquee.png"
        cached.parent.mkdir(parents=True)
        cached.write_bytes(PNG_BYTES)

        self.assertEqual(self.provider.resolve("nes", "Zelda", "/roms/zelda.nes", "marquee"), str(cached))
        self.assertEqual(FakeScreenScraperHandler.seen, [])

    def test_systems_override_file(self):
        override = self.root / "systems.json"
        override.write_text(json.dumps({"mycustom": 3}), encoding="utf-8")
        self.settings.set("screenscraper_systems_file", str(override))
        self.provider.reload_from_settings()

        self.assertIsNotNone(self.provider.resolve("mycustom", "Metroid", "", "marquee"))


if __name__ == "__main__":
    unittest.main()
