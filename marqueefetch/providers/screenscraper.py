"""
ScreenScraper Provider

Resolves marquees and other media through the ScreenScraper.fr API v2.

Notes:
- Requires a ScreenScraper user account (ssid / sspassword). Developer
  credentials are optional and sent when configured.
- The account's thread quota is honoured with a local gate. A 429 or
  "threads" answer shrinks the gate to one below the calls currently
  running (never below 1), then the call is retried with a growing back-off.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple
import json
import logging
import re
import threading
import time
import zlib

import requests

from .base import BaseProvider
from ..core.exceptions import ProviderConfigError, ProviderError
from ..core.media_download import build_session, download_media
from ..utils.file_utils import sanitize_filename
from ..utils.resources import resource_path

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"\(.*?\)|\[.*?\]")
_SPACE_RE = re.compile(r"\s+")


@dataclass
class ScreenScraperMedia:
    url: str
    ext: str = ""
    title: str = ""
    system_id: str = ""


def clean_game_name(name: str) -> str:
    """Drop "(Europe)"/"[!]" style tags and collapse whitespace."""
    if not name or not name.strip():
        return name
    cleaned = _TAG_RE.sub("", name)
    return _SPACE_RE.sub(" ", cleaned).strip()


def crc32_of_file(path: str) -> Optional[str]:
    """Upper-case hex CRC32 of a ROM file; None for directories or unreadable paths."""
    if not path:
        return None
    file_path = Path(path)
    if not file_path.is_file():
        return None
    crc = 0
    try:
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                crc = zlib.crc32(chunk, crc)
    except OSError as e:
        logger.warning("Could not compute CRC32 of %s: %s", file_path, e)
        return None
    return f"{crc & 0xFFFFFFFF:08X}"


def load_system_ids(override_file: str = "") -> Dict[str, str]:
    """
    Map frontend system names to ScreenScraper system ids.

    The bundled table is loaded first; an override file (same JSON shape,
    {"nes": 3, ...}) replaces or extends individual entries.
    """
    mapping: Dict[str, str] = {}
    sources = [Path(resource_path("resources", "systems.json"))]
    if override_file:
        sources.append(Path(override_file).expanduser())
    for source in sources:
        try:
            with open(source, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Could not load ScreenScraper systems from %s: %s", source, e)
            continue
        if not isinstance(data, dict):
            logger.warning("Ignoring %s: expected a JSON object", source)
            continue
        for name, system_id in data.items():
            if str(name).startswith("_"):
                continue
            mapping[str(name).strip().casefold()] = str(system_id).strip()
    return mapping


class ScreenScraperProvider(BaseProvider):
    name = "ScreenScraper"

    def __init__(self, settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.last_error = ""
        self.session = session or build_session()
        self.session.headers.update({"Accept": "application/json,*/*"})

        self._api_url = "https://api.screenscraper.fr/api2"
        self._user = ""
        self._password = ""
        self._dev_id = ""
        self._dev_password = ""
        self._softname = "marqueefetch"
        self._media_types: Dict[str, str] = {}
        self._systems: Dict[str, str] = {}
        self._global_search = False
        self._timeout_seconds = 15.0
        self._max_retries = 2
        self._retry_backoff_seconds = 3.0
        self._max_threads = 0
        self._thread_limit = 1
        self._active_calls = 0
        self._slots = threading.Condition()
        self.reload_from_settings()

    def reload_from_settings(self) -> None:
        self._api_url = str(self.settings.get("screenscraper_api_url", "https://api.screenscraper.fr/api2") or "").strip().rstrip("/")
        self._user = str(self.settings.get("screenscraper_user", "") or "").strip()
        self._password = str(self.settings.get("screenscraper_password", "") or "").strip()
        self._dev_id = str(self.settings.get("screenscraper_dev_id", "") or "").strip()
        self._dev_password = str(self.settings.get("screenscraper_dev_password", "") or "").strip()
        self._softname = str(self.settings.get("screenscraper_softname", "marqueefetch") or "marqueefetch").strip()
        self._global_search = bool(self.settings.get("screenscraper_global_search", False))
        self._timeout_seconds = float(self.settings.get("http_timeout_seconds", 15.0) or 15.0)
        self._max_retries = max(0, int(self.settings.get("screenscraper_max_retries", 2) or 0))
        self._retry_backoff_seconds = max(0.0, float(self.settings.get("screenscraper_retry_backoff_seconds", 3.0) or 0.0))

        media_types = self.settings.get("screenscraper_media_types", {}) or {}
        self._media_types = {
            str(k).strip().casefold(): str(v or "").strip()
            for k, v in (media_types.items() if isinstance(media_types, dict) else [])
        }
        self._systems = load_system_ids(str(self.settings.get("screenscraper_systems_file", "") or "").strip())

        max_threads = max(1, int(self.settings.get("screenscraper_max_threads", 1) or 1))
        with self._slots:
            # A reload restores the configured quota after API-driven shrinking.
            self._max_threads = max_threads
            self._thread_limit = max_threads
            self._slots.notify_all()

    @property
    def thread_limit(self) -> int:
        """Concurrent API lookups currently allowed"""
        with self._slots:
            return self._thread_limit

    @contextmanager
    def _api_slot(self) -> Iterator[None]:
        with self._slots:
            while self._active_calls >= self._thread_limit:
                self._slots.wait()
            self._active_calls += 1
        try:
            yield
        finally:
            with self._slots:
                self._active_calls -= 1
                self._slots.notify_all()

    def _reduce_thread_limit(self) -> int:
        with self._slots:
            self._thread_limit = max(1, self._active_calls - 1)
            limit = self._thread_limit
        logger.warning("ScreenScraper thread capacity reduced to %d after API feedback", limit)
        return limit

    def healthcheck(self) -> Dict[str, Any]:
        out = super().healthcheck()
        out["configured"] = bool(self._user and self._password)
        out["systems"] = len(self._systems)
        with self._slots:
            out["max_threads"] = self._max_threads
            out["thread_limit"] = self._thread_limit
        return out

    def scrap_media_type(self, media_type: str) -> str:
        """ScreenScraper media type for a requested one; "" disables scraping."""
        key = str(media_type or "").strip().casefold()
        return self._media_types.get(key, str(media_type or "").strip())

    def cache_path(self, system_name: str, game_name: str, game_path: str, scrap_type: str) -> Path:
        stem = Path(game_path).stem if game_path else game_name
        ext = "mp4" if "video" in scrap_type else "png"
        filename = sanitize_filename(f"{stem}_{scrap_type}.{ext}")
        return Path(self.settings.media_root) / "screenscraper" / sanitize_filename(system_name) / filename

    def resolve(self, system_name: str, game_name: str, game_path: str, media_type: str) -> Optional[str]:
        self.last_error = ""
        try:
            scrap_type, system_id = self._check_config(system_name, media_type)
        except ProviderConfigError as e:
            self.last_error = str(e)
            logger.warning("%s", e)
            return None
        if not scrap_type:
            logger.debug("ScreenScraper scraping is off for media type %s", media_type)
            return None

        target = self.cache_path(system_name, game_name, game_path, scrap_type)
        cached = self._find_cached(target)
        if cached is not None:
            logger.debug("Scraped media found in cache: %s", cached)
            return str(cached)

        with self.busy(system_name, game_name, media_type), self._api_slot():
            media = self._lookup(system_name, system_id, game_name, game_path, scrap_type)
            if media is None:
                if not self.last_error:
                    self.last_error = f"Media '{scrap_type}' not found for {game_name}."
                return None

            if media.ext and target.suffix.lstrip(".").lower() != media.ext.lower():
                target = target.with_suffix(f".{media.ext.lower()}")
            result = download_media(self.session, media.url, target, timeout=self._timeout_seconds)

        if not result.completed:
            self.last_error = f"ScreenScraper download failed: {result.error}"
            logger.warning("%s (%s)", self.last_error, media.url)
            return None
        logger.info("ScreenScraper media downloaded to %s", result.path)
        return str(result.path)

    def _check_config(self, system_name: str, media_type: str) -> Tuple[str, str]:
        if not self._user or not self._password:
            raise ProviderConfigError(self.name, "credentials missing (screenscraper_user / screenscraper_password).")
        scrap_type = self.scrap_media_type(media_type)
        if not scrap_type:
            return "", ""
        system_id = self._systems.get(str(system_name or "").strip().casefold())
        if not system_id:
            raise ProviderConfigError(self.name, f"system '{system_name}' has no ScreenScraper id.")
        return scrap_type, system_id

    @staticmethod
    def _find_cached(target: Path) -> Optional[Path]:
        for ext in (target.suffix.lstrip("."), "png", "jpg", "mp4"):
            candidate = target.with_suffix(f".{ext}")
            if candidate.is_file() and candidate.stat().st_size > 0:
                return candidate
        return None

    # -- lookup stages ---------------------------------------------------------

    def _lookup(self, system_name: str, system_id: str, game_name: str, game_path: str, scrap_type: str) -> Optional[ScreenScraperMedia]:
        rom_file = Path(game_path) if game_path else None
        rom_name = rom_file.name if rom_file else ""
        params = {
            "devid": self._dev_id,
            "devpassword": self._dev_password,
            "softname": self._softname,
            "output": "json",
            "ssid": self._user,
            "sspassword": self._password,
            "systemeid": system_id,
            "romnom": rom_name,
            "romtaille": str(rom_file.stat().st_size) if rom_file and rom_file.is_file() else "0",
            "romtype": "rom",
        }
        search_params = {k: v for k, v in params.items() if k not in ("romnom", "romtaille", "romtype")}
        cleaned = clean_game_name(game_name)

        stages: List[Tuple[str, str, Dict[str, str]]] = []
        crc = crc32_of_file(game_path)
        if crc:
            stages.append(("CRC", "jeuInfos.php", {**params, "crc": crc}))
        if rom_name:
            stages.append(("ROM name", "jeuInfos.php", {**params, "romnom": Path(rom_name).stem}))
        if cleaned:
            stages.append(("cleaned name", "jeuRecherche.php", {**search_params, "recherche": cleaned}))
        if game_name and cleaned.casefold() != game_name.casefold():
            stages.append(("full name", "jeuRecherche.php", {**search_params, "recherche": game_name}))
        if game_name:
            stages.append(("name system", "jeuRecherche.php", {**search_params, "recherche": f"{game_name} {system_name}"}))

        global_candidate: Optional[ScreenScraperMedia] = None
        for label, endpoint, stage_params in stages:
            logger.debug("ScreenScraper stage %s for %s (%s)", label, game_name, system_name)
            payload = self._call_api(endpoint, stage_params)
            if payload is None:
                continue
            media, candidate = self._extract(payload, endpoint, system_id, scrap_type)
            if media is not None:
                logger.info("ScreenScraper match for %s at stage %s", game_name, label)
                return media
            if global_candidate is None:
                global_candidate = candidate

        if not self._global_search:
            return None
        if global_candidate is not None:
            logger.info(
                "Using global ScreenScraper match from system %s: %s",
                global_candidate.system_id or "unknown",
                global_candidate.title,
            )
            return global_candidate
        if not cleaned:
            return None

        logger.debug("ScreenScraper global search for %s", cleaned)
        payload = self._call_api("jeuRecherche.php", {**search_params, "recherche": cleaned})
        if payload is None:
            return None
        media, candidate = self._extract(payload, "jeuRecherche.php", system_id, scrap_type)
        return media or candidate

    def _call_api(self, endpoint: str, params: Dict[str, str]) -> Optional[Dict[str, Any]]:
        """GET an API endpoint; thread-limit answers are retried with a growing back-off."""
        url = f"{self._api_url}/{endpoint}"
        attempt = 0
        while True:
            try:
                resp = self.session.get(url, params=params, timeout=max(2.0, self._timeout_seconds))
                body = resp.text or ""
                if resp.status_code == 429 or (resp.status_code != 200 and "threads" in body.lower()):
                    self._reduce_thread_limit()
                    if attempt < self._max_retries:
                        attempt += 1
                        delay = self._retry_backoff_seconds * attempt
                        logger.warning("ScreenScraper thread limit reached (HTTP %s); retrying in %.1fs", resp.status_code, delay)
                        time.sleep(delay)
                        continue
                    raise ProviderError(self.name, "thread limit reached, giving up.")
                if resp.status_code == 404:
                    # Game unknown to ScreenScraper.
                    return None
                if resp.status_code != 200:
                    raise ProviderError(self.name, f"API error {resp.status_code} on {endpoint}: {body[:200]}")
                payload = resp.json()
            except requests.RequestException as e:
                self.last_error = f"ScreenScraper request failed: {e}"
                logger.warning("%s", self.last_error)
                return None
            except ValueError as e:
                self.last_error = f"ScreenScraper returned invalid JSON: {e}"
                logger.warning("%s", self.last_error)
                return None
            except ProviderError as e:
                self.last_error = str(e)
                logger.warning("%s", e)
                return None

            response = payload.get("response") if isinstance(payload, dict) else None
            return response if isinstance(response, dict) else None

    def _extract(
        self,
        response: Dict[str, Any],
        endpoint: str,
        target_system_id: str,
        scrap_type: str,
    ) -> Tuple[Optional[ScreenScraperMedia], Optional[ScreenScraperMedia]]:
        """
        Returns (match in the target system, first match from another system).
        """
        if endpoint == "jeuRecherche.php":
            games = response.get("jeux") or []
        else:
            games = [response.get("jeu")] if response.get("jeu") else []

        other: Optional[ScreenScraperMedia] = None
        for game in games:
            if not isinstance(game, dict):
                continue
            media = self._media_from_game(game, scrap_type)
            if media is None:
                continue
            if media.system_id == str(target_system_id).strip():
                return media, None
            if other is None:
                other = media
                logger.debug("Skipping '%s' from system %s (target %s)", media.title, media.system_id or "unknown", target_system_id)
        return None, other

    @staticmethod
    def _media_from_game(game: Dict[str, Any], scrap_type: str) -> Optional[ScreenScraperMedia]:
        for media in game.get("medias") or []:
            if not isinstance(media, dict) or media.get("type") != scrap_type:
                continue
            url = str(media.get("url") or "").strip()
            if not url:
                continue
            system = game.get("systeme") if isinstance(game.get("systeme"), dict) else {}
            return ScreenScraperMedia(
                url=url,
                ext=str(media.get("format") or "").strip(),
                title=ScreenScraperProvider._title_from_game(game),
                system_id=str(system.get("id", "")).strip(),
            )
        return None

    @staticmethod
    def _title_from_game(game: Dict[str, Any]) -> str:
        fallback = ""
        for row in game.get("noms") or []:
            if not isinstance(row, dict):
                continue
            name = str(row.get("text") or row.get("nom") or "")
            fallback = fallback or name
            if row.get("region") in ("wor", "us", "eu") or row.get("langue") in ("en", "fr"):
                return name
        return fallback or "Untitled"
