"""
ArcadeItalia Provider

Downloads MAME artwork from the ArcadeItalia database (adb.arcadeitalia.net).
Artwork is keyed by MAME short name, i.e. the ROM file stem.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional
import logging

import requests

from .base import BaseProvider
from ..core.media_download import build_session, download_media
from ..utils.file_utils import sanitize_filename

logger = logging.getLogger(__name__)

MEDIA_FOLDERS = {
    "marquee": "marquees",
    "snapshot": "ingames",
    "title": "titles",
    "cabinet": "cabinets",
}


class ArcadeItaliaProvider(BaseProvider):
    name = "ArcadeItalia"

    def __init__(self, settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.last_error = ""
        self.session = session or build_session()
        self._base_url = "http://adb.arcadeitalia.net"
        self._media_type = "marquee"
        self._timeout_seconds = 15.0
        self.reload_from_settings()

    def reload_from_settings(self) -> None:
        self._base_url = str(self.settings.get("arcadeitalia_url", "http://adb.arcadeitalia.net") or "").strip().rstrip("/")
        self._media_type = str(self.settings.get("arcadeitalia_media_type", "marquee") or "").strip().lower()
        self._timeout_seconds = float(self.settings.get("http_timeout_seconds", 15.0) or 15.0)

    def healthcheck(self) -> Dict[str, Any]:
        out = super().healthcheck()
        out["configured"] = bool(self._base_url and self._media_type)
        out["media_type"] = self._media_type
        return out

    def cache_path(self, system_name: str, rom_name: str) -> Path:
        return (
            Path(self.settings.media_root)
            / "arcadeitalia"
            / sanitize_filename(system_name)
            / sanitize_filename(f"{rom_name}_arcadeitalia.png")
        )

    def resolve(self, system_name: str, game_name: str, game_path: str, media_type: str) -> Optional[str]:
        self.last_error = ""
        if not self._media_type:
            return None
        if not self._base_url:
            self.last_error = "ArcadeItalia is enabled but arcadeitalia_url is empty."
            logger.warning("%s", self.last_error)
            return None

        rom_name = Path(game_path).stem if game_path else str(game_name or "").strip()
        if not rom_name:
            return None

        target = self.cache_path(system_name, rom_name)
        if target.is_file() and target.stat().st_size > 0:
            logger.debug("ArcadeItalia media found in cache: %s", target)
            return str(target)

        folder = MEDIA_FOLDERS.get(self._media_type, f"{self._media_type}s")
        with self.busy(system_name, game_name, media_type):
            for ext in ("png", "jpg"):
                url = f"{self._base_url}/media/mame.current/{folder}/{rom_name}.{ext}"
                result = download_media(
                    self.session,
                    url,
                    target,
                    timeout=self._timeout_seconds,
                    accept_prefixes=["image/"],
                )
                if result.completed:
                    logger.info("ArcadeItalia media downloaded to %s", target)
                    return str(target)
                logger.debug("ArcadeItalia miss for %s: %s", url, result.error)
                # 404 is an ordinary miss
                self.last_error = "" if result.status_code == 404 else result.error

        logger.info("ArcadeItalia has no %s for %s", self._media_type, rom_name)
        return None
