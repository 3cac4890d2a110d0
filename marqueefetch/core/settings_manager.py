"""
Settings Manager
Handles persistent pipeline and provider settings in the data directory
"""
from dataclasses import dataclass, field
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import threading

from ..utils.file_utils import atomic_write_text

logger = logging.getLogger(__name__)


def default_data_dir() -> Path:
    data_dir = str(os.environ.get("MARQUEEFETCH_DATA_DIR", "") or "").strip()
    return Path(data_dir).expanduser() if data_dir else (Path.home() / ".marqueefetch")


@dataclass
class PipelineConfig:
    """Validated knobs of the scrape pipeline"""
    provider_priority: List[str] = field(default_factory=lambda: ["ScreenScraper", "ArcadeItalia"])
    scraper_threads: int = 1
    queue_limit: int = 5
    queue_keep: int = 3
    enabled: bool = True


class SettingsManager:
    """Manages application settings with persistence"""

    DEFAULT_SETTINGS = {
        # Pipeline
        "auto_scraping_enabled": True,
        "provider_priority": ["ScreenScraper", "ArcadeItalia"],
        "scraper_threads": 1,
        "queue_limit": 5,
        "queue_keep": 3,

        # Storage ("" means inside the data directory)
        "media_root": "",
        "failure_cache_file": "",

        # HTTP
        "http_timeout_seconds": 15.0,

        # ScreenScraper
        "screenscraper_api_url": "https://api.screenscraper.fr/api2",
        "screenscraper_user": "",
        "screenscraper_password": "",
        "screenscraper_dev_id": "",
        "screenscraper_dev_password": "",
        "screenscraper_softname": "marqueefetch",
        "screenscraper_media_types": {
            "mpv": "marquee",
            "dmd": "marquee",
        },
        "screenscraper_systems_file": "",
        "screenscraper_global_search": False,
        "screenscraper_max_threads": 1,
        "screenscraper_max_retries": 2,
        "screenscraper_retry_backoff_seconds": 3.0,

        # ArcadeItalia
        "arcadeitalia_url": "http://adb.arcadeitalia.net",
        "arcadeitalia_media_type": "marquee",
    }

    PIPELINE_KEYS = {"auto_scraping_enabled", "provider_priority", "scraper_threads", "queue_limit", "queue_keep"}

    def __init__(self, settings_dir: Optional[Union[str, Path]] = None):
        self.settings_dir = Path(settings_dir).expanduser() if settings_dir else default_data_dir()
        self.settings_dir.mkdir(parents=True, exist_ok=True)
        self.settings_file = self.settings_dir / "settings.json"

        self._lock = threading.RLock()
        self._settings: Dict[str, Any] = {}
        self._load()

    def _load(self):
        """Load settings from file"""
        with self._lock:
            if self.settings_file.exists():
                try:
                    with open(self.settings_file, 'r', encoding="utf-8") as f:
                        loaded = json.load(f)
                    if not isinstance(loaded, dict):
                        raise ValueError("settings root must be an object")
                    # New keys pick up their defaults
                    self._settings = {**self._defaults(), **loaded}
                    default_types = self.DEFAULT_SETTINGS.get("screenscraper_media_types", {})
                    loaded_types = loaded.get("screenscraper_media_types", {})
                    if isinstance(loaded_types, dict):
                        self._settings["screenscraper_media_types"] = {**default_types, **loaded_types}
                except (OSError, ValueError) as e:
                    logger.warning("Error loading settings from %s: %s", self.settings_file, e)
                    self._settings = self._defaults()
            else:
                self._settings = self._defaults()

    def _defaults(self) -> Dict[str, Any]:
        return json.loads(json.dumps(self.DEFAULT_SETTINGS))

    def _save(self):
        """Save settings to file"""
        with self._lock:
            try:
                atomic_write_text(self.settings_file, json.dumps(self._settings, indent=2))
            except OSError as e:
                logger.warning("Error saving settings to %s: %s", self.settings_file, e)

    def get(self, key: str, default=None) -> Any:
        """Get a setting value"""
        with self._lock:
            return self._settings.get(key, default)

    def set(self, key: str, value: Any):
        """Set a setting value and save"""
        with self._lock:
            self._settings[str(key)] = value
            self._save()

    def update(self, settings_dict: Dict[str, Any]):
        """Update multiple settings at once"""
        with self._lock:
            self._settings.update(dict(settings_dict or {}))
            self._save()

    def get_all(self) -> Dict[str, Any]:
        """Get all settings"""
        with self._lock:
            return self._settings.copy()

    def reset(self):
        """Reset to default settings"""
        with self._lock:
            self._settings = self._defaults()
            self._save()

    @property
    def media_root(self) -> Path:
        configured = str(self.get("media_root", "") or "").strip()
        return Path(configured).expanduser() if configured else (self.settings_dir / "medias")

    @property
    def failure_cache_path(self) -> Path:
        configured = str(self.get("failure_cache_file", "") or "").strip()
        if configured:
            return Path(configured).expanduser()
        return self.settings_dir / "_cache" / "scraps_failed.jsonl"

    def pipeline_config(self) -> PipelineConfig:
        """Sanitized pipeline settings; invalid values fall back with a warning"""
        threads = self._int_setting("scraper_threads", 1, minimum=1)
        limit = self._int_setting("queue_limit", 5, minimum=1)
        keep = self._int_setting("queue_keep", 3, minimum=1)
        if keep >= limit:
            clamped = limit - 1
            logger.warning("queue_keep=%d must be below queue_limit=%d; using %d", keep, limit, clamped)
            keep = clamped

        return PipelineConfig(
            provider_priority=self.provider_priority(),
            scraper_threads=threads,
            queue_limit=limit,
            queue_keep=keep,
            enabled=bool(self.get("auto_scraping_enabled", True)),
        )

    def provider_priority(self) -> List[str]:
        raw = self.get("provider_priority", [])
        if isinstance(raw, str):
            raw = raw.split(",")
        if not isinstance(raw, list):
            raw = []
        ordered: List[str] = []
        seen = set()
        for item in raw:
            name = str(item or "").strip()
            if not name or name.casefold() in seen:
                continue
            seen.add(name.casefold())
            ordered.append(name)
        return ordered

    def _int_setting(self, key: str, default: int, minimum: int) -> int:
        raw = self.get(key, default)
        try:
            value = int(raw)
        except (TypeError, ValueError):
            logger.warning("Invalid %s=%r; using %d", key, raw, default)
            return default
        if value < minimum:
            logger.warning("%s=%d is below %d; using %d", key, value, minimum, minimum)
            return minimum
        return value
