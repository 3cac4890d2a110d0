"""Runtime bootstrap for the MarqueeFetch pipeline and web API."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union
import logging

from ..core.event_bus import EventBus
from ..core.failure_cache import FailureCache
from ..core.scraper_manager import ScraperManager
from ..core.settings_manager import SettingsManager
from ..providers.arcadeitalia import ArcadeItaliaProvider
from ..providers.screenscraper import ScreenScraperProvider

logger = logging.getLogger(__name__)


@dataclass
class MarqueeRuntime:
    """Shared service graph used by web endpoints."""

    settings: SettingsManager
    event_bus: EventBus
    failure_cache: FailureCache
    scraper_manager: ScraperManager

    def close(self, wait: bool = True, timeout: Optional[float] = None):
        self.scraper_manager.shutdown(wait=wait, timeout=timeout)


def build_runtime(settings_dir: Optional[Union[str, Path]] = None) -> MarqueeRuntime:
    """Create and wire core services."""

    settings = SettingsManager(settings_dir)
    event_bus = EventBus()
    failure_cache = FailureCache(settings.failure_cache_path)
    config = settings.pipeline_config()

    scraper_manager = ScraperManager(
        event_bus,
        failure_cache,
        priority=config.provider_priority,
        threads=config.scraper_threads,
        queue_limit=config.queue_limit,
        queue_keep=config.queue_keep,
        enabled=config.enabled,
    )
    scraper_manager.register(ScreenScraperProvider(settings))
    scraper_manager.register(ArcadeItaliaProvider(settings))

    logger.info(
        "Scrape pipeline ready: priority=%s threads=%d queue=%d/%d enabled=%s",
        ",".join(config.provider_priority) or "-",
        config.scraper_threads,
        config.queue_limit,
        config.queue_keep,
        config.enabled,
    )
    return MarqueeRuntime(
        settings=settings,
        event_bus=event_bus,
        failure_cache=failure_cache,
        scraper_manager=scraper_manager,
    )
