"""
Scraper Manager
Public facade of the scrape pipeline: dedup, negative cache, bounded queue,
worker pool and ordered provider fallback
"""
from concurrent.futures import Future
from typing import Callable, Dict, List, Optional, Tuple
import logging
import threading
import time

from ..models.scrape_request import InFlightEntry, RequestKey, ScrapeRequest
from ..providers.base import BaseProvider
from .event_bus import EventBus, Events
from .exceptions import PipelineClosedError
from .failure_cache import FailureCache
from .work_queue import WorkQueue
from .worker_pool import WorkerPool

logger = logging.getLogger(__name__)


def _resolved(value: Optional[str]) -> Future:
    future: Future = Future()
    future.set_result(value)
    return future


class ScraperManager:
    """
    Resolves (system, game, media type) targets to local media paths.

    Each key has at most one pending future, shared by every caller that asks
    for it while it is queued or running. Providers are tried one after the
    other in priority order and the first non-empty path wins.
    """

    def __init__(
        self,
        event_bus: EventBus,
        failure_cache: FailureCache,
        priority: Optional[List[str]] = None,
        threads: int = 1,
        queue_limit: int = 5,
        queue_keep: int = 3,
        enabled: bool = True,
    ):
        self.event_bus = event_bus
        self.failure_cache = failure_cache
        self.enabled = enabled

        self._providers: Dict[str, BaseProvider] = {}
        self._priority: List[str] = []
        self._warned_unknown = set()

        self._lock = threading.RLock()
        self._pending: Dict[RequestKey, Future] = {}
        self._in_flight: Dict[RequestKey, InFlightEntry] = {}
        self._closed = False

        self._queue = WorkQueue(limit=queue_limit, keep=queue_keep)
        self._pool = WorkerPool(self._queue, self._process, threads=threads)
        self.set_priority(priority or [])

    # -- provider registry -------------------------------------------------

    def register(self, provider):
        """Register a media provider"""
        if not isinstance(provider, BaseProvider):
            raise TypeError(f"Invalid provider type for register(): {type(provider)}. Expected BaseProvider.")
        if not getattr(provider, "name", ""):
            raise ValueError("Provider must define non-empty 'name'.")
        if not callable(getattr(provider, "resolve", None)):
            raise ValueError("Provider must implement callable resolve(system, game, game_path, media_type).")
        with self._lock:
            self._providers[provider.name.casefold()] = provider
            self._warned_unknown.discard(provider.name.casefold())
        logger.debug("Registered provider %s", provider.name)

    def get_provider(self, provider_name: str) -> Optional[BaseProvider]:
        with self._lock:
            return self._providers.get(str(provider_name or "").casefold())

    def provider_names(self) -> List[str]:
        """All registered provider names"""
        with self._lock:
            return [p.name for p in self._providers.values()]

    def set_priority(self, names: List[str]):
        """Replace the ordered provider list; duplicates are dropped case-insensitively"""
        ordered: List[str] = []
        seen = set()
        for raw in names or []:
            name = str(raw or "").strip()
            if not name or name.casefold() in seen:
                continue
            seen.add(name.casefold())
            ordered.append(name)
        with self._lock:
            self._priority = ordered
            self._warned_unknown.clear()

    def get_priority(self) -> List[str]:
        with self._lock:
            return list(self._priority)

    def reload_providers(self):
        """Ask every provider to re-read its settings"""
        with self._lock:
            providers = list(self._providers.values())
        for provider in providers:
            try:
                provider.reload_from_settings()
            except Exception:
                logger.exception("Provider %s failed to reload settings", provider.name)
        self.event_bus.emit(Events.PROVIDERS_RELOADED, {"providers": [p.name for p in providers]})

    # -- public pipeline API -----------------------------------------------

    def start(self):
        """Start the worker pool (idempotent)"""
        with self._lock:
            if self._closed:
                raise PipelineClosedError()
        self._pool.start()

    def request(self, system_name: str, game_name: str, game_path: str, media_type: str) -> Future:
        """
        Submit a scrape request

        Args:
            system_name: Frontend system id (e.g. "nes")
            game_name: Display name of the game
            game_path: ROM path, may be empty for system-level media
            media_type: Requested media kind (e.g. "marquee", "mpv")

        Returns:
            Future resolving to the media path or None. Callers asking for a
            key that is already queued or running share its future. A future
            is cancelled if its request is evicted or discarded at shutdown.
            Cancelling it before a worker starts the request skips the scrape.
        """
        for label, value in (("system_name", system_name), ("game_name", game_name), ("media_type", media_type)):
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"{label} is required.")
        if not isinstance(game_path, str):
            raise ValueError("game_path must be a string (may be empty).")

        request = ScrapeRequest(
            system_name=system_name.strip(),
            game_name=game_name.strip(),
            game_path=game_path,
            media_type=media_type.strip(),
        )
        key = request.key

        skip_reason = None
        with self._lock:
            if self._closed:
                raise PipelineClosedError()
            existing = self._pending.get(key)
            if not self.enabled:
                skip_reason = "disabled"
            elif existing is not None and not existing.cancelled():
                if self._queue.refresh(request):
                    logger.debug("Refreshed queued request %s", request.label)
                else:
                    logger.debug("Request %s already claimed; sharing result", request.label)
                return existing
            elif self.failure_cache.contains(key):
                skip_reason = "failure_cache"
            elif existing is not None:
                # The previous future was cancelled before a worker started it.
                # Whoever claims the key runs the replacement future instead.
                future: Future = Future()
                self._pending[key] = future
                self._queue.refresh(request)
                logger.debug("Replaced cancelled request %s", request.label)
                return future
            else:
                future = Future()
                self._pending[key] = future
                evicted = self._queue.put(request)
                for old in evicted:
                    self._drop_pending(old)

        if skip_reason:
            logger.debug("Skipping %s (%s)", request.label, skip_reason)
            self.event_bus.emit(Events.SCRAPE_SKIPPED, {**self._payload(request), "reason": skip_reason})
            return _resolved(None)

        for old in evicted:
            logger.info("Evicted queued request %s", old.label)
            self.event_bus.emit(Events.SCRAPE_EVICTED, self._payload(old))
        self.event_bus.emit(Events.SCRAPE_QUEUED, self._payload(request))
        self._pool.start()
        return future

    def is_scraping(self, system_name: str, game_name: str, media_type: str) -> bool:
        key = RequestKey.of(system_name, game_name, media_type)
        with self._lock:
            return key in self._in_flight

    def get_active_scraper_name(self, system_name: str, game_name: str, media_type: str) -> Optional[str]:
        key = RequestKey.of(system_name, game_name, media_type)
        with self._lock:
            entry = self._in_flight.get(key)
            return entry.active_provider if entry else None

    def on_scrape_completed(self, callback: Callable[[str, str, Optional[str]], None]) -> Callable:
        """
        Subscribe callback(system_name, game_name, path) to completions

        Returns:
            The bus handler, for EventBus.unsubscribe(Events.SCRAPE_COMPLETED, handler)
        """
        def _handler(data):
            callback(data["system_name"], data["game_name"], data["path"])

        self.event_bus.subscribe(Events.SCRAPE_COMPLETED, _handler)
        return _handler

    def clear_failure_cache(self) -> int:
        """Forget every recorded failure"""
        count = self.failure_cache.clear()
        self.event_bus.emit(Events.FAILURE_CACHE_CLEARED, {"count": count})
        return count

    def pending_count(self) -> int:
        """Requests waiting in the queue"""
        return len(self._queue)

    def in_flight_snapshot(self) -> Dict[str, Dict]:
        with self._lock:
            return {
                str(key): {
                    "system_name": entry.request.system_name,
                    "game_name": entry.request.game_name,
                    "media_type": entry.request.media_type,
                    "active_provider": entry.active_provider,
                    "started_at": entry.started_at,
                }
                for key, entry in self._in_flight.items()
            }

    def healthcheck(self) -> List[Dict]:
        """Provider health in priority order, then unlisted providers"""
        with self._lock:
            providers = dict(self._providers)
            priority = list(self._priority)
        out = []
        listed = set()
        for index, name in enumerate(priority):
            provider = providers.get(name.casefold())
            listed.add(name.casefold())
            if provider is None:
                out.append({"name": name, "ok": False, "error": "Provider not registered.", "priority": index + 1})
                continue
            out.append({**provider.healthcheck(), "priority": index + 1})
        for folded, provider in providers.items():
            if folded not in listed:
                out.append({**provider.healthcheck(), "priority": None})
        return out

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None):
        """
        Stop accepting work.

        Queued requests are discarded (their futures cancelled, no completion
        event); requests already running finish normally.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            discarded = self._queue.close()
            for request in discarded:
                self._drop_pending(request)
        if discarded:
            logger.info("Discarded %d queued scrape request(s) on shutdown", len(discarded))
        if wait and self._pool.started:
            self._pool.join(timeout)

    # -- worker side ---------------------------------------------------------

    def _process(self, request: ScrapeRequest):
        key = request.key
        with self._lock:
            future = self._pending.get(key)
            cancelled = future is None or not future.set_running_or_notify_cancel()
            if cancelled:
                self._pending.pop(key, None)
            else:
                entry = InFlightEntry(request=request)
                self._in_flight[key] = entry

        if cancelled:
            logger.debug("Skipping %s; cancelled before it started", request.label)
            self.event_bus.emit(Events.SCRAPE_SKIPPED, {**self._payload(request), "reason": "cancelled"})
            return

        logger.info("Starting scrape for %s", request.label)
        self.event_bus.emit(Events.SCRAPE_STARTED, self._payload(request))

        path: Optional[str] = None
        try:
            path, provider_name, attempted = self._run_providers(request, entry)
            if path:
                logger.info("Found media via %s for %s (%s)", provider_name, request.label, path)
            elif attempted:
                logger.warning("No provider found media for %s", request.label)
                self.failure_cache.record(key)
                self.event_bus.emit(Events.FAILURE_RECORDED, self._payload(request))
            else:
                logger.warning("No registered provider available for %s; nothing attempted", request.label)
        finally:
            with self._lock:
                self._in_flight.pop(key, None)
                self._pending.pop(key, None)
            self.event_bus.emit(Events.SCRAPE_COMPLETED, {**self._payload(request), "path": path})
            future.set_result(path)

    def _run_providers(self, request: ScrapeRequest, entry: InFlightEntry) -> Tuple[Optional[str], Optional[str], int]:
        """Returns (path, provider name, number of providers called)"""
        attempted = 0
        for name in self.get_priority():
            provider = self.get_provider(name)
            if provider is None:
                self._warn_unknown(name)
                continue

            with self._lock:
                entry.active_provider = provider.name
            self.event_bus.emit(Events.SCRAPE_PROVIDER_CHANGED, {**self._payload(request), "provider": provider.name})

            attempted += 1
            started = time.perf_counter()
            try:
                path = provider.resolve(request.system_name, request.game_name, request.game_path, request.media_type)
            except Exception as e:
                logger.warning("Provider %s failed for %s: %s", provider.name, request.label, e)
                continue
            elapsed_ms = (time.perf_counter() - started) * 1000.0

            if path:
                return str(path), provider.name, attempted
            logger.info(
                "Provider %s had no media for %s (%.0f ms)%s",
                provider.name,
                request.label,
                elapsed_ms,
                f": {provider.last_error}" if getattr(provider, "last_error", "") else "",
            )
        return None, None, attempted

    # -- helpers -------------------------------------------------------------

    def _drop_pending(self, request: ScrapeRequest):
        future = self._pending.pop(request.key, None)
        if future is not None:
            future.cancel()

    def _warn_unknown(self, name: str):
        with self._lock:
            if name.casefold() in self._warned_unknown:
                return
            self._warned_unknown.add(name.casefold())
        logger.warning("Configured provider '%s' is not registered; skipping it", name)

    @staticmethod
    def _payload(request: ScrapeRequest) -> Dict:
        return {
            "system_name": request.system_name,
            "game_name": request.game_name,
            "media_type": request.media_type,
        }
