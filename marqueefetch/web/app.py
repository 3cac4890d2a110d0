"""FastAPI app exposing the scrape pipeline to frontends and scripts."""

from __future__ import annotations

from concurrent.futures import CancelledError, TimeoutError as FutureTimeoutError
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Query
from pydantic import BaseModel

from ..core.event_bus import Events
from ..core.exceptions import PipelineClosedError
from ..core.settings_manager import SettingsManager
from .runtime import MarqueeRuntime, build_runtime

MAX_WAIT_SECONDS = 60.0
SECRET_KEYS = {"screenscraper_password", "screenscraper_dev_password"}
SECRET_MASK = "********"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _masked_settings(settings: SettingsManager) -> Dict[str, Any]:
    data = settings.get_all()
    for key in SECRET_KEYS:
        if data.get(key):
            data[key] = SECRET_MASK
    return data


class ScrapeCreateRequest(BaseModel):
    system: str
    game: str
    gamePath: str = ""
    mediaType: str = "marquee"
    waitSeconds: float = 0.0


def create_app(runtime: Optional[MarqueeRuntime] = None) -> FastAPI:
    runtime = runtime or build_runtime()
    manager = runtime.scraper_manager

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        manager.start()
        try:
            yield
        finally:
            runtime.close(wait=False)

    app = FastAPI(title="MarqueeFetch API", version="1.0.0", lifespan=lifespan)

    @app.get("/health")
    def health() -> Dict:
        return {"ok": True, "time": _utc_now_iso()}

    @app.post("/api/scrape")
    def create_scrape(body: ScrapeCreateRequest) -> Dict:
        try:
            future = manager.request(body.system, body.game, body.gamePath, body.mediaType)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except PipelineClosedError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

        # A future resolved to None on the spot means disabled or negatively cached.
        if future.done() and not future.cancelled():
            path = future.result()
            return {"status": "completed" if path else "skipped", "path": path, "activeProvider": None}

        wait_seconds = max(0.0, min(MAX_WAIT_SECONDS, float(body.waitSeconds or 0.0)))
        if wait_seconds > 0:
            try:
                path = future.result(timeout=wait_seconds)
                return {"status": "completed", "path": path, "activeProvider": None}
            except FutureTimeoutError:
                pass
            except CancelledError:
                return {"status": "skipped", "path": None, "activeProvider": None}

        return {
            "status": "pending",
            "path": None,
            "activeProvider": manager.get_active_scraper_name(body.system, body.game, body.mediaType),
        }

    @app.get("/api/scrape/status")
    def scrape_status(
        system: str = Query(...),
        game: str = Query(...),
        mediaType: str = Query("marquee"),
    ) -> Dict:
        return {
            "scraping": manager.is_scraping(system, game, mediaType),
            "activeProvider": manager.get_active_scraper_name(system, game, mediaType),
        }

    @app.get("/api/scrape/queue")
    def scrape_queue() -> Dict:
        return {
            "pending": manager.pending_count(),
            "inFlight": list(manager.in_flight_snapshot().values()),
            "enabled": manager.enabled,
        }

    @app.get("/api/providers")
    def providers() -> Dict:
        return {
            "priority": manager.get_priority(),
            "providers": manager.healthcheck(),
        }

    @app.get("/api/failure-cache")
    def failure_cache() -> Dict:
        return {
            "count": len(runtime.failure_cache),
            "entries": runtime.failure_cache.entries(),
            "lastError": runtime.failure_cache.last_error,
        }

    @app.delete("/api/failure-cache")
    def clear_failure_cache() -> Dict:
        return {"ok": True, "cleared": manager.clear_failure_cache()}

    @app.get("/api/settings")
    def get_settings() -> Dict:
        return {"settings": _masked_settings(runtime.settings)}

    @app.patch("/api/settings")
    def patch_settings(payload: Dict[str, Any] = Body(...)) -> Dict:
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Settings payload must be an object.")
        unknown = sorted(k for k in payload if k not in SettingsManager.DEFAULT_SETTINGS)
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown settings: {', '.join(unknown)}")
        changes = {k: v for k, v in payload.items() if not (k in SECRET_KEYS and v == SECRET_MASK)}
        runtime.settings.update(changes)

        if "provider_priority" in changes:
            manager.set_priority(runtime.settings.provider_priority())
        if "auto_scraping_enabled" in changes:
            manager.enabled = bool(runtime.settings.get("auto_scraping_enabled", True))
        if any(k not in SettingsManager.PIPELINE_KEYS for k in changes):
            manager.reload_providers()

        restart_keys = sorted(k for k in changes if k in {"scraper_threads", "queue_limit", "queue_keep"})
        runtime.event_bus.emit(Events.SETTINGS_CHANGED, {"keys": sorted(changes)})
        return {
            "ok": True,
            "settings": _masked_settings(runtime.settings),
            "restartRequired": restart_keys,
        }

    return app


_default_app: Optional[FastAPI] = None


def __getattr__(name: str):
    # `uvicorn marqueefetch.web.app:app` builds the default runtime on first access
    global _default_app
    if name == "app":
        if _default_app is None:
            _default_app = create_app()
        return _default_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
