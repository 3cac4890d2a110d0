"""
Provider SDK
Versioned base interface for media providers.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Set
import threading

from ..models.scrape_request import RequestKey


class BaseProvider(ABC):
    """
    Stable contract shared by every media provider.

    resolve() turns a (system, game, media type) target into a local file
    path or None. It may block on the network; the pipeline calls it from a
    worker thread and never from the caller's thread.
    """
    api_version = 1
    name = "UnnamedProvider"
    last_error = ""

    @abstractmethod
    def resolve(self, system_name: str, game_name: str, game_path: str, media_type: str) -> Optional[str]:
        """Return a local media path for the target, or None."""
        raise NotImplementedError

    def is_busy(self, system_name: str, game_name: str, media_type: str) -> bool:
        """True while this provider is resolving the given target."""
        key = RequestKey.of(system_name, game_name, media_type)
        with self._busy_lock():
            return key in self._busy_keys()

    @contextmanager
    def busy(self, system_name: str, game_name: str, media_type: str) -> Iterator[None]:
        """Mark a target as being resolved for the duration of the block."""
        key = RequestKey.of(system_name, game_name, media_type)
        with self._busy_lock():
            self._busy_keys().add(key)
        try:
            yield
        finally:
            with self._busy_lock():
                self._busy_keys().discard(key)

    def reload_from_settings(self) -> None:
        """Optional hook called when provider settings are reloaded."""
        return None

    def healthcheck(self) -> Dict[str, Any]:
        """Optional lightweight health payload for dashboards."""
        return {
            "name": self.name,
            "ok": not bool(self.last_error),
            "error": self.last_error,
            "api_version": self.api_version,
        }

    # Subclasses are not required to call super().__init__(), so the busy
    # bookkeeping is created lazily.
    _busy_guard = threading.Lock()

    def _busy_lock(self) -> threading.Lock:
        lock = self.__dict__.get("_busy_state_lock")
        if lock is None:
            with BaseProvider._busy_guard:
                lock = self.__dict__.setdefault("_busy_state_lock", threading.Lock())
        return lock

    def _busy_keys(self) -> Set[RequestKey]:
        return self.__dict__.setdefault("_busy_state_keys", set())
