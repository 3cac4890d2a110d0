"""
Failure Cache
Persistent negative cache of keys that every provider failed to resolve
"""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional
import json
import logging
import time

from ..models.scrape_request import RequestKey
from ..utils.file_utils import atomic_write_text

logger = logging.getLogger(__name__)


class FailureCache:
    """
    JSON Lines backed map of RequestKey -> last failure timestamp.

    Entries never expire on their own; clear() is the only way out. A file
    that cannot be read or written is logged and the cache keeps working in
    memory for the rest of the process.
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path is not None else None
        self._lock = RLock()
        self._entries: Dict[RequestKey, float] = {}
        self.last_error = ""
        self.load()

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def load(self) -> int:
        """Load entries from disk, replacing the in-memory state"""
        with self._lock:
            self._entries = {}
            if self._path is None or not self._path.exists():
                return 0
            try:
                lines = self._path.read_text(encoding="utf-8").splitlines()
            except OSError as e:
                self.last_error = f"Failure cache unreadable: {e}"
                logger.warning("Could not read failure cache %s: %s", self._path, e)
                return 0

            skipped = 0
            for line in lines:
                line = line.strip()
                if not line:
                    continue
                try:
                    row = json.loads(line)
                    key = RequestKey.of(row["system_name"], row["game_name"], row["media_type"])
                    self._entries[key] = float(row.get("failed_at") or 0.0)
                except (ValueError, KeyError, TypeError):
                    skipped += 1
            if skipped:
                logger.warning("Skipped %d malformed line(s) in failure cache %s", skipped, self._path)
            if self._entries:
                logger.info("Loaded %d persistent scraping failure(s)", len(self._entries))
            return len(self._entries)

    def contains(self, key: RequestKey) -> bool:
        with self._lock:
            return key in self._entries

    def failed_at(self, key: RequestKey) -> Optional[float]:
        with self._lock:
            return self._entries.get(key)

    def record(self, key: RequestKey, failed_at: Optional[float] = None) -> None:
        """Remember a total failure for key and persist"""
        with self._lock:
            self._entries[key] = float(failed_at if failed_at is not None else time.time())
            self._save()

    def clear(self) -> int:
        """Drop every entry and persist the empty state"""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._save()
        logger.info("Persistent scraping failure cache cleared (%d entries)", count)
        return count

    def entries(self) -> List[Dict]:
        """Serializable rows, oldest failure first"""
        with self._lock:
            rows = sorted(self._entries.items(), key=lambda item: item[1])
        return [self._row(key, ts) for key, ts in rows]

    def _row(self, key: RequestKey, failed_at: float) -> Dict:
        row = key.as_dict()
        row["failed_at"] = failed_at
        row["failed_at_iso"] = datetime.fromtimestamp(failed_at, timezone.utc).isoformat().replace("+00:00", "Z")
        return row

    def _save(self) -> bool:
        if self._path is None:
            return True
        payload = "".join(
            json.dumps({**key.as_dict(), "failed_at": ts}, sort_keys=True) + "\n"
            for key, ts in self._entries.items()
        )
        try:
            atomic_write_text(self._path, payload)
            self.last_error = ""
            return True
        except OSError as e:
            self.last_error = f"Failure cache not saved: {e}"
            logger.warning("Could not write failure cache %s: %s", self._path, e)
            return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
