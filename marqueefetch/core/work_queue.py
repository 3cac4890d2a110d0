"""
Work Queue
Bounded, key-coalescing FIFO of scrape requests waiting for a worker
"""
from collections import OrderedDict
from typing import List, Optional
import logging
import threading

from ..models.scrape_request import RequestKey, ScrapeRequest
from .exceptions import PipelineClosedError

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    FIFO keyed by submission order.

    Admission on put():
    1. A request whose key is already queued replaces it and moves to the tail.
    2. Below ``limit`` the request is appended.
    3. When saturated the oldest entries are evicted down to ``keep`` and the
       new request is appended, so the queue ends at ``keep + 1`` entries.
    """

    def __init__(self, limit: int = 5, keep: int = 3):
        limit = int(limit)
        keep = int(keep)
        if limit < 1:
            raise ValueError("Queue limit must be at least 1.")
        if keep < 0 or keep >= limit:
            raise ValueError(f"Queue keep ({keep}) must be below queue limit ({limit}).")
        self.limit = limit
        self.keep = keep
        self._items: "OrderedDict[RequestKey, ScrapeRequest]" = OrderedDict()
        self._cond = threading.Condition(threading.RLock())
        self._closed = False

    def put(self, request: ScrapeRequest) -> List[ScrapeRequest]:
        """
        Admit a request.

        Returns:
            Requests evicted to make room (oldest first).
        """
        key = request.key
        evicted: List[ScrapeRequest] = []
        with self._cond:
            if self._closed:
                raise PipelineClosedError()
            if key in self._items:
                self._items[key] = request
                self._items.move_to_end(key)
            else:
                if len(self._items) >= self.limit:
                    while len(self._items) > self.keep:
                        _, old = self._items.popitem(last=False)
                        evicted.append(old)
                    logger.info(
                        "Work queue saturated (%d); evicted %d oldest request(s)",
                        self.limit, len(evicted),
                    )
                self._items[key] = request
            self._cond.notify()
        return evicted

    def get(self, timeout: Optional[float] = None) -> Optional[ScrapeRequest]:
        """
        Pop the oldest request, blocking while the queue is empty.

        Returns None when the queue is closed or the timeout expires.
        """
        with self._cond:
            while not self._items and not self._closed:
                if not self._cond.wait(timeout):
                    return None
            if self._closed:
                return None
            _, request = self._items.popitem(last=False)
            return request

    def refresh(self, request: ScrapeRequest) -> bool:
        """
        Replace a still-queued request and move it to the tail.

        Never appends: returns False when no entry with the same key is
        waiting (already claimed by a worker, evicted or discarded).
        """
        key = request.key
        with self._cond:
            if key not in self._items:
                return False
            self._items[key] = request
            self._items.move_to_end(key)
            return True

    def snapshot(self) -> List[ScrapeRequest]:
        """Queued requests, oldest first"""
        with self._cond:
            return list(self._items.values())

    def close(self) -> List[ScrapeRequest]:
        """Stop admissions, wake every waiter and return the discarded requests"""
        with self._cond:
            self._closed = True
            discarded = list(self._items.values())
            self._items.clear()
            self._cond.notify_all()
        return discarded

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)
