"""
Worker Pool
Fixed set of threads pulling scrape requests from the work queue
"""
from typing import Callable, List, Optional
import logging
import threading

from ..models.scrape_request import ScrapeRequest
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)


class WorkerPool:
    """Runs ``handler`` for each queued request on ``threads`` daemon workers"""

    def __init__(
        self,
        queue: WorkQueue,
        handler: Callable[[ScrapeRequest], None],
        threads: int = 1,
        name: str = "scrape-worker",
    ):
        self.queue = queue
        self.handler = handler
        self.threads = max(1, int(threads))
        self.name = name
        self._workers: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._started = False

    def start(self):
        """Spawn the workers once; later calls are no-ops"""
        with self._lock:
            if self._started:
                return
            self._started = True
            for index in range(self.threads):
                worker = threading.Thread(
                    target=self._run,
                    name=f"{self.name}-{index + 1}",
                    daemon=True,
                )
                self._workers.append(worker)
                worker.start()
        logger.info("Scrape worker pool started with %d thread(s)", self.threads)

    @property
    def started(self) -> bool:
        with self._lock:
            return self._started

    def _run(self):
        while True:
            request = self.queue.get()
            if request is None:
                if self.queue.closed:
                    return
                continue
            try:
                self.handler(request)
            except Exception:
                # A broken handler must not take the worker down with it.
                logger.exception("Unhandled error while processing %s", request.label)

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for workers to exit after the queue is closed.

        Returns:
            True when every worker has stopped
        """
        with self._lock:
            workers = list(self._workers)
        for worker in workers:
            if worker is threading.current_thread():
                continue
            worker.join(timeout)
        return not any(w.is_alive() for w in workers if w is not threading.current_thread())
