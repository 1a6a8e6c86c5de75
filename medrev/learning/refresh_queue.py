"""
Background refresh queue.

Stale-while-revalidate regeneration runs here, off the request path:
- Bounded ThreadPoolExecutor (workers from settings)
- At most one pending job per (user, scope); repeat submissions share it
- Failures are logged and left on the returned Future, never re-raised
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait

from loguru import logger


class RefreshQueue:
    """Deduplicating thread pool for note regeneration jobs."""

    def __init__(self, workers: int = 2, name: str = "note-refresh"):
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=name)
        self._pending: dict[str, Future] = {}
        self._lock = threading.RLock()
        self._closed = False

    def submit(self, key: str, job: Callable[[], object]) -> Future:
        """
        Schedule job under key unless an identical job is still pending.

        Returns the Future of the job that will do the work.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("Refresh queue is shut down")

            existing = self._pending.get(key)
            if existing is not None and not existing.done():
                logger.debug("Refresh already queued for {}", key)
                return existing

            future = self._executor.submit(self._run, key, job)
            self._pending[key] = future
            future.add_done_callback(lambda done, key=key: self._forget(key, done))
            return future

    def _run(self, key: str, job: Callable[[], object]) -> object:
        try:
            result = job()
        except Exception:
            logger.exception("Background refresh failed for {}", key)
            raise
        logger.debug("Background refresh finished for {}", key)
        return result

    def _forget(self, key: str, future: Future) -> None:
        with self._lock:
            if self._pending.get(key) is future:
                del self._pending[key]

    @property
    def pending(self) -> int:
        with self._lock:
            return sum(1 for future in self._pending.values() if not future.done())

    def drain(self, timeout: float | None = None) -> None:
        """Block until every job submitted so far has finished."""
        with self._lock:
            futures = list(self._pending.values())
        wait(futures, timeout=timeout)

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait_for_jobs)
        logger.debug("Refresh queue stopped")
