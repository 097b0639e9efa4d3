"""
Per-user request serialization and rate limiting for the sync endpoints.
"""

import collections
import threading
import time
from typing import Any, Callable, Dict

from biblesyncd import logging

logger = logging.get_logger(__name__)


class UserSyncQueue:
    """
    Ensures only one sync operation per user runs at a time.

    Two devices of the same user syncing at once would otherwise interleave
    their read-compare-write sequences.
    """

    def __init__(self, timeout: float = 300):
        self.timeout = timeout
        self.user_locks: Dict[str, threading.Lock] = {}
        self._global_lock = threading.Lock()

    def _get_user_lock(self, user_id: str) -> threading.Lock:
        with self._global_lock:
            if user_id not in self.user_locks:
                self.user_locks[user_id] = threading.Lock()
            return self.user_locks[user_id]

    def execute_sync_operation(self, user_id: str, operation: Callable, *args, **kwargs) -> Any:
        """
        Run ``operation(*args, **kwargs)`` while holding the user's lock.

        Raises:
            TimeoutError: If the lock could not be taken within ``timeout``
            Exception: Any exception raised by the operation
        """
        user_lock = self._get_user_lock(user_id)

        acquired = user_lock.acquire(blocking=False)
        if not acquired:
            logger.info(f"Lock is busy for user: {user_id}, waiting...")
            acquired = user_lock.acquire(timeout=self.timeout)

        if not acquired:
            logger.error(f"Sync operation timed out waiting for lock for user: {user_id}")
            raise TimeoutError(f"Sync operation timed out for user: {user_id}")

        try:
            start_time = time.time()
            try:
                result = operation(*args, **kwargs)
            except Exception as e:
                logger.error(f"Sync operation failed for user: {user_id}: {e}")
                raise
            logger.info(f"Sync operation completed for user: {user_id} in {time.time() - start_time:.2f}s")
            return result
        finally:
            user_lock.release()

    def get_queue_status(self, user_id: str) -> Dict[str, Any]:
        with self._global_lock:
            has_lock = user_id in self.user_locks
            return {
                'user_id': user_id,
                'is_locked': has_lock and self.user_locks[user_id].locked(),
                'has_lock': has_lock,
            }


class RateLimiter:
    """
    Sliding window limiter: at most ``max_requests`` accepted per ``window`` seconds.

    Only accepted requests are recorded, so a client hammering a closed
    window does not extend its own lockout.
    """

    def __init__(self, max_requests: int = 30, window: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window = window
        self.clock = clock
        self._hits: Dict[str, collections.deque] = {}
        self._lock = threading.Lock()

    def allow(self, user_id: str) -> bool:
        now = self.clock()
        with self._lock:
            self._prune(now)
            hits = self._hits.setdefault(user_id, collections.deque())
            if len(hits) >= self.max_requests:
                logger.warning(f"Rate limit hit for user: {user_id} ({len(hits)} requests in {self.window}s)")
                return False
            hits.append(now)
            return True

    def _prune(self, now: float) -> None:
        """Drops expired hits; users whose window has drained are forgotten."""
        for user_id in list(self._hits):
            hits = self._hits[user_id]
            while hits and hits[0] <= now - self.window:
                hits.popleft()
            if not hits:
                del self._hits[user_id]

    def retry_after(self, user_id: str) -> int:
        """Seconds until the oldest request in the window expires."""
        with self._lock:
            hits = self._hits.get(user_id)
            if not hits:
                return 0
            return max(1, int(hits[0] + self.window - self.clock() + 0.999))
