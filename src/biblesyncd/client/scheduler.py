"""Clock and cancellable timers for the sync orchestrator.

ThreadingScheduler is used in applications; ManualScheduler lets tests move
time forward explicitly instead of sleeping.
"""

import heapq
import itertools
import threading
import time

from biblesyncd import logging

logger = logging.get_logger(__name__)


class Scheduler(object):
    def now(self):
        raise NotImplementedError

    def call_later(self, delay, callback):
        """Runs ``callback()`` after ``delay`` seconds; returns a handle with ``cancel()``."""
        raise NotImplementedError


class ThreadingScheduler(Scheduler):
    def now(self):
        return time.monotonic()

    def call_later(self, delay, callback):
        timer = threading.Timer(max(0.0, delay), self._run, args=(callback,))
        timer.daemon = True
        timer.start()
        return timer

    @staticmethod
    def _run(callback):
        try:
            callback()
        except Exception:
            # Nobody joins timer threads, so this is the only place to report it
            logger.exception("Scheduled callback {!r} failed".format(callback))


class ManualTimer(object):
    def __init__(self, deadline, callback):
        self.deadline = deadline
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler(Scheduler):
    def __init__(self, start=0.0):
        self._now = start
        self._queue = []
        self._counter = itertools.count()

    def now(self):
        return self._now

    def call_later(self, delay, callback):
        timer = ManualTimer(self._now + max(0.0, delay), callback)
        heapq.heappush(self._queue, (timer.deadline, next(self._counter), timer))
        return timer

    def pending(self):
        return [t for _, _, t in self._queue if not t.cancelled]

    def advance(self, seconds):
        """Moves the clock forward, running every timer that falls due in order."""
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            deadline, _, timer = heapq.heappop(self._queue)
            self._now = deadline
            if not timer.cancelled:
                timer.callback()
        self._now = target
