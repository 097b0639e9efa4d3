"""Keeps one device's local data in sync with the server.

Local edits mark their category dirty and schedule a debounced sync. A
failed sync puts its categories back and retries with exponential backoff.
Only one sync runs at a time per orchestrator.
"""

import random
import threading

from biblesyncd import logging
from biblesyncd.client.scheduler import ThreadingScheduler
from biblesyncd.client.tracker import ALL_CATEGORIES, ChangeTracker
from biblesyncd.exceptions import NotAuthenticated, SessionExpired, SyncError
from biblesyncd.protocol import SyncRequest

logger = logging.get_logger(__name__)

STATUS_IDLE = "idle"
STATUS_SYNCING = "syncing"
STATUS_ERROR = "error"
STATUS_OFFLINE = "offline"

# Timer states
TIMER_IDLE = "idle"
TIMER_SCHEDULED = "scheduled"
TIMER_RUNNING = "running"
TIMER_BACKOFF = "backoff"

SESSION_EXPIRED_MESSAGE = "Session expired, please sign in again"


class SyncOrchestrator(object):
    def __init__(self, store, transport, state, scheduler=None, tracker=None,
                 debounce_seconds=3.0, base_retry_delay=1.0, max_retry_delay=60.0,
                 online=True, rng=random.random):
        self.store = store
        self.transport = transport
        self.state = state
        self.scheduler = scheduler or ThreadingScheduler()
        self.tracker = tracker or ChangeTracker()
        self.debounce_seconds = debounce_seconds
        self.base_retry_delay = base_retry_delay
        self.max_retry_delay = max_retry_delay
        self.online = online
        self.rng = rng

        self.status = STATUS_IDLE
        self.last_error = None
        self.consecutive_errors = 0
        self.timer_state = TIMER_IDLE
        self.deadline = None
        self.attempt = 0

        self._timer = None
        self._timer_lock = threading.Lock()
        self._sync_lock = threading.Lock()
        self._applying = threading.local()
        self._unsubscribe = None
        self._status_listeners = []
        self._data_listeners = []

    # Listeners

    def add_status_listener(self, callback):
        """``callback(status, error_message_or_None)`` on every status change."""
        self._status_listeners.append(callback)

    def add_data_listener(self, callback):
        """``callback({category: value})`` after server changes were saved locally."""
        self._data_listeners.append(callback)

    def _set_status(self, status, message=None):
        self.status = status
        self.last_error = message
        for listener in list(self._status_listeners):
            listener(status, message)

    # Lifecycle

    def start(self):
        self.consecutive_errors = 0
        self.tracker.restore_known(self.state.known_keys)
        if self._unsubscribe:
            self._unsubscribe()
        self._unsubscribe = self.store.on_change(self._on_local_change)
        logger.info("Sync started for device {}".format(self.state.device_id))

    def stop(self):
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_timer()
        self._status_listeners = []
        self._data_listeners = []
        logger.info("Sync stopped for device {}".format(self.state.device_id))

    # Timers

    def _cancel_timer(self):
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self.timer_state != TIMER_RUNNING:
                self.timer_state = TIMER_IDLE
            self.deadline = None

    def _arm(self, delay, callback, timer_state):
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = self.scheduler.call_later(delay, callback)
            self.timer_state = timer_state
            self.deadline = self.scheduler.now() + delay

    def _on_local_change(self, category):
        # Saving server changes fires notifications too; those are not edits
        if getattr(self._applying, "active", False):
            return
        self.tracker.mark_changed(category)
        self.schedule_debounced_sync()

    def schedule_debounced_sync(self):
        if not self.transport.is_authenticated():
            return
        self._arm(self.debounce_seconds, self._on_debounce_timer, TIMER_SCHEDULED)

    def _on_debounce_timer(self):
        if not self.transport.is_authenticated():
            return
        self.perform_sync()

    def retry_delay(self):
        delay = min(self.base_retry_delay * (2 ** self.consecutive_errors), self.max_retry_delay)
        return delay + self.rng() * delay * 0.25

    def _schedule_retry(self):
        delay = self.retry_delay()
        self.attempt = self.consecutive_errors
        self._arm(delay, self._on_retry_timer, TIMER_BACKOFF)
        logger.info("Retrying sync in {:.1f}s (attempt {})".format(delay, self.attempt))

    def _on_retry_timer(self):
        if not self.transport.is_authenticated():
            return
        if self.tracker.has_pending_changes() or self.consecutive_errors > 0:
            self.perform_sync()

    # Sync

    def perform_sync(self, full=False):
        """Runs one sync round trip and returns the cursor afterwards.

        Returns the current cursor untouched when a sync is already running
        or the device is offline. Failures do not raise: they set the error
        status and schedule a retry.
        """
        if not self._sync_lock.acquire(blocking=False):
            logger.debug("Sync already in progress")
            return self.state.last_sync_at
        try:
            return self._perform_sync(full)
        finally:
            self._sync_lock.release()

    def _perform_sync(self, full):
        if not self.transport.is_authenticated():
            raise NotAuthenticated("Not authenticated")
        if not self.online:
            self._set_status(STATUS_OFFLINE)
            return self.state.last_sync_at

        self._cancel_timer()
        self.timer_state = TIMER_RUNNING
        self._set_status(STATUS_SYNCING)

        categories = self.tracker.consume_pending_changes()
        if full:
            categories = set(ALL_CATEGORIES)

        try:
            local_state = self._snapshot()
            request = SyncRequest(
                device_id=self.state.device_id,
                last_sync_at=0 if full else self.state.last_sync_at,
                changes=self.tracker.build_sync_changes(categories, local_state),
            )
            response = self.transport.sync(request)

            updates = {}
            if response.changes:
                # Re-read so edits made during the round trip are merged into, not lost
                updates = self.tracker.apply_server_changes(response.changes, self._snapshot())
                self._save_updates(updates)
                for listener in list(self._data_listeners):
                    listener(updates)

            # What was pushed plus what came back is what the server now holds
            synced_state = dict(local_state)
            synced_state.update(updates)
            self.state.known_keys = self.tracker.remember(synced_state)
            self.state.last_sync_at = response.synced_at
            self.state.save()
        except SessionExpired:
            self._restore(categories)
            self._finish_running()
            logger.warning("Sync stopped: session expired")
            self._set_status(STATUS_ERROR, SESSION_EXPIRED_MESSAGE)
            return self.state.last_sync_at
        except (SyncError, OSError) as e:
            logger.error("Sync error: {}".format(e))
            return self._fail(categories, str(e) or "Sync failed")
        except Exception as e:
            logger.exception("Sync failed unexpectedly")
            return self._fail(categories, str(e) or "Sync failed")

        self.consecutive_errors = 0
        self.attempt = 0
        self._finish_running()
        logger.info(
            "Synced {} items up, {} down, cursor {}".format(
                len(request.changes), len(response.changes), response.synced_at
            )
        )
        self._set_status(STATUS_IDLE)

        # An edit during the round trip has already armed its own debounce
        if self.tracker.has_pending_changes() and self.timer_state == TIMER_IDLE:
            self.schedule_debounced_sync()
        return response.synced_at

    def _fail(self, categories, message):
        self._restore(categories)
        self.consecutive_errors += 1
        self._finish_running()
        self._set_status(STATUS_ERROR, message)
        self._schedule_retry()
        return self.state.last_sync_at

    def _finish_running(self):
        with self._timer_lock:
            if self.timer_state == TIMER_RUNNING:
                self.timer_state = TIMER_IDLE

    def _snapshot(self):
        return {category: self.store.get(category) for category in ALL_CATEGORIES}

    def _restore(self, categories):
        for category in categories:
            self.tracker.mark_changed(category)

    def _save_updates(self, updates):
        self._applying.active = True
        try:
            for category, value in updates.items():
                self.store.set(category, value)
        finally:
            self._applying.active = False

    # Connectivity

    def set_online(self, online):
        self.online = online
        if online:
            logger.info("Back online")
            self.consecutive_errors = 0
            if self.tracker.has_pending_changes() and self.transport.is_authenticated():
                self.perform_sync()
            else:
                self._set_status(STATUS_IDLE)
        else:
            logger.info("Went offline, pending changes stay queued")
            self._cancel_timer()
            self._set_status(STATUS_OFFLINE)
