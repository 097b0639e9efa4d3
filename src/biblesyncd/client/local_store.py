import copy
import json
import os
import threading
import uuid

from biblesyncd import logging

logger = logging.get_logger(__name__)


class LocalStore(object):
    """get/set facade over the device's persistent user data.

    ``on_change`` listeners are called with the category name after every
    ``set``, on the thread that called ``set``.
    """

    def __init__(self):
        self._listeners = []
        self._listeners_lock = threading.Lock()

    def get(self, category, default=None):
        raise NotImplementedError

    def _write(self, category, value):
        raise NotImplementedError

    def set(self, category, value):
        self._write(category, value)
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(category)

    def on_change(self, callback):
        """Subscribes ``callback``; returns a function that unsubscribes it."""
        with self._listeners_lock:
            self._listeners.append(callback)

        def unsubscribe():
            with self._listeners_lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe


class MemoryStore(LocalStore):
    def __init__(self, initial=None):
        super().__init__()
        self._data = copy.deepcopy(initial or {})
        self._lock = threading.Lock()

    def get(self, category, default=None):
        with self._lock:
            return copy.deepcopy(self._data.get(category, default))

    def _write(self, category, value):
        with self._lock:
            self._data[category] = copy.deepcopy(value)


def _read_json(path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(path, data):
    # Write to a temp file and rename so a crash never leaves half a file
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, path)


class JsonFileStore(MemoryStore):
    """All categories in one JSON file, rewritten on every set."""

    def __init__(self, path):
        self.path = path
        initial = {}
        if os.path.exists(path):
            try:
                initial = _read_json(path)
            except (OSError, ValueError) as e:
                logger.error("Could not read {}: {}. Starting empty.".format(path, e))
        super().__init__(initial)

    def _write(self, category, value):
        with self._lock:
            self._data[category] = copy.deepcopy(value)
            _write_json(self.path, self._data)


class ClientState(object):
    """Device id, sync cursor, session tokens and last synced record keys
    of one installation.

    Kept apart from the user data so that saving it never looks like a
    local edit. ``path`` may be None to keep the state in memory only.
    """

    FIELDS = ("device_id", "last_sync_at", "access_token", "refresh_token", "user", "known_keys")

    def __init__(self, path=None):
        self.path = path
        self.device_id = None
        self.last_sync_at = 0
        self.access_token = None
        self.refresh_token = None
        self.user = None
        self.known_keys = {}
        self._lock = threading.Lock()
        self._load()
        if not self.device_id:
            self.device_id = str(uuid.uuid4())
            logger.info("Generated device id {}".format(self.device_id))
            self.save()

    def _load(self):
        if not self.path or not os.path.exists(self.path):
            return
        try:
            state = _read_json(self.path)
        except (OSError, ValueError) as e:
            logger.error("Error loading sync state from {}: {}. Starting from scratch.".format(self.path, e))
            return
        for name in self.FIELDS:
            if name in state:
                setattr(self, name, state[name])
        self.last_sync_at = int(self.last_sync_at or 0)
        self.known_keys = self.known_keys or {}

    def save(self):
        if not self.path:
            return
        with self._lock:
            _write_json(self.path, {name: getattr(self, name) for name in self.FIELDS})

    def set_tokens(self, access_token, refresh_token=None, user=None):
        self.access_token = access_token
        if refresh_token is not None:
            self.refresh_token = refresh_token
        if user is not None:
            self.user = user
        self.save()

    def clear_auth(self):
        self.access_token = None
        self.refresh_token = None
        self.user = None
        self.save()
