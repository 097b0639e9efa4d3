"""Tracks which local categories changed since the last sync and converts
between local data structures and sync items.

Only categories are tracked, not individual edits: a dirty category is
decomposed into sync items when the next sync runs. A record that was
present after the last successful sync and is missing now is sent as a
tombstone.
"""

import threading
import time

from biblesyncd import logging
from biblesyncd.protocol import SINGLETON_ID, SyncItem

logger = logging.get_logger(__name__)

SETTINGS = "settings"
FAVORITES = "favorites"
NOTES = "notes"
TOPICS = "topics"
ACTIVE_PLAN = "activePlan"
PLAN_PROGRESS = "planProgress"
READING_POSITION = "readingPosition"
VERSE_VERSIONS = "verseVersions"
VERSE_LISTS = "verseLists"
DEVOTIONALS = "devotionals"

ALL_CATEGORIES = (
    SETTINGS, FAVORITES, NOTES, TOPICS, ACTIVE_PLAN,
    PLAN_PROGRESS, READING_POSITION, VERSE_VERSIONS, VERSE_LISTS, DEVOTIONALS,
)

SINGLETON_CATEGORIES = (SETTINGS, ACTIVE_PLAN, READING_POSITION, VERSE_VERSIONS, TOPICS)

EMPTY_TOPICS = {"topics": [], "verseTopics": [], "itemTopics": []}


def favorite_key(fav):
    if not isinstance(fav, dict):
        return None
    return "{}-{}-{}".format(fav.get("bookId"), fav.get("chapter"), fav.get("verse"))


def record_id(record):
    if not isinstance(record, dict):
        return None
    return record.get("id")


# Per-record categories held as lists: key function and the record's own timestamp field
RECORD_LISTS = {
    FAVORITES: (favorite_key, "addedAt"),
    NOTES: (record_id, "updatedAt"),
    VERSE_LISTS: (record_id, "updatedAt"),
    DEVOTIONALS: (record_id, "updatedAt"),
}


RECORD_CATEGORIES = tuple(RECORD_LISTS) + (PLAN_PROGRESS,)


def record_keys(category, data):
    """Item ids a per-record category currently holds."""
    if category == PLAN_PROGRESS:
        return set(str(plan_id) for plan_id in (data or {}))
    key_fn = RECORD_LISTS[category][0]
    return set(str(key_fn(r)) for r in (data or []) if key_fn(r))


def now_ms():
    return int(time.time() * 1000)


class ChangeTracker(object):
    def __init__(self, clock=now_ms):
        self.clock = clock
        self._pending = set()
        self._known = {}
        self._lock = threading.Lock()

    def mark_changed(self, category):
        if category not in ALL_CATEGORIES:
            raise ValueError("Unknown sync category {!r}".format(category))
        with self._lock:
            self._pending.add(category)

    def has_pending_changes(self):
        with self._lock:
            return bool(self._pending)

    def consume_pending_changes(self):
        """Returns the pending categories and clears them. Single consumer only."""
        with self._lock:
            pending, self._pending = self._pending, set()
        return pending

    def build_sync_changes(self, categories, local_state):
        now = self.clock()
        changes = []
        for category in ALL_CATEGORIES:
            if category not in categories:
                continue
            data = local_state.get(category)

            if category in SINGLETON_CATEGORIES:
                if data is None and category == TOPICS:
                    data = EMPTY_TOPICS
                changes.append(SyncItem(category, SINGLETON_ID, data, now))

            elif category in RECORD_LISTS:
                key_fn, stamp_field = RECORD_LISTS[category]
                for record in data or []:
                    key = key_fn(record)
                    if not key:
                        logger.warning("Skipping {} record without an id".format(category))
                        continue
                    changes.append(SyncItem(category, str(key), record, record.get(stamp_field) or now))
                changes.extend(self._tombstones(category, data, now))

            elif category == PLAN_PROGRESS:
                for plan_id, progress in (data or {}).items():
                    changes.append(SyncItem(category, str(plan_id), progress, now))
                changes.extend(self._tombstones(category, data, now))

        return changes

    def _tombstones(self, category, data, now):
        with self._lock:
            known = self._known.get(category, set())
        removed = known - record_keys(category, data)
        return [SyncItem(category, key, None, now, deleted=True) for key in sorted(removed)]

    def remember(self, local_state):
        """Records the per-record keys the server now holds for this device.

        Called after a successful sync. Returns the keys as lists so the
        caller can persist them across restarts.
        """
        with self._lock:
            for category in RECORD_CATEGORIES:
                self._known[category] = record_keys(category, local_state.get(category))
            return {category: sorted(keys) for category, keys in self._known.items()}

    def restore_known(self, known_keys):
        with self._lock:
            self._known = {category: set(keys) for category, keys in (known_keys or {}).items()}

    def apply_server_changes(self, server_items, local_state):
        """Returns ``{category: new_value}`` for every category the items touch.

        The server has already resolved conflicts, so items are applied as
        they come: no timestamp comparison happens here.
        """
        by_type = {}
        for item in server_items:
            by_type.setdefault(item.data_type, []).append(item)

        updates = {}
        for data_type, items in by_type.items():
            if data_type in SINGLETON_CATEGORIES:
                item = items[-1]
                updates[data_type] = None if item.deleted else item.data

            elif data_type in RECORD_LISTS:
                key_fn = RECORD_LISTS[data_type][0]
                current = list(local_state.get(data_type) or [])
                for item in items:
                    if not item.deleted and not isinstance(item.data, dict):
                        logger.warning("Skipping {} without a record".format(item.key))
                        continue
                    idx = next(
                        (i for i, r in enumerate(current)
                         if key_fn(r) is not None and str(key_fn(r)) == item.item_id),
                        None,
                    )
                    if item.deleted:
                        if idx is not None:
                            del current[idx]
                    elif idx is not None:
                        current[idx] = item.data
                    else:
                        current.append(item.data)
                updates[data_type] = current

            elif data_type == PLAN_PROGRESS:
                current = dict(local_state.get(data_type) or {})
                for item in items:
                    if item.deleted:
                        current.pop(item.item_id, None)
                    elif not isinstance(item.data, dict):
                        logger.warning("Skipping {} without a record".format(item.key))
                    else:
                        current[item.item_id] = item.data
                updates[data_type] = current

            else:
                logger.warning("Ignoring {} server changes of unknown type {}".format(len(items), data_type))

        return updates
