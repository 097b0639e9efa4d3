# -*- coding: utf-8 -*-
"""
Tests for the server merge engine against an in-memory SQLite store.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from biblesyncd.engine import DAY_MS, SyncEngine
from biblesyncd.merge import MergeRegistry, MergeStrategy
from biblesyncd.protocol import SINGLETON_ID, SyncItem, SyncRequest
from biblesyncd.storage import SqliteSyncStore


class FakeClock(object):
    def __init__(self, now=1000):
        self.now = now

    def __call__(self):
        return self.now


def item(data_type, item_id, data, updated_at, deleted=False):
    return SyncItem(data_type, item_id, data, updated_at, deleted)


class EngineTestCase(unittest.TestCase):
    def setUp(self):
        self.store = SqliteSyncStore(":memory:")
        self.clock = FakeClock(1000)
        self.engine = SyncEngine(self.store, clock=self.clock)

    def tearDown(self):
        self.store.close()

    def sync(self, device, changes=(), last_sync_at=0, user="u1", at=None):
        if at is not None:
            self.clock.now = at
        return self.engine.sync(user, SyncRequest(device, last_sync_at, list(changes)))

    def stored(self, data_type, item_id, user="u1"):
        with self.store.transaction() as txn:
            return txn.get_item(user, data_type, item_id)


class TestLastWriteWins(EngineTestCase):
    """Plain records follow the newer updatedAt."""

    def test_insert_when_absent(self):
        response = self.sync("d1", [item("notes", "n1", {"text": "a"}, 100)])
        self.assertEqual(response.synced_at, 1000)
        self.assertEqual(response.changes, [])
        self.assertEqual(self.stored("notes", "n1").data, {"text": "a"})

    def test_newer_wins_older_gets_server_copy(self):
        self.sync("d1", [item("notes", "n1", {"text": "v100"}, 100)])
        self.sync("d2", [item("notes", "n1", {"text": "v200"}, 200)], at=2000)

        response = self.sync("d3", [item("notes", "n1", {"text": "v50"}, 50)], at=3000)

        stored = self.stored("notes", "n1")
        self.assertEqual(stored.data, {"text": "v200"})
        self.assertEqual(stored.updated_at, 200)
        self.assertEqual(len(response.changes), 1)
        self.assertEqual(response.changes[0].data, {"text": "v200"})
        self.assertEqual(response.changes[0].updated_at, 200)

    def test_equal_timestamps_are_a_noop(self):
        self.sync("d1", [item("notes", "n1", {"text": "first"}, 100)])
        response = self.sync("d2", [item("notes", "n1", {"text": "second"}, 100)], at=2000)
        self.assertEqual(self.stored("notes", "n1").data, {"text": "first"})
        self.assertEqual(response.changes, [])

    def test_tombstone_overwrites_older_record(self):
        self.sync("d1", [item("notes", "n1", {"text": "a"}, 100)])
        self.sync("d1", [item("notes", "n1", None, 200, deleted=True)], last_sync_at=1000, at=2000)
        stored = self.stored("notes", "n1")
        self.assertTrue(stored.deleted)
        self.assertEqual(stored.updated_at, 200)

    def test_resubmitting_a_batch_is_idempotent(self):
        changes = [item("notes", "n1", {"text": "a"}, 100), item("settings", SINGLETON_ID, {"x": 1}, 100)]
        self.sync("d1", changes)
        response = self.sync("d1", changes, last_sync_at=1000, at=2000)
        self.assertEqual(response.changes, [])
        self.assertEqual(self.stored("notes", "n1").data, {"text": "a"})
        self.assertEqual(self.stored("settings", SINGLETON_ID).data, {"x": 1})

    def test_users_are_isolated(self):
        self.sync("d1", [item("notes", "n1", {"text": "mine"}, 100)], user="alice")
        response = self.sync("d9", user="bob", at=2000)
        self.assertEqual(response.changes, [])
        self.assertIsNone(self.stored("notes", "n1", user="bob"))


class TestPlanProgress(EngineTestCase):
    """planProgress merges completedDays instead of picking a side."""

    def test_union_when_client_newer(self):
        self.sync("d1", [item("planProgress", "p1", {"completedDays": [2, 3, 4]}, 100)])
        response = self.sync("d2", [item("planProgress", "p1", {"completedDays": [1, 3]}, 200)], at=2000)
        self.assertEqual(self.stored("planProgress", "p1").data["completedDays"], [1, 2, 3, 4])
        self.assertEqual(self.stored("planProgress", "p1").updated_at, 200)
        self.assertEqual(response.changes, [])

    def test_union_when_server_newer_is_returned_and_persisted(self):
        self.sync("d1", [item("planProgress", "p1", {"completedDays": [2, 3, 4]}, 200)])
        response = self.sync("d2", [item("planProgress", "p1", {"completedDays": [1, 3]}, 100)], at=2000)

        self.assertEqual(len(response.changes), 1)
        reply = response.changes[0]
        self.assertEqual(reply.data["completedDays"], [1, 2, 3, 4])
        self.assertEqual(reply.updated_at, 200)

        stored = self.stored("planProgress", "p1")
        self.assertEqual(stored.data["completedDays"], [1, 2, 3, 4])
        self.assertEqual(stored.updated_at, 200)

    def test_offline_days_on_two_devices_are_both_kept(self):
        # Both devices start from days 1-4; one reads day 5, the other day 6
        self.sync("d1", [item("planProgress", "p1", {"completedDays": [1, 2, 3, 4]}, 100)])
        self.sync("d1", [item("planProgress", "p1", {"completedDays": [1, 2, 3, 4, 5]}, 300)],
                  last_sync_at=1000, at=2000)
        response = self.sync("d2", [item("planProgress", "p1", {"completedDays": [1, 2, 3, 4, 6]}, 250)],
                             last_sync_at=1000, at=3000)

        self.assertEqual(response.changes[0].data["completedDays"], [1, 2, 3, 4, 5, 6])
        self.assertEqual(self.stored("planProgress", "p1").data["completedDays"], [1, 2, 3, 4, 5, 6])

        # The merge keeps the stored timestamp, so an incremental catch-up
        # misses it and only a full sync brings it to the first device
        response = self.sync("d1", last_sync_at=2000, at=4000)
        self.assertEqual(response.changes, [])
        response = self.sync("d1", last_sync_at=0, at=5000)
        self.assertEqual(response.changes[0].data["completedDays"], [1, 2, 3, 4, 5, 6])

    def test_malformed_stored_days_do_not_block_later_pushes(self):
        self.sync("d1", [item("planProgress", "p1", {"completedDays": ["1", 2, [4], "x"]}, 100)])
        response = self.sync("d2", [item("planProgress", "p1", {"completedDays": [3]}, 200)], at=2000)
        self.assertEqual(response.changes, [])
        self.assertEqual(self.stored("planProgress", "p1").data["completedDays"], [1, 2, 3])


class TestCatchUp(EngineTestCase):
    """Items newer than the caller's cursor come back, minus what it just sent."""

    def test_other_devices_changes_are_returned(self):
        self.sync("d1", [item("notes", "n1", {"text": "a"}, 100), item("favorites", "1-1-1", {}, 150)])
        response = self.sync("d2", at=2000)
        self.assertEqual(sorted(c.key for c in response.changes), ["favorites:1-1-1", "notes:n1"])

    def test_cursor_filters_old_items(self):
        self.sync("d1", [item("notes", "n1", {}, 100), item("notes", "n2", {}, 900)])
        response = self.sync("d2", last_sync_at=500, at=2000)
        self.assertEqual([c.key for c in response.changes], ["notes:n2"])

    def test_items_in_the_batch_are_not_echoed(self):
        self.sync("d1", [item("notes", "n1", {"text": "old"}, 100)])
        response = self.sync("d2", [item("notes", "n1", {"text": "new"}, 200)], at=2000)
        self.assertEqual(response.changes, [])

    def test_tombstones_are_returned(self):
        self.sync("d1", [item("notes", "n1", None, 100, deleted=True)])
        response = self.sync("d2", at=2000)
        self.assertTrue(response.changes[0].deleted)

    def test_cursor_is_stored_per_device(self):
        self.sync("d1", at=1000)
        self.sync("d2", at=2000)
        with self.store.transaction() as txn:
            self.assertEqual(txn.list_cursors("u1"), {"d1": 1000, "d2": 2000})
            self.assertEqual(txn.get_cursor("u1", "d1"), 1000)
            self.assertIsNone(txn.get_cursor("u1", "d3"))


class TestAtomicity(EngineTestCase):
    def test_failure_rolls_back_the_whole_batch(self):
        class Exploding(MergeStrategy):
            def on_client_newer(self, client_data, server_data):
                raise RuntimeError("boom")

        self.sync("d1", [item("settings", SINGLETON_ID, {"v": 1}, 100)])

        registry = MergeRegistry()
        registry.register("settings", Exploding())
        engine = SyncEngine(self.store, merge_registry=registry, clock=self.clock)
        self.clock.now = 2000

        with self.assertRaises(RuntimeError):
            engine.sync("u1", SyncRequest("d2", 0, [
                item("notes", "n1", {"text": "a"}, 100),
                item("settings", SINGLETON_ID, {"v": 2}, 200),
            ]))

        self.assertIsNone(self.stored("notes", "n1"))
        self.assertEqual(self.stored("settings", SINGLETON_ID).data, {"v": 1})
        with self.store.transaction() as txn:
            self.assertIsNone(txn.get_cursor("u1", "d2"))


class TestCompaction(EngineTestCase):
    """Old tombstones go once every device has seen them."""

    def setUp(self):
        super().setUp()
        self.now = 200 * DAY_MS
        self.sync("d1", [
            item("notes", "old-tomb", None, 10 * DAY_MS, deleted=True),
            item("notes", "new-tomb", None, 150 * DAY_MS, deleted=True),
            item("notes", "old-live", {"text": "keep"}, 10 * DAY_MS),
        ], at=self.now)

    def test_removes_only_old_tombstones(self):
        removed = self.engine.compact("u1", retention_days=90, now=self.now)
        self.assertEqual(removed, 1)
        self.assertIsNone(self.stored("notes", "old-tomb"))
        self.assertIsNotNone(self.stored("notes", "new-tomb"))
        self.assertIsNotNone(self.stored("notes", "old-live"))

    def test_lagging_device_keeps_tombstones(self):
        with self.store.transaction() as txn:
            txn.upsert_cursor("u1", "stale-phone", 5 * DAY_MS)
        removed = self.engine.compact("u1", retention_days=90, now=self.now)
        self.assertEqual(removed, 0)
        self.assertIsNotNone(self.stored("notes", "old-tomb"))


if __name__ == '__main__':
    unittest.main()
