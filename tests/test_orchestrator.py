# -*- coding: utf-8 -*-
"""
Tests for the client sync loop: debounce, backoff, connectivity and
single-flight behaviour. Time is driven by ManualScheduler.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from biblesyncd.client.local_store import ClientState, MemoryStore
from biblesyncd.client.orchestrator import (
    STATUS_ERROR, STATUS_IDLE, STATUS_OFFLINE, TIMER_BACKOFF, TIMER_IDLE, TIMER_SCHEDULED,
    SyncOrchestrator,
)
from biblesyncd.client.scheduler import ManualScheduler
from biblesyncd.exceptions import NotAuthenticated, RateLimited, SessionExpired, TransportError
from biblesyncd.protocol import SINGLETON_ID, SyncItem, SyncResponse


class FakeTransport(object):
    """Records requests; replies from a script of responses, exceptions or callables."""

    def __init__(self):
        self.authenticated = True
        self.requests = []
        self.script = []

    def is_authenticated(self):
        return self.authenticated

    def sync(self, request):
        self.requests.append(request)
        reply = self.script.pop(0) if self.script else None
        if reply is None:
            return SyncResponse(synced_at=1000 * len(self.requests))
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        return reply


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self):
        self.store = MemoryStore()
        self.transport = FakeTransport()
        self.state = ClientState()
        self.scheduler = ManualScheduler()
        self.orchestrator = SyncOrchestrator(
            self.store, self.transport, self.state,
            scheduler=self.scheduler, rng=lambda: 0.0,
        )
        self.statuses = []
        self.orchestrator.add_status_listener(lambda status, message: self.statuses.append((status, message)))
        self.orchestrator.start()

    def tearDown(self):
        self.orchestrator.stop()


class TestDebounce(OrchestratorTestCase):
    def test_edits_are_batched(self):
        self.store.set("notes", [{"id": "n1", "updatedAt": 5}])
        self.assertEqual(self.orchestrator.timer_state, TIMER_SCHEDULED)
        self.scheduler.advance(2.9)
        self.store.set("settings", {"fontSize": 20})
        self.scheduler.advance(2.9)
        self.assertEqual(self.transport.requests, [])

        self.scheduler.advance(0.2)
        self.assertEqual(len(self.transport.requests), 1)
        request = self.transport.requests[0]
        self.assertEqual(sorted(c.data_type for c in request.changes), ["notes", "settings"])
        self.assertEqual(request.device_id, self.state.device_id)
        self.assertEqual(self.orchestrator.status, STATUS_IDLE)
        self.assertEqual(self.orchestrator.timer_state, TIMER_IDLE)

    def test_no_timer_when_signed_out(self):
        self.transport.authenticated = False
        self.store.set("notes", [])
        self.assertEqual(self.scheduler.pending(), [])
        self.assertTrue(self.orchestrator.tracker.has_pending_changes())

    def test_stop_cancels_timer(self):
        self.store.set("notes", [])
        self.orchestrator.stop()
        self.scheduler.advance(10)
        self.assertEqual(self.transport.requests, [])
        # No longer listening either
        self.store.set("settings", {})
        self.assertEqual(self.scheduler.pending(), [])


class TestPerformSync(OrchestratorTestCase):
    def test_requires_authentication(self):
        self.transport.authenticated = False
        with self.assertRaises(NotAuthenticated):
            self.orchestrator.perform_sync()

    def test_cursor_is_persisted_and_sent(self):
        self.assertEqual(self.orchestrator.perform_sync(), 1000)
        self.assertEqual(self.state.last_sync_at, 1000)
        self.orchestrator.perform_sync()
        self.assertEqual(self.transport.requests[1].last_sync_at, 1000)

    def test_full_sync_sends_everything_from_zero(self):
        self.store.set("settings", {"a": 1})
        self.state.last_sync_at = 500
        self.orchestrator.perform_sync(full=True)
        request = self.transport.requests[0]
        self.assertEqual(request.last_sync_at, 0)
        types = set(c.data_type for c in request.changes)
        # Singletons are always sent, empty lists produce no items
        self.assertEqual(types, {"settings", "activePlan", "readingPosition", "verseVersions", "topics"})
        self.assertFalse(self.orchestrator.tracker.has_pending_changes())

    def test_server_changes_are_applied_without_being_marked(self):
        received = []
        self.orchestrator.add_data_listener(received.append)
        self.store.set("notes", [{"id": "n1", "text": "local", "updatedAt": 1}])
        self.transport.script.append(SyncResponse(synced_at=7000, changes=[
            SyncItem("notes", "n2", {"id": "n2", "text": "remote"}, 2),
            SyncItem("settings", SINGLETON_ID, {"theme": "dark"}, 3),
        ]))

        self.assertEqual(self.orchestrator.perform_sync(), 7000)

        self.assertEqual([n["id"] for n in self.store.get("notes")], ["n1", "n2"])
        self.assertEqual(self.store.get("settings"), {"theme": "dark"})
        self.assertEqual(sorted(received[0]), ["notes", "settings"])
        self.assertFalse(self.orchestrator.tracker.has_pending_changes())
        self.assertEqual(self.scheduler.pending(), [])

    def test_edit_during_round_trip_is_kept(self):
        def edit_then_reply(request):
            self.store.set("favorites", [{"bookId": 1, "chapter": 1, "verse": 1, "addedAt": 9}])
            return SyncResponse(synced_at=2000)

        self.transport.script.append(edit_then_reply)
        self.orchestrator.perform_sync()
        self.assertTrue(self.orchestrator.tracker.has_pending_changes())
        self.assertEqual(self.orchestrator.timer_state, TIMER_SCHEDULED)

        self.scheduler.advance(3)
        self.assertEqual([c.key for c in self.transport.requests[1].changes], ["favorites:1-1-1"])

    def test_debounce_armed_during_round_trip_stays_scheduled(self):
        seen = []
        self.orchestrator.add_status_listener(
            lambda status, message: seen.append(self.orchestrator.timer_state) if status == STATUS_IDLE else None
        )

        def edit_then_reply(request):
            self.store.set("notes", [{"id": "n1", "updatedAt": 1}])
            return SyncResponse(synced_at=2000)

        self.transport.script.append(edit_then_reply)
        self.orchestrator.perform_sync()
        self.assertEqual(seen, [TIMER_SCHEDULED])
        self.assertEqual(len(self.scheduler.pending()), 1)

    def test_live_item_without_data_does_not_wedge(self):
        self.store.set("notes", [{"id": "n1", "updatedAt": 1}])
        self.transport.script.append(SyncResponse(synced_at=4000, changes=[
            SyncItem("favorites", "1-1-1", None, 100),
        ]))
        self.scheduler.advance(3)

        self.assertEqual(self.orchestrator.status, STATUS_IDLE)
        self.assertEqual(self.orchestrator.timer_state, TIMER_IDLE)
        self.assertEqual(self.state.last_sync_at, 4000)
        self.assertEqual(self.store.get("favorites"), [])

    def test_single_flight(self):
        inner = []

        def reenter(request):
            inner.append(self.orchestrator.perform_sync())
            return SyncResponse(synced_at=3000)

        self.state.last_sync_at = 42
        self.transport.script.append(reenter)
        self.assertEqual(self.orchestrator.perform_sync(), 3000)
        self.assertEqual(inner, [42])
        self.assertEqual(len(self.transport.requests), 1)


class TestFailures(OrchestratorTestCase):
    def test_failure_keeps_changes_and_backs_off(self):
        self.store.set("notes", [{"id": "n1", "updatedAt": 1}])
        self.transport.script.append(TransportError("Sync failed: 503", 503))
        self.scheduler.advance(3)

        self.assertEqual(self.orchestrator.status, STATUS_ERROR)
        self.assertEqual(self.statuses[-1], (STATUS_ERROR, "Sync failed: 503"))
        self.assertEqual(self.orchestrator.consecutive_errors, 1)
        self.assertEqual(self.orchestrator.timer_state, TIMER_BACKOFF)
        self.assertTrue(self.orchestrator.tracker.has_pending_changes())
        self.assertEqual(self.state.last_sync_at, 0)

        # First retry after base * 2**1 seconds
        self.scheduler.advance(1.5)
        self.assertEqual(len(self.transport.requests), 1)
        self.scheduler.advance(0.5)
        self.assertEqual(len(self.transport.requests), 2)
        self.assertEqual([c.key for c in self.transport.requests[1].changes], ["notes:n1"])
        self.assertEqual(self.orchestrator.status, STATUS_IDLE)
        self.assertEqual(self.orchestrator.consecutive_errors, 0)

    def test_unexpected_error_keeps_changes_and_backs_off(self):
        def broken_reply(request):
            raise AttributeError("'NoneType' object has no attribute 'get'")

        self.store.set("notes", [{"id": "n1", "updatedAt": 1}])
        self.transport.script.append(broken_reply)
        self.scheduler.advance(3)

        self.assertEqual(self.orchestrator.status, STATUS_ERROR)
        self.assertEqual(self.orchestrator.timer_state, TIMER_BACKOFF)
        self.assertEqual(self.orchestrator.consecutive_errors, 1)
        self.assertTrue(self.orchestrator.tracker.has_pending_changes())
        self.assertEqual(self.state.last_sync_at, 0)

        self.scheduler.advance(2)
        self.assertEqual([c.key for c in self.transport.requests[1].changes], ["notes:n1"])
        self.assertEqual(self.orchestrator.status, STATUS_IDLE)

    def test_rate_limit_is_retried(self):
        self.transport.script.append(RateLimited("Sync failed: 429"))
        self.orchestrator.perform_sync()
        self.assertEqual(self.orchestrator.timer_state, TIMER_BACKOFF)

    def test_backoff_doubles_and_caps(self):
        self.transport.script.extend([TransportError("down")] * 3)
        self.orchestrator.perform_sync()
        self.scheduler.advance(2)
        self.scheduler.advance(4)
        self.assertEqual(len(self.transport.requests), 3)
        self.assertEqual(self.orchestrator.consecutive_errors, 3)

        self.orchestrator.consecutive_errors = 10
        self.assertEqual(self.orchestrator.retry_delay(), 60.0)

    def test_jitter_stays_under_a_quarter(self):
        orchestrator = SyncOrchestrator(
            self.store, self.transport, self.state, scheduler=self.scheduler, rng=lambda: 0.999,
        )
        orchestrator.consecutive_errors = 2
        delay = orchestrator.retry_delay()
        self.assertGreaterEqual(delay, 4.0)
        self.assertLess(delay, 5.0)

    def test_session_expired_is_not_retried(self):
        self.store.set("notes", [])
        self.transport.script.append(SessionExpired("Session expired"))
        self.scheduler.advance(3)
        self.assertEqual(self.orchestrator.status, STATUS_ERROR)
        self.assertIn("sign in", self.orchestrator.last_error)
        self.assertEqual(self.scheduler.pending(), [])
        self.assertTrue(self.orchestrator.tracker.has_pending_changes())

    def test_retry_skipped_after_sign_out(self):
        self.transport.script.append(TransportError("down"))
        self.orchestrator.perform_sync()
        self.transport.authenticated = False
        self.scheduler.advance(60)
        self.assertEqual(len(self.transport.requests), 1)


class TestConnectivity(OrchestratorTestCase):
    def test_offline_skips_and_cancels_retry(self):
        self.transport.script.append(TransportError("down"))
        self.orchestrator.perform_sync()
        self.orchestrator.set_online(False)
        self.assertEqual(self.orchestrator.status, STATUS_OFFLINE)
        self.assertEqual(self.scheduler.pending(), [])

        self.state.last_sync_at = 77
        self.assertEqual(self.orchestrator.perform_sync(), 77)
        self.assertEqual(len(self.transport.requests), 1)

    def test_back_online_syncs_pending(self):
        self.orchestrator.set_online(False)
        self.store.set("notes", [{"id": "n1", "updatedAt": 1}])
        self.scheduler.advance(3)
        self.assertEqual(self.transport.requests, [])
        self.assertTrue(self.orchestrator.tracker.has_pending_changes())

        self.orchestrator.set_online(True)
        self.assertEqual(len(self.transport.requests), 1)
        self.assertEqual(self.orchestrator.status, STATUS_IDLE)

    def test_back_online_without_changes(self):
        self.orchestrator.set_online(False)
        self.orchestrator.set_online(True)
        self.assertEqual(self.transport.requests, [])
        self.assertEqual(self.statuses[-1], (STATUS_IDLE, None))


if __name__ == '__main__':
    unittest.main()
