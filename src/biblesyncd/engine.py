# -*- coding: utf-8 -*-
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Server side reconciliation of one sync batch.

Every incoming item is compared with its stored counterpart by
``updatedAt``. The newer side wins unless the item's data type has a merge
strategy registered (see ``biblesyncd.merge``). Items the caller has not
seen yet are collected into the response, and the caller's cursor moves to
the batch timestamp. All of it happens inside a single store transaction.
"""

import time

from biblesyncd import logging
from biblesyncd.merge import default_registry
from biblesyncd.protocol import SyncItem, SyncResponse

logger = logging.get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


def now_ms():
    return int(time.time() * 1000)


class SyncEngine(object):
    def __init__(self, store, merge_registry=None, clock=now_ms):
        self.store = store
        self.merges = merge_registry or default_registry()
        self.clock = clock

    def sync(self, user_id, request):
        """Applies ``request`` for ``user_id`` and returns the SyncResponse."""
        synced_at = self.clock()
        outgoing = []
        stats = {"inserted": 0, "client_newer": 0, "server_newer": 0, "unchanged": 0}

        # Filled before the catch-up scan so nothing is echoed to its sender
        handled = set(item.key for item in request.changes)

        with self.store.transaction() as txn:
            for item in request.changes:
                outcome, reply = self._apply_item(txn, user_id, item)
                stats[outcome] += 1
                if reply is not None:
                    outgoing.append(reply)

            caught_up = 0
            for stored in txn.items_updated_since(user_id, request.last_sync_at):
                if stored.key not in handled:
                    outgoing.append(stored)
                    caught_up += 1

            txn.upsert_cursor(user_id, request.device_id, synced_at)

        logger.info(
            "Synced {} items for user {} device {}: {} new, {} client newer, "
            "{} server newer, {} unchanged, {} caught up".format(
                len(request.changes), user_id, request.device_id, stats["inserted"],
                stats["client_newer"], stats["server_newer"], stats["unchanged"], caught_up,
            )
        )
        return SyncResponse(synced_at=synced_at, changes=outgoing)

    def _apply_item(self, txn, user_id, item):
        existing = txn.get_item(user_id, item.data_type, item.item_id)

        if existing is None:
            txn.insert_item(user_id, item)
            return "inserted", None

        strategy = self.merges.get(item.data_type)

        if item.updated_at > existing.updated_at:
            data = strategy.on_client_newer(item.data, existing.data)
            txn.update_item(
                user_id,
                SyncItem(item.data_type, item.item_id, data, item.updated_at, item.deleted),
            )
            return "client_newer", None

        if existing.updated_at > item.updated_at:
            data, persist = strategy.on_server_newer(item.data, existing.data)
            if persist:
                txn.update_item_data(user_id, item.data_type, item.item_id, data)
            reply = SyncItem(item.data_type, item.item_id, data, existing.updated_at, existing.deleted)
            return "server_newer", reply

        return "unchanged", None

    def compact(self, user_id, retention_days=90, now=None):
        """Deletes tombstones every device of ``user_id`` has already seen.

        A tombstone goes once it is older than the retention period and older
        than the oldest cursor among the user's devices. Live rows are never
        deleted. Returns the number of rows removed.
        """
        now = self.clock() if now is None else now
        horizon = now - int(retention_days * DAY_MS)
        with self.store.transaction() as txn:
            cursors = txn.list_cursors(user_id)
            if cursors:
                horizon = min(horizon, min(cursors.values()))
            removed = txn.delete_tombstones(user_id, horizon)
        logger.info("Compacted {} tombstones for user {} (horizon {})".format(removed, user_id, horizon))
        return removed
