#!/usr/bin/env python3
"""
Physically delete tombstones that every device has already seen.

A tombstone is removed only when it is older than the retention period
and older than the oldest sync cursor among the user's devices.

Usage:
    python3 scripts/compact_tombstones.py --user <user-id>
    python3 scripts/compact_tombstones.py --all --retention-days 30
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from biblesyncd import config as biblesyncd_config
from biblesyncd.engine import SyncEngine
from biblesyncd.storage import get_store


def main(argv=None, store=None):
    parser = argparse.ArgumentParser(description='Compact sync tombstones')
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument('--user', help='User id to compact')
    target.add_argument('--all', action='store_true', help='Compact every user')
    parser.add_argument('--retention-days', type=float,
                        help='Minimum tombstone age (defaults to tombstone_retention_days from config)')
    args = parser.parse_args(argv)

    config = biblesyncd_config.load()
    retention_days = args.retention_days
    if retention_days is None:
        retention_days = float(config.get('tombstone_retention_days', 90))

    store = store or get_store(config)
    engine = SyncEngine(store)

    if args.all:
        with store.transaction() as txn:
            users = txn.list_users()
    else:
        users = [args.user]

    total = 0
    for user_id in users:
        removed = engine.compact(user_id, retention_days=retention_days)
        print(f"🧹 {user_id}: removed {removed} tombstones")
        total += removed

    print(f"✅ Done, {total} tombstones removed for {len(users)} users")
    return 0


if __name__ == '__main__':
    sys.exit(main())
