#!/usr/bin/env python3
"""
Biblesyncd User Data Purge Script
=================================

Removes every synced item, device cursor and uploaded translation of one
user, and revokes the user's refresh tokens.

Usage:
    python3 scripts/purge_user.py --user <user-id>
    python3 scripts/purge_user.py --user <user-id> --dry-run
    python3 scripts/purge_user.py --user <user-id> --no-confirm
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from biblesyncd import config as biblesyncd_config
from biblesyncd.storage import get_store
from biblesyncd.tokens import get_token_manager


def print_counts(counts):
    for table, count in counts.items():
        print(f"   {table}: {count}")


def main(argv=None, store=None, token_manager=None):
    parser = argparse.ArgumentParser(
        description='Purge all synced data for a user',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --user a95a654c-8041-7013-bb46-7743060e211c
  %(prog)s --user alice --dry-run
        """
    )
    parser.add_argument('--user', required=True, help='User id')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show what would be deleted without actually deleting')
    parser.add_argument('--no-confirm', action='store_true',
                        help='Skip confirmation prompt (dangerous!)')
    args = parser.parse_args(argv)

    config = biblesyncd_config.load()
    store = store or get_store(config)

    print("\n🔍 Biblesyncd User Data Purge")
    print("=" * 80)

    with store.transaction() as txn:
        counts = txn.count_user_data(args.user)

    print(f"\n📊 Data for user {args.user}:")
    print_counts(counts)

    if args.dry_run:
        print("\n🔎 Dry run, nothing deleted")
        return 0

    if not sum(counts.values()):
        print("\n✅ Nothing to delete")
        return 0

    if not args.no_confirm:
        answer = input("\n⚠️  Type the user id to confirm deletion: ")
        if answer.strip() != args.user:
            print("❌ Aborted")
            return 1

    with store.transaction() as txn:
        deleted = txn.purge_user(args.user)

    token_manager = token_manager or get_token_manager(config)
    revoked = token_manager.revoke_all(args.user)

    print("\n🗑️  Deleted:")
    print_counts(deleted)
    print(f"   refresh tokens revoked: {revoked}")
    print("\n✅ Purge complete")
    return 0


if __name__ == '__main__':
    sys.exit(main())
