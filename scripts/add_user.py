#!/usr/bin/env python3
"""
Manage accounts in the password database used by SqliteUserManager.

Usage:
    python3 scripts/add_user.py add <username> [password]
    python3 scripts/add_user.py passwd <username> [password]
    python3 scripts/add_user.py del <username>
    python3 scripts/add_user.py list
"""

import argparse
import getpass
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from biblesyncd import config as biblesyncd_config
from biblesyncd.users.sqlite_manager import SqliteUserManager


def _password(args):
    if args.password:
        return args.password
    return getpass.getpass("Password for {}: ".format(args.username))


def main(argv=None):
    parser = argparse.ArgumentParser(description='Manage biblesyncd password accounts')
    parser.add_argument('--auth-db', help='Path to the auth database (defaults to auth_db_path from config)')
    sub = parser.add_subparsers(dest='command', required=True)

    add = sub.add_parser('add', help='Create an account')
    add.add_argument('username')
    add.add_argument('password', nargs='?')

    passwd = sub.add_parser('passwd', help='Change a password')
    passwd.add_argument('username')
    passwd.add_argument('password', nargs='?')

    delete = sub.add_parser('del', help='Delete an account')
    delete.add_argument('username')

    sub.add_parser('list', help='List accounts')

    args = parser.parse_args(argv)

    auth_db = args.auth_db or biblesyncd_config.load().get('auth_db_path')
    if not auth_db:
        print("❌ No auth database configured. Set auth_db_path or pass --auth-db.")
        return 1

    manager = SqliteUserManager(auth_db)
    if not manager.auth_db_exists():
        manager.create_auth_db()
        print(f"📁 Created auth database at {auth_db}")

    if args.command == 'list':
        for username in manager.user_list():
            print(username)
        return 0

    if args.command == 'del':
        if not manager.user_exists(args.username):
            print(f"❌ User not found: {args.username}")
            return 1
        manager.del_user(args.username)
        print(f"✅ Deleted user: {args.username}")
        return 0

    if args.command == 'add':
        if manager.user_exists(args.username):
            print(f"❌ User already exists: {args.username}")
            return 1
        manager.add_user(args.username, _password(args))
        print(f"✅ Added user: {args.username}")
        return 0

    if not manager.user_exists(args.username):
        print(f"❌ User not found: {args.username}")
        return 1
    manager.set_password_for_user(args.username, _password(args))
    print(f"✅ Password changed for: {args.username}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
