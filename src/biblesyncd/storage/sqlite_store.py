import json
import os
import sqlite3
import threading
from contextlib import contextmanager, nullcontext

from biblesyncd import logging
from biblesyncd.exceptions import StoreError
from biblesyncd.protocol import SyncItem

logger = logging.get_logger(__name__)

SCHEMA = (
    """CREATE TABLE IF NOT EXISTS sync_items (
        user_id VARCHAR(255) NOT NULL,
        data_type VARCHAR(50) NOT NULL,
        item_id VARCHAR(255) NOT NULL,
        data TEXT,
        updated_at BIGINT NOT NULL,
        deleted INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, data_type, item_id)
    )""",
    "CREATE INDEX IF NOT EXISTS idx_sync_items_user_updated ON sync_items (user_id, updated_at)",
    """CREATE TABLE IF NOT EXISTS sync_cursors (
        user_id VARCHAR(255) NOT NULL,
        device_id VARCHAR(100) NOT NULL,
        last_sync_at BIGINT NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, device_id)
    )""",
    """CREATE TABLE IF NOT EXISTS user_translations (
        id VARCHAR(100) PRIMARY KEY,
        user_id VARCHAR(255) NOT NULL,
        name VARCHAR(255) NOT NULL,
        mapping_id VARCHAR(50) NOT NULL,
        verse_counts TEXT,
        uploaded_at BIGINT NOT NULL,
        deleted INTEGER NOT NULL DEFAULT 0
    )""",
    "CREATE INDEX IF NOT EXISTS idx_user_translations_user ON user_translations (user_id)",
    """CREATE TABLE IF NOT EXISTS user_translation_chapters (
        translation_id VARCHAR(100) NOT NULL,
        book_id INTEGER NOT NULL,
        chapter INTEGER NOT NULL,
        data TEXT,
        PRIMARY KEY (translation_id, book_id, chapter)
    )""",
)


def _dump(data):
    return json.dumps(data)


def _load(text):
    return None if text is None else json.loads(text)


class StoreTransaction(object):
    """Statements available inside one store transaction.

    Every method runs on the transaction's cursor, so nothing becomes visible
    to other connections until the surrounding ``transaction()`` commits.
    """

    def __init__(self, cursor, fs):
        self.cursor = cursor
        self.fs = fs

    def _execute(self, sql, params=()):
        self.cursor.execute(self.fs(sql), params)
        return self.cursor

    # sync items

    def get_item(self, user_id, data_type, item_id):
        row = self._execute(
            "SELECT data, updated_at, deleted FROM sync_items "
            "WHERE user_id = ? AND data_type = ? AND item_id = ?",
            (user_id, data_type, item_id),
        ).fetchone()
        if row is None:
            return None
        return SyncItem(data_type, item_id, _load(row[0]), int(row[1]), bool(row[2]))

    def insert_item(self, user_id, item):
        self._execute(
            "INSERT INTO sync_items (user_id, data_type, item_id, data, updated_at, deleted) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (user_id, item.data_type, item.item_id, _dump(item.data), item.updated_at, int(item.deleted)),
        )

    def update_item(self, user_id, item):
        self._execute(
            "UPDATE sync_items SET data = ?, updated_at = ?, deleted = ? "
            "WHERE user_id = ? AND data_type = ? AND item_id = ?",
            (_dump(item.data), item.updated_at, int(item.deleted), user_id, item.data_type, item.item_id),
        )

    def update_item_data(self, user_id, data_type, item_id, data):
        self._execute(
            "UPDATE sync_items SET data = ? WHERE user_id = ? AND data_type = ? AND item_id = ?",
            (_dump(data), user_id, data_type, item_id),
        )

    def items_updated_since(self, user_id, since):
        rows = self._execute(
            "SELECT data_type, item_id, data, updated_at, deleted FROM sync_items "
            "WHERE user_id = ? AND updated_at > ? ORDER BY updated_at, data_type, item_id",
            (user_id, since),
        ).fetchall()
        return [SyncItem(r[0], r[1], _load(r[2]), int(r[3]), bool(r[4])) for r in rows]

    def delete_tombstones(self, user_id, before):
        self._execute(
            "DELETE FROM sync_items WHERE user_id = ? AND deleted = 1 AND updated_at < ?",
            (user_id, before),
        )
        return self.cursor.rowcount

    # cursors

    def get_cursor(self, user_id, device_id):
        row = self._execute(
            "SELECT last_sync_at FROM sync_cursors WHERE user_id = ? AND device_id = ?",
            (user_id, device_id),
        ).fetchone()
        return None if row is None else int(row[0])

    def upsert_cursor(self, user_id, device_id, last_sync_at):
        self._execute(
            "INSERT INTO sync_cursors (user_id, device_id, last_sync_at) VALUES (?, ?, ?) "
            "ON CONFLICT (user_id, device_id) DO UPDATE SET last_sync_at = excluded.last_sync_at",
            (user_id, device_id, last_sync_at),
        )

    def list_cursors(self, user_id):
        rows = self._execute(
            "SELECT device_id, last_sync_at FROM sync_cursors WHERE user_id = ? ORDER BY device_id",
            (user_id,),
        ).fetchall()
        return {r[0]: int(r[1]) for r in rows}

    # uploaded translations

    def list_translations(self, user_id):
        rows = self._execute(
            "SELECT id, name, mapping_id, verse_counts, uploaded_at, deleted "
            "FROM user_translations WHERE user_id = ? ORDER BY id",
            (user_id,),
        ).fetchall()
        return [
            {
                "id": r[0],
                "name": r[1],
                "mappingId": r[2],
                "verseCounts": _load(r[3]),
                "uploadedAt": int(r[4]),
                "deleted": bool(r[5]),
            }
            for r in rows
        ]

    def translation_owner(self, translation_id):
        row = self._execute(
            "SELECT user_id FROM user_translations WHERE id = ?", (translation_id,)
        ).fetchone()
        return None if row is None else row[0]

    def upsert_translation(self, user_id, t):
        self._execute(
            "INSERT INTO user_translations (id, user_id, name, mapping_id, verse_counts, uploaded_at, deleted) "
            "VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (id) DO UPDATE SET name = excluded.name, mapping_id = excluded.mapping_id, "
            "verse_counts = excluded.verse_counts, uploaded_at = excluded.uploaded_at, "
            "deleted = excluded.deleted",
            (
                t["id"], user_id, t["name"], t["mappingId"], _dump(t.get("verseCounts")),
                t["uploadedAt"], int(bool(t.get("deleted"))),
            ),
        )

    def translation_uploaded_at(self, user_id, translation_id):
        row = self._execute(
            "SELECT uploaded_at FROM user_translations WHERE id = ? AND user_id = ?",
            (translation_id, user_id),
        ).fetchone()
        return None if row is None else int(row[0])

    def put_chapter(self, translation_id, book_id, chapter, data):
        self._execute(
            "INSERT INTO user_translation_chapters (translation_id, book_id, chapter, data) "
            "VALUES (?, ?, ?, ?) "
            "ON CONFLICT (translation_id, book_id, chapter) DO UPDATE SET data = excluded.data",
            (translation_id, book_id, chapter, _dump(data)),
        )

    def get_chapters(self, translation_id):
        rows = self._execute(
            "SELECT book_id, chapter, data FROM user_translation_chapters "
            "WHERE translation_id = ? ORDER BY book_id, chapter",
            (translation_id,),
        ).fetchall()
        return [{"bookId": r[0], "chapter": r[1], "data": _load(r[2])} for r in rows]

    # administration

    def purge_user(self, user_id):
        counts = {}
        self._execute(
            "DELETE FROM user_translation_chapters WHERE translation_id IN "
            "(SELECT id FROM user_translations WHERE user_id = ?)",
            (user_id,),
        )
        counts["user_translation_chapters"] = self.cursor.rowcount
        for table in ("user_translations", "sync_cursors", "sync_items"):
            self._execute("DELETE FROM {} WHERE user_id = ?".format(table), (user_id,))
            counts[table] = self.cursor.rowcount
        return counts

    def list_users(self):
        rows = self._execute("SELECT DISTINCT user_id FROM sync_items ORDER BY user_id").fetchall()
        return [r[0] for r in rows]

    def count_user_data(self, user_id):
        counts = {}
        counts["user_translation_chapters"] = self._execute(
            "SELECT COUNT(*) FROM user_translation_chapters WHERE translation_id IN "
            "(SELECT id FROM user_translations WHERE user_id = ?)",
            (user_id,),
        ).fetchone()[0]
        for table in ("user_translations", "sync_cursors", "sync_items"):
            counts[table] = self._execute(
                "SELECT COUNT(*) FROM {} WHERE user_id = ?".format(table), (user_id,)
            ).fetchone()[0]
        return counts


class SqliteSyncStore(object):
    """Durable item and cursor tables in a SQLite database.

    Every ``transaction()`` takes the database write lock up front
    (``BEGIN IMMEDIATE``), so the read-compare-write sequence of one sync
    request never interleaves with another writer.
    """

    db_errors = (sqlite3.Error,)

    def __init__(self, db_path):
        self.db_path = db_path if db_path == ":memory:" else os.path.realpath(db_path)
        self._memory_conn = None
        self._memory_lock = threading.RLock()
        self._ensure_schema()

    def _ensure_schema(self):
        with self.transaction() as txn:
            for statement in SCHEMA:
                txn.cursor.execute(statement)

    def _connect(self):
        if self.db_path == ":memory:":
            if self._memory_conn is None:
                self._memory_conn = sqlite3.connect(":memory:", isolation_level=None, check_same_thread=False)
            return self._memory_conn
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _begin(self, conn):
        conn.execute("BEGIN IMMEDIATE")

    def _release(self, conn):
        if conn is not self._memory_conn:
            conn.close()

    # Default to using sqlite3 syntax but overridable for sub-classes using other
    # DB API 2 driver variants
    @staticmethod
    def fs(sql):
        return sql

    @contextmanager
    def transaction(self):
        with self._memory_lock if self.db_path == ":memory:" else nullcontext():
            conn = self._connect()
            try:
                self._begin(conn)
                yield StoreTransaction(conn.cursor(), self.fs)
                conn.commit()
            except self.db_errors as e:
                conn.rollback()
                logger.error("Store transaction rolled back: {}".format(e))
                raise StoreError(str(e)) from e
            except BaseException:
                conn.rollback()
                raise
            finally:
                self._release(conn)

    def close(self):
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None
