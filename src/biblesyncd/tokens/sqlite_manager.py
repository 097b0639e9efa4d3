import os
from sqlite3 import dbapi2 as sqlite

from biblesyncd.tokens.simple_manager import SimpleTokenManager


class SqliteTokenManager(SimpleTokenManager):
    """Stores refresh token hashes in a SQLite database so users stay signed
    in when the server restarts."""

    def __init__(self, token_db_path, secret, **kwargs):
        super().__init__(secret, **kwargs)
        self.token_db_path = os.path.realpath(token_db_path)

    def _conn(self):
        new = not os.path.exists(self.token_db_path)
        if new:
            os.makedirs(os.path.dirname(self.token_db_path), exist_ok=True)
        conn = sqlite.connect(self.token_db_path)
        if new:
            cursor = conn.cursor()
            cursor.execute(
                "CREATE TABLE refresh_tokens (token_hash VARCHAR PRIMARY KEY, user_id VARCHAR, "
                "device_name VARCHAR, expires_at INTEGER)"
            )
            conn.commit()
        return conn

    # Default to using sqlite3 syntax but overridable for sub-classes using other
    # DB API 2 driver variants
    @staticmethod
    def fs(sql):
        return sql

    def _store(self, token_hash, user_id, device_name, expires_at):
        conn = self._conn()
        cursor = conn.cursor()
        cursor.execute(
            self.fs("INSERT OR REPLACE INTO refresh_tokens (token_hash, user_id, device_name, expires_at) "
                    "VALUES (?, ?, ?, ?)"),
            (token_hash, user_id, device_name, expires_at),
        )
        conn.commit()
        conn.close()

    def _lookup(self, token_hash):
        conn = self._conn()
        cursor = conn.cursor()
        cursor.execute(
            self.fs("SELECT user_id, expires_at FROM refresh_tokens WHERE token_hash=?"), (token_hash,)
        )
        res = cursor.fetchone()
        conn.close()
        return None if res is None else (res[0], int(res[1]))

    def _delete(self, token_hash):
        conn = self._conn()
        cursor = conn.cursor()
        cursor.execute(self.fs("DELETE FROM refresh_tokens WHERE token_hash=?"), (token_hash,))
        conn.commit()
        conn.close()

    def revoke_all(self, user_id):
        conn = self._conn()
        cursor = conn.cursor()
        cursor.execute(self.fs("DELETE FROM refresh_tokens WHERE user_id=?"), (user_id,))
        count = cursor.rowcount
        conn.commit()
        conn.close()
        return count
