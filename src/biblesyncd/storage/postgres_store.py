import psycopg2

from biblesyncd import logging
from biblesyncd.storage.sqlite_store import SqliteSyncStore

logger = logging.get_logger(__name__)


class PostgresSyncStore(SqliteSyncStore):
    """Same tables and statements as the SQLite store, kept in PostgreSQL."""

    db_errors = (psycopg2.Error,)

    def __init__(self, dsn):
        self.dsn = dsn
        self.db_path = None
        self._memory_conn = None
        self._memory_lock = None
        self._ensure_schema()
        logger.info("Using PostgreSQL sync store")

    def _connect(self):
        try:
            return psycopg2.connect(self.dsn)
        except psycopg2.Error as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _begin(self, conn):
        # psycopg2 opens a transaction on the first statement
        pass

    def _release(self, conn):
        conn.close()

    @staticmethod
    def fs(sql):
        return sql.replace("?", "%s")
