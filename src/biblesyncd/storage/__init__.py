from biblesyncd import logging
from biblesyncd.storage.sqlite_store import SqliteSyncStore, StoreTransaction

logger = logging.get_logger(__name__)

__all__ = ["SqliteSyncStore", "StoreTransaction", "get_store"]


def get_store(config):
    if config.get("database_url"):
        logger.info("Found database_url in config, using PostgresSyncStore")
        from biblesyncd.storage.postgres_store import PostgresSyncStore

        return PostgresSyncStore(config["database_url"])

    db_path = config.get("db_path") or ":memory:"
    if db_path == ":memory:":
        logger.warning("No db_path configured, synced data will not survive a restart")
    else:
        logger.info("Using SqliteSyncStore at {}".format(db_path))
    return SqliteSyncStore(db_path)
