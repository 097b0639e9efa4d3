from biblesyncd import logging
from biblesyncd.tokens.simple_manager import SimpleTokenManager
from biblesyncd.tokens.sqlite_manager import SqliteTokenManager

logger = logging.get_logger(__name__)


def get_token_manager(config):
    kwargs = {
        "access_token_ttl": int(config.get("access_token_ttl", 3600)),
        "refresh_token_days": int(config.get("refresh_token_days", 90)),
    }
    if config.get("token_db_path"):
        logger.info("Found token_db_path in config, using SqliteTokenManager for refresh tokens")
        return SqliteTokenManager(config["token_db_path"], config.get("jwt_secret"), **kwargs)

    logger.warning("No token_db_path in config, refresh tokens will not survive a restart")
    return SimpleTokenManager(config.get("jwt_secret"), **kwargs)
