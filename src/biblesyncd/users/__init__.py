import importlib
import inspect

from biblesyncd import logging
from biblesyncd.users.simple_manager import SimpleUserManager
from biblesyncd.users.sqlite_manager import SqliteUserManager

logger = logging.get_logger(__name__)


def get_user_manager(config):
    # Check for Cognito configuration first
    if config.get("cognito_user_pool_id"):
        logger.info("Found cognito_user_pool_id in config, using CognitoUserManager for auth")
        from biblesyncd.users.cognito_manager import CognitoUserManager

        return CognitoUserManager(config)
    elif config.get("auth_db_path"):
        logger.info("Found auth_db_path in config, using SqliteUserManager for auth")
        return SqliteUserManager(config["auth_db_path"])
    elif config.get("user_manager"):  # load from config
        logger.info(
            "Found user_manager in config, using {} for auth".format(
                config["user_manager"]
            )
        )

        module_name, class_name = config["user_manager"].rsplit(".", 1)
        module = importlib.import_module(module_name.strip())
        class_ = getattr(module, class_name.strip())

        if SimpleUserManager not in inspect.getmro(class_):
            raise TypeError(
                """"user_manager" found in the conf file but it doesn't
                            inherit from SimpleUserManager"""
            )
        return class_(config)
    else:
        logger.warning(
            "No authentication configuration found (auth_db_path, cognito_user_pool_id, or user_manager), biblesyncd will accept any password"
        )
        return SimpleUserManager()
