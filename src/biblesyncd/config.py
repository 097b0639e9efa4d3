import configparser
import os

from biblesyncd import logging

logger = logging.get_logger(__name__)

ENV_PREFIX = "BIBLESYNCD_"

DEFAULTS = {
    "host": "0.0.0.0",
    "port": "27801",
    "db_path": "./data/sync.db",
    "database_url": "",
    "jwt_secret": "dev-secret-change-in-production",
    "access_token_ttl": "3600",
    "refresh_token_days": "90",
    "token_db_path": "./data/tokens.db",
    "auth_db_path": "",
    "user_manager": "",
    "cognito_user_pool_id": "",
    "cognito_client_id": "",
    "cognito_client_secret": "",
    "cognito_region": "us-east-1",
    "rate_limit_max": "30",
    "rate_limit_window": "60",
    "sync_queue_timeout": "300",
    "tombstone_retention_days": "90",
}


def _config_paths(argv):
    paths = [
        "/etc/biblesyncd/biblesyncd.conf",
        os.path.join(os.path.expanduser("~"), ".config", "biblesyncd", "biblesyncd.conf"),
        os.path.join(os.path.dirname(os.path.dirname(os.path.realpath(__file__))), "biblesyncd.conf"),
    ]
    if os.environ.get("XDG_CONFIG_HOME"):
        paths.insert(1, os.path.join(os.environ["XDG_CONFIG_HOME"], "biblesyncd", "biblesyncd.conf"))
    if os.environ.get(ENV_PREFIX + "CONFIG_PATH"):
        paths.append(os.environ[ENV_PREFIX + "CONFIG_PATH"])
    if argv and len(argv) > 1:
        paths.append(argv[1])
    return paths


def load_from_file(argv=None):
    """Reads the [sync_app] section of the last config file found.

    Later paths win: an explicit path on the command line overrides
    BIBLESYNCD_CONFIG_PATH, which overrides the per-user and system files.
    """
    config = dict(DEFAULTS)
    parser = configparser.ConfigParser()
    found = None
    for path in _config_paths(argv):
        if path and os.path.isfile(path):
            found = path

    if found is None:
        logger.info("No config file found, using built-in defaults")
        return config

    parser.read(found)
    logger.info("Loaded config from {}".format(found))
    if parser.has_section("sync_app"):
        config.update(parser["sync_app"])
    return config


def load_from_env(config):
    """Overrides config keys from BIBLESYNCD_<KEY> environment variables."""
    for env, value in os.environ.items():
        if not env.startswith(ENV_PREFIX) or env == ENV_PREFIX + "CONFIG_PATH":
            continue
        key = env[len(ENV_PREFIX):].lower()
        config[key] = value
        logger.info("Setting {} from ${}".format(key, env))
    return config


def load(argv=None):
    config = load_from_file(argv)
    load_from_env(config)
    return config
