from biblesyncd import logging

logger = logging.get_logger(__name__)


class SimpleUserManager:
    """Authenticates any user with any password. Only suitable for testing."""

    def __init__(self, config=None):
        pass

    def authenticate(self, username, password):
        """
        Returns True if this username is allowed to connect with this password.
        False otherwise. Override this to change how users are authenticated.
        """
        logger.info("Authenticated user {} without a password check".format(username))
        return True

    def user_id(self, username):
        """
        Returns the stable identifier the sync tables are keyed by. Usernames
        can change (e.g. email addresses), so managers that know a permanent
        id should return it here.
        """
        return username
