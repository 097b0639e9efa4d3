import hashlib
import secrets
import time

import jwt

from biblesyncd import logging
from biblesyncd.exceptions import AuthenticationError

logger = logging.get_logger(__name__)

JWT_ALGORITHM = "HS256"


def hash_token(token):
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SimpleTokenManager:
    """Issues JWT access tokens and keeps refresh tokens in memory.

    Refresh tokens are lost when the server restarts; use
    SqliteTokenManager to keep users signed in across restarts.
    """

    def __init__(self, secret, access_token_ttl=3600, refresh_token_days=90, clock=time.time):
        if not secret:
            raise ValueError("jwt_secret is required")
        self.secret = secret
        self.access_token_ttl = int(access_token_ttl)
        self.refresh_token_days = int(refresh_token_days)
        self.clock = clock
        self.refresh_tokens = {}

    def issue_access_token(self, user_id):
        now = int(self.clock())
        payload = {"sub": user_id, "iat": now, "exp": now + self.access_token_ttl}
        return jwt.encode(payload, self.secret, algorithm=JWT_ALGORITHM)

    def verify_access_token(self, token):
        """Returns the user id of a valid token, raises AuthenticationError otherwise."""
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[JWT_ALGORITHM],
                options={"verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidTokenError as e:
            raise AuthenticationError("Invalid token: {}".format(e)) from e

        # Expiry is checked against our own clock so tests can move time
        if int(payload.get("exp", 0)) <= int(self.clock()):
            raise AuthenticationError("Token expired")
        user_id = payload.get("sub")
        if not user_id:
            raise AuthenticationError("Token has no subject")
        return user_id

    def create_refresh_token(self, user_id, device_name=None):
        token = secrets.token_hex(64)
        expires_at = int(self.clock()) + self.refresh_token_days * 24 * 3600
        self._store(hash_token(token), user_id, device_name, expires_at)
        logger.info("Issued refresh token for user {} ({})".format(user_id, device_name or "unnamed device"))
        return token

    def validate_refresh_token(self, token):
        """Returns the user id the refresh token belongs to, or None."""
        if not token:
            return None
        row = self._lookup(hash_token(token))
        if row is None:
            return None
        user_id, expires_at = row
        if expires_at <= int(self.clock()):
            logger.info("Refresh token for user {} has expired".format(user_id))
            self.revoke_refresh_token(token)
            return None
        return user_id

    def revoke_refresh_token(self, token):
        self._delete(hash_token(token))

    # storage, overridden by persistent managers

    def _store(self, token_hash, user_id, device_name, expires_at):
        self.refresh_tokens[token_hash] = (user_id, device_name, expires_at)

    def _lookup(self, token_hash):
        row = self.refresh_tokens.get(token_hash)
        return None if row is None else (row[0], row[2])

    def _delete(self, token_hash):
        self.refresh_tokens.pop(token_hash, None)

    def revoke_all(self, user_id):
        stale = [h for h, row in self.refresh_tokens.items() if row[0] == user_id]
        for token_hash in stale:
            del self.refresh_tokens[token_hash]
        return len(stale)
