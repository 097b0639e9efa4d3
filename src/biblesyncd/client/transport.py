"""Bearer-token HTTP calls to the sync server."""

import threading

import requests

from biblesyncd import logging
from biblesyncd.exceptions import (
    AuthenticationError,
    NotAuthenticated,
    ProtocolError,
    RateLimited,
    SessionExpired,
    TransportError,
)
from biblesyncd.protocol import SyncResponse, decode_body, encode_body

logger = logging.get_logger(__name__)

HTTP_TIMEOUT = 45


class AuthenticatedTransport(object):
    """POSTs JSON bodies with the session's access token.

    An expired access token is refreshed once, transparently, and the call
    retried. Concurrent callers hitting a 401 share a single refresh.
    """

    def __init__(self, server_url, state, session=None, timeout=HTTP_TIMEOUT, compress=False):
        self.server_url = server_url.rstrip("/")
        self.state = state
        self.session = session or requests.Session()
        self.timeout = timeout
        self.compress = compress
        self._refresh_lock = threading.Lock()

    def is_authenticated(self):
        return bool(self.state.access_token)

    def _send(self, method, path, body=None, token=None):
        """Returns ``(status_code, decoded_json)``. Network errors raise TransportError."""
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = "Bearer {}".format(token)
        data = None
        if body is not None:
            data = encode_body(body, compress=self.compress)
            headers["Content-Type"] = "application/json"
            if self.compress:
                headers["Content-Encoding"] = "zstd"
                headers["Accept-Encoding"] = "zstd"

        url = "{}{}".format(self.server_url, path)
        try:
            response = self.session.request(method, url, data=data, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error("Network error calling {}: {}".format(url, e))
            raise TransportError("Network error: {}".format(e)) from e

        try:
            payload = decode_body(response.content)
        except ProtocolError:
            payload = {}
        return response.status_code, payload

    @staticmethod
    def _error_message(status, payload):
        message = payload.get("error") if isinstance(payload, dict) else None
        return "Sync failed: {}{}".format(status, " ({})".format(message) if message else "")

    def login(self, username, password, device_name=None):
        status, payload = self._send(
            "POST", "/auth/login",
            {"username": username, "password": password, "deviceName": device_name},
        )
        if status == 401:
            raise AuthenticationError(payload.get("error") or "Authentication failed")
        if status != 200:
            raise TransportError(self._error_message(status, payload), status)
        self.state.set_tokens(payload["accessToken"], payload["refreshToken"], payload.get("user"))
        logger.info("Signed in as {}".format(username))
        return payload.get("user")

    def logout(self):
        refresh_token = self.state.refresh_token
        self.state.clear_auth()
        if refresh_token:
            try:
                self._send("POST", "/auth/logout", {"refreshToken": refresh_token})
            except TransportError as e:
                logger.warning("Could not revoke refresh token on logout: {}".format(e))

    def _refresh_access_token(self, stale_token):
        """Returns a fresh access token, or None when the session is over."""
        with self._refresh_lock:
            # Another caller refreshed while we waited for the lock
            if self.state.access_token and self.state.access_token != stale_token:
                return self.state.access_token

            refresh_token = self.state.refresh_token
            if not refresh_token:
                return None

            status, payload = self._send("POST", "/auth/refresh", {"refreshToken": refresh_token})
            if status != 200 or not payload.get("accessToken"):
                logger.warning("Token refresh rejected with status {}, signing out".format(status))
                self.state.clear_auth()
                return None

            self.state.set_tokens(payload["accessToken"])
            logger.info("Access token refreshed")
            return payload["accessToken"]

    def request(self, path, body=None, method="POST"):
        token = self.state.access_token
        if not token:
            raise NotAuthenticated("Not authenticated")

        status, payload = self._send(method, path, body, token)

        if status == 401:
            token = self._refresh_access_token(token)
            if not token:
                raise SessionExpired("Session expired")
            status, payload = self._send(method, path, body, token)
            if status == 401:
                raise SessionExpired("Session expired")

        if status == 429:
            raise RateLimited(self._error_message(status, payload))
        if status != 200:
            raise TransportError(self._error_message(status, payload), status)
        return payload

    def sync(self, request):
        """POSTs a protocol.SyncRequest to /sync; returns the SyncResponse."""
        return SyncResponse.from_dict(self.request("/sync", request.to_dict()))

    def sync_translations(self, translations):
        return self.request("/sync/translations", {"translations": translations}).get("translations", [])

    def upload_translation_chapters(self, translation_id, chapters):
        path = "/sync/translation-chapters/{}".format(translation_id)
        return self.request(path, {"chapters": chapters}).get("count", 0)

    def download_translation_chapters(self, translation_id):
        path = "/sync/translation-chapters/{}".format(translation_id)
        return self.request(path, method="GET").get("chapters", [])
