# biblesyncd - A personal data sync server
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as
# published by the Free Software Foundation, either version 3 of the
# License, or (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

import json
import time
import types
from functools import wraps

import zstandard as zstd
from webob import Request, Response

from biblesyncd import logging
from biblesyncd.engine import SyncEngine
from biblesyncd.exceptions import (
    AuthenticationError,
    ProtocolError,
    TranslationNotFound,
)
from biblesyncd.protocol import SyncRequest as SyncBatch, decode_body, decompress
from biblesyncd.storage import get_store
from biblesyncd.tokens import get_token_manager
from biblesyncd.translations import TranslationSync
from biblesyncd.user_sync_queue import RateLimiter, UserSyncQueue
from biblesyncd.users import get_user_manager

logger = logging.get_logger("biblesyncd.sync_app")


# HTTP Exception Classes
class HTTPException(Exception):
    """Base class for HTTP exceptions."""
    status = 500

    def __init__(self, message="", headers=None):
        self.message = message
        self.headers = headers or {}
        super().__init__(message)


class HTTPBadRequest(HTTPException):
    """HTTP 400 Bad Request"""
    status = 400


class HTTPUnauthorized(HTTPException):
    """HTTP 401 Unauthorized"""
    status = 401


class HTTPNotFound(HTTPException):
    """HTTP 404 Not Found"""
    status = 404


class HTTPMethodNotAllowed(HTTPException):
    """HTTP 405 Method Not Allowed"""
    status = 405


class HTTPTooManyRequests(HTTPException):
    """HTTP 429 Too Many Requests"""
    status = 429


class SyncRequest:
    """Request parser for the sync API."""

    def __init__(self, environ):
        self.request = Request(environ)
        self.environ = environ
        self.path = self.request.path_info
        self.method = self.request.method
        self._data = None

    def get_body_data(self):
        """Get the request body, undoing zstd compression when present."""
        if self._data is not None:
            return self._data

        raw_data = self.request.body
        encoding = self.request.headers.get("Content-Encoding", "").lower()
        try:
            if encoding == "zstd":
                self._data = zstd.ZstdDecompressor().decompress(raw_data) if raw_data else b""
            else:
                self._data = decompress(raw_data)
        except zstd.ZstdError as e:
            logger.warning(f"Zstd decompression failed: {e}")
            raise HTTPBadRequest("Malformed compressed body")
        return self._data

    def get_json_data(self):
        """Get parsed JSON object from the request body. Empty bodies give {}."""
        try:
            data = decode_body(self.get_body_data())
        except ProtocolError as e:
            logger.error(f"JSON parsing failed: {e}")
            raise HTTPBadRequest("Malformed JSON body")
        if not isinstance(data, dict):
            raise HTTPBadRequest("Request body must be a JSON object")
        return data

    def get_bearer_token(self):
        header = self.request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return None
        return header[7:].strip() or None

    def accepts_zstd(self):
        return "zstd" in self.request.headers.get("Accept-Encoding", "").lower()


def _json_response(payload, status=200, compress=False, headers=None):
    body = json.dumps(payload).encode("utf-8")
    resp = Response(body=body, status=status, content_type="application/json")
    if compress:
        resp.body = zstd.ZstdCompressor().compress(body)
        resp.headers["Content-Encoding"] = "zstd"
    for name, value in (headers or {}).items():
        resp.headers[name] = value
    return resp


class jsonapi(object):
    """decorator

    Turns a handler taking a SyncRequest and returning a dict into a WSGI
    callable; HTTPException subclasses become JSON error responses.
    """

    def __init__(self, func):
        wraps(func)(self)

    def __call__(self, *args, **kwargs):
        clss = args[0]
        environ = args[1]
        start_response = args[2]
        req = SyncRequest(environ)
        try:
            result = self.__wrapped__(clss, req)
            if isinstance(result, Response):
                resp = result
            else:
                resp = _json_response(result, compress=req.accepts_zstd())
        except HTTPException as e:
            resp = _json_response({"error": e.message}, status=e.status, headers=e.headers)
        except Exception:
            logger.exception("Unhandled exception in sync operation")
            resp = _json_response({"error": "Sync failed"}, status=500)
        return resp(environ, start_response)

    def __get__(self, instance, cls):
        if instance is None:
            return self
        else:
            return types.MethodType(self, instance)


class SyncApp:
    def __init__(self, config, store=None, user_manager=None, token_manager=None, engine=None):
        self.config = config
        self.user_manager = user_manager or get_user_manager(config)
        self.token_manager = token_manager or get_token_manager(config)
        self.store = store or get_store(config)
        self.engine = engine or SyncEngine(self.store)
        self.translations = TranslationSync(self.store)
        self.rate_limiter = RateLimiter(
            int(config.get("rate_limit_max", 30)),
            float(config.get("rate_limit_window", 60)),
        )
        self.sync_queue = UserSyncQueue(timeout=float(config.get("sync_queue_timeout", 300)))

    @staticmethod
    def _require_method(req, *methods):
        if req.method not in methods:
            raise HTTPMethodNotAllowed(
                "{} not allowed on {}".format(req.method, req.path),
                headers={"Allow": ", ".join(methods)},
            )

    def _authenticate(self, req):
        token = req.get_bearer_token()
        if not token:
            raise HTTPUnauthorized("Missing or invalid authorization header")
        try:
            return self.token_manager.verify_access_token(token)
        except AuthenticationError:
            raise HTTPUnauthorized("Invalid or expired token")

    def _check_rate_limit(self, user_id):
        if not self.rate_limiter.allow(user_id):
            raise HTTPTooManyRequests(
                "Too many requests",
                headers={"Retry-After": str(self.rate_limiter.retry_after(user_id))},
            )

    def operation_login(self, req):
        self._require_method(req, "POST")
        data = req.get_json_data()
        username = data.get("username") or data.get("email")
        password = data.get("password")
        if not username or not password:
            raise HTTPBadRequest("Missing username or password")

        try:
            authenticated = self.user_manager.authenticate(username, password)
        except AuthenticationError as e:
            raise HTTPUnauthorized(str(e) or "Authentication failed")
        if not authenticated:
            raise HTTPUnauthorized("Authentication failed")

        user_id = self.user_manager.user_id(username)
        return {
            "accessToken": self.token_manager.issue_access_token(user_id),
            "refreshToken": self.token_manager.create_refresh_token(user_id, data.get("deviceName")),
            "user": {"id": user_id, "username": username},
        }

    def operation_refresh(self, req):
        self._require_method(req, "POST")
        refresh_token = req.get_json_data().get("refreshToken")
        if not refresh_token:
            raise HTTPBadRequest("Missing refreshToken")
        user_id = self.token_manager.validate_refresh_token(refresh_token)
        if user_id is None:
            raise HTTPUnauthorized("Invalid or expired refresh token")
        return {"accessToken": self.token_manager.issue_access_token(user_id)}

    def operation_logout(self, req):
        self._require_method(req, "POST")
        refresh_token = req.get_json_data().get("refreshToken")
        if refresh_token:
            self.token_manager.revoke_refresh_token(refresh_token)
        return {"ok": True}

    def operation_sync(self, req):
        self._require_method(req, "POST")
        user_id = self._authenticate(req)
        self._check_rate_limit(user_id)
        try:
            batch = SyncBatch.from_dict(req.get_json_data())
        except ProtocolError as e:
            raise HTTPBadRequest(str(e))
        response = self.sync_queue.execute_sync_operation(user_id, self.engine.sync, user_id, batch)
        return response.to_dict()

    def operation_translations(self, req):
        self._require_method(req, "POST")
        user_id = self._authenticate(req)
        self._check_rate_limit(user_id)
        data = req.get_json_data()
        try:
            result = self.translations.sync(user_id, data.get("translations"))
        except ProtocolError as e:
            raise HTTPBadRequest(str(e))
        return {"translations": result}

    def operation_translation_chapters(self, req, translation_id):
        self._require_method(req, "GET", "POST")
        user_id = self._authenticate(req)
        try:
            if req.method == "GET":
                return {"chapters": self.translations.download_chapters(user_id, translation_id)}
            count = self.translations.upload_chapters(
                user_id, translation_id, req.get_json_data().get("chapters")
            )
            return {"ok": True, "count": count}
        except TranslationNotFound as e:
            raise HTTPNotFound(str(e))
        except ProtocolError as e:
            raise HTTPBadRequest(str(e))

    @jsonapi
    def __call__(self, req):
        sync_start_time = time.time()
        client_ip = req.environ.get('REMOTE_ADDR', 'unknown')
        path = req.path.rstrip("/") or "/"

        try:
            if path == "/health":
                result = {"status": "ok"}
            elif path == "/auth/login":
                result = self.operation_login(req)
            elif path == "/auth/refresh":
                result = self.operation_refresh(req)
            elif path == "/auth/logout":
                result = self.operation_logout(req)
            elif path == "/sync":
                result = self.operation_sync(req)
            elif path == "/sync/translations":
                result = self.operation_translations(req)
            elif path.startswith("/sync/translation-chapters/"):
                translation_id = path[len("/sync/translation-chapters/"):]
                if not translation_id or "/" in translation_id:
                    raise HTTPNotFound("Unknown endpoint {}".format(req.path))
                result = self.operation_translation_chapters(req, translation_id)
            else:
                raise HTTPNotFound("Unknown endpoint {}".format(req.path))
        except HTTPException as e:
            logger.warning(f"❌ {req.method} {path} from {client_ip} - {e.status} {e.message}")
            raise

        logger.info(f"✅ {req.method} {path} from {client_ip} in {time.time() - sync_start_time:.2f}s")
        return result


def make_app(global_conf, **local_conf):
    config = dict(global_conf or {})
    config.update(local_conf)
    return SyncApp(config)
