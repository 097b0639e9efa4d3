"""Wire contract shared by the client and the server.

The same SyncItem shape travels in both directions, so "data I'm sending
you" and "data you're sending me" go through one code path. Payloads are
opaque JSON; nothing here looks inside ``data``.
"""

import io
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import zstandard as zstd

from biblesyncd.exceptions import ProtocolError

SINGLETON_ID = "_singleton"

ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"


def _require_int(value, name):
    # bool is an int subclass, but True is not a timestamp
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError("{} must be an integer, got {!r}".format(name, value))
    return int(value)


@dataclass
class SyncItem:
    data_type: str
    item_id: str
    data: Any
    updated_at: int
    deleted: bool = False

    @property
    def key(self) -> str:
        return "{}:{}".format(self.data_type, self.item_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataType": self.data_type,
            "itemId": self.item_id,
            "data": self.data,
            "updatedAt": self.updated_at,
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, d) -> "SyncItem":
        if not isinstance(d, dict):
            raise ProtocolError("sync item must be an object")
        data_type = d.get("dataType")
        if not isinstance(data_type, str) or not data_type:
            raise ProtocolError("sync item is missing dataType")
        item_id = d.get("itemId")
        if isinstance(item_id, int) and not isinstance(item_id, bool):
            item_id = str(item_id)
        if not isinstance(item_id, str) or not item_id:
            raise ProtocolError("sync item {} is missing itemId".format(data_type))
        updated_at = _require_int(d.get("updatedAt"), "updatedAt")
        return cls(
            data_type=data_type,
            item_id=item_id,
            data=d.get("data"),
            updated_at=updated_at,
            deleted=bool(d.get("deleted", False)),
        )


def _items_from_list(changes) -> List[SyncItem]:
    if changes is None:
        return []
    if not isinstance(changes, list):
        raise ProtocolError("changes must be a list")
    items = [SyncItem.from_dict(c) for c in changes]
    seen = set()
    for item in items:
        if item.key in seen:
            raise ProtocolError("duplicate item {} in one batch".format(item.key))
        seen.add(item.key)
    return items


@dataclass
class SyncRequest:
    device_id: str
    last_sync_at: int = 0
    changes: List[SyncItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "lastSyncAt": self.last_sync_at,
            "changes": [c.to_dict() for c in self.changes],
        }

    @classmethod
    def from_dict(cls, d) -> "SyncRequest":
        if not isinstance(d, dict):
            raise ProtocolError("sync request must be an object")
        device_id = d.get("deviceId")
        if not isinstance(device_id, str) or not device_id:
            raise ProtocolError("Missing deviceId")
        last_sync_at = d.get("lastSyncAt")
        last_sync_at = 0 if last_sync_at is None else _require_int(last_sync_at, "lastSyncAt")
        return cls(
            device_id=device_id,
            last_sync_at=last_sync_at,
            changes=_items_from_list(d.get("changes")),
        )


@dataclass
class SyncResponse:
    synced_at: int
    changes: List[SyncItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "syncedAt": self.synced_at,
            "changes": [c.to_dict() for c in self.changes],
        }

    @classmethod
    def from_dict(cls, d) -> "SyncResponse":
        if not isinstance(d, dict):
            raise ProtocolError("sync response must be an object")
        return cls(
            synced_at=_require_int(d.get("syncedAt"), "syncedAt"),
            changes=[SyncItem.from_dict(c) for c in (d.get("changes") or [])],
        )


def encode_body(obj, compress=False) -> bytes:
    payload = json.dumps(obj).encode("utf-8")
    if compress:
        return zstd.ZstdCompressor().compress(payload)
    return payload


def decompress(raw: bytes) -> bytes:
    """Undoes zstd compression; plain bodies are returned unchanged."""
    if not raw.startswith(ZSTD_MAGIC):
        return raw
    try:
        return zstd.ZstdDecompressor().decompress(raw)
    except zstd.ZstdError:
        # Frames written by a streaming compressor carry no content size
        with zstd.ZstdDecompressor().stream_reader(io.BytesIO(raw)) as reader:
            return reader.read()


def decode_body(raw: Optional[bytes]):
    if not raw:
        return {}
    try:
        return json.loads(decompress(raw).decode("utf-8"))
    except (zstd.ZstdError, UnicodeDecodeError, ValueError) as e:
        raise ProtocolError("Malformed body: {}".format(e)) from e
