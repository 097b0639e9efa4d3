"""Client side of the sync protocol: change tracking, transport and scheduling."""

from biblesyncd.client.local_store import ClientState, JsonFileStore, LocalStore, MemoryStore
from biblesyncd.client.orchestrator import SyncOrchestrator
from biblesyncd.client.scheduler import ManualScheduler, ThreadingScheduler
from biblesyncd.client.tracker import ChangeTracker
from biblesyncd.client.transport import AuthenticatedTransport

__all__ = [
    "AuthenticatedTransport",
    "ChangeTracker",
    "ClientState",
    "JsonFileStore",
    "LocalStore",
    "ManualScheduler",
    "MemoryStore",
    "SyncOrchestrator",
    "ThreadingScheduler",
]
