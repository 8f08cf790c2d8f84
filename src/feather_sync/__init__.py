"""Feather Sync - note synchronization with WebDAV servers and cloud drives."""

__version__ = "0.1.0"

from .conflict_detector import ConflictDetector
from .credential_manager import CredentialStore
from .offline_queue import OfflineQueue
from .sync_adapter import RemoteStoreAdapter, SyncAdapter
from .sync_manager import SyncManager
from .sync_models import (
    ConflictResolution,
    NoteSnapshot,
    SyncConflict,
    SyncProvider,
    SyncResult,
    SyncStatus,
)

__all__ = [
    "ConflictDetector",
    "ConflictResolution",
    "CredentialStore",
    "NoteSnapshot",
    "OfflineQueue",
    "RemoteStoreAdapter",
    "SyncAdapter",
    "SyncConflict",
    "SyncManager",
    "SyncProvider",
    "SyncResult",
    "SyncStatus",
    "__version__",
]
