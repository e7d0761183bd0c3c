"""Incremental sync pass, its cursor persistence and observer contracts."""

from .cursor_store import InMemorySyncCursorStore, SqliteSyncCursorStore, SyncCursorStore
from .observer import LoggingSyncEventHandler, SyncEventHandler, SyncObserver
from .service import EmailSyncService, SyncResult

__all__ = [
    "EmailSyncService",
    "InMemorySyncCursorStore",
    "LoggingSyncEventHandler",
    "SqliteSyncCursorStore",
    "SyncCursorStore",
    "SyncEventHandler",
    "SyncObserver",
    "SyncResult",
]
