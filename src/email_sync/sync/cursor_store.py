"""Persistence of the sync cursor.

The sync service reads the cursor once at the start of a pass and writes it
back wholesale at the end. Stores only need last-writer-wins semantics.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

import structlog

from email_sync.models import SyncCursor

logger = structlog.get_logger()


_SCHEMA_VERSION = 1


class SyncCursorStore(Protocol):
    """Get-or-create and save of the single cursor record."""

    def get_or_create(self) -> SyncCursor:
        ...

    def save(self, cursor: SyncCursor) -> None:
        ...


class InMemorySyncCursorStore:
    """Process-local cursor store, for tests and dry runs."""

    def __init__(self, cursor: SyncCursor | None = None) -> None:
        self._cursor = cursor.model_copy() if cursor is not None else None
        self.save_count = 0

    def get_or_create(self) -> SyncCursor:
        if self._cursor is None:
            self._cursor = SyncCursor()
        return self._cursor.model_copy()

    def save(self, cursor: SyncCursor) -> None:
        self._cursor = cursor.model_copy()
        self.save_count += 1


class SqliteSyncCursorStore:
    """SQLite-backed cursor store, one row per cursor key."""

    def __init__(self, db_path: Path, key: str = "default") -> None:
        """Create a store.

        Args:
            db_path: Path to the SQLite database file.
            key: Cursor record key, one per synchronized mailbox/folder.
        """

        self._db_path = db_path
        self._key = key

    def initialize(self) -> None:
        """Create or verify the cursor schema."""

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )

            current_version = self._get_schema_version(conn)
            if current_version is None:
                self._create_schema_v1(conn)
                self._set_schema_version(conn, _SCHEMA_VERSION)
                conn.commit()
                logger.info("cursor_store_schema_created", version=_SCHEMA_VERSION, path=str(self._db_path))
                return

            if current_version != _SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {current_version}; expected {_SCHEMA_VERSION}"
                )

    def get_or_create(self) -> SyncCursor:
        """Return the stored cursor, inserting a zero cursor on first use."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO sync_cursors (cursor_key, last_unique_id, last_synced_at_iso, updated_at_iso)
                VALUES (?, 0, NULL, ?);
                """,
                (self._key, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()

            row = conn.execute(
                """
                SELECT last_unique_id, last_synced_at_iso
                FROM sync_cursors
                WHERE cursor_key = ?;
                """,
                (self._key,),
            ).fetchone()

        return self._row_to_cursor(row)

    def save(self, cursor: SyncCursor) -> None:
        """Write the cursor back, replacing whatever is stored."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sync_cursors (cursor_key, last_unique_id, last_synced_at_iso, updated_at_iso)
                VALUES (:cursor_key, :last_unique_id, :last_synced_at_iso, :updated_at_iso)
                ON CONFLICT(cursor_key) DO UPDATE SET
                    last_unique_id=excluded.last_unique_id,
                    last_synced_at_iso=excluded.last_synced_at_iso,
                    updated_at_iso=excluded.updated_at_iso
                """,
                {
                    "cursor_key": self._key,
                    "last_unique_id": cursor.last_unique_id,
                    "last_synced_at_iso": cursor.last_synced_at.isoformat() if cursor.last_synced_at else None,
                    "updated_at_iso": datetime.now(timezone.utc).isoformat(),
                },
            )
            conn.commit()

        logger.info(
            "sync_cursor_saved",
            cursor_key=self._key,
            last_unique_id=cursor.last_unique_id,
        )

    def reset(self) -> None:
        """Forget the cursor so the next pass starts from the beginning of the folder."""

        with self._connect() as conn:
            conn.execute("DELETE FROM sync_cursors WHERE cursor_key = ?;", (self._key,))
            conn.commit()

        logger.info("sync_cursor_reset", cursor_key=self._key)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        try:
            conn.row_factory = sqlite3.Row
            yield conn
        finally:
            conn.close()

    def _get_schema_version(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT value FROM _schema_meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            return None
        return int(row[0])

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO _schema_meta(key, value) VALUES('schema_version', ?) ",
            (str(version),),
        )

    def _create_schema_v1(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sync_cursors (
                cursor_key TEXT PRIMARY KEY,
                last_unique_id INTEGER NOT NULL,
                last_synced_at_iso TEXT,
                updated_at_iso TEXT NOT NULL
            );
            """
        )

    def _row_to_cursor(self, row: sqlite3.Row) -> SyncCursor:
        synced_at = datetime.fromisoformat(row["last_synced_at_iso"]) if row["last_synced_at_iso"] else None

        return SyncCursor(
            last_unique_id=int(row["last_unique_id"]),
            last_synced_at=synced_at,
        )
