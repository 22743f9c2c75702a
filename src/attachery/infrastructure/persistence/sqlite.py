"""SQLite attachment column storage with compare-and-swap writes."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Optional

from loguru import logger

from attachery.application.ports.persistence import PersistResult
from attachery.domain.entities.stored_file import StoredFileRef
from attachery.domain.entities.variant_tree import VariantSchema, VariantTree, dumps, loads
from attachery.domain.errors import RecordMissing


@dataclass
class AttachmentRow:
    """One attachment column of one record."""

    record_key: str
    name: str
    data: str | None
    updated_at: str


class SQLiteClient:
    """SQLite client holding serialized attachment data per (record, attachment)."""

    def __init__(self, db_path: str | Path = "./data/attachments.db"):
        self.db_path = Path(db_path)
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Create database and tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connection() as conn:
            conn.executescript("""
                PRAGMA journal_mode=WAL;

                CREATE TABLE IF NOT EXISTS attachments (
                    record_key TEXT NOT NULL,
                    name TEXT NOT NULL,
                    data TEXT,
                    updated_at TEXT NOT NULL,

                    PRIMARY KEY(record_key, name)
                );
            """)
            logger.info(f"SQLite database initialized at {self.db_path}")

    @contextmanager
    def _connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def create(self, record_key: str, name: str, data: str | None = None) -> AttachmentRow:
        """Insert a record's attachment column (no-op if it already exists)."""
        now = datetime.now(timezone.utc).isoformat()
        with self._connection() as conn:
            conn.execute(
                """INSERT OR IGNORE INTO attachments (record_key, name, data, updated_at)
                   VALUES (?, ?, ?, ?)""",
                (record_key, name, data, now),
            )
        row = self.get(record_key, name)
        logger.debug(f"Created attachment row {record_key}/{name}")
        return row

    def get(self, record_key: str, name: str) -> Optional[AttachmentRow]:
        with self._connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM attachments WHERE record_key = ? AND name = ?",
                (record_key, name),
            )
            row = cursor.fetchone()

        if row is None:
            return None
        return AttachmentRow(
            record_key=row["record_key"],
            name=row["name"],
            data=row["data"],
            updated_at=row["updated_at"],
        )

    def write(self, record_key: str, name: str, data: str | None) -> None:
        """Unconditional write, as a host framework's record save would do."""
        now = datetime.now(timezone.utc).isoformat()
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE attachments SET data = ?, updated_at = ? WHERE record_key = ? AND name = ?",
                (data, now, record_key, name),
            )
            if cursor.rowcount == 0:
                raise RecordMissing(f"record {record_key!r} has no {name!r} attachment row")

    def compare_and_swap(self, record_key: str, name: str, expected: str | None, data: str | None) -> bool:
        """Write ``data`` only if the column still holds ``expected``."""
        now = datetime.now(timezone.utc).isoformat()
        with self._connection() as conn:
            cursor = conn.execute(
                """UPDATE attachments SET data = ?, updated_at = ?
                   WHERE record_key = ? AND name = ? AND data IS ?""",
                (data, now, record_key, name, expected),
            )
            swapped = cursor.rowcount == 1
            if not swapped:
                exists = conn.execute(
                    "SELECT 1 FROM attachments WHERE record_key = ? AND name = ?",
                    (record_key, name),
                ).fetchone()
                if exists is None:
                    raise RecordMissing(f"record {record_key!r} has no {name!r} attachment row")
        return swapped

    def delete(self, record_key: str, name: str | None = None) -> int:
        with self._connection() as conn:
            if name is None:
                cursor = conn.execute("DELETE FROM attachments WHERE record_key = ?", (record_key,))
            else:
                cursor = conn.execute(
                    "DELETE FROM attachments WHERE record_key = ? AND name = ?",
                    (record_key, name),
                )
            return cursor.rowcount


class SQLitePersistence:
    """PersistenceAdapter for one (record, attachment) backed by ``SQLiteClient``.

    ``persist`` succeeds only if the column still holds the text seen by the
    last ``reload``, so concurrent promotions in different processes
    serialize on the database.
    """

    def __init__(
        self,
        client: SQLiteClient,
        record_key: str,
        name: str,
        schema: VariantSchema | None = None,
    ):
        self.client = client
        self.record_key = record_key
        self.name = name
        self.schema = schema
        self._seen: str | None = None

    def __repr__(self) -> str:
        return f"<SQLitePersistence {self.record_key}/{self.name}>"

    def reload(self) -> Optional[VariantTree[StoredFileRef]]:
        row = self.client.get(self.record_key, self.name)
        if row is None:
            raise RecordMissing(f"record {self.record_key!r} no longer exists")
        self._seen = row.data
        return loads(row.data, self.schema)

    def persist(self, tree: Optional[VariantTree[StoredFileRef]]) -> PersistResult:
        if self.client.compare_and_swap(self.record_key, self.name, self._seen, dumps(tree)):
            self._seen = dumps(tree)
            return PersistResult.SUCCESS
        logger.debug(f"Compare-and-swap lost on {self.record_key}/{self.name}")
        return PersistResult.CONFLICT


# Singleton instance
_client: SQLiteClient | None = None


def get_sqlite_client(db_path: str | None = None) -> SQLiteClient:
    """Get or create SQLite client singleton."""
    global _client
    if _client is None:
        from attachery.infrastructure.settings import get_settings

        settings = get_settings()
        _client = SQLiteClient(db_path=db_path or settings.sqlite_db_path)
    return _client
