"""
Repository pattern for ledger persistence.

Stores the usage ledger as a single keyed JSON record in SQLite.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Optional

from ..core.errors import PersistenceDegraded
from .db import DEFAULT_DB_PATH, get_connection
from .models import LedgerState

logger = logging.getLogger(__name__)

LEDGER_KEY = "search_api_usage"

_CREATE_TABLE = """
    CREATE TABLE IF NOT EXISTS usage_ledger (
        key TEXT PRIMARY KEY,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
"""


class LedgerRepository:
    """Repository for the persisted usage ledger record.

    Every failure to read, decode or write the record is raised as
    PersistenceDegraded so callers can fall back to in-memory state.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, key: str = LEDGER_KEY):
        """Initialize the repository.

        Args:
            db_path: Path to SQLite database file
            key: Record key the ledger is stored under
        """
        self.db_path = db_path
        self.key = key

    def load(self, max_recent_calls: int = 100) -> Optional[LedgerState]:
        """Load the persisted ledger.

        Args:
            max_recent_calls: Cap applied to the stored call history

        Returns:
            The stored LedgerState, or None if nothing has been stored yet

        Raises:
            PersistenceDegraded: If storage is unreadable or the record is malformed
        """
        try:
            conn = get_connection(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise PersistenceDegraded(f"Cannot open ledger storage {self.db_path}: {e}") from e
        try:
            conn.execute(_CREATE_TABLE)
            row = conn.execute(
                "SELECT payload FROM usage_ledger WHERE key = ?", (self.key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceDegraded(f"Cannot read ledger record: {e}") from e
        finally:
            conn.close()

        if row is None:
            return None

        try:
            return LedgerState.from_payload(json.loads(row[0]), max_recent_calls)
        except (ValueError, TypeError) as e:
            raise PersistenceDegraded(f"Malformed ledger record: {e}") from e

    def save(self, state: LedgerState) -> None:
        """Write the ledger record, replacing any previous one atomically.

        Raises:
            PersistenceDegraded: If the record cannot be written
        """
        payload = json.dumps(state.to_payload(), separators=(",", ":"))
        try:
            conn = get_connection(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise PersistenceDegraded(f"Cannot open ledger storage {self.db_path}: {e}") from e
        try:
            conn.execute(_CREATE_TABLE)
            conn.execute(
                """
                INSERT INTO usage_ledger (key, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (self.key, payload, datetime.now().isoformat()),
            )
            conn.commit()
        except sqlite3.Error as e:
            # Closing without commit discards the partial write
            raise PersistenceDegraded(f"Cannot write ledger record: {e}") from e
        finally:
            conn.close()


class MemoryLedgerRepository:
    """Ledger repository that keeps the record in process memory only.

    Used when no durable storage is wanted, for example in tests.
    """

    def __init__(self, state: Optional[LedgerState] = None):
        self._payload = json.dumps(state.to_payload()) if state is not None else None
        self.save_count = 0

    def load(self, max_recent_calls: int = 100) -> Optional[LedgerState]:
        if self._payload is None:
            return None
        try:
            return LedgerState.from_payload(json.loads(self._payload), max_recent_calls)
        except (ValueError, TypeError) as e:
            raise PersistenceDegraded(f"Malformed ledger record: {e}") from e

    def save(self, state: LedgerState) -> None:
        self._payload = json.dumps(state.to_payload())
        self.save_count += 1


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_ledger table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(_CREATE_TABLE)
        conn.commit()
    finally:
        conn.close()
