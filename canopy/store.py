"""SQLite key/value store backing the node registry.

The registry keeps its state as JSON documents under a handful of keys. The
store knows nothing about their shape.
"""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any


class StoreError(Exception):
    """Raised when a store operation fails."""

    pass


# SQLite allows concurrent reads but only one writer at a time; the CLI,
# health-check workers and pollers may all touch the store.
_store_lock = threading.Lock()


def init_store(db_path: str) -> sqlite3.Connection:
    """Open the store database and create the table if it doesn't exist.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        StoreError: If initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise StoreError(f"Failed to initialize store: {e}")
    except OSError as e:
        raise StoreError(f"Failed to create store directory: {e}")


class NodeStore:
    """JSON values keyed by name, persisted in a SQLite ``kv`` table."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    @classmethod
    def open(cls, db_path: str) -> "NodeStore":
        return cls(init_store(db_path))

    def get(self, key: str, default: Any = None) -> Any:
        """Return the decoded value for ``key``, or ``default`` if absent.

        A value that is no longer valid JSON is treated as absent.
        """
        try:
            with _store_lock:
                row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read '{key}': {e}")

        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            return default

    def set(self, key: str, value: Any) -> None:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Value for '{key}' is not JSON serializable: {e}")

        try:
            with _store_lock:
                self._conn.execute(
                    "INSERT INTO kv (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, encoded),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to write '{key}': {e}")

    def delete(self, key: str) -> None:
        try:
            with _store_lock:
                self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete '{key}': {e}")

    def close(self) -> None:
        self._conn.close()
