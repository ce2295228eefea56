"""SQLite-backed key/value blob store for hourbook state."""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger("hourbook.db")

SCHEMA = """
CREATE TABLE IF NOT EXISTS hourbook_kv (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (namespace, key)
);
"""


def init_db(db_path: Path) -> None:
    """Initialize database with schema."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        conn.executescript(SCHEMA)
    conn.close()
    logger.debug("Initialized database at %s", db_path)


@contextmanager
def get_db(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Get database connection with row factory."""
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


# ============================================================================
# Key-Value Store
# ============================================================================


def kv_get(conn: sqlite3.Connection, namespace: str, key: str) -> dict | None:
    """Get a value from the KV store. Returns dict with value and updated_at, or None."""
    cursor = conn.execute(
        "SELECT value, updated_at FROM hourbook_kv WHERE namespace = ? AND key = ?",
        (namespace, key),
    )
    row = cursor.fetchone()
    if row is None:
        return None
    return {"value": row["value"], "updated_at": row["updated_at"]}


def kv_set(conn: sqlite3.Connection, namespace: str, key: str, value: str) -> None:
    """Set a value in the KV store. Upserts if key already exists."""
    conn.execute(
        """
        INSERT INTO hourbook_kv (namespace, key, value, updated_at)
        VALUES (?, ?, ?, datetime('now'))
        ON CONFLICT(namespace, key) DO UPDATE SET
            value = excluded.value,
            updated_at = excluded.updated_at
        """,
        (namespace, key, value),
    )


def kv_delete(conn: sqlite3.Connection, namespace: str, key: str) -> bool:
    """Delete a key from the KV store. Returns True if key existed."""
    cursor = conn.execute(
        "DELETE FROM hourbook_kv WHERE namespace = ? AND key = ?",
        (namespace, key),
    )
    return cursor.rowcount > 0


def kv_list(conn: sqlite3.Connection, namespace: str) -> list[dict]:
    """List all entries in a namespace. Returns list of dicts with key, value, updated_at."""
    cursor = conn.execute(
        "SELECT key, value, updated_at FROM hourbook_kv WHERE namespace = ? ORDER BY key",
        (namespace,),
    )
    return [
        {"key": row["key"], "value": row["value"], "updated_at": row["updated_at"]}
        for row in cursor.fetchall()
    ]
