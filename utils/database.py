"""Database utilities for the CNC index ingestion tools.

Provides reusable functions for:
- Connection creation with the standard pragmas
- Batch insert operations
- Small schema introspection helpers
"""

import sqlite3
from pathlib import Path
from typing import List, Union


def init_pragmas(conn: sqlite3.Connection, foreign_keys: bool = True) -> None:
    """Initialize SQLite performance and reliability pragmas.

    - WAL mode for concurrent read/write
    - NORMAL synchronous mode for speed without data loss
    - Memory temp store and a larger page cache
    - Foreign key enforcement (metadata rows reference their record)

    Args:
        conn: SQLite connection to configure
        foreign_keys: Enable ``PRAGMA foreign_keys`` (default: True)
    """
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA temp_store=MEMORY")
    conn.execute("PRAGMA cache_size=-64000")
    if foreign_keys:
        conn.execute("PRAGMA foreign_keys=ON")


def create_connection(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Open a SQLite connection with ``sqlite3.Row`` rows and standard pragmas.

    ``":memory:"`` is accepted for tests; any other path has its parent
    directory created first.
    """
    target = str(db_path)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(target, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    init_pragmas(conn)
    return conn


def batch_insert(conn: sqlite3.Connection, query: str, rows: List[tuple],
                 batch_size: int = 500) -> int:
    """Execute batch inserts without committing.

    The caller owns the transaction, so a failure part-way through can be
    rolled back as a unit.

    Args:
        conn: SQLite connection
        query: SQL INSERT query with ? placeholders
        rows: List of tuples to insert
        batch_size: Number of rows per executemany call

    Returns:
        Total number of rows inserted
    """
    total_inserted = 0
    for i in range(0, len(rows), batch_size):
        batch = rows[i:i + batch_size]
        conn.executemany(query, batch)
        total_inserted += len(batch)
    return total_inserted


def get_table_count(conn: sqlite3.Connection, table: str) -> int:
    """Get row count for a table."""
    result = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}").fetchone()
    return result[0] if result else 0


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    """Check if a table exists in the database."""
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table,)
    )
    return cursor.fetchone() is not None
