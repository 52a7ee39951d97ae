"""Forward-only schema migrations for the usage ledger.

The applied version is kept in ``PRAGMA user_version``.
"""

import sqlite3
from typing import Callable

from blobsync.core.logging import get_logger

logger = get_logger("blobsync.ledger.migrations")


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1].lower() for row in conn.execute(f"PRAGMA table_info({table})")}


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    if column.lower() not in _table_columns(conn, table):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def _v1_create_tables(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS file_hash_uid (
            uid TEXT NOT NULL,
            file_hash TEXT NOT NULL,
            first_seen_at TEXT NOT NULL,
            last_seen_at TEXT NOT NULL,
            seen_count INTEGER NOT NULL DEFAULT 1,
            PRIMARY KEY (uid, file_hash)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS file_hash_seen_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            file_hash TEXT NOT NULL,
            uid TEXT,
            seen_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_file_hash_seen_events "
        "ON file_hash_seen_events(file_hash, seen_at DESC)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_file_hash_uid_last_seen "
        "ON file_hash_uid(last_seen_at DESC)"
    )


def _v2_lookup_indexes(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE INDEX IF NOT EXISTS idx_file_hash_uid_hash ON file_hash_uid(file_hash)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_file_hash_seen_events_hash_uid "
        "ON file_hash_seen_events(file_hash, uid, seen_at DESC)"
    )
    # Databases created before seen_count existed
    _ensure_column(conn, "file_hash_uid", "seen_count", "INTEGER")
    conn.execute("UPDATE file_hash_uid SET seen_count = 1 WHERE seen_count IS NULL")


# Index i migrates from version i to version i + 1
MIGRATIONS: list[Callable[[sqlite3.Connection], None]] = [
    _v1_create_tables,
    _v2_lookup_indexes,
]

LATEST_VERSION = len(MIGRATIONS)


def get_user_version(conn: sqlite3.Connection) -> int:
    return conn.execute("PRAGMA user_version").fetchone()[0]


def apply_migrations(conn: sqlite3.Connection) -> int:
    """Bring the schema up to ``LATEST_VERSION`` in a single transaction.

    Args:
        conn: Connection in autocommit mode (``isolation_level=None``)

    Returns:
        The resulting schema version
    """
    version = get_user_version(conn)
    if version >= LATEST_VERSION:
        return version

    conn.execute("BEGIN IMMEDIATE")
    try:
        for target, migration in enumerate(MIGRATIONS[version:], start=version + 1):
            migration(conn)
            conn.execute(f"PRAGMA user_version = {target}")
            logger.info("ledger_migration_applied", version=target)
        conn.execute("COMMIT")
    except BaseException:
        conn.execute("ROLLBACK")
        raise

    return get_user_version(conn)
