"""Durable record of which peer presented which content hash, and when."""

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

from blobsync.core.errors import LedgerWriteError
from blobsync.core.logging import get_logger
from blobsync.core.retry import with_transaction_retry
from blobsync.core.timestamps import format_timestamp, parse_timestamp, utcnow
from blobsync.ledger.migrations import apply_migrations, get_user_version
from blobsync.ledger.models import UsageRecord, UsageStatistics

logger = get_logger("blobsync.ledger")


def _normalize(content_hash: Optional[str]) -> str:
    return (content_hash or "").strip().upper()


class UsageLedger:
    """Usage bookkeeping backing frequency and recency eviction.

    Two tables: ``file_hash_uid`` aggregates sightings per (peer, hash) and
    ``file_hash_seen_events`` is an append-only log of every sighting. Both
    are written in one transaction, so ``seen_count`` always equals the
    number of matching event rows.

    Usage tracking is best effort: write failures are logged and dropped and
    never reach the caller.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            self._schema_version = apply_migrations(conn)

        logger.info("ledger_initialized", path=str(self.db_path), schema_version=self._schema_version)

    @property
    def schema_version(self) -> int:
        return self._schema_version

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        # Autocommit mode: transactions are opened explicitly
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        try:
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            yield conn
        finally:
            conn.close()

    def current_version(self) -> int:
        """Read the schema version stored in the database file."""
        with self._connect() as conn:
            return get_user_version(conn)

    # -- writes ----------------------------------------------------------------

    def record_seen(self, peer_id: str, content_hash: str, at: Optional[datetime] = None) -> None:
        """Record that ``peer_id`` presented ``content_hash``.

        No-op when either argument is blank. Never raises.
        """
        peer_id = (peer_id or "").strip()
        content_hash = _normalize(content_hash)
        if not peer_id or not content_hash:
            return

        failure = self._try_record_seen(peer_id, content_hash, at or utcnow())
        if failure is not None:
            logger.warning(
                "usage_record_failed", peer_id=peer_id, hash=content_hash, error=str(failure)
            )

    def _try_record_seen(
        self, peer_id: Optional[str], content_hash: str, at: datetime
    ) -> LedgerWriteError | None:
        try:
            self._write_sighting(peer_id, content_hash, format_timestamp(at))
        except (sqlite3.Error, OSError) as e:
            return LedgerWriteError(f"Failed to record usage of {content_hash}: {e}")
        return None

    def record_anonymous(self, content_hash: str, at: Optional[datetime] = None) -> None:
        """Log a sighting with no known peer.

        Only the event log is written; per-peer aggregates are untouched.
        """
        content_hash = _normalize(content_hash)
        if not content_hash:
            return

        failure = self._try_record_seen(None, content_hash, at or utcnow())
        if failure is not None:
            logger.warning("usage_record_failed", hash=content_hash, error=str(failure))

    @with_transaction_retry
    def _write_sighting(self, peer_id: Optional[str], content_hash: str, seen_at: str) -> None:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    "INSERT INTO file_hash_seen_events (file_hash, uid, seen_at) VALUES (?, ?, ?)",
                    (content_hash, peer_id, seen_at),
                )
                if peer_id is not None:
                    conn.execute(
                        """
                        INSERT INTO file_hash_uid
                            (uid, file_hash, first_seen_at, last_seen_at, seen_count)
                        VALUES (?, ?, ?, ?, 1)
                        ON CONFLICT(uid, file_hash) DO UPDATE SET
                            first_seen_at = MIN(first_seen_at, excluded.first_seen_at),
                            last_seen_at = MAX(last_seen_at, excluded.last_seen_at),
                            seen_count = seen_count + 1
                        """,
                        (peer_id, content_hash, seen_at, seen_at),
                    )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    # -- reads -------------------------------------------------------------------

    def frequency_rank(self, content_hash: str) -> int:
        """Total sightings of ``content_hash`` across all peers."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT COALESCE(SUM(seen_count), 0) FROM file_hash_uid WHERE file_hash = ?",
                    (_normalize(content_hash),),
                ).fetchone()
        except sqlite3.Error as e:
            logger.warning("usage_read_failed", hash=content_hash, error=str(e))
            return 0
        return int(row[0])

    def last_global_seen(self, content_hash: str) -> datetime | None:
        """Most recent sighting of ``content_hash`` by anyone, or None."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT MAX(seen_at) FROM file_hash_seen_events WHERE file_hash = ?",
                    (_normalize(content_hash),),
                ).fetchone()
        except sqlite3.Error as e:
            logger.warning("usage_read_failed", hash=content_hash, error=str(e))
            return None
        return parse_timestamp(row[0]) if row and row[0] else None

    def usage_record(self, peer_id: str, content_hash: str) -> UsageRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT uid, file_hash, first_seen_at, last_seen_at, seen_count "
                "FROM file_hash_uid WHERE uid = ? AND file_hash = ?",
                (peer_id, _normalize(content_hash)),
            ).fetchone()
        if row is None:
            return None
        return UsageRecord(
            peer_id=row[0],
            hash=row[1],
            first_seen_at=parse_timestamp(row[2]),
            last_seen_at=parse_timestamp(row[3]),
            seen_count=row[4],
        )

    def count_events(self, content_hash: str, peer_id: Optional[str] = None) -> int:
        """Number of logged sightings, optionally restricted to one peer."""
        query = "SELECT COUNT(*) FROM file_hash_seen_events WHERE file_hash = ?"
        params: tuple = (_normalize(content_hash),)
        if peer_id is not None:
            query += " AND uid = ?"
            params += (peer_id,)
        with self._connect() as conn:
            return conn.execute(query, params).fetchone()[0]

    def aggregated_usage(self) -> dict[str, UsageStatistics]:
        """Usage of every known hash, summed over peers, in two queries.

        Returns an empty mapping if the ledger cannot be read.
        """
        counts: dict[str, int] = {}
        last_seen: dict[str, datetime] = {}
        try:
            with self._connect() as conn:
                for content_hash, total in conn.execute(
                    "SELECT file_hash, SUM(seen_count) FROM file_hash_uid GROUP BY file_hash"
                ):
                    counts[content_hash.upper()] = int(total or 0)
                for content_hash, seen_at in conn.execute(
                    "SELECT file_hash, MAX(seen_at) FROM file_hash_seen_events GROUP BY file_hash"
                ):
                    if seen_at:
                        last_seen[content_hash.upper()] = parse_timestamp(seen_at)
        except sqlite3.Error as e:
            logger.warning("usage_aggregate_failed", error=str(e))
            return {}

        return {
            content_hash: UsageStatistics(
                seen_count=counts.get(content_hash, 0),
                last_seen=last_seen.get(content_hash),
            )
            for content_hash in counts.keys() | last_seen.keys()
        }
