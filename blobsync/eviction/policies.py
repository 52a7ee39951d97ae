"""Victim ordering for each eviction policy."""

from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta

from blobsync.content_store.models import ContentEntry
from blobsync.core.config import EvictionPolicy
from blobsync.ledger.models import UsageStatistics


def effective_last_access(
    entry: ContentEntry,
    usage: Mapping[str, UsageStatistics],
    ledger_fallback: bool = True,
) -> datetime:
    """Last access used for recency ordering.

    The local ``last_accessed_at`` wins for entries read again after they were
    stored. Entries never re-read locally fall back to the later of their
    local timestamp and the last peer sighting in the ledger.
    """
    if not ledger_fallback or entry.reread_locally:
        return entry.last_accessed_at

    stats = usage.get(entry.hash)
    if stats is not None and stats.last_seen is not None and stats.last_seen > entry.last_accessed_at:
        return stats.last_seen
    return entry.last_accessed_at


def rank_for_eviction(
    entries: Iterable[ContentEntry],
    policy: EvictionPolicy,
    usage: Mapping[str, UsageStatistics],
    now: datetime,
    max_age: timedelta,
    ledger_fallback: bool = True,
) -> list[ContentEntry]:
    """Order entries so that the first one is the first to evict.

    Args:
        entries: Candidate entries
        policy: Active eviction policy
        usage: Per-hash ledger statistics, may be empty
        now: Current time, for expiration
        max_age: Age after which an entry is expired
        ledger_fallback: Consult the ledger for entries never re-read locally

    Returns:
        Entries in eviction order
    """

    def recency_key(entry: ContentEntry) -> tuple:
        return (effective_last_access(entry, usage, ledger_fallback), entry.hash)

    if policy is EvictionPolicy.RECENCY:
        return sorted(entries, key=recency_key)

    if policy is EvictionPolicy.FREQUENCY:

        def frequency_key(entry: ContentEntry) -> tuple:
            stats = usage.get(entry.hash)
            seen = stats.seen_count if stats is not None else 0
            return (seen, entry.last_accessed_at, entry.hash)

        return sorted(entries, key=frequency_key)

    if policy is EvictionPolicy.EXPIRATION:
        cutoff = now - max_age
        expired: list[ContentEntry] = []
        fresh: list[ContentEntry] = []
        for entry in entries:
            (expired if entry.created_at < cutoff else fresh).append(entry)
        expired.sort(key=lambda e: (e.created_at, e.hash))
        return expired + sorted(fresh, key=recency_key)

    raise ValueError(f"Unknown eviction policy: {policy}")
