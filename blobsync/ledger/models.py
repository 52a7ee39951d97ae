"""Data models for the usage ledger."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class UsageRecord:
    """A peer having presented a hash, aggregated over all sightings."""

    peer_id: str
    hash: str
    first_seen_at: datetime
    last_seen_at: datetime
    seen_count: int


@dataclass(frozen=True)
class UsageStatistics:
    """Usage of one hash summed over every peer."""

    seen_count: int
    last_seen: Optional[datetime]
