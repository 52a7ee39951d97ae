"""Size-budget eviction for the content store."""

from blobsync.eviction.engine import EvictionEngine, EvictionReport
from blobsync.eviction.policies import effective_last_access, rank_for_eviction

__all__ = ["EvictionEngine", "EvictionReport", "effective_last_access", "rank_for_eviction"]
