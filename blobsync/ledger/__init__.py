"""Usage ledger: which peer presented which content hash, and when."""

from blobsync.ledger.ledger import UsageLedger
from blobsync.ledger.models import UsageRecord, UsageStatistics

__all__ = ["UsageLedger", "UsageRecord", "UsageStatistics"]
