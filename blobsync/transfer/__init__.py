"""Concurrent, deduplicated downloads into the content store."""

from blobsync.transfer.http_fetcher import HttpBlobFetcher
from blobsync.transfer.models import (
    BlobFetcher,
    FetchOutcome,
    FetchState,
    FetchTask,
    OutcomeKind,
    WantedBlob,
)
from blobsync.transfer.orchestrator import TransferOrchestrator
from blobsync.transfer.throttle import TokenBucket

__all__ = [
    "BlobFetcher",
    "FetchOutcome",
    "FetchState",
    "FetchTask",
    "HttpBlobFetcher",
    "OutcomeKind",
    "TokenBucket",
    "TransferOrchestrator",
    "WantedBlob",
]
