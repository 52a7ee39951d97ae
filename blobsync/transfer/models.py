"""Data models for blob transfers."""

from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from blobsync.content_store.models import ContentEntry

BlobFetcher = Callable[[str], AsyncIterator[bytes]]
"""Streams the bytes of a blob by hash.

Raises ``NotFoundError`` when the remote side does not have it and
``TransientNetworkError`` for failures worth retrying.
"""


class FetchState(Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"


class OutcomeKind(Enum):
    ALREADY_CACHED = "already_cached"
    FETCHED = "fetched"
    FAILED = "failed"


@dataclass(frozen=True)
class WantedBlob:
    """A blob a peer references, with its announced size when known."""

    hash: str
    size_bytes: Optional[int] = None


@dataclass
class FetchTask:
    """In-memory bookkeeping for one hash being fetched."""

    hash: str
    requested_at: datetime
    state: FetchState = FetchState.PENDING
    attempts: int = 0


@dataclass(frozen=True)
class FetchOutcome:
    hash: str
    kind: OutcomeKind
    reason: Optional[str] = None
    entry: Optional[ContentEntry] = None

    @property
    def ok(self) -> bool:
        return self.kind is not OutcomeKind.FAILED

    @classmethod
    def already_cached(cls, content_hash: str) -> "FetchOutcome":
        return cls(content_hash, OutcomeKind.ALREADY_CACHED)

    @classmethod
    def fetched(cls, content_hash: str, entry: ContentEntry) -> "FetchOutcome":
        return cls(content_hash, OutcomeKind.FETCHED, entry=entry)

    @classmethod
    def failed(cls, content_hash: str, reason: str) -> "FetchOutcome":
        return cls(content_hash, OutcomeKind.FAILED, reason=reason)
