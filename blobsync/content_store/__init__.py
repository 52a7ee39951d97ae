"""Content-addressed blob store."""

from blobsync.content_store.models import ContentEntry
from blobsync.content_store.store import ContentStore

__all__ = ["ContentEntry", "ContentStore"]
