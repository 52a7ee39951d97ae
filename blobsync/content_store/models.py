"""Data models for content store."""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path


@dataclass(frozen=True)
class ContentEntry:
    """Represents one blob held in the content store."""

    hash: str
    size_bytes: int
    created_at: datetime
    last_accessed_at: datetime
    path: Path

    @property
    def reread_locally(self) -> bool:
        """Whether the entry was read or reused after it was first stored."""
        return self.last_accessed_at > self.created_at
