"""Error taxonomy shared by the cache, ledger and transfer layers."""


class BlobsyncError(Exception):
    """Base class for all blobsync errors."""


class IoFailureError(BlobsyncError):
    """Raised when a disk read or write fails for a specific operation."""

    def __init__(self, message: str, path: object = None):
        self.path = path
        super().__init__(message)


class CorruptTransferError(BlobsyncError):
    """Raised when received bytes do not hash to the claimed key."""

    def __init__(self, expected: str, actual: str | None = None, reason: str | None = None):
        self.expected = expected
        self.actual = actual
        if reason is None:
            reason = f"content hashed to {actual}"
        super().__init__(f"Corrupt transfer for {expected}: {reason}")


class NotFoundError(BlobsyncError):
    """Raised when a hash is absent locally and cannot be fetched."""

    def __init__(self, content_hash: str):
        self.content_hash = content_hash
        super().__init__(f"Content {content_hash} not found")


class TransientNetworkError(BlobsyncError):
    """Raised when a fetch attempt failed but may succeed on retry."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class LedgerWriteError(BlobsyncError):
    """Usage recording failed. Never escapes the usage ledger."""
