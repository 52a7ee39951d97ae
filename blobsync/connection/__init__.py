"""Connection resilience for the real-time channel."""

from blobsync.connection.resilience import ConnectionMonitor, ConnectionState

__all__ = ["ConnectionMonitor", "ConnectionState"]
