"""Configuration for content store."""

from pathlib import Path
from typing import Optional

from blobsync.content_store.store import ContentStore
from blobsync.core.config import Settings, settings as default_settings

# Global instance
_content_store_instance: Optional[ContentStore] = None
_content_store_initialized = False


def get_content_store(app_settings: Optional[Settings] = None) -> ContentStore | None:
    """Get the configured content store instance.

    Reads ``CACHE_PATH`` from settings; the store is disabled when it is unset.

    Returns:
        ContentStore instance or None if not configured
    """
    global _content_store_instance, _content_store_initialized

    if not _content_store_initialized:
        _content_store_instance = _create_content_store(app_settings or default_settings)
        _content_store_initialized = True

    return _content_store_instance


def reset_content_store() -> None:
    """Reset content store singleton. Used for testing."""
    global _content_store_instance, _content_store_initialized
    _content_store_instance = None
    _content_store_initialized = False


def _create_content_store(app_settings: Settings) -> ContentStore | None:
    """Create content store based on settings."""
    if app_settings.CACHE_PATH is None:
        return None

    store_path = Path(app_settings.CACHE_PATH).expanduser()

    # Create directory if it doesn't exist
    store_path.mkdir(parents=True, exist_ok=True)

    return ContentStore(store_path=store_path)
