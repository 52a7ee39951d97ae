"""Content-addressed blob cache with usage-aware eviction and deduplicated transfers."""

__version__ = "0.1.0"
