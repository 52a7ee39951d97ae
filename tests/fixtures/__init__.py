"""Test fixture package for blobsync.

Contains fixtures for:
- Content stores and usage ledgers in temporary directories
- Scripted blob fetchers for transfer tests
"""

from .content_store import FakeClock, make_blob
from .transfer import ScriptedFetcher

__all__ = ["FakeClock", "ScriptedFetcher", "make_blob"]
