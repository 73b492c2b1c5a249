"""SQLAlchemy models for the sitemirror database."""

from .base import Base
from .jobs import CloneJobRow
from .cache import CacheEntry, UrlIndexEntry
from .assets import AssetRecord
from .queue import QueueTask

__all__ = [
    "Base",
    "CloneJobRow",
    "CacheEntry",
    "UrlIndexEntry",
    "AssetRecord",
    "QueueTask",
]
