"""SQLAlchemy models for the content-addressed cache."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, LargeBinary, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class CacheEntry(Base):
    """Payload stored under the sha256 of its bytes."""

    __tablename__ = "cache_entries"

    content_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    content_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    byte_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    ttl_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    access_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_accessed: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_cache_entries_expires", "expires_at"),
    )

    def is_expired(self, current_time: Optional[datetime] = None) -> bool:
        """Check if the entry is past its TTL."""
        if self.expires_at is None:
            return False
        if current_time is None:
            current_time = datetime.utcnow()
        return current_time >= self.expires_at


class UrlIndexEntry(Base):
    """Maps a canonical URL to the content hash it last produced."""

    __tablename__ = "cache_url_index"

    url: Mapped[str] = mapped_column(Text, primary_key=True)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Validators and body hash of the cheap change-check response, for incremental runs
    raw_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    etag: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    last_modified: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    fetched_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
