"""SQLAlchemy model for deduplicated asset files."""

from typing import Optional

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class AssetRecord(Base):
    """One stored asset file; identical bytes collapse onto one row."""

    __tablename__ = "asset_records"

    content_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    local_path: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Size of the downloaded bytes
    byte_size: Mapped[int] = mapped_column(Integer, nullable=False)

    # Hash and size of the file as written, after optimization
    stored_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    stored_size: Mapped[int] = mapped_column(Integer, nullable=False)

    optimized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reference_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
