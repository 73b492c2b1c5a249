"""SQLAlchemy model for persisted clone jobs."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class CloneJobRow(Base):
    """One clone run, including its resumable checkpoint."""

    __tablename__ = "clone_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    options: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    output_dir: Mapped[str] = mapped_column(Text, nullable=False)

    pages_cloned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pages_cached: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pages_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    assets_captured: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    errors: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    verification: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    checkpoint: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_clone_jobs_status_created", "status", "created_at"),
    )
