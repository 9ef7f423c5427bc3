from __future__ import annotations

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from narrator.models.base import Base


class CaptureRecordRow(Base):
    __tablename__ = "capture_records"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    image_ref: Mapped[str] = mapped_column(String(800), nullable=False)
    source: Mapped[str] = mapped_column(String(30), nullable=False, default="scheduled")

    status: Mapped[str] = mapped_column(String(20), nullable=False)  # pending/queued/processing/described/failed
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(String(30), nullable=True)
    used_fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Display only; identity is the id column.
    captured_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
