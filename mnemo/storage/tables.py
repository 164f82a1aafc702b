"""SQLAlchemy table definitions shared by the embedded and networked stores."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from mnemo.models.schemas import MemoryStatus, utcnow


class Base(DeclarativeBase):
    pass


class MemoryRow(Base):
    __tablename__ = "memories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    category: Mapped[str] = mapped_column(String(255), index=True)
    topic: Mapped[str] = mapped_column(String(500), default="")
    content: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    status: Mapped[str] = mapped_column(
        String(32), default=MemoryStatus.PENDING.value, index=True
    )
    vector_indexed: Mapped[bool] = mapped_column(Boolean, default=False)
    graph_indexed: Mapped[bool] = mapped_column(Boolean, default=False)
    enrichment_attempts: Mapped[int] = mapped_column(Integer, default=0)
    index_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    purged: Mapped[bool] = mapped_column(Boolean, default=False)


class EnrichmentRow(Base):
    __tablename__ = "enrichment_results"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    memory_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("memories.id"), index=True
    )
    label: Mapped[str] = mapped_column(String(32))
    concepts: Mapped[list[str]] = mapped_column(JSON, default=list)
    relations: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    provider: Mapped[str] = mapped_column(String(64))
    model: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


MEMORY_COLUMNS = [column.name for column in MemoryRow.__table__.columns]
ENRICHMENT_COLUMNS = [column.name for column in EnrichmentRow.__table__.columns]
