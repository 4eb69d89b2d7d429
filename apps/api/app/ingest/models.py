from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IngestFile(Base):
    __tablename__ = "ingest_file"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    table_name: Mapped[str] = mapped_column(String(255), nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ingest_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    table_schema: Mapped[IngestTableSchema | None] = relationship(
        "IngestTableSchema",
        back_populates="file",
        uselist=False,
        cascade="all, delete-orphan",
    )


class IngestTableSchema(Base):
    __tablename__ = "ingest_table_schema"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    file_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("ingest_file.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    company_id: Mapped[str] = mapped_column(String(128), nullable=False)
    table_name: Mapped[str] = mapped_column(String(255), nullable=False)
    definition: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    file: Mapped[IngestFile] = relationship("IngestFile", back_populates="table_schema")
    rows: Mapped[list[IngestTableRow]] = relationship(
        "IngestTableRow",
        back_populates="table_schema",
        cascade="all, delete-orphan",
        order_by="IngestTableRow.row_index",
    )

    __table_args__ = (UniqueConstraint("company_id", "table_name", name="uq_ingest_table_schema_company_table"),)


class IngestTableRow(Base):
    __tablename__ = "ingest_table_row"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schema_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("ingest_table_schema.id", ondelete="CASCADE"),
        nullable=False,
    )
    row_index: Mapped[int] = mapped_column(Integer, nullable=False)
    cells: Mapped[list[str]] = mapped_column(JSON, nullable=False)

    table_schema: Mapped[IngestTableSchema] = relationship("IngestTableSchema", back_populates="rows")

    __table_args__ = (Index("ix_ingest_table_row_schema_index", "schema_id", "row_index"),)
