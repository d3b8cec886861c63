"""SQLAlchemy ORM tables for the change detection database.

Tables:
- change_events     - append-only change event history, unique per
                      (entity_type, entity_id, sequence_key)
- entity_snapshots  - last known normalized snapshot per entity, with the
                      last emitted sequence key and lifecycle state

Registry tables (companies, entrepreneurs, founders, ...) are owned by the
ingestion pipeline and are only read through raw SQL in registry.py.
"""

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import BigInteger, Boolean, Date, DateTime, Index, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for change detection tables."""


class ChangeEventRow(Base):
    """Persisted ChangeEvent.

    Rows are never updated or deleted. Re-inserting an event with the same
    (entity_type, entity_id, sequence_key) is a no-op, which makes batch
    submission idempotent.

    Attributes:
        id: Deterministic event id (UUIDv5 of type, entity id and sequence key).
        entity_type: company | entrepreneur.
        entity_id: OGRN / OGRNIP.
        sequence_key: Per-entity monotonic ordering key.
        category: Change category.
        deltas: Ordered list of field deltas (JSONB array).
        observed_at: When the comparison ran.
        is_significant: Significance flag for downstream alerting.
        description: Human-readable summary.
        entity_name: Entity name at observation time.
        inn: Entity taxpayer id at observation time.
        region_code: Entity region code at observation time.
        fingerprint: SHA-256 of entity, category and deltas.
        created_at: Insert timestamp.
    """

    __tablename__ = "change_events"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "sequence_key", name="uq_change_events_entity_sequence"),
        Index("ix_change_events_type_observed", "entity_type", "observed_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(15), nullable=False, index=True)
    sequence_key: Mapped[int] = mapped_column(BigInteger, nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    deltas: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_significant: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    entity_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    inn: Mapped[str | None] = mapped_column(String(12), nullable=True)
    region_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class EntitySnapshotRow(Base):
    """Last known snapshot of one entity.

    Attributes:
        entity_type: company | entrepreneur.
        entity_id: OGRN / OGRNIP.
        payload: NormalizedSnapshot as JSON.
        last_sequence: Highest sequence key emitted for the entity.
        state: baselined | observed.
        extract_date: Extract date of the stored snapshot.
        updated_at: When the record was last written.
    """

    __tablename__ = "entity_snapshots"

    entity_type: Mapped[str] = mapped_column(String(20), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(15), primary_key=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    last_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    extract_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
