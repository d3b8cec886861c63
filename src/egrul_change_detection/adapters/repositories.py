"""SQLAlchemy repositories for the change detection database.

Each repository implements the corresponding protocol from core/interfaces.py.
Repositories take the session factory rather than a session: change events
of every entity are written in their own transaction so a failing entity
never rolls back the others.

Repositories:
- SqlChangeRepository  - IChangePersistence over change_events
- SqlSnapshotStore     - ISnapshotStore over entity_snapshots

SQLAlchemy errors are wrapped into DependencyError at this boundary.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from egrul_change_detection.adapters.tables import ChangeEventRow, EntitySnapshotRow
from egrul_change_detection.core.interfaces import SaveResult
from egrul_change_detection.core.models import (
    ChangeEvent,
    EntityState,
    EntityType,
    NormalizedSnapshot,
    SnapshotRecord,
)
from egrul_change_detection.errors import DependencyError
from egrul_change_detection.observability import get_logger

logger = get_logger(__name__)


def event_to_values(event: ChangeEvent) -> dict[str, Any]:
    """Map a ChangeEvent onto change_events column values."""
    return {
        "id": event.event_id,
        "entity_type": event.entity_type.value,
        "entity_id": event.entity_id,
        "sequence_key": event.sequence_key,
        "category": event.category.value,
        "deltas": [delta.model_dump(mode="json") for delta in event.deltas],
        "observed_at": event.observed_at,
        "is_significant": event.is_significant,
        "description": event.description,
        "entity_name": event.entity_name,
        "inn": event.inn,
        "region_code": event.region_code,
        "fingerprint": event.fingerprint(),
    }


def row_to_event(row: ChangeEventRow) -> ChangeEvent:
    """Rebuild a ChangeEvent from its change_events row."""
    return ChangeEvent(
        event_id=row.id,
        entity_type=EntityType(row.entity_type),
        entity_id=row.entity_id,
        category=row.category,
        deltas=tuple(row.deltas),
        observed_at=row.observed_at,
        sequence_key=row.sequence_key,
        is_significant=row.is_significant,
        description=row.description,
        entity_name=row.entity_name,
        inn=row.inn,
        region_code=row.region_code,
    )


class SqlChangeRepository:
    """Idempotent change event persistence on PostgreSQL.

    Inserts use ON CONFLICT DO NOTHING, so resubmitting an event with an
    already stored (entity_type, entity_id, sequence_key) succeeds without
    creating a duplicate row.

    Args:
        session_factory: Session factory of the change database.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _insert_entity_events(self, events: Sequence[ChangeEvent]) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                stmt = (
                    pg_insert(ChangeEventRow)
                    .values([event_to_values(event) for event in events])
                    .on_conflict_do_nothing()
                )
                await session.execute(stmt)

    async def save_batch(self, entity_type: EntityType, events: Sequence[ChangeEvent]) -> SaveResult:
        """Persist events, one transaction per entity.

        Args:
            entity_type: Type shared by the events.
            events: Events of one or more entities.

        Returns:
            SaveResult naming every entity of the batch.
        """
        by_entity: dict[str, list[ChangeEvent]] = {}
        for event in events:
            by_entity.setdefault(event.entity_id, []).append(event)

        succeeded: set[str] = set()
        failed: dict[str, str] = {}
        for entity_id, entity_events in by_entity.items():
            try:
                await self._insert_entity_events(entity_events)
            except SQLAlchemyError as exc:
                logger.error(
                    "Failed to save change events",
                    entity_type=entity_type.value,
                    entity_id=entity_id,
                    changes_count=len(entity_events),
                    error=str(exc),
                )
                failed[entity_id] = str(exc)
                continue
            succeeded.add(entity_id)

        logger.info(
            "Change events saved",
            entity_type=entity_type.value,
            succeeded=len(succeeded),
            failed=len(failed),
        )
        return SaveResult(succeeded=frozenset(succeeded), failed=failed)

    async def get_history(self, entity_type: EntityType, entity_id: str, limit: int) -> list[ChangeEvent]:
        """Return up to `limit` events of an entity, newest sequence key first.

        Raises:
            DependencyError: If the query fails.
        """
        stmt = (
            select(ChangeEventRow)
            .where(
                ChangeEventRow.entity_type == entity_type.value,
                ChangeEventRow.entity_id == entity_id,
            )
            .order_by(ChangeEventRow.sequence_key.desc())
            .limit(limit)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            raise DependencyError("change_store", str(exc)) from exc
        return [row_to_event(row) for row in rows]

    async def get_recent(self, entity_type: EntityType, since: datetime) -> list[ChangeEvent]:
        """Return events observed at or after `since`, newest first.

        Raises:
            DependencyError: If the query fails.
        """
        stmt = (
            select(ChangeEventRow)
            .where(
                ChangeEventRow.entity_type == entity_type.value,
                ChangeEventRow.observed_at >= since,
            )
            .order_by(ChangeEventRow.observed_at.desc(), ChangeEventRow.sequence_key.desc())
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            raise DependencyError("change_store", str(exc)) from exc
        return [row_to_event(row) for row in rows]


class SqlSnapshotStore:
    """Last known snapshot store on PostgreSQL.

    Args:
        session_factory: Session factory of the change database.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_last_known(self, entity_type: EntityType, entity_id: str) -> SnapshotRecord | None:
        """Return the stored record of an entity, or None when unseen.

        Raises:
            DependencyError: If the query fails.
        """
        try:
            async with self._session_factory() as session:
                row = await session.get(EntitySnapshotRow, (entity_type.value, entity_id))
        except SQLAlchemyError as exc:
            raise DependencyError("snapshot_store", str(exc)) from exc
        if row is None:
            return None
        return SnapshotRecord(
            snapshot=NormalizedSnapshot.model_validate(row.payload),
            last_sequence=row.last_sequence,
            state=EntityState(row.state),
            updated_at=row.updated_at,
        )

    async def save(self, record: SnapshotRecord) -> None:
        """Insert or replace the record of the snapshot's entity.

        Raises:
            DependencyError: If the upsert fails.
        """
        snapshot = record.snapshot
        values = {
            "entity_type": snapshot.entity_type.value,
            "entity_id": snapshot.entity_id,
            "payload": snapshot.model_dump(mode="json"),
            "last_sequence": record.last_sequence,
            "state": record.state.value,
            "extract_date": snapshot.extract_date,
            "updated_at": record.updated_at,
        }
        stmt = pg_insert(EntitySnapshotRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[EntitySnapshotRow.entity_type, EntitySnapshotRow.entity_id],
            set_={
                "payload": stmt.excluded.payload,
                "last_sequence": stmt.excluded.last_sequence,
                "state": stmt.excluded.state,
                "extract_date": stmt.excluded.extract_date,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(stmt)
        except SQLAlchemyError as exc:
            raise DependencyError("snapshot_store", str(exc)) from exc
        logger.debug(
            "Snapshot saved",
            entity_type=snapshot.entity_type.value,
            entity_id=snapshot.entity_id,
            state=record.state.value,
        )
