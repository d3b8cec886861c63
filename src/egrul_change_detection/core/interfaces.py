"""Abstract interfaces (Protocol classes) for the change detection engine.

Defines the contracts between the service layer and the adapter layer using
Python's typing.Protocol. Services depend on these protocols, never on
concrete adapter implementations, so tests can run against the in-memory
adapters or mocks.

Protocols defined:
- IEntitySource
- ISnapshotStore
- IChangePersistence
- IChangeEventPublisher
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, Sequence

from egrul_change_detection.core.models import (
    ChangeEvent,
    EntitySnapshot,
    EntityType,
    SnapshotRecord,
)


@dataclass(frozen=True)
class SaveResult:
    """Per-entity acknowledgement returned by IChangePersistence.save_batch.

    Attributes:
        succeeded: Entity ids whose events are durably stored. Events that
            were already stored (same entity and sequence key) count as
            stored.
        failed: Entity id -> failure reason for entities whose events were
            not stored.
    """

    succeeded: frozenset[str] = frozenset()
    failed: dict[str, str] = field(default_factory=dict)


class IEntitySource(Protocol):
    """Source of current registry snapshots."""

    async def fetch_current(self, entity_type: EntityType, entity_id: str) -> EntitySnapshot | None:
        """Fetch the current snapshot of one entity.

        Returns:
            The snapshot, or None when the registry does not know the entity.

        Raises:
            DependencyError: If the source is unavailable.
        """
        ...

    async def fetch_batch(
        self,
        entity_type: EntityType,
        entity_ids: Sequence[str],
    ) -> list[EntitySnapshot]:
        """Fetch current snapshots of several entities.

        Unknown ids are omitted from the result.

        Raises:
            DependencyError: If the source is unavailable.
        """
        ...


class ISnapshotStore(Protocol):
    """Store of the last known snapshot per entity."""

    async def get_last_known(self, entity_type: EntityType, entity_id: str) -> SnapshotRecord | None:
        """Return the last known record, or None for an unseen entity.

        Raises:
            DependencyError: If the store is unavailable.
        """
        ...

    async def save(self, record: SnapshotRecord) -> None:
        """Insert or replace the record of the snapshot's entity.

        Raises:
            DependencyError: If the store is unavailable.
        """
        ...


class IChangePersistence(Protocol):
    """Durable, idempotent store of change events."""

    async def save_batch(self, entity_type: EntityType, events: Sequence[ChangeEvent]) -> SaveResult:
        """Persist a batch of events of one entity type.

        Must be idempotent per (entity_type, entity_id, sequence_key) and
        report success or failure per entity.

        Args:
            entity_type: Type shared by every event of the batch.
            events: Events, grouped so that every event of an entity is in
                this batch.

        Returns:
            SaveResult naming every entity of the batch.
        """
        ...

    async def get_history(
        self,
        entity_type: EntityType,
        entity_id: str,
        limit: int,
    ) -> list[ChangeEvent]:
        """Return up to `limit` events of an entity, newest sequence key first.

        Raises:
            DependencyError: If the store is unavailable.
        """
        ...

    async def get_recent(self, entity_type: EntityType, since: datetime) -> list[ChangeEvent]:
        """Return events observed at or after `since`, newest first.

        Raises:
            DependencyError: If the store is unavailable.
        """
        ...


class IChangeEventPublisher(Protocol):
    """Downstream notification of persisted change events."""

    async def publish(self, events: Sequence[ChangeEvent]) -> None:
        """Publish persisted events.

        Raises:
            DependencyError: If the broker did not acknowledge every event.
        """
        ...
