"""In-memory adapters.

Hermetic implementations of the core protocols, used by tests and by local
runs without a database:

- InMemoryEntitySource   - IEntitySource over a dict of snapshots
- InMemorySnapshotStore  - ISnapshotStore over a dict of records
- InMemoryChangeStore    - append-only, idempotent IChangePersistence

InMemoryChangeStore keeps per-type event lists sorted by observed_at with a
parallel timestamp list for bisect range queries. Writes are append-only.
"""

from __future__ import annotations

import bisect
from collections.abc import Iterable, Sequence
from datetime import datetime

from egrul_change_detection.core.interfaces import SaveResult
from egrul_change_detection.core.models import (
    ChangeEvent,
    EntitySnapshot,
    EntityState,
    EntityType,
    SnapshotRecord,
)


class InMemoryEntitySource:
    """Entity source backed by a dict keyed by (entity_type, entity_id)."""

    def __init__(self, snapshots: Iterable[EntitySnapshot] = ()) -> None:
        self._snapshots: dict[tuple[EntityType, str], EntitySnapshot] = {}
        for snapshot in snapshots:
            self.put(snapshot)

    def put(self, snapshot: EntitySnapshot) -> None:
        """Insert or replace the current snapshot of an entity."""
        self._snapshots[(snapshot.entity_type, snapshot.entity_id)] = snapshot

    def remove(self, entity_type: EntityType, entity_id: str) -> None:
        self._snapshots.pop((entity_type, entity_id), None)

    async def fetch_current(self, entity_type: EntityType, entity_id: str) -> EntitySnapshot | None:
        return self._snapshots.get((entity_type, entity_id))

    async def fetch_batch(self, entity_type: EntityType, entity_ids: Sequence[str]) -> list[EntitySnapshot]:
        return [
            self._snapshots[(entity_type, entity_id)]
            for entity_id in entity_ids
            if (entity_type, entity_id) in self._snapshots
        ]


class InMemorySnapshotStore:
    """Snapshot store backed by a dict keyed by (entity_type, entity_id)."""

    def __init__(self) -> None:
        self._records: dict[tuple[EntityType, str], SnapshotRecord] = {}

    async def get_last_known(self, entity_type: EntityType, entity_id: str) -> SnapshotRecord | None:
        return self._records.get((entity_type, entity_id))

    async def save(self, record: SnapshotRecord) -> None:
        snapshot = record.snapshot
        self._records[(snapshot.entity_type, snapshot.entity_id)] = record

    def state(self, entity_type: EntityType, entity_id: str) -> EntityState:
        """Return the lifecycle state of an entity; unknown when never stored."""
        record = self._records.get((entity_type, entity_id))
        return record.state if record is not None else EntityState.UNKNOWN


class InMemoryChangeStore:
    """Append-only change event store.

    Idempotent per (entity_type, entity_id, sequence_key): storing an event
    whose key is already present is acknowledged without adding a row.
    """

    def __init__(self) -> None:
        # { entity_type: list[ChangeEvent] } sorted by observed_at ascending
        self._events: dict[EntityType, list[ChangeEvent]] = {}
        # Parallel list of observed_at values for bisect operations
        self._timestamps: dict[EntityType, list[datetime]] = {}
        self._keys: set[tuple[EntityType, str, int]] = set()
        self.save_calls: int = 0

    def __len__(self) -> int:
        return len(self._keys)

    def _append(self, event: ChangeEvent) -> None:
        key = (event.entity_type, event.entity_id, event.sequence_key)
        if key in self._keys:
            return
        events = self._events.setdefault(event.entity_type, [])
        timestamps = self._timestamps.setdefault(event.entity_type, [])
        index = bisect.bisect_right(timestamps, event.observed_at)
        events.insert(index, event)
        timestamps.insert(index, event.observed_at)
        self._keys.add(key)

    async def save_batch(self, entity_type: EntityType, events: Sequence[ChangeEvent]) -> SaveResult:
        self.save_calls += 1
        by_entity: dict[str, list[ChangeEvent]] = {}
        for event in events:
            by_entity.setdefault(event.entity_id, []).append(event)

        succeeded: set[str] = set()
        failed: dict[str, str] = {}
        for entity_id, entity_events in by_entity.items():
            if any(event.entity_type is not entity_type for event in entity_events):
                failed[entity_id] = f"events are not of type {entity_type.value}"
                continue
            for event in entity_events:
                self._append(event)
            succeeded.add(entity_id)
        return SaveResult(succeeded=frozenset(succeeded), failed=failed)

    async def get_history(self, entity_type: EntityType, entity_id: str, limit: int) -> list[ChangeEvent]:
        history = [event for event in self._events.get(entity_type, []) if event.entity_id == entity_id]
        history.sort(key=lambda event: event.sequence_key, reverse=True)
        return history[:limit]

    async def get_recent(self, entity_type: EntityType, since: datetime) -> list[ChangeEvent]:
        timestamps = self._timestamps.get(entity_type, [])
        start = bisect.bisect_left(timestamps, since)
        return list(reversed(self._events.get(entity_type, [])[start:]))
