"""Tests for ChangeDetectionService.

Runs full detection cycles against the in-memory adapters: baseline,
change, no-change, missing entities, dependency failures, retry of failed
entities and sequence continuity across service restarts.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from egrul_change_detection.adapters.memory import InMemoryEntitySource, InMemorySnapshotStore
from egrul_change_detection.core.models import (
    ChangeCategory,
    EntitySnapshot,
    EntityState,
    EntityType,
    Founder,
    Money,
)
from egrul_change_detection.core.sequence import SequenceAllocator
from egrul_change_detection.core.services import (
    ChangeDetectionService,
    OutcomeStatus,
)
from egrul_change_detection.errors import DependencyError
from egrul_change_detection.settings import Settings
from tests.conftest import ControllableChangeStore


def _company(snapshot: EntitySnapshot, entity_id: str, **changes: object) -> EntitySnapshot:
    return snapshot.model_copy(update={"entity_id": entity_id, **changes})


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_first_observation_stores_baseline_only(
    detection_service: ChangeDetectionService,
    entity_source: InMemoryEntitySource,
    snapshot_store: InMemorySnapshotStore,
    change_store: ControllableChangeStore,
    mock_event_publisher: AsyncMock,
    company_snapshot: EntitySnapshot,
) -> None:
    entity_source.put(company_snapshot)

    report = await detection_service.detect(EntityType.COMPANY, [company_snapshot.entity_id])

    assert report.ids_with(OutcomeStatus.SUCCESS) == [company_snapshot.entity_id]
    assert report.changes_detected == 0
    assert len(change_store) == 0
    assert snapshot_store.state(EntityType.COMPANY, company_snapshot.entity_id) is EntityState.BASELINED
    mock_event_publisher.publish.assert_not_called()


@pytest.mark.asyncio()
async def test_change_is_persisted_published_and_advances_snapshot(
    detection_service: ChangeDetectionService,
    entity_source: InMemoryEntitySource,
    snapshot_store: InMemorySnapshotStore,
    change_store: ControllableChangeStore,
    mock_event_publisher: AsyncMock,
    company_snapshot: EntitySnapshot,
) -> None:
    ogrn = company_snapshot.entity_id
    entity_source.put(company_snapshot)
    await detection_service.detect(EntityType.COMPANY, [ogrn])

    entity_source.put(
        company_snapshot.model_copy(
            update={
                "status": "В ПРОЦЕССЕ ЛИКВИДАЦИИ",
                "capital": Money(amount=Decimal("10000"), currency="RUB"),
            }
        )
    )
    report = await detection_service.detect(EntityType.COMPANY, [ogrn])

    events = report.events
    assert [e.category for e in events] == [ChangeCategory.STATUS, ChangeCategory.CAPITAL]
    assert [e.sequence_key for e in events] == [1, 2]
    assert len(change_store) == 2
    mock_event_publisher.publish.assert_awaited_once()
    assert list(mock_event_publisher.publish.call_args.args[0]) == events

    record = await snapshot_store.get_last_known(EntityType.COMPANY, ogrn)
    assert record is not None
    assert record.state is EntityState.OBSERVED
    assert record.last_sequence == 2
    assert record.snapshot.status == "В ПРОЦЕССЕ ЛИКВИДАЦИИ"


@pytest.mark.asyncio()
async def test_unchanged_entity_keeps_observed_state(
    detection_service: ChangeDetectionService,
    entity_source: InMemoryEntitySource,
    snapshot_store: InMemorySnapshotStore,
    company_snapshot: EntitySnapshot,
) -> None:
    ogrn = company_snapshot.entity_id
    entity_source.put(company_snapshot)
    await detection_service.detect(EntityType.COMPANY, [ogrn])
    entity_source.put(company_snapshot.model_copy(update={"licenses_count": 4}))
    await detection_service.detect(EntityType.COMPANY, [ogrn])

    report = await detection_service.detect(EntityType.COMPANY, [ogrn])

    assert report.changes_detected == 0
    record = await snapshot_store.get_last_known(EntityType.COMPANY, ogrn)
    assert record is not None
    assert record.state is EntityState.OBSERVED
    assert record.last_sequence == 1


@pytest.mark.asyncio()
async def test_missing_entities_are_not_found(
    detection_service: ChangeDetectionService,
    entity_source: InMemoryEntitySource,
    company_snapshot: EntitySnapshot,
) -> None:
    entity_source.put(company_snapshot)

    report = await detection_service.detect(
        EntityType.COMPANY,
        ["1000000000001", company_snapshot.entity_id, "1000000000001"],
    )

    assert [o.entity_id for o in report.outcomes] == ["1000000000001", company_snapshot.entity_id]
    assert report.ids_with(OutcomeStatus.NOT_FOUND) == ["1000000000001"]
    assert detection_service.stats.entities_processed == 2
    assert detection_service.stats.cycles == 1


@pytest.mark.asyncio()
async def test_detect_processes_ids_in_batches(
    entity_source: InMemoryEntitySource,
    snapshot_store: InMemorySnapshotStore,
    change_store: ControllableChangeStore,
    company_snapshot: EntitySnapshot,
) -> None:
    ids = [f"10277001321{i:02d}" for i in range(5)]
    for ogrn in ids:
        entity_source.put(_company(company_snapshot, ogrn))
    entity_source.fetch_batch = AsyncMock(wraps=entity_source.fetch_batch)
    service = ChangeDetectionService(
        source=entity_source,
        snapshots=snapshot_store,
        persistence=change_store,
        settings=Settings(kafka_enabled=False, batch_size=2, submit_timeout_seconds=None),
    )

    report = await service.detect(EntityType.COMPANY, ids)

    assert entity_source.fetch_batch.await_count == 3
    assert report.ids_with(OutcomeStatus.SUCCESS) == ids


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_source_failure_marks_batch_dependency_error(
    snapshot_store: InMemorySnapshotStore,
    change_store: ControllableChangeStore,
    settings: Settings,
) -> None:
    source = AsyncMock()
    source.fetch_batch.side_effect = DependencyError("entity_source", "connection refused")
    service = ChangeDetectionService(source=source, snapshots=snapshot_store, persistence=change_store, settings=settings)

    report = await service.detect(EntityType.COMPANY, ["1", "2"])

    assert report.ids_with(OutcomeStatus.DEPENDENCY_ERROR) == ["1", "2"]
    assert "connection refused" in (report.outcomes[0].error or "")
    assert service.stats.entities_failed == 2


@pytest.mark.asyncio()
async def test_snapshot_store_failure_affects_only_that_entity(
    entity_source: InMemoryEntitySource,
    change_store: ControllableChangeStore,
    settings: Settings,
    company_snapshot: EntitySnapshot,
) -> None:
    entity_source.put(_company(company_snapshot, "1"))
    entity_source.put(_company(company_snapshot, "2"))
    snapshots = AsyncMock()

    async def get_last_known(entity_type: EntityType, entity_id: str) -> None:
        if entity_id == "2":
            raise DependencyError("snapshot_store", "timeout")
        return None

    snapshots.get_last_known.side_effect = get_last_known
    service = ChangeDetectionService(source=entity_source, snapshots=snapshots, persistence=change_store, settings=settings)

    report = await service.detect(EntityType.COMPANY, ["1", "2"])

    assert report.ids_with(OutcomeStatus.SUCCESS) == ["1"]
    assert report.ids_with(OutcomeStatus.DEPENDENCY_ERROR) == ["2"]
    snapshots.save.assert_awaited_once()


@pytest.mark.asyncio()
async def test_detect_one_blank_identifier_is_validation_error(
    snapshot_store: InMemorySnapshotStore,
    change_store: ControllableChangeStore,
    settings: Settings,
) -> None:
    source = AsyncMock()
    source.fetch_current.return_value = EntitySnapshot(entity_type=EntityType.COMPANY, entity_id="  ")
    service = ChangeDetectionService(source=source, snapshots=snapshot_store, persistence=change_store, settings=settings)

    outcome = await service.detect_one(EntityType.COMPANY, "1027700132195")

    assert outcome.status is OutcomeStatus.VALIDATION_ERROR
    assert snapshot_store.state(EntityType.COMPANY, "1027700132195") is EntityState.UNKNOWN


@pytest.mark.asyncio()
async def test_detect_one_wrong_entity_type_is_validation_error(
    entrepreneur_snapshot: EntitySnapshot,
    snapshot_store: InMemorySnapshotStore,
    change_store: ControllableChangeStore,
    settings: Settings,
) -> None:
    source = AsyncMock()
    source.fetch_current.return_value = entrepreneur_snapshot
    service = ChangeDetectionService(source=source, snapshots=snapshot_store, persistence=change_store, settings=settings)

    outcome = await service.detect_one(EntityType.COMPANY, entrepreneur_snapshot.entity_id)

    assert outcome.status is OutcomeStatus.VALIDATION_ERROR


@pytest.mark.asyncio()
async def test_persistence_failure_keeps_old_snapshot_and_retry_recomputes(
    detection_service: ChangeDetectionService,
    entity_source: InMemoryEntitySource,
    snapshot_store: InMemorySnapshotStore,
    change_store: ControllableChangeStore,
    mock_event_publisher: AsyncMock,
    company_snapshot: EntitySnapshot,
) -> None:
    ids = ["1", "2", "3"]
    for ogrn in ids:
        entity_source.put(_company(company_snapshot, ogrn))
    await detection_service.detect(EntityType.COMPANY, ids)

    for ogrn in ids:
        entity_source.put(_company(company_snapshot, ogrn, licenses_count=7))
    change_store.fail_ids = {"2"}
    report = await detection_service.detect(EntityType.COMPANY, ids)

    assert report.ids_with(OutcomeStatus.SUCCESS) == ["1", "3"]
    assert report.ids_with(OutcomeStatus.DEPENDENCY_ERROR) == ["2"]
    record = await snapshot_store.get_last_known(EntityType.COMPANY, "2")
    assert record is not None
    assert record.snapshot.licenses_count == 3
    published = mock_event_publisher.publish.call_args.args[0]
    assert {e.entity_id for e in published} == {"1", "3"}

    change_store.fail_ids = set()
    retried = await detection_service.retry_failed(report)

    assert retried.ids_with(OutcomeStatus.SUCCESS) == ["2"]
    assert [e.deltas for e in retried.events] == [
        e.deltas for e in report.events if e.entity_id == "1"
    ]
    history = await change_store.get_history(EntityType.COMPANY, "2", 10)
    assert len(history) == 1


@pytest.mark.asyncio()
async def test_retry_after_landed_but_unacknowledged_write_stores_change_once(
    entity_source: InMemoryEntitySource,
    snapshot_store: InMemorySnapshotStore,
    change_store: ControllableChangeStore,
    company_snapshot: EntitySnapshot,
) -> None:
    """A write that commits after the deadline is not stored again on retry."""
    ogrn = company_snapshot.entity_id
    settings = Settings(kafka_enabled=False, submit_timeout_seconds=0.05, batch_size=100)
    service = ChangeDetectionService(entity_source, snapshot_store, change_store, settings=settings)
    entity_source.put(company_snapshot)
    await service.detect(EntityType.COMPANY, [ogrn])

    entity_source.put(company_snapshot.model_copy(update={"licenses_count": 9}))
    change_store.stall_after_commit = 0.5
    report = await service.detect(EntityType.COMPANY, [ogrn])

    assert report.ids_with(OutcomeStatus.DEPENDENCY_ERROR) == [ogrn]
    assert len(change_store) == 1

    change_store.stall_after_commit = 0.0
    retried = await service.retry_failed(report)

    assert retried.ids_with(OutcomeStatus.SUCCESS) == [ogrn]
    assert [e.sequence_key for e in retried.events] == [1]
    history = await change_store.get_history(EntityType.COMPANY, ogrn, 10)
    assert [(e.sequence_key, e.category, e.deltas[0].current) for e in history] == [
        (1, ChangeCategory.LICENSES, 9)
    ]
    record = await snapshot_store.get_last_known(EntityType.COMPANY, ogrn)
    assert record is not None
    assert record.last_sequence == 1


@pytest.mark.asyncio()
async def test_retry_after_snapshot_save_failure_reuses_sequence_keys(
    entity_source: InMemoryEntitySource,
    change_store: ControllableChangeStore,
    settings: Settings,
    company_snapshot: EntitySnapshot,
) -> None:
    """Events persisted before a snapshot save failure are not duplicated on retry."""
    ogrn = company_snapshot.entity_id
    snapshots = InMemorySnapshotStore()
    service = ChangeDetectionService(entity_source, snapshots, change_store, settings=settings)
    entity_source.put(company_snapshot)
    await service.detect(EntityType.COMPANY, [ogrn])

    entity_source.put(company_snapshot.model_copy(update={"branches_count": 11}))
    save = snapshots.save
    snapshots.save = AsyncMock(side_effect=DependencyError("snapshot_store", "timeout"))  # type: ignore[method-assign]
    report = await service.detect(EntityType.COMPANY, [ogrn])
    assert report.ids_with(OutcomeStatus.DEPENDENCY_ERROR) == [ogrn]

    snapshots.save = save  # type: ignore[method-assign]
    retried = await service.retry_failed(report)

    assert retried.ids_with(OutcomeStatus.SUCCESS) == [ogrn]
    history = await change_store.get_history(EntityType.COMPANY, ogrn, 10)
    assert [e.sequence_key for e in history] == [1]


@pytest.mark.asyncio()
async def test_allocator_holds_no_entities_after_cycle(
    entity_source: InMemoryEntitySource,
    snapshot_store: InMemorySnapshotStore,
    change_store: ControllableChangeStore,
    allocator: SequenceAllocator,
    settings: Settings,
    company_snapshot: EntitySnapshot,
) -> None:
    """Settled entities are released; the snapshot store carries the counter."""
    ids = ["1", "2", "3"]
    service = ChangeDetectionService(entity_source, snapshot_store, change_store, allocator=allocator, settings=settings)
    for ogrn in ids:
        entity_source.put(_company(company_snapshot, ogrn))
    await service.detect(EntityType.COMPANY, ids)
    for ogrn in ids:
        entity_source.put(_company(company_snapshot, ogrn, status="ЛИКВИДИРОВАНА"))
    change_store.fail_ids = {"2"}

    await service.detect(EntityType.COMPANY, ids)

    assert len(allocator) == 0
    record = await snapshot_store.get_last_known(EntityType.COMPANY, "1")
    assert record is not None
    assert record.last_sequence == 1


@pytest.mark.asyncio()
async def test_batch_snapshot_without_identifier_is_not_found(
    snapshot_store: InMemorySnapshotStore,
    change_store: ControllableChangeStore,
    settings: Settings,
) -> None:
    """detect() cannot attribute an unidentified snapshot to a requested id."""
    source = AsyncMock()
    source.fetch_batch.return_value = [EntitySnapshot(entity_type=EntityType.COMPANY, entity_id="  ")]
    service = ChangeDetectionService(source=source, snapshots=snapshot_store, persistence=change_store, settings=settings)

    report = await service.detect(EntityType.COMPANY, ["1027700132195"])

    assert report.ids_with(OutcomeStatus.NOT_FOUND) == ["1027700132195"]
    assert snapshot_store.state(EntityType.COMPANY, "1027700132195") is EntityState.UNKNOWN


@pytest.mark.asyncio()
async def test_publish_failure_does_not_fail_detection(
    detection_service: ChangeDetectionService,
    entity_source: InMemoryEntitySource,
    change_store: ControllableChangeStore,
    mock_event_publisher: AsyncMock,
    company_snapshot: EntitySnapshot,
) -> None:
    entity_source.put(company_snapshot)
    await detection_service.detect(EntityType.COMPANY, [company_snapshot.entity_id])
    entity_source.put(company_snapshot.model_copy(update={"branches_count": 12}))
    mock_event_publisher.publish.side_effect = DependencyError("kafka", "broker down")

    report = await detection_service.detect(EntityType.COMPANY, [company_snapshot.entity_id])

    assert report.count(OutcomeStatus.SUCCESS) == 1
    assert len(change_store) == 1
    assert detection_service.stats.publish_failures == 1


# ---------------------------------------------------------------------------
# Sequencing and modes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_sequence_continues_after_restart(
    entity_source: InMemoryEntitySource,
    snapshot_store: InMemorySnapshotStore,
    change_store: ControllableChangeStore,
    settings: Settings,
    company_snapshot: EntitySnapshot,
) -> None:
    ogrn = company_snapshot.entity_id
    first = ChangeDetectionService(entity_source, snapshot_store, change_store, settings=settings)
    entity_source.put(company_snapshot)
    await first.detect(EntityType.COMPANY, [ogrn])
    entity_source.put(company_snapshot.model_copy(update={"licenses_count": 4, "branches_count": 11}))
    await first.detect(EntityType.COMPANY, [ogrn])

    restarted = ChangeDetectionService(entity_source, snapshot_store, change_store, settings=settings)
    entity_source.put(company_snapshot.model_copy(update={"licenses_count": 5, "branches_count": 11}))
    report = await restarted.detect(EntityType.COMPANY, [ogrn])

    assert [e.sequence_key for e in report.events] == [3]
    history = await change_store.get_history(EntityType.COMPANY, ogrn, 10)
    assert [e.sequence_key for e in history] == [3, 2, 1]


@pytest.mark.asyncio()
async def test_composite_mode_emits_single_event(
    entity_source: InMemoryEntitySource,
    snapshot_store: InMemorySnapshotStore,
    change_store: ControllableChangeStore,
    company_snapshot: EntitySnapshot,
) -> None:
    service = ChangeDetectionService(
        entity_source,
        snapshot_store,
        change_store,
        settings=Settings(kafka_enabled=False, composite_events=True, submit_timeout_seconds=None),
    )
    entity_source.put(company_snapshot)
    await service.detect(EntityType.COMPANY, [company_snapshot.entity_id])
    entity_source.put(
        company_snapshot.model_copy(
            update={
                "founders": (*company_snapshot.founders, Founder(full_name="Новый учредитель", inn="771000000009")),
                "licenses_count": 0,
            }
        )
    )

    report = await service.detect(EntityType.COMPANY, [company_snapshot.entity_id])

    assert len(report.events) == 1
    assert report.events[0].category is ChangeCategory.COMPOSITE
    assert report.events[0].is_significant is True


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(("limit", "expected"), [(None, 100), (0, 100), (-5, 100), (50, 50), (1000, 1000), (5000, 100)])
def test_resolve_limit(detection_service: ChangeDetectionService, limit: int | None, expected: int) -> None:
    assert detection_service.resolve_limit(limit) == expected


@pytest.mark.asyncio()
async def test_get_recent_defaults_to_window(settings: Settings) -> None:
    persistence = AsyncMock()
    persistence.get_recent.return_value = []
    service = ChangeDetectionService(AsyncMock(), AsyncMock(), persistence, settings=settings)

    before = datetime.now(UTC)
    await service.get_recent(EntityType.ENTREPRENEUR)

    entity_type, since = persistence.get_recent.call_args.args
    assert entity_type is EntityType.ENTREPRENEUR
    assert before - timedelta(hours=24, seconds=5) <= since <= before - timedelta(hours=23)


@pytest.mark.asyncio()
async def test_get_history_passes_resolved_limit(settings: Settings) -> None:
    persistence = AsyncMock()
    persistence.get_history.return_value = []
    service = ChangeDetectionService(AsyncMock(), AsyncMock(), persistence, settings=settings)

    await service.get_history(EntityType.COMPANY, "1027700132195", 5000)

    persistence.get_history.assert_awaited_once_with(EntityType.COMPANY, "1027700132195", 100)
