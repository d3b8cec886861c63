"""Test fixtures for egrul-change-detection.

Provides:
- company_snapshot / entrepreneur_snapshot: realistic raw registry snapshots
- observed_at: a fixed UTC observation timestamp
- allocator: a fresh SequenceAllocator
- settings: Settings with Kafka disabled and no submission deadline
- entity_source / snapshot_store / change_store: in-memory adapters
- mock_event_publisher: an AsyncMock publisher that captures publish() calls
- detection_service: ChangeDetectionService wired to the fixtures above
"""

import asyncio
from collections.abc import Sequence
from datetime import UTC, date, datetime
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from egrul_change_detection.adapters.memory import (
    InMemoryChangeStore,
    InMemoryEntitySource,
    InMemorySnapshotStore,
)
from egrul_change_detection.core.interfaces import SaveResult
from egrul_change_detection.core.models import (
    Address,
    ChangeEvent,
    EntitySnapshot,
    EntityType,
    Founder,
    Money,
    Person,
)
from egrul_change_detection.core.sequence import SequenceAllocator
from egrul_change_detection.core.services import ChangeDetectionService
from egrul_change_detection.settings import Settings

COMPANY_OGRN = "1027700132195"
ENTREPRENEUR_OGRNIP = "304500116000157"


class ControllableChangeStore(InMemoryChangeStore):
    """InMemoryChangeStore that records batches and can fail or stall on demand.

    Attributes:
        fail_ids: Entity ids reported as failed instead of being stored.
        batches: Every batch passed to save_batch, in call order.
        delay: Seconds each save_batch call sleeps from call number
            `delay_from_call` (1-based) onwards.
        stall_after_commit: Seconds save_batch sleeps after the events are
            stored, so a deadline can expire on a write that already landed.
    """

    def __init__(self) -> None:
        super().__init__()
        self.fail_ids: set[str] = set()
        self.batches: list[list[ChangeEvent]] = []
        self.delay: float = 0.0
        self.delay_from_call: int = 1
        self.stall_after_commit: float = 0.0

    async def save_batch(self, entity_type: EntityType, events: Sequence[ChangeEvent]) -> SaveResult:
        self.batches.append(list(events))
        if self.delay and len(self.batches) >= self.delay_from_call:
            await asyncio.sleep(self.delay)
        failing = [event for event in events if event.entity_id in self.fail_ids]
        stored = [event for event in events if event.entity_id not in self.fail_ids]
        result = await super().save_batch(entity_type, stored)
        if self.stall_after_commit:
            await asyncio.sleep(self.stall_after_commit)
        failed = dict(result.failed)
        for event in failing:
            failed[event.entity_id] = "simulated write failure"
        return SaveResult(succeeded=result.succeeded, failed=failed)


@pytest.fixture()
def company_snapshot() -> EntitySnapshot:
    """Return a raw company snapshot as the registry source would deliver it."""
    return EntitySnapshot(
        entity_type=EntityType.COMPANY,
        entity_id=COMPANY_OGRN,
        inn="7707083893",
        kpp="773601001",
        full_name='ПУБЛИЧНОЕ АКЦИОНЕРНОЕ ОБЩЕСТВО "СБЕРБАНК РОССИИ"',
        short_name="ПАО СБЕРБАНК",
        region_code="77",
        registration_date=date(1991, 6, 20),
        status="ДЕЙСТВУЮЩАЯ",
        address=Address(
            full="117312, г. Москва, ул. Вавилова, д. 19",
            postal_code="117312",
            region="Москва",
            city="Москва",
            street="ул. Вавилова",
            house="д. 19",
        ),
        main_activity="64.19",
        additional_activities=("66.19", "64.92"),
        founders=(
            Founder(full_name="Иванов Иван Иванович", inn="770100000001", share_percent=Decimal("30")),
            Founder(full_name='ООО "ХОЛДИНГ"', inn="770200000002", ogrn="1157700000002", share_percent=Decimal("70")),
        ),
        head=Person(full_name="Греф Герман Оскарович", inn="772300000003", position="Президент"),
        capital=Money(amount=Decimal("5000000"), currency="RUB"),
        licenses_count=3,
        branches_count=10,
        extract_date=date(2024, 1, 15),
    )


@pytest.fixture()
def entrepreneur_snapshot() -> EntitySnapshot:
    """Return a raw entrepreneur snapshot."""
    return EntitySnapshot(
        entity_type=EntityType.ENTREPRENEUR,
        entity_id=ENTREPRENEUR_OGRNIP,
        inn="500100732259",
        full_name="Петров Пётр Петрович",
        region_code="50",
        registration_date=date(2004, 3, 1),
        status="ДЕЙСТВУЮЩИЙ",
        address=Address(full="Московская обл., г. Химки, ул. Ленина, д. 1", city="Химки"),
        main_activity="47.11",
        additional_activities=("47.19",),
        licenses_count=0,
        extract_date=date(2024, 1, 15),
    )


@pytest.fixture()
def observed_at() -> datetime:
    """Return a fixed observation timestamp."""
    return datetime(2024, 2, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def allocator() -> SequenceAllocator:
    """Return a fresh sequence allocator."""
    return SequenceAllocator()


@pytest.fixture()
def settings() -> Settings:
    """Return settings suitable for hermetic tests."""
    return Settings(kafka_enabled=False, submit_timeout_seconds=None, batch_size=100)


@pytest.fixture()
def entity_source() -> InMemoryEntitySource:
    """Return an empty in-memory entity source."""
    return InMemoryEntitySource()


@pytest.fixture()
def snapshot_store() -> InMemorySnapshotStore:
    """Return an empty in-memory snapshot store."""
    return InMemorySnapshotStore()


@pytest.fixture()
def change_store() -> ControllableChangeStore:
    """Return an empty change store that can simulate failures."""
    return ControllableChangeStore()


@pytest.fixture()
def mock_event_publisher() -> AsyncMock:
    """Create a mock ChangeEventPublisher that captures publish() calls."""
    publisher = AsyncMock()
    publisher.publish.return_value = None
    return publisher


@pytest.fixture()
def detection_service(
    entity_source: InMemoryEntitySource,
    snapshot_store: InMemorySnapshotStore,
    change_store: ControllableChangeStore,
    mock_event_publisher: AsyncMock,
    settings: Settings,
) -> ChangeDetectionService:
    """Return a ChangeDetectionService wired to in-memory adapters."""
    return ChangeDetectionService(
        source=entity_source,
        snapshots=snapshot_store,
        persistence=change_store,
        publisher=mock_event_publisher,
        settings=settings,
    )
