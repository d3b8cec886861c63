"""Tests for ChangeEventPublisher with a mocked confluent-kafka Producer."""

import json
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import pytest_asyncio
from confluent_kafka import KafkaException

from egrul_change_detection.adapters.kafka import (
    TOPIC_COMPANY_CHANGES,
    TOPIC_ENTREPRENEUR_CHANGES,
    ChangeEventPublisher,
    event_headers,
)
from egrul_change_detection.core.models import (
    ChangeCategory,
    ChangeEvent,
    DeltaKind,
    EntityType,
    FieldDelta,
    FieldId,
)
from egrul_change_detection.errors import DependencyError


def _event(entity_type: EntityType, entity_id: str, region_code: str | None = "77") -> ChangeEvent:
    return ChangeEvent(
        event_id=ChangeEvent.make_event_id(entity_type, entity_id, 1),
        entity_type=entity_type,
        entity_id=entity_id,
        category=ChangeCategory.HEAD,
        deltas=(FieldDelta(field=FieldId.HEAD, kind=DeltaKind.MODIFIED, previous=None, current={"full_name": "X"}),),
        observed_at=datetime(2024, 2, 1, tzinfo=UTC),
        sequence_key=1,
        is_significant=True,
        region_code=region_code,
    )


@pytest.fixture()
def producer() -> Iterator[MagicMock]:
    """Patch the Producer class; yields the producer instance mock."""
    with patch("egrul_change_detection.adapters.kafka.Producer") as producer_cls:
        instance = producer_cls.return_value
        instance.flush.return_value = 0
        yield instance


@pytest_asyncio.fixture()
async def publisher(producer: MagicMock) -> ChangeEventPublisher:
    """Return a started publisher bound to the mocked producer."""
    publisher = ChangeEventPublisher(bootstrap_servers="kafka:9092")
    await publisher.start()
    return publisher


def test_event_headers() -> None:
    event = _event(EntityType.COMPANY, "1027700000001")

    headers = dict(event_headers(event))

    assert headers["entity_type"] == b"company"
    assert headers["category"] == b"head"
    assert headers["event_id"] == str(event.event_id).encode()
    assert headers["is_significant"] == b"true"
    assert headers["region_code"] == b"77"


def test_event_headers_skip_missing_region() -> None:
    headers = dict(event_headers(_event(EntityType.COMPANY, "1027700000001", region_code=None)))

    assert "region_code" not in headers


@pytest.mark.asyncio()
async def test_publish_before_start_raises() -> None:
    with pytest.raises(RuntimeError):
        await ChangeEventPublisher().publish([_event(EntityType.COMPANY, "1027700000001")])


@pytest.mark.asyncio()
async def test_start_configures_idempotent_producer() -> None:
    with patch("egrul_change_detection.adapters.kafka.Producer") as producer_cls:
        await ChangeEventPublisher(bootstrap_servers="kafka:9092").start()

    config = producer_cls.call_args.args[0]
    assert config["bootstrap.servers"] == "kafka:9092"
    assert config["acks"] == "all"
    assert config["enable.idempotence"] is True


@pytest.mark.asyncio()
async def test_publish_routes_by_entity_type(publisher: ChangeEventPublisher, producer: MagicMock) -> None:
    company = _event(EntityType.COMPANY, "1027700000001")
    entrepreneur = _event(EntityType.ENTREPRENEUR, "304500116000157")

    await publisher.publish([company, entrepreneur])

    calls = producer.produce.call_args_list
    assert [c.kwargs["topic"] for c in calls] == [TOPIC_COMPANY_CHANGES, TOPIC_ENTREPRENEUR_CHANGES]
    assert calls[0].kwargs["key"] == b"1027700000001"
    payload = json.loads(calls[0].kwargs["value"])
    assert payload["event_id"] == str(company.event_id)
    assert payload["category"] == "head"
    producer.flush.assert_called_once()


@pytest.mark.asyncio()
async def test_publish_raises_on_delivery_error(publisher: ChangeEventPublisher, producer: MagicMock) -> None:
    def produce(**kwargs: Any) -> None:
        msg = MagicMock()
        msg.topic.return_value = kwargs["topic"]
        msg.key.return_value = kwargs["key"]
        kwargs["on_delivery"]("Broker: Not enough in-sync replicas", msg)

    producer.produce.side_effect = produce

    with pytest.raises(DependencyError) as exc_info:
        await publisher.publish([_event(EntityType.COMPANY, "1027700000001")])

    assert exc_info.value.dependency == "kafka"
    assert "company-changes/1027700000001" in exc_info.value.message


@pytest.mark.asyncio()
async def test_publish_raises_when_flush_times_out(publisher: ChangeEventPublisher, producer: MagicMock) -> None:
    producer.flush.return_value = 1

    with pytest.raises(DependencyError) as exc_info:
        await publisher.publish([_event(EntityType.COMPANY, "1027700000001")])

    assert "not delivered" in exc_info.value.message


@pytest.mark.asyncio()
async def test_publish_raises_when_queue_is_full(publisher: ChangeEventPublisher, producer: MagicMock) -> None:
    producer.produce.side_effect = BufferError("Local: Queue full")

    with pytest.raises(DependencyError):
        await publisher.publish([_event(EntityType.COMPANY, "1027700000001")])


@pytest.mark.asyncio()
async def test_publish_wraps_kafka_exception(publisher: ChangeEventPublisher, producer: MagicMock) -> None:
    producer.produce.side_effect = KafkaException("Local: Unknown topic")

    with pytest.raises(DependencyError):
        await publisher.publish([_event(EntityType.COMPANY, "1027700000001")])


@pytest.mark.asyncio()
async def test_stop_flushes_producer(publisher: ChangeEventPublisher, producer: MagicMock) -> None:
    await publisher.stop()

    producer.flush.assert_called_once_with(30.0)
    with pytest.raises(RuntimeError):
        await publisher.publish([_event(EntityType.COMPANY, "1027700000001")])
