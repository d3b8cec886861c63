"""ChangeEventPublisher: Kafka notification of persisted change events.

Events are published after they are durably stored, one message per event:

- company events      -> company-changes
- entrepreneur events -> entrepreneur-changes

Messages are keyed by entity id so every event of one entity lands on the
same partition in sequence order. The value is the JSON-serialized
ChangeEvent; headers carry entity_type, category, event_id, is_significant
and region_code for consumers that filter without decoding the payload.
"""

import asyncio
from collections.abc import Sequence
from typing import Any

from confluent_kafka import KafkaException, Producer

from egrul_change_detection.core.models import ChangeEvent, EntityType
from egrul_change_detection.errors import DependencyError
from egrul_change_detection.observability import get_logger

logger = get_logger(__name__)

TOPIC_COMPANY_CHANGES = "company-changes"
TOPIC_ENTREPRENEUR_CHANGES = "entrepreneur-changes"

# Default bootstrap servers (overridden by settings)
_DEFAULT_BOOTSTRAP_SERVERS = "localhost:9092"


def event_headers(event: ChangeEvent) -> list[tuple[str, bytes]]:
    """Build Kafka headers for a change event."""
    headers = {
        "entity_type": event.entity_type.value,
        "category": event.category.value,
        "event_id": str(event.event_id),
        "is_significant": "true" if event.is_significant else "false",
        "region_code": event.region_code,
    }
    return [(name, value.encode("utf-8")) for name, value in headers.items() if value is not None]


class ChangeEventPublisher:
    """Kafka publisher for persisted change events.

    Args:
        bootstrap_servers: Comma-separated Kafka bootstrap server addresses.
        company_topic: Topic for company change events.
        entrepreneur_topic: Topic for entrepreneur change events.
        delivery_timeout: Seconds publish() waits for broker acknowledgements.
    """

    def __init__(
        self,
        bootstrap_servers: str = _DEFAULT_BOOTSTRAP_SERVERS,
        company_topic: str = TOPIC_COMPANY_CHANGES,
        entrepreneur_topic: str = TOPIC_ENTREPRENEUR_CHANGES,
        delivery_timeout: float = 30.0,
    ) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._topics = {
            EntityType.COMPANY: company_topic,
            EntityType.ENTREPRENEUR: entrepreneur_topic,
        }
        self._delivery_timeout = delivery_timeout
        self._producer: Producer | None = None

    async def start(self) -> None:
        """Create the underlying Kafka producer.

        Must be called before publish(). Called in the lifespan startup
        handler in main.py.
        """
        self._producer = Producer(
            {
                "bootstrap.servers": self._bootstrap_servers,
                "compression.type": "lz4",
                "acks": "all",
                "enable.idempotence": True,
                "linger.ms": 10,
            }
        )
        logger.info("ChangeEventPublisher started", bootstrap_servers=self._bootstrap_servers)

    async def stop(self) -> None:
        """Flush buffered messages and drop the producer."""
        if self._producer is not None:
            remaining = await asyncio.get_running_loop().run_in_executor(
                None, self._producer.flush, self._delivery_timeout
            )
            if remaining:
                logger.warning("Kafka messages left unflushed at shutdown", remaining=remaining)
            self._producer = None
            logger.info("ChangeEventPublisher stopped")

    def topic_for(self, entity_type: EntityType) -> str:
        return self._topics[entity_type]

    async def publish(self, events: Sequence[ChangeEvent]) -> None:
        """Produce one message per event and wait for broker acknowledgements.

        Args:
            events: Persisted change events of any entity type.

        Raises:
            RuntimeError: If start() has not been called.
            DependencyError: If a message could not be queued or was not
                acknowledged within the delivery timeout.
        """
        if self._producer is None:
            raise RuntimeError("ChangeEventPublisher has not been started. Call start() first.")
        if not events:
            return

        failures: list[str] = []

        def on_delivery(err: Any, msg: Any) -> None:
            if err is not None:
                failures.append(f"{msg.topic()}/{msg.key().decode('utf-8')}: {err}")

        try:
            for event in events:
                self._producer.produce(
                    topic=self.topic_for(event.entity_type),
                    key=event.entity_id.encode("utf-8"),
                    value=event.model_dump_json().encode("utf-8"),
                    headers=event_headers(event),
                    on_delivery=on_delivery,
                )
                self._producer.poll(0)
        except (BufferError, KafkaException) as exc:
            raise DependencyError("kafka", f"failed to queue change event: {exc}") from exc

        remaining = await asyncio.get_running_loop().run_in_executor(
            None, self._producer.flush, self._delivery_timeout
        )
        if remaining:
            failures.append(f"{remaining} messages not delivered within {self._delivery_timeout}s")
        if failures:
            logger.error("Change event delivery failed", failures=len(failures), first=failures[0])
            raise DependencyError("kafka", "; ".join(failures))

        logger.info("Change events published", count=len(events))
