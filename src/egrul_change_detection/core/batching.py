"""Batch coordinator.

Aggregates the change events of many entities, drops identical events
presented twice in one submission, partitions by entity type, splits into
bounded chunks and drives the idempotent persistence boundary. The result
names exactly which entities were stored and which were not, so the caller
can retry only the failures.

Chunks never split the events of one entity: an entity is either fully
acknowledged or fully failed. No retries happen here.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Sequence

from egrul_change_detection.core.interfaces import IChangePersistence, SaveResult
from egrul_change_detection.core.models import ChangeEvent, EntityType
from egrul_change_detection.errors import PartialBatchFailure, SubmissionCancelled
from egrul_change_detection.observability import get_logger

logger = get_logger(__name__)

DEADLINE_EXCEEDED = "deadline exceeded"
CANCELLED = "submission cancelled"
NOT_ACKNOWLEDGED = "not acknowledged by persistence"


@dataclass(frozen=True)
class EntityOutcome:
    """Persistence outcome of the events of one entity.

    Attributes:
        entity_type: company or entrepreneur.
        entity_id: OGRN / OGRNIP.
        events: The events submitted for the entity, in sequence order.
        error: Failure reason; None when the events were stored.
    """

    entity_type: EntityType
    entity_id: str
    events: tuple[ChangeEvent, ...]
    error: str | None = None


@dataclass
class BatchResult:
    """Structured result of BatchCoordinator.submit.

    Attributes:
        succeeded: Entities whose events are durably stored.
        failed: Entities whose events were not stored, with the reason.
        duplicates_dropped: Identical events removed before submission.
        deadline_exceeded: True when the submission deadline cut it short.
        cancelled: True when the submission was cancelled from outside.
    """

    succeeded: list[EntityOutcome] = field(default_factory=list)
    failed: list[EntityOutcome] = field(default_factory=list)
    duplicates_dropped: int = 0
    deadline_exceeded: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        """True when no entity failed."""
        return not self.failed

    @property
    def is_partial(self) -> bool:
        """True when some entities succeeded and others failed."""
        return bool(self.succeeded) and bool(self.failed)

    @property
    def succeeded_ids(self) -> set[str]:
        return {outcome.entity_id for outcome in self.succeeded}

    @property
    def failed_ids(self) -> set[str]:
        return {outcome.entity_id for outcome in self.failed}

    def events_to_retry(self) -> list[ChangeEvent]:
        """Return the events of failed entities, ready for resubmission."""
        return [event for outcome in self.failed for event in outcome.events]

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailure when any entity failed."""
        if self.failed:
            raise PartialBatchFailure(self)

    def merge(self, other: BatchResult) -> BatchResult:
        """Combine two results into a new one."""
        return BatchResult(
            succeeded=[*self.succeeded, *other.succeeded],
            failed=[*self.failed, *other.failed],
            duplicates_dropped=self.duplicates_dropped + other.duplicates_dropped,
            deadline_exceeded=self.deadline_exceeded or other.deadline_exceeded,
            cancelled=self.cancelled or other.cancelled,
        )


@dataclass(frozen=True)
class _Chunk:
    entity_type: EntityType
    entities: dict[str, list[ChangeEvent]]

    @property
    def events(self) -> list[ChangeEvent]:
        return [event for events in self.entities.values() for event in events]


class BatchCoordinator:
    """Drives idempotent, partial-failure-aware persistence of change events.

    Args:
        persistence: The change persistence boundary.
        max_batch_size: Upper bound on events per save_batch call. An entity
            with more events than this is still sent whole, in its own chunk.
    """

    def __init__(self, persistence: IChangePersistence, max_batch_size: int = 100) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        self._persistence = persistence
        self._max_batch_size = max_batch_size

    @staticmethod
    def deduplicate(events: Sequence[ChangeEvent]) -> tuple[list[ChangeEvent], int]:
        """Drop events whose fingerprint was already seen, keeping the first.

        Returns:
            Tuple of (unique events in input order, number dropped).
        """
        seen: set[str] = set()
        unique: list[ChangeEvent] = []
        for event in events:
            fingerprint = event.fingerprint()
            if fingerprint in seen:
                continue
            seen.add(fingerprint)
            unique.append(event)
        return unique, len(events) - len(unique)

    def _chunk(self, events: Sequence[ChangeEvent]) -> list[_Chunk]:
        by_type: dict[EntityType, dict[str, list[ChangeEvent]]] = {}
        for event in events:
            by_type.setdefault(event.entity_type, {}).setdefault(event.entity_id, []).append(event)

        chunks: list[_Chunk] = []
        for entity_type, entities in by_type.items():
            current: dict[str, list[ChangeEvent]] = {}
            size = 0
            for entity_id, entity_events in entities.items():
                entity_events.sort(key=lambda e: e.sequence_key)
                if current and size + len(entity_events) > self._max_batch_size:
                    chunks.append(_Chunk(entity_type, current))
                    current, size = {}, 0
                current[entity_id] = entity_events
                size += len(entity_events)
            if current:
                chunks.append(_Chunk(entity_type, current))
        return chunks

    @staticmethod
    def _fail_chunk(result: BatchResult, chunk: _Chunk, reason: str) -> None:
        for entity_id, events in chunk.entities.items():
            result.failed.append(EntityOutcome(chunk.entity_type, entity_id, tuple(events), reason))

    @staticmethod
    def _reconcile(result: BatchResult, chunk: _Chunk, saved: SaveResult) -> None:
        for entity_id, events in chunk.entities.items():
            outcome_events = tuple(events)
            if entity_id in saved.failed:
                result.failed.append(
                    EntityOutcome(chunk.entity_type, entity_id, outcome_events, saved.failed[entity_id])
                )
            elif entity_id in saved.succeeded:
                result.succeeded.append(EntityOutcome(chunk.entity_type, entity_id, outcome_events))
            else:
                result.failed.append(
                    EntityOutcome(chunk.entity_type, entity_id, outcome_events, NOT_ACKNOWLEDGED)
                )

    async def submit(self, events: Sequence[ChangeEvent], timeout: float | None = None) -> BatchResult:
        """Persist change events and report the outcome per entity.

        Args:
            events: Events of any number of entities and both entity types.
            timeout: Overall deadline in seconds for the whole submission.
                Chunks not acknowledged before it expires are reported as
                failed; acknowledged chunks stay succeeded.

        Returns:
            BatchResult naming every submitted entity exactly once.

        Raises:
            SubmissionCancelled: If the calling task is cancelled while a
                chunk is in flight. Carries the result accumulated so far,
                with the in-flight and remaining chunks marked failed.
        """
        unique, dropped = self.deduplicate(events)
        result = BatchResult(duplicates_dropped=dropped)
        if dropped:
            logger.info("Dropped duplicate change events", count=dropped)
        chunks = self._chunk(unique)
        if not chunks:
            return result

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        for index, chunk in enumerate(chunks):
            remaining = deadline - loop.time() if deadline is not None else None
            if remaining is not None and remaining <= 0:
                result.deadline_exceeded = True
                self._fail_chunk(result, chunk, DEADLINE_EXCEEDED)
                continue
            try:
                saved = await asyncio.wait_for(
                    self._persistence.save_batch(chunk.entity_type, chunk.events),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                result.deadline_exceeded = True
                self._fail_chunk(result, chunk, DEADLINE_EXCEEDED)
                continue
            except asyncio.CancelledError:
                result.cancelled = True
                for pending in chunks[index:]:
                    self._fail_chunk(result, pending, CANCELLED)
                logger.warning(
                    "Change event submission cancelled",
                    succeeded=len(result.succeeded),
                    failed=len(result.failed),
                )
                raise SubmissionCancelled(result) from None
            except Exception as exc:
                logger.error(
                    "Change persistence batch failed",
                    entity_type=chunk.entity_type.value,
                    entities=len(chunk.entities),
                    error=str(exc),
                )
                self._fail_chunk(result, chunk, str(exc) or type(exc).__name__)
                continue
            self._reconcile(result, chunk, saved)

        if result.failed:
            logger.warning(
                "Change event batch partially failed",
                succeeded=len(result.succeeded),
                failed=len(result.failed),
                deadline_exceeded=result.deadline_exceeded,
            )
        else:
            logger.info("Change event batch persisted", entities=len(result.succeeded), events=len(unique))
        return result
