"""Change detection service.

ChangeDetectionService drives one observation cycle for a list of entity ids:

    fetch current snapshots -> normalize -> load last known -> diff
      -> build events -> submit through the BatchCoordinator
      -> advance snapshots of acknowledged entities -> publish

The service contains no framework code. It accepts its collaborators through
the constructor and reports a typed outcome per entity instead of raising,
so one bad entity never aborts the cycle of the others.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

from egrul_change_detection.core.batching import BatchCoordinator, BatchResult
from egrul_change_detection.core.diff import diff
from egrul_change_detection.core.events import build_events
from egrul_change_detection.core.interfaces import (
    IChangeEventPublisher,
    IChangePersistence,
    IEntitySource,
    ISnapshotStore,
)
from egrul_change_detection.core.models import (
    ChangeEvent,
    EntitySnapshot,
    EntityState,
    EntityType,
    NormalizedSnapshot,
    SnapshotRecord,
)
from egrul_change_detection.core.normalizer import normalize
from egrul_change_detection.core.sequence import SequenceAllocator
from egrul_change_detection.errors import DependencyError, InvalidSnapshotError, SubmissionCancelled
from egrul_change_detection.observability import get_logger
from egrul_change_detection.settings import Settings

logger = get_logger(__name__)


class OutcomeStatus(str, Enum):
    """Per-entity result of a detection cycle."""

    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"
    DEPENDENCY_ERROR = "dependency_error"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class EntityDetectionOutcome:
    """Outcome of one entity in a detection cycle.

    Attributes:
        entity_type: company or entrepreneur.
        entity_id: OGRN / OGRNIP as requested.
        status: success, validation_error, dependency_error or not_found.
        events: Events persisted for the entity (success only).
        error: Failure description for non-success outcomes.
    """

    entity_type: EntityType
    entity_id: str
    status: OutcomeStatus
    events: tuple[ChangeEvent, ...] = ()
    error: str | None = None


@dataclass
class DetectionReport:
    """Result of ChangeDetectionService.detect."""

    entity_type: EntityType
    outcomes: list[EntityDetectionOutcome] = field(default_factory=list)
    duration_ms: float = 0.0

    def ids_with(self, status: OutcomeStatus) -> list[str]:
        """Return entity ids with the given outcome status, in request order."""
        return [outcome.entity_id for outcome in self.outcomes if outcome.status is status]

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    @property
    def events(self) -> list[ChangeEvent]:
        """All persisted events of the cycle."""
        return [event for outcome in self.outcomes for event in outcome.events]

    @property
    def changes_detected(self) -> int:
        return len(self.events)


@dataclass
class ServiceStats:
    """Cumulative counters since process start."""

    cycles: int = 0
    entities_processed: int = 0
    events_persisted: int = 0
    entities_failed: int = 0
    publish_failures: int = 0
    last_cycle_at: datetime | None = None

    def record(self, report: DetectionReport) -> None:
        self.cycles += 1
        self.entities_processed += len(report.outcomes)
        self.events_persisted += report.changes_detected
        self.entities_failed += report.count(OutcomeStatus.DEPENDENCY_ERROR)
        self.last_cycle_at = datetime.now(UTC)


@dataclass
class _Comparison:
    entity_id: str
    snapshot: NormalizedSnapshot
    record: SnapshotRecord | None
    events: list[ChangeEvent]


class ChangeDetectionService:
    """Orchestrates change detection for companies and entrepreneurs.

    Args:
        source: Source of current registry snapshots.
        snapshots: Store of last known snapshots.
        persistence: Change event persistence boundary.
        publisher: Optional downstream publisher of persisted events.
        allocator: Per-entity sequence allocator; a new one when omitted.
        settings: Service settings; environment defaults when omitted.
    """

    def __init__(
        self,
        source: IEntitySource,
        snapshots: ISnapshotStore,
        persistence: IChangePersistence,
        publisher: IChangeEventPublisher | None = None,
        allocator: SequenceAllocator | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._source = source
        self._snapshots = snapshots
        self._persistence = persistence
        self._publisher = publisher
        self._allocator = allocator or SequenceAllocator()
        self._settings = settings or Settings()
        self._coordinator = BatchCoordinator(persistence, max_batch_size=self._settings.batch_size)
        self.stats = ServiceStats()

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def detect(
        self,
        entity_type: EntityType,
        entity_ids: Sequence[str],
        timeout: float | None = None,
    ) -> DetectionReport:
        """Run one detection cycle over a list of entity ids.

        Ids are processed in batches of settings.batch_size. A failing fetch
        marks its batch as dependency_error and the cycle continues with the
        next batch.

        A batch-fetched snapshot without an identifier cannot be matched to
        the id it was requested for, so it is dropped and that id is reported
        not_found. detect_one() knows the requested id and reports the same
        snapshot as validation_error.

        Args:
            entity_type: company or entrepreneur.
            entity_ids: OGRNs or OGRNIPs. Duplicates are processed once.
            timeout: Overall deadline in seconds. Batches not started before
                it expires are reported as dependency_error.

        Returns:
            DetectionReport with exactly one outcome per distinct id.

        Raises:
            SubmissionCancelled: If the calling task is cancelled during a
                submission. Snapshots of entities acknowledged before the
                cancellation are advanced before the error propagates.
        """
        started = time.monotonic()
        ids = list(dict.fromkeys(entity_ids))
        report = DetectionReport(entity_type=entity_type)
        deadline = started + timeout if timeout is not None else None
        batch_size = self._settings.batch_size

        logger.info("Starting change detection", entity_type=entity_type.value, count=len(ids))

        for start in range(0, len(ids), batch_size):
            batch_ids = ids[start : start + batch_size]
            remaining = deadline - time.monotonic() if deadline is not None else None
            if remaining is not None and remaining <= 0:
                report.outcomes.extend(
                    self._failed(entity_type, batch_ids, OutcomeStatus.DEPENDENCY_ERROR, "deadline exceeded")
                )
                continue

            logger.debug(
                "Processing detection batch",
                entity_type=entity_type.value,
                batch_num=start // batch_size + 1,
                batch_size=len(batch_ids),
            )
            try:
                snapshots = await self._source.fetch_batch(entity_type, batch_ids)
            except DependencyError as exc:
                logger.error("Failed to fetch entity batch", entity_type=entity_type.value, error=str(exc))
                report.outcomes.extend(
                    self._failed(entity_type, batch_ids, OutcomeStatus.DEPENDENCY_ERROR, str(exc))
                )
                continue

            report.outcomes.extend(
                await self._process(
                    entity_type,
                    batch_ids,
                    self._index_snapshots(snapshots),
                    self._submit_timeout(remaining),
                )
            )

        report.duration_ms = (time.monotonic() - started) * 1000
        self.stats.record(report)
        logger.info(
            "Change detection completed",
            entity_type=entity_type.value,
            total=len(ids),
            succeeded=report.count(OutcomeStatus.SUCCESS),
            not_found=report.count(OutcomeStatus.NOT_FOUND),
            validation_errors=report.count(OutcomeStatus.VALIDATION_ERROR),
            dependency_errors=report.count(OutcomeStatus.DEPENDENCY_ERROR),
            changes_detected=report.changes_detected,
            duration_ms=round(report.duration_ms, 2),
        )
        return report

    async def detect_one(
        self,
        entity_type: EntityType,
        entity_id: str,
        timeout: float | None = None,
    ) -> EntityDetectionOutcome:
        """Run a detection cycle for a single entity using fetch_current.

        Args:
            entity_type: company or entrepreneur.
            entity_id: OGRN / OGRNIP.
            timeout: Deadline in seconds for the submission.

        Returns:
            The outcome of the entity.
        """
        try:
            snapshot = await self._source.fetch_current(entity_type, entity_id)
        except DependencyError as exc:
            logger.error("Failed to fetch entity", entity_id=entity_id, error=str(exc))
            return self._failed(entity_type, [entity_id], OutcomeStatus.DEPENDENCY_ERROR, str(exc))[0]
        found = {entity_id: normalize(snapshot)} if snapshot is not None else {}
        outcomes = await self._process(entity_type, [entity_id], found, self._submit_timeout(timeout))
        return outcomes[0]

    async def retry_failed(self, report: DetectionReport, timeout: float | None = None) -> DetectionReport:
        """Re-run detection for the entities of a report that hit a dependency error.

        Snapshots are fetched again, so the retried comparison is never made
        against stale data.
        """
        return await self.detect(
            report.entity_type,
            report.ids_with(OutcomeStatus.DEPENDENCY_ERROR),
            timeout=timeout,
        )

    def _submit_timeout(self, remaining: float | None) -> float | None:
        configured = self._settings.submit_timeout_seconds
        if remaining is None:
            return configured
        if configured is None:
            return remaining
        return min(remaining, configured)

    @staticmethod
    def _failed(
        entity_type: EntityType,
        entity_ids: Sequence[str],
        status: OutcomeStatus,
        error: str,
    ) -> list[EntityDetectionOutcome]:
        return [
            EntityDetectionOutcome(entity_type=entity_type, entity_id=entity_id, status=status, error=error)
            for entity_id in entity_ids
        ]

    @staticmethod
    def _index_snapshots(snapshots: Sequence[EntitySnapshot]) -> dict[str, NormalizedSnapshot]:
        found: dict[str, NormalizedSnapshot] = {}
        for raw in snapshots:
            snapshot = normalize(raw)
            if not snapshot.entity_id:
                logger.warning("Source returned snapshot without identifier", entity_type=raw.entity_type.value)
                continue
            found.setdefault(snapshot.entity_id, snapshot)
        return found

    async def _compare(
        self,
        entity_type: EntityType,
        entity_id: str,
        snapshot: NormalizedSnapshot,
        observed_at: datetime,
    ) -> _Comparison:
        if snapshot.entity_type is not entity_type:
            raise InvalidSnapshotError(entity_id, f"source returned a {snapshot.entity_type.value} snapshot")
        record = await self._snapshots.get_last_known(entity_type, entity_id)
        if record is not None:
            self._allocator.observe(entity_id, record.last_sequence)
        previous = record.snapshot if record is not None else None
        deltas = diff(entity_id, previous, snapshot)
        events = build_events(
            entity_type,
            entity_id,
            deltas,
            observed_at,
            self._allocator,
            snapshot=snapshot,
            composite=self._settings.composite_events,
        )
        if previous is None:
            logger.debug("No previous snapshot, baseline stored", entity_id=entity_id)
        elif not events:
            logger.debug("No changes detected", entity_id=entity_id)
        return _Comparison(entity_id=entity_id, snapshot=snapshot, record=record, events=events)

    async def _process(
        self,
        entity_type: EntityType,
        entity_ids: Sequence[str],
        found: dict[str, NormalizedSnapshot],
        timeout: float | None,
    ) -> list[EntityDetectionOutcome]:
        observed_at = datetime.now(UTC)
        outcomes: dict[str, EntityDetectionOutcome] = {}
        comparisons: list[_Comparison] = []

        for entity_id in entity_ids:
            snapshot = found.get(entity_id)
            if snapshot is None:
                outcomes[entity_id] = EntityDetectionOutcome(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    status=OutcomeStatus.NOT_FOUND,
                    error="entity not found in source",
                )
                continue
            try:
                comparisons.append(await self._compare(entity_type, entity_id, snapshot, observed_at))
            except InvalidSnapshotError as exc:
                self._allocator.release(entity_id)
                logger.warning("Skipping invalid snapshot", entity_id=entity_id, reason=exc.reason)
                outcomes[entity_id] = EntityDetectionOutcome(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    status=OutcomeStatus.VALIDATION_ERROR,
                    error=str(exc),
                )
            except DependencyError as exc:
                logger.error("Failed to load last known snapshot", entity_id=entity_id, error=str(exc))
                outcomes[entity_id] = EntityDetectionOutcome(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    status=OutcomeStatus.DEPENDENCY_ERROR,
                    error=str(exc),
                )

        events = [event for comparison in comparisons for event in comparison.events]
        try:
            result = await self._coordinator.submit(events, timeout=timeout)
        except SubmissionCancelled as exc:
            await self._advance(comparisons, exc.result, observed_at)
            raise

        outcomes.update(await self._advance(comparisons, result, observed_at))
        await self._publish(result)
        return [outcomes[entity_id] for entity_id in entity_ids]

    async def _advance(
        self,
        comparisons: Sequence[_Comparison],
        result: BatchResult,
        observed_at: datetime,
    ) -> dict[str, EntityDetectionOutcome]:
        """Store the new snapshot of every entity whose events are durable.

        Entities that produced no events are advanced too. Failed entities
        keep their old snapshot so a retry recomputes the same delta.
        Every entity is released from the allocator here, so its next cycle
        is seeded from the stored last_sequence and a recomputed delta reuses
        the keys of the attempt that was not acknowledged.
        """
        failures = {outcome.entity_id: outcome.error for outcome in result.failed}
        outcomes: dict[str, EntityDetectionOutcome] = {}

        for comparison in comparisons:
            entity_id = comparison.entity_id
            entity_type = comparison.snapshot.entity_type
            self._allocator.release(entity_id)
            if entity_id in failures:
                outcomes[entity_id] = EntityDetectionOutcome(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    status=OutcomeStatus.DEPENDENCY_ERROR,
                    error=failures[entity_id],
                )
                continue

            record = comparison.record
            last_sequence = record.last_sequence if record is not None else 0
            if comparison.events:
                state = EntityState.OBSERVED
                last_sequence = max(last_sequence, comparison.events[-1].sequence_key)
            else:
                state = record.state if record is not None else EntityState.BASELINED

            try:
                await self._snapshots.save(
                    SnapshotRecord(
                        snapshot=comparison.snapshot,
                        last_sequence=last_sequence,
                        state=state,
                        updated_at=observed_at,
                    )
                )
            except DependencyError as exc:
                logger.error(
                    "Events persisted but snapshot not advanced",
                    entity_id=entity_id,
                    events=len(comparison.events),
                    error=str(exc),
                )
                outcomes[entity_id] = EntityDetectionOutcome(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    status=OutcomeStatus.DEPENDENCY_ERROR,
                    events=tuple(comparison.events),
                    error=str(exc),
                )
                continue

            outcomes[entity_id] = EntityDetectionOutcome(
                entity_type=entity_type,
                entity_id=entity_id,
                status=OutcomeStatus.SUCCESS,
                events=tuple(comparison.events),
            )
            if comparison.events:
                logger.info(
                    "Entity changes detected",
                    entity_type=entity_type.value,
                    entity_id=entity_id,
                    changes_count=len(comparison.events),
                )
        return outcomes

    async def _publish(self, result: BatchResult) -> None:
        if self._publisher is None:
            return
        events = [event for outcome in result.succeeded for event in outcome.events]
        if not events:
            return
        try:
            await self._publisher.publish(events)
        except DependencyError as exc:
            self.stats.publish_failures += 1
            logger.error("Failed to publish change events", events=len(events), error=str(exc))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def resolve_limit(self, limit: int | None) -> int:
        """Return `limit` when it lies in (0, history_max_limit], else the default."""
        if limit is not None and 0 < limit <= self._settings.history_max_limit:
            return limit
        return self._settings.history_default_limit

    async def get_history(
        self,
        entity_type: EntityType,
        entity_id: str,
        limit: int | None = None,
    ) -> list[ChangeEvent]:
        """Return the change history of one entity, newest first.

        Raises:
            DependencyError: If the change store is unavailable.
        """
        return await self._persistence.get_history(entity_type, entity_id, self.resolve_limit(limit))

    async def get_recent(
        self,
        entity_type: EntityType,
        since: datetime | None = None,
    ) -> list[ChangeEvent]:
        """Return changes observed since `since` (default: the recent window).

        Raises:
            DependencyError: If the change store is unavailable.
        """
        if since is None:
            since = datetime.now(UTC) - timedelta(hours=self._settings.recent_window_hours)
        return await self._persistence.get_recent(entity_type, since)
