"""Pydantic request and response schemas for the change detection API.

All API inputs and outputs use Pydantic models, never raw dicts.

Resources:
- Detection     - trigger a detection cycle for a list of entity ids
- ChangeEvent   - change history and recent changes
- Stats         - cumulative service counters
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from egrul_change_detection.core.models import ChangeCategory, ChangeEvent, EntityType
from egrul_change_detection.core.services import (
    DetectionReport,
    EntityDetectionOutcome,
    OutcomeStatus,
    ServiceStats,
)


# ---------------------------------------------------------------------------
# Detection schemas
# ---------------------------------------------------------------------------


class DetectRequest(BaseModel):
    """Request body for a detection cycle."""

    entity_type: EntityType = Field(description="company | entrepreneur")
    entity_ids: list[str] = Field(
        min_length=1,
        description="OGRNs for companies, OGRNIPs for entrepreneurs",
    )


class EntityOutcomeResponse(BaseModel):
    """Outcome of one entity that did not complete successfully."""

    entity_id: str = Field(description="OGRN / OGRNIP")
    status: OutcomeStatus = Field(description="validation_error | dependency_error | not_found")
    error: str | None = Field(default=None, description="Failure description")

    @classmethod
    def from_outcome(cls, outcome: EntityDetectionOutcome) -> "EntityOutcomeResponse":
        return cls(entity_id=outcome.entity_id, status=outcome.status, error=outcome.error)


class DetectResponse(BaseModel):
    """Summary of a detection cycle."""

    success: bool = Field(description="True when every entity was processed without a dependency error")
    message: str
    entity_type: EntityType
    count: int = Field(description="Number of distinct entity ids processed")
    changes_detected: int = Field(description="Change events persisted in this cycle")
    succeeded: int
    not_found: int
    validation_errors: int
    dependency_errors: int
    duration_ms: float
    failures: list[EntityOutcomeResponse] = Field(
        default_factory=list,
        description="Entities that did not complete successfully",
    )

    @classmethod
    def from_report(cls, report: DetectionReport) -> "DetectResponse":
        dependency_errors = report.count(OutcomeStatus.DEPENDENCY_ERROR)
        return cls(
            success=dependency_errors == 0,
            message=(
                "Change detection completed successfully"
                if dependency_errors == 0
                else "Change detection completed with failures"
            ),
            entity_type=report.entity_type,
            count=len(report.outcomes),
            changes_detected=report.changes_detected,
            succeeded=report.count(OutcomeStatus.SUCCESS),
            not_found=report.count(OutcomeStatus.NOT_FOUND),
            validation_errors=report.count(OutcomeStatus.VALIDATION_ERROR),
            dependency_errors=dependency_errors,
            duration_ms=round(report.duration_ms, 2),
            failures=[
                EntityOutcomeResponse.from_outcome(outcome)
                for outcome in report.outcomes
                if outcome.status is not OutcomeStatus.SUCCESS
            ],
        )


# ---------------------------------------------------------------------------
# ChangeEvent schemas
# ---------------------------------------------------------------------------


class ChangeEventResponse(BaseModel):
    """Response schema for a persisted change event."""

    event_id: uuid.UUID
    entity_type: EntityType
    entity_id: str
    category: ChangeCategory
    deltas: list[dict[str, Any]] = Field(description="Field deltas: field, kind, previous, current, item_key")
    observed_at: datetime
    sequence_key: int
    is_significant: bool
    description: str
    entity_name: str | None = None
    inn: str | None = None
    region_code: str | None = None

    @classmethod
    def from_event(cls, event: ChangeEvent) -> "ChangeEventResponse":
        return cls.model_validate(event.model_dump(mode="json"))


class ChangeListResponse(BaseModel):
    """Change history of one entity, newest first."""

    success: bool = True
    data: list[ChangeEventResponse]
    count: int


class RecentChangesResponse(BaseModel):
    """Changes of one entity type observed since a point in time."""

    success: bool = True
    data: list[ChangeEventResponse]
    count: int
    entity_type: EntityType
    since: datetime


# ---------------------------------------------------------------------------
# Stats schemas
# ---------------------------------------------------------------------------


class StatsResponse(BaseModel):
    """Cumulative counters since process start."""

    success: bool = True
    cycles: int
    entities_processed: int
    events_persisted: int
    entities_failed: int
    publish_failures: int
    last_cycle_at: datetime | None

    @classmethod
    def from_stats(cls, stats: ServiceStats) -> "StatsResponse":
        return cls(
            cycles=stats.cycles,
            entities_processed=stats.entities_processed,
            events_persisted=stats.events_persisted,
            entities_failed=stats.entities_failed,
            publish_failures=stats.publish_failures,
            last_cycle_at=stats.last_cycle_at,
        )
