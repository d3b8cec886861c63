"""API router for egrul-change-detection.

All endpoints are registered here and included in main.py under the /api/v1
prefix. Routes are thin; all business logic lives in ChangeDetectionService.

Endpoints:
- POST  /detect                         - run a detection cycle
- GET   /companies/{ogrn}/changes       - change history of a company
- GET   /entrepreneurs/{ogrnip}/changes - change history of an entrepreneur
- GET   /changes/recent                 - recent changes of one entity type
- GET   /stats                          - cumulative service counters
"""

from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from egrul_change_detection.api.schemas import (
    ChangeEventResponse,
    ChangeListResponse,
    DetectRequest,
    DetectResponse,
    RecentChangesResponse,
    StatsResponse,
)
from egrul_change_detection.core.models import EntityType
from egrul_change_detection.core.services import ChangeDetectionService
from egrul_change_detection.observability import get_logger
from egrul_change_detection.settings import Settings

logger = get_logger(__name__)

router = APIRouter(tags=["changes"])


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def get_detection_service(request: Request) -> ChangeDetectionService:
    """Return the ChangeDetectionService wired by the lifespan handler.

    Args:
        request: The incoming request.

    Returns:
        The application-wide ChangeDetectionService.
    """
    return request.app.state.detection_service


def get_settings(request: Request) -> Settings:
    """Return the application settings."""
    return request.app.state.settings


ServiceDep = Annotated[ChangeDetectionService, Depends(get_detection_service)]
SettingsDep = Annotated[Settings, Depends(get_settings)]


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


@router.post("/detect", response_model=DetectResponse)
async def detect_changes(body: DetectRequest, service: ServiceDep, settings: SettingsDep) -> DetectResponse:
    """Run a detection cycle for the given entities.

    Args:
        body: Entity type and ids.
        service: The change detection service.
        settings: Application settings.

    Returns:
        Summary of the cycle with the entities that did not succeed.

    Raises:
        HTTPException: 400 when more ids are sent than one request accepts.
    """
    if len(body.entity_ids) > settings.max_entity_ids_per_request:
        raise HTTPException(
            status_code=400,
            detail=f"entity_ids cannot exceed {settings.max_entity_ids_per_request}",
        )

    logger.info("Detect changes request", entity_type=body.entity_type.value, count=len(body.entity_ids))
    report = await service.detect(body.entity_type, body.entity_ids)
    return DetectResponse.from_report(report)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@router.get("/companies/{ogrn}/changes", response_model=ChangeListResponse)
async def get_company_changes(
    ogrn: str,
    service: ServiceDep,
    limit: Annotated[int | None, Query(description="Max events; 1..1000, default 100")] = None,
) -> ChangeListResponse:
    """Return the change history of a company, newest first."""
    events = await service.get_history(EntityType.COMPANY, ogrn, limit)
    data = [ChangeEventResponse.from_event(event) for event in events]
    return ChangeListResponse(data=data, count=len(data))


@router.get("/entrepreneurs/{ogrnip}/changes", response_model=ChangeListResponse)
async def get_entrepreneur_changes(
    ogrnip: str,
    service: ServiceDep,
    limit: Annotated[int | None, Query(description="Max events; 1..1000, default 100")] = None,
) -> ChangeListResponse:
    """Return the change history of an entrepreneur, newest first."""
    events = await service.get_history(EntityType.ENTREPRENEUR, ogrnip, limit)
    data = [ChangeEventResponse.from_event(event) for event in events]
    return ChangeListResponse(data=data, count=len(data))


@router.get("/changes/recent", response_model=RecentChangesResponse)
async def get_recent_changes(
    service: ServiceDep,
    settings: SettingsDep,
    entity_type: Annotated[EntityType, Query(description="company | entrepreneur")] = EntityType.COMPANY,
    since: Annotated[datetime | None, Query(description="ISO-8601 lower bound; default last 24 hours")] = None,
) -> RecentChangesResponse:
    """Return changes of one entity type observed since a point in time."""
    if since is None:
        since = datetime.now(UTC) - timedelta(hours=settings.recent_window_hours)
    events = await service.get_recent(entity_type, since)
    data = [ChangeEventResponse.from_event(event) for event in events]
    return RecentChangesResponse(data=data, count=len(data), entity_type=entity_type, since=since)


@router.get("/stats", response_model=StatsResponse)
async def get_stats(service: ServiceDep) -> StatsResponse:
    """Return cumulative service counters."""
    return StatsResponse.from_stats(service.stats)
