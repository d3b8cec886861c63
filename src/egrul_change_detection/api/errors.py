"""Exception handlers mapping engine errors onto HTTP responses.

- DependencyError       -> 503 (a collaborator is unavailable; retryable)
- InvalidSnapshotError  -> 422
- ChangeDetectionError  -> 500

Responses keep the {"success": false, "error": ...} shape of the API.
"""

from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from egrul_change_detection.errors import ChangeDetectionError, DependencyError, InvalidSnapshotError
from egrul_change_detection.observability import get_logger

logger = get_logger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Register change detection exception handlers on a FastAPI app."""

    @app.exception_handler(DependencyError)
    async def _dependency_error_handler(request: Request, exc: DependencyError) -> Response:
        logger.error("Dependency unavailable", path=request.url.path, dependency=exc.dependency, error=exc.message)
        return JSONResponse(
            status_code=503,
            content={"success": False, "error": str(exc), "dependency": exc.dependency},
        )

    @app.exception_handler(InvalidSnapshotError)
    async def _invalid_snapshot_handler(request: Request, exc: InvalidSnapshotError) -> Response:
        return JSONResponse(status_code=422, content={"success": False, "error": str(exc)})

    @app.exception_handler(ChangeDetectionError)
    async def _change_detection_error_handler(request: Request, exc: ChangeDetectionError) -> Response:
        logger.error("Change detection error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})
