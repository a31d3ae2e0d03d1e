"""FastAPI service for incident duplicate detection.

Provides REST API endpoints for:
- Health checks (Cloud Run compatibility)
- Running one duplicate detection pass
- Listing persisted duplicate groups

Endpoints:
- GET /health: Service health and similarity oracle availability
- POST /duplicates/run-once: Run one pass (optionally scoped to year/month)
- GET /duplicates/groups: Persisted groups ordered by label

Service runs on port 8004.
"""

from typing import Optional
import threading

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from src.common.logging import get_logger
from src.duplicate_detection.duplicate_service import DuplicateDetectionService
from src.duplicate_detection.firestore_repository import IncidentRepositoryError
from src.duplicate_detection.models import (
    DuplicateGroupListResponse,
    DuplicateGroupResponse,
    DuplicatePassRequest,
    DuplicatePassSummary,
    ErrorResponse,
    HealthResponse,
    PassStatus,
    TriggeredBy,
)

logger = get_logger(__name__)

# Service version
VERSION = "1.0.0"

app = FastAPI(
    title="IncidentOps Duplicate Detection Service",
    description="Groups incident records that describe the same underlying issue.",
    version=VERSION,
)

# Lazy-initialized service (to avoid connection issues at import time)
_service: Optional[DuplicateDetectionService] = None

# One pass at a time per process
_pass_lock = threading.Lock()


def get_service() -> DuplicateDetectionService:
    """Get or create the duplicate detection service singleton."""
    global _service
    if _service is None:
        _service = DuplicateDetectionService()
    return _service


# ============================================================================
# Health Check Endpoint
# ============================================================================


@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check endpoint",
    description="Returns service health status for Cloud Run health checks.",
)
def health_check() -> HealthResponse:
    """Check service health and similarity oracle availability."""
    oracle_name = "unknown"
    oracle_status = "unavailable"

    try:
        service = get_service()
        oracle_name = service.settings.similarity_oracle
        if service.oracle.is_available():
            oracle_status = "available"
    except Exception as e:
        logger.warning(f"Similarity oracle check failed: {e}")

    return HealthResponse(
        status="healthy",
        version=VERSION,
        similarity_oracle=oracle_name,
        oracle_status=oracle_status,
    )


# ============================================================================
# Duplicate Detection Endpoints
# ============================================================================


@app.post(
    "/duplicates/run-once",
    response_model=DuplicatePassSummary,
    responses={
        409: {"model": ErrorResponse, "description": "A pass is already running"},
        500: {"model": ErrorResponse, "description": "Persistence or internal failure"},
        503: {"model": ErrorResponse, "description": "Similarity oracle unavailable"},
    },
    summary="Run one duplicate detection pass",
    description="""
    Evaluates every unresolved incident (optionally only those opened in
    `year`/`month`) against incidents opened within its time window,
    consolidates duplicates into groups and persists their labels.
    """,
)
def run_duplicate_pass(
    request: Optional[DuplicatePassRequest] = None,
) -> DuplicatePassSummary:
    """Run one duplicate detection pass.

    Raises:
        HTTPException: 409 if a pass is running, 503 if the oracle is
            unavailable, 500 on persistence or internal failure.
    """
    if not _pass_lock.acquire(blocking=False):
        raise HTTPException(
            status_code=409,
            detail=ErrorResponse(
                error="pass_in_progress",
                message="A duplicate detection pass is already running.",
            ).model_dump(),
        )

    try:
        year = month = None
        dry_run = False
        triggered_by = TriggeredBy.MANUAL

        if request:
            year = request.year
            month = request.month
            dry_run = request.dry_run or False
            triggered_by = request.triggered_by or TriggeredBy.MANUAL

        logger.info(
            "Duplicate detection pass requested",
            extra={
                "scope_year": year,
                "scope_month": month,
                "dry_run": dry_run,
                "triggered_by": triggered_by.value,
            },
        )

        try:
            summary = get_service().run_pass(
                year=year,
                month=month,
                triggered_by=triggered_by,
                dry_run=dry_run,
            )
        except Exception as e:
            logger.error(f"Duplicate detection pass failed: {e}", exc_info=True)
            raise HTTPException(
                status_code=500,
                detail=ErrorResponse(
                    error="internal_error",
                    message="Duplicate detection pass failed.",
                    details={"original_error": str(e)},
                ).model_dump(),
            )
    finally:
        _pass_lock.release()

    if summary.status == PassStatus.ORACLE_UNAVAILABLE:
        raise HTTPException(
            status_code=503,
            detail=ErrorResponse(
                error="oracle_unavailable",
                message="Similarity oracle is unavailable. Try again later.",
                details={"runId": summary.run_id, "retryable": True},
            ).model_dump(),
        )

    if summary.status == PassStatus.PERSISTENCE_FAILED:
        raise HTTPException(
            status_code=500,
            detail=ErrorResponse(
                error="persistence_failed",
                message="Duplicate labels could not be persisted; nothing was written.",
                details={"runId": summary.run_id, "original_error": summary.error_reason},
            ).model_dump(),
        )

    return summary


@app.get(
    "/duplicates/groups",
    response_model=DuplicateGroupListResponse,
    summary="List duplicate groups",
    description="Returns persisted duplicate groups ordered by label, members ordered by incident number.",
)
def list_duplicate_groups() -> DuplicateGroupListResponse:
    """List persisted duplicate groups."""
    try:
        groups = get_service().list_groups()
    except IncidentRepositoryError as e:
        logger.error(f"Failed to list duplicate groups: {e}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=ErrorResponse(
                error="internal_error",
                message="Failed to list duplicate groups.",
                details={"original_error": str(e)},
            ).model_dump(),
        )

    return DuplicateGroupListResponse(
        groups=[
            DuplicateGroupResponse(
                label=group.label,
                incident_numbers=group.incident_numbers,
                incident_ids=group.incident_ids,
            )
            for group in groups
        ],
        total=len(groups),
    )


# ============================================================================
# Error Handlers
# ============================================================================


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="internal_error",
            message="An unexpected error occurred.",
            details={"type": type(exc).__name__},
        ).model_dump(),
    )


# ============================================================================
# Main Entry Point
# ============================================================================


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.duplicate_detection.main:app",
        host="0.0.0.0",
        port=8004,
        reload=True,
    )
