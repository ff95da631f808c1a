"""
Health check endpoint for monitoring.
"""
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from filevault.database import get_db
from filevault.schemas.health import HealthResponse
from filevault.utils.logger import get_logger

logger = get_logger("health")
router = APIRouter()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check database connectivity and report the active KMS provider",
    responses={
        200: {"description": "Service is healthy"},
        503: {"description": "Service is unhealthy"}
    }
)
async def health_check(
    request: Request,
    db: AsyncSession = Depends(get_db)
) -> HealthResponse:
    kms = getattr(request.app.state, "kms_provider", None)
    kms_provider = kms.get_provider_version() if kms is not None else "unconfigured"

    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check: database connection failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "degraded",
                "database": "disconnected",
                "kms_provider": kms_provider,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )

    return HealthResponse(
        status="healthy" if kms is not None else "degraded",
        database="connected",
        kms_provider=kms_provider,
        timestamp=datetime.now(timezone.utc)
    )
