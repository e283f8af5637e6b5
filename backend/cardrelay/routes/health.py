"""Health check endpoint."""

from fastapi import APIRouter, Depends

from cardrelay.config import Settings, get_settings
from cardrelay.models import HealthResponse

router = APIRouter()


@router.get("/api/health", response_model=HealthResponse)
async def health(settings: Settings = Depends(get_settings)) -> HealthResponse:
    status = "ok" if settings.upstream_configured else "degraded"
    return HealthResponse(
        status=status,
        upstream_configured=settings.upstream_configured,
        tenant_store_configured=settings.tenant_store_configured,
    )
