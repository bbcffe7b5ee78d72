"""
Maintenance API routes - Periodic cleanup triggered by a scheduler.

Service key auth only; no user context.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.dependencies import (
    ServiceCaller,
    get_device_service,
    get_trial_service,
    require_service_key,
)
from app.exceptions import SessionUpdateError, TrialStoreUnavailableError
from app.models.api import CleanupResponse
from app.services.device_sync import DeviceSyncService
from app.services.trial_quota import TrialQuotaService

router = APIRouter(prefix="/v1/maintenance", tags=["maintenance"])


@router.post("/cleanup-sessions", response_model=CleanupResponse)
async def cleanup_sessions(
    service: DeviceSyncService = Depends(get_device_service),
    caller: ServiceCaller = Depends(require_service_key),
) -> CleanupResponse:
    """Deactivate expired and inactive device sessions."""
    try:
        cleaned = await service.cleanup_expired_sessions()
    except SessionUpdateError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session cleanup failed",
        ) from exc
    return CleanupResponse(cleaned_count=cleaned, message=f"Deactivated {cleaned} session(s)")


@router.post("/cleanup-trials", response_model=CleanupResponse)
async def cleanup_trials(
    retention_days: int | None = Query(None, gt=0, description="Override retention window"),
    service: TrialQuotaService = Depends(get_trial_service),
    caller: ServiceCaller = Depends(require_service_key),
) -> CleanupResponse:
    """Purge unconverted trial records idle beyond the retention window."""
    try:
        removed = await service.cleanup_expired_data(retention_days)
    except TrialStoreUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Trial store unavailable",
        ) from exc
    return CleanupResponse(cleaned_count=removed, message=f"Removed {removed} trial record(s)")
