"""
Sync API routes - Pending sync events, security alerts and sync config.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.dependencies import get_device_read_service, get_device_service, get_user_id
from app.exceptions import (
    SecurityAlertNotFoundError,
    SecurityAlertUpdateError,
    SyncConfigUpdateError,
    SyncEventUpdateError,
)
from app.models.api import (
    ActionResponse,
    SecurityAlertResponse,
    SyncConfigResponse,
    SyncConfigUpdateRequest,
    SyncEventResponse,
    SyncStatusResponse,
)
from app.models.domain import (
    SecurityAlertData,
    SyncConfigData,
    SyncConfigUpdate,
    SyncEventData,
)
from app.services.device_sync import DeviceSyncService

router = APIRouter(prefix="/v1/sync", tags=["sync"])


def _event_response(event: SyncEventData) -> SyncEventResponse:
    return SyncEventResponse(
        id=event.event_id,
        device_id=event.device_id,
        event_type=event.event_type,
        event_data=event.event_data,
        source_device_id=event.source_device_id,
        target_device_id=event.target_device_id,
        is_processed=event.is_processed,
        processed_at=event.processed_at,
        created_at=event.created_at,
    )


def _alert_response(alert: SecurityAlertData) -> SecurityAlertResponse:
    return SecurityAlertResponse(
        id=alert.alert_id,
        device_id=alert.device_id,
        alert_type=alert.alert_type,
        severity=alert.severity,
        alert_data=alert.alert_data,
        is_acknowledged=alert.is_acknowledged,
        acknowledged_at=alert.acknowledged_at,
        is_resolved=alert.is_resolved,
        resolved_at=alert.resolved_at,
        created_at=alert.created_at,
    )


def _config_response(config: SyncConfigData) -> SyncConfigResponse:
    return SyncConfigResponse(
        max_concurrent_sessions=config.max_concurrent_sessions,
        auto_logout_inactive_sessions=config.auto_logout_inactive_sessions,
        inactive_session_timeout=config.inactive_session_timeout,
        require_device_approval=config.require_device_approval,
        enable_security_alerts=config.enable_security_alerts,
        sync_preferences=config.sync_preferences,
        sync_activity=config.sync_activity,
    )


@router.get("", response_model=SyncStatusResponse)
async def get_sync_status(
    user_id: str = Depends(get_user_id),
    service: DeviceSyncService = Depends(get_device_read_service),
) -> SyncStatusResponse:
    """Unresolved alerts, unprocessed events and the effective sync config."""
    alerts = await service.get_security_alerts(user_id)
    events = await service.get_pending_sync_events(user_id)
    config = await service.get_sync_config(user_id)
    return SyncStatusResponse(
        security_alerts=[_alert_response(a) for a in alerts],
        pending_events=[_event_response(e) for e in events],
        sync_config=_config_response(config),
    )


@router.post("/events/{event_id}/processed", response_model=ActionResponse)
async def mark_event_processed(
    event_id: UUID,
    user_id: str = Depends(get_user_id),
    service: DeviceSyncService = Depends(get_device_service),
) -> ActionResponse:
    """Acknowledge a sync event. Repeating the call is harmless."""
    try:
        found = await service.mark_sync_event_processed(event_id, user_id=user_id)
    except SyncEventUpdateError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Sync event could not be acknowledged",
        ) from exc
    if not found:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync event {event_id} not found",
        )
    return ActionResponse(message="Sync event marked as processed")


@router.post("/alerts/{alert_id}/acknowledge", response_model=SecurityAlertResponse)
async def acknowledge_alert(
    alert_id: UUID,
    user_id: str = Depends(get_user_id),
    service: DeviceSyncService = Depends(get_device_service),
) -> SecurityAlertResponse:
    """Mark an alert as seen. It stays listed until resolved."""
    try:
        alert = await service.acknowledge_security_alert(alert_id, user_id=user_id)
    except SecurityAlertNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SecurityAlertUpdateError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Security alert could not be updated",
        ) from exc
    return _alert_response(alert)


@router.post("/alerts/{alert_id}/resolve", response_model=SecurityAlertResponse)
async def resolve_alert(
    alert_id: UUID,
    user_id: str = Depends(get_user_id),
    service: DeviceSyncService = Depends(get_device_service),
) -> SecurityAlertResponse:
    """Close an alert."""
    try:
        alert = await service.resolve_security_alert(alert_id, user_id=user_id)
    except SecurityAlertNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SecurityAlertUpdateError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Security alert could not be updated",
        ) from exc
    return _alert_response(alert)


@router.put("/config", response_model=SyncConfigResponse)
async def update_sync_config(
    body: SyncConfigUpdateRequest,
    user_id: str = Depends(get_user_id),
    service: DeviceSyncService = Depends(get_device_service),
) -> SyncConfigResponse:
    """Partially update the user's sync config; omitted fields are kept."""
    changes = SyncConfigUpdate(**body.model_dump(exclude_none=True))
    try:
        config = await service.update_sync_config(user_id, changes)
    except SyncConfigUpdateError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Sync config could not be updated",
        ) from exc
    return _config_response(config)
