"""
Device API routes - Device login, session listing and logout.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from structlog import get_logger

from app.api.dependencies import (
    ServiceCaller,
    get_client_ip,
    get_device_read_service,
    get_device_service,
    get_trial_service,
    get_user_id,
    require_service_key,
)
from app.exceptions import (
    DeviceLogoutError,
    DeviceNotFoundError,
    DeviceRegistrationError,
    DeviceUpdateError,
    InvalidFingerprintError,
    SessionCreationError,
    SessionUpdateError,
)
from app.models.api import (
    ActionResponse,
    DeviceListResponse,
    DeviceLoginRequest,
    DeviceLoginResponse,
    DeviceSessionResponse,
    DeviceTrustRequest,
    LogoutCountResponse,
    LogoutMultipleRequest,
    LogoutOthersRequest,
    SessionTouchRequest,
    SyncEventType,
    UserDeviceResponse,
)
from app.models.domain import DeviceInfo, DeviceSessionData, UserDeviceData
from app.services.device_sync import DeviceSyncService
from app.services.trial_quota import TrialQuotaService

logger = get_logger(__name__)
router = APIRouter(tags=["devices"])


def _session_response(session: DeviceSessionData) -> DeviceSessionResponse:
    return DeviceSessionResponse(
        id=session.session_id,
        device_id=session.device_id,
        is_active=session.is_active,
        login_method=session.login_method,
        login_at=session.login_at,
        last_activity_at=session.last_activity_at,
        expires_at=session.expires_at,
        logout_at=session.logout_at,
        logout_reason=session.logout_reason,
    )


def _device_response(
    device: UserDeviceData, sessions: list[DeviceSessionData] | None = None
) -> UserDeviceResponse:
    return UserDeviceResponse(
        id=device.device_id,
        device_fingerprint=device.device_fingerprint,
        device_name=device.device_name,
        device_type=device.device_type,
        browser_name=device.browser_name,
        browser_version=device.browser_version,
        os_name=device.os_name,
        os_version=device.os_version,
        ip_address=device.ip_address,
        is_trusted=device.is_trusted,
        is_active=device.is_active,
        first_seen_at=device.first_seen_at,
        last_seen_at=device.last_seen_at,
        sessions=[_session_response(s) for s in sessions] if sessions is not None else None,
    )


def _device_not_found(exc: DeviceNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.post(
    "/v1/devices/login",
    response_model=DeviceLoginResponse,
    status_code=status.HTTP_201_CREATED,
)
async def device_login(
    body: DeviceLoginRequest,
    request: Request,
    user_id: str = Depends(get_user_id),
    service: DeviceSyncService = Depends(get_device_service),
    trials: TrialQuotaService = Depends(get_trial_service),
) -> DeviceLoginResponse:
    """
    Register the device, open a session and enforce the session cap.

    Oldest sessions beyond the user's cap are evicted after the new session
    is created, so the new login always survives.
    """
    payload = body.device
    info = DeviceInfo(
        fingerprint=payload.fingerprint,
        device_type=payload.type,
        name=payload.name,
        browser_name=payload.browser_name,
        browser_version=payload.browser_version,
        os_name=payload.os_name,
        os_version=payload.os_version,
        ip_address=get_client_ip(request),
        user_agent=payload.user_agent or request.headers.get("User-Agent"),
        location=payload.location,
    )

    try:
        device_id = await service.register_device(user_id, info)
        session_id = await service.create_device_session(
            device_id,
            body.session_token,
            body.login_method,
            body.expires_at,
            external_session_id=body.external_session_id,
        )
    except (DeviceRegistrationError, SessionCreationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Device login could not be recorded",
        ) from exc

    terminated = await service.handle_login_conflicts(user_id, device_id)
    await service.create_sync_event(
        user_id,
        device_id,
        SyncEventType.LOGIN,
        {"login_method": body.login_method, "device_name": payload.name},
    )

    if body.fingerprint_converted:
        try:
            await trials.mark_user_converted(payload.fingerprint, user_id)
        except InvalidFingerprintError as exc:
            logger.warning("trial_conversion_skipped", user_id=user_id, reason=exc.reason)

    report = await service.detect_login_conflicts(user_id, device_id)
    return DeviceLoginResponse(
        device_id=device_id,
        session_id=session_id,
        active_sessions=report.active_sessions,
        max_sessions=report.max_sessions,
        sessions_terminated=terminated,
    )


@router.get("/v1/devices", response_model=DeviceListResponse)
async def list_devices(
    include_sessions: bool = Query(False, description="Embed each device's sessions"),
    user_id: str = Depends(get_user_id),
    service: DeviceSyncService = Depends(get_device_read_service),
) -> DeviceListResponse:
    """All devices of the user, most recently seen first."""
    devices = await service.get_user_devices(user_id)
    items = []
    for device in devices:
        sessions = (
            await service.get_device_sessions(device.device_id) if include_sessions else None
        )
        items.append(_device_response(device, sessions))

    return DeviceListResponse(
        devices=items,
        total=len(devices),
        active=sum(1 for d in devices if d.is_active),
    )


@router.get("/v1/devices/{device_id}/sessions", response_model=list[DeviceSessionResponse])
async def list_device_sessions(
    device_id: UUID,
    user_id: str = Depends(get_user_id),
    service: DeviceSyncService = Depends(get_device_read_service),
) -> list[DeviceSessionResponse]:
    """Sessions of one of the user's devices, newest login first."""
    try:
        await service.get_device(user_id, device_id)
    except DeviceNotFoundError as exc:
        raise _device_not_found(exc) from exc

    return [_session_response(s) for s in await service.get_device_sessions(device_id)]


@router.post("/v1/devices/logout-others", response_model=LogoutCountResponse)
async def logout_other_devices(
    body: LogoutOthersRequest,
    user_id: str = Depends(get_user_id),
    service: DeviceSyncService = Depends(get_device_service),
) -> LogoutCountResponse:
    """Log out every device of the user except the current one."""
    try:
        await service.get_device(user_id, body.current_device_id)
        count = await service.logout_other_devices(user_id, body.current_device_id)
    except DeviceNotFoundError as exc:
        raise _device_not_found(exc) from exc
    except DeviceLogoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Other devices could not be logged out",
        ) from exc

    return LogoutCountResponse(
        logged_out_count=count,
        message=f"Logged out {count} other device(s)",
    )


@router.post("/v1/devices/logout-multiple", response_model=LogoutCountResponse)
async def logout_multiple_devices(
    body: LogoutMultipleRequest,
    user_id: str = Depends(get_user_id),
    service: DeviceSyncService = Depends(get_device_service),
) -> LogoutCountResponse:
    """Log out the listed devices; unknown or failing devices are skipped."""
    count = await service.logout_devices(user_id, body.device_ids)
    return LogoutCountResponse(
        logged_out_count=count,
        message=f"Logged out {count} of {len(body.device_ids)} device(s)",
    )


@router.post("/v1/devices/{device_id}/logout", response_model=LogoutCountResponse)
async def logout_device(
    device_id: UUID,
    user_id: str = Depends(get_user_id),
    service: DeviceSyncService = Depends(get_device_service),
) -> LogoutCountResponse:
    """Terminate every session of one device and deactivate it."""
    try:
        terminated = await service.logout_device(device_id, user_id=user_id)
    except DeviceNotFoundError as exc:
        raise _device_not_found(exc) from exc
    except DeviceLogoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Device could not be logged out",
        ) from exc

    return LogoutCountResponse(
        logged_out_count=terminated,
        message=f"Device logged out ({terminated} session(s) ended)",
    )


@router.post("/v1/devices/{device_id}/trust", response_model=UserDeviceResponse)
async def set_device_trust(
    device_id: UUID,
    body: DeviceTrustRequest,
    user_id: str = Depends(get_user_id),
    service: DeviceSyncService = Depends(get_device_service),
) -> UserDeviceResponse:
    """Mark one of the user's devices as trusted or untrusted."""
    try:
        device = await service.set_device_trust(user_id, device_id, body.trusted)
    except DeviceNotFoundError as exc:
        raise _device_not_found(exc) from exc
    except DeviceUpdateError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Device trust could not be updated",
        ) from exc
    return _device_response(device)


@router.post("/v1/sessions/touch", response_model=ActionResponse)
async def touch_session(
    body: SessionTouchRequest,
    service: DeviceSyncService = Depends(get_device_service),
    caller: ServiceCaller = Depends(require_service_key),
) -> ActionResponse:
    """Record activity on an active session."""
    try:
        touched = await service.touch_session(body.session_token)
    except SessionUpdateError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Session activity could not be recorded",
        ) from exc
    if not touched:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found or no longer active",
        )
    return ActionResponse(message="Session activity recorded")
