"""
Trial API routes - Anonymous trial consumption and status.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.api.dependencies import (
    ServiceCaller,
    get_client_ip,
    get_trial_service,
    require_service_key,
)
from app.exceptions import InvalidFingerprintError
from app.models.api import (
    ActionResponse,
    TrialActionItem,
    TrialConsumeRequest,
    TrialConsumeResponse,
    TrialConvertRequest,
    TrialDenialReason,
    TrialStatsResponse,
    TrialStatusResponse,
)
from app.models.domain import LoginAnalyticsEvent
from app.services.trial_quota import TrialQuotaService

router = APIRouter(prefix="/v1/trials", tags=["trials"])

RECENT_ACTIONS_SHOWN = 10


def _invalid_fingerprint(exc: InvalidFingerprintError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.reason)


@router.post("/consume", response_model=TrialConsumeResponse)
async def consume_trial(
    body: TrialConsumeRequest,
    request: Request,
    service: TrialQuotaService = Depends(get_trial_service),
    caller: ServiceCaller = Depends(require_service_key),
) -> JSONResponse:
    """
    Consume trials for one gated action.

    Denials are normal responses carrying remaining/next_reset_at:
    429 when rate limited or exhausted, 403 while blocked.
    """
    ip_address = get_client_ip(request)
    user_agent = body.user_agent or request.headers.get("User-Agent")

    try:
        rate = await service.check_rate_limit(body.fingerprint)
        if not rate.allowed:
            await service.record_login_analytics(
                LoginAnalyticsEvent(
                    event_type="trial_rate_limited",
                    fingerprint=body.fingerprint,
                    trigger_type=body.action.value,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
            response = TrialConsumeResponse(
                success=False,
                remaining=rate.remaining,
                rate_limited=True,
                denial_reason=TrialDenialReason.RATE_LIMITED,
                message="Too many requests. Please try again later.",
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content=response.model_dump(mode="json"),
            )

        result = await service.consume_trial(
            body.fingerprint,
            body.action,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=body.metadata,
        )
    except InvalidFingerprintError as exc:
        raise _invalid_fingerprint(exc) from exc

    response = TrialConsumeResponse(
        success=result.success,
        remaining=result.remaining,
        blocked=result.blocked,
        message=result.message,
        next_reset_at=result.next_reset_at,
        denial_reason=result.denial_reason,
    )
    if result.success:
        return JSONResponse(
            status_code=status.HTTP_200_OK, content=response.model_dump(mode="json")
        )

    await service.record_login_analytics(
        LoginAnalyticsEvent(
            event_type="trial_exhausted",
            fingerprint=body.fingerprint,
            trigger_type=body.action.value,
            context={"remaining": result.remaining},
            ip_address=ip_address,
            user_agent=user_agent,
        )
    )
    code = (
        status.HTTP_403_FORBIDDEN
        if result.denial_reason == TrialDenialReason.BLOCKED
        else status.HTTP_429_TOO_MANY_REQUESTS
    )
    return JSONResponse(status_code=code, content=response.model_dump(mode="json"))


@router.get("/{fingerprint}", response_model=TrialStatusResponse)
async def get_trial_status(
    fingerprint: str,
    service: TrialQuotaService = Depends(get_trial_service),
    caller: ServiceCaller = Depends(require_service_key),
) -> TrialStatusResponse:
    """Trial status, usage stats and the most recent actions."""
    try:
        trial = await service.get_trial_status(fingerprint)
        stats = await service.get_trial_stats(fingerprint)
    except InvalidFingerprintError as exc:
        raise _invalid_fingerprint(exc) from exc

    return TrialStatusResponse(
        fingerprint=trial.fingerprint,
        remaining=trial.remaining,
        total=trial.total,
        is_blocked=trial.is_blocked,
        next_reset_at=trial.next_reset_at,
        actions=[
            TrialActionItem(type=a.type, timestamp=a.timestamp, ip_address=a.ip_address)
            for a in trial.actions[-RECENT_ACTIONS_SHOWN:]
        ],
        stats=TrialStatsResponse(
            total_actions=stats.total_actions,
            actions_today=stats.actions_today,
            actions_this_hour=stats.actions_this_hour,
            last_action_at=stats.last_action_at,
        ),
    )


@router.post("/{fingerprint}/convert", response_model=ActionResponse)
async def convert_trial(
    fingerprint: str,
    body: TrialConvertRequest,
    service: TrialQuotaService = Depends(get_trial_service),
    caller: ServiceCaller = Depends(require_service_key),
) -> ActionResponse:
    """Record that an anonymous device authenticated as a user."""
    try:
        found = await service.mark_user_converted(fingerprint, body.user_id)
    except InvalidFingerprintError as exc:
        raise _invalid_fingerprint(exc) from exc

    if not found:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No trial record for fingerprint {fingerprint}",
        )

    await service.record_login_analytics(
        LoginAnalyticsEvent(
            event_type="user_converted",
            fingerprint=fingerprint,
            user_id=body.user_id,
            provider=body.provider,
        )
    )
    return ActionResponse(message="Trial marked as converted")
