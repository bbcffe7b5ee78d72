"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class TrialActionType(str, Enum):
    """Trial-gated action types."""

    VIDEO_ANALYSIS = "video_analysis"
    CHANNEL_ANALYSIS = "channel_analysis"
    COMMENT_ANALYSIS = "comment_analysis"
    EXPORT_DATA = "export_data"
    SAVE_REPORT = "save_report"
    BATCH_ANALYSIS = "batch_analysis"
    GENERATE_REPORT = "generate_report"


# Trials consumed per action
TRIAL_ACTION_WEIGHTS: dict[TrialActionType, int] = {
    TrialActionType.VIDEO_ANALYSIS: 1,
    TrialActionType.CHANNEL_ANALYSIS: 2,
    TrialActionType.COMMENT_ANALYSIS: 1,
    TrialActionType.EXPORT_DATA: 1,
    TrialActionType.SAVE_REPORT: 1,
    TrialActionType.BATCH_ANALYSIS: 3,
    TrialActionType.GENERATE_REPORT: 1,
}


class TrialDenialReason(str, Enum):
    """Why a consume attempt was denied."""

    BLOCKED = "blocked"  # Block from an earlier exhaustion still active
    EXHAUSTED = "exhausted"  # Not enough trials left for this action
    RATE_LIMITED = "rate_limited"


class TrialStoreMode(str, Enum):
    """Which trial store is currently serving requests."""

    DURABLE = "durable"
    MEMORY = "memory"


class DeviceType(str, Enum):
    """Device form factor."""

    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


class SyncEventType(str, Enum):
    """Sync event type enumeration."""

    LOGIN = "login"
    LOGOUT = "logout"
    CONFLICT = "conflict"
    SECURITY_ALERT = "security_alert"
    SYNC = "sync"


class SecurityAlertType(str, Enum):
    """Security alert type enumeration."""

    NEW_DEVICE = "new_device"
    SUSPICIOUS_LOGIN = "suspicious_login"
    CONCURRENT_SESSIONS = "concurrent_sessions"
    LOCATION_CHANGE = "location_change"


class AlertSeverity(str, Enum):
    """Security alert severity enumeration."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class LogoutReason(str, Enum):
    """Why a device session was terminated."""

    USER_INITIATED = "user_initiated"
    CONFLICT = "conflict"
    SESSION_EXPIRED = "session_expired"
    INACTIVE_TIMEOUT = "inactive_timeout"
    LOGOUT_OTHER_DEVICES = "logout_other_devices"


# ============================================================================
# Trial Models
# ============================================================================


class TrialConsumeRequest(BaseModel):
    """POST /v1/trials/consume request body."""

    action: TrialActionType
    fingerprint: str = Field(..., min_length=1, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)
    user_agent: str | None = Field(None, max_length=2048)

    @field_validator("fingerprint")
    @classmethod
    def validate_fingerprint(cls, v: str) -> str:
        """Reject whitespace-only fingerprints."""
        if not v.strip():
            raise ValueError("fingerprint cannot be blank")
        return v


class TrialConsumeResponse(BaseModel):
    """POST /v1/trials/consume response."""

    success: bool
    remaining: int
    blocked: bool = False
    rate_limited: bool = False
    message: str
    denial_reason: TrialDenialReason | None = None
    next_reset_at: datetime | None = None


class TrialActionItem(BaseModel):
    """One logged trial action."""

    type: str
    timestamp: datetime
    ip_address: str | None = None


class TrialStatsResponse(BaseModel):
    """Usage counters derived from the action log."""

    total_actions: int
    actions_today: int
    actions_this_hour: int
    last_action_at: datetime | None = None


class TrialStatusResponse(BaseModel):
    """GET /v1/trials/{fingerprint} response."""

    fingerprint: str
    remaining: int
    total: int
    is_blocked: bool
    next_reset_at: datetime
    actions: list[TrialActionItem]
    stats: TrialStatsResponse


class TrialConvertRequest(BaseModel):
    """POST /v1/trials/{fingerprint}/convert request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    provider: str | None = Field(None, max_length=50)


class CleanupResponse(BaseModel):
    """Maintenance endpoint response."""

    cleaned_count: int
    message: str


# ============================================================================
# Device Models
# ============================================================================


class DeviceInfoPayload(BaseModel):
    """Client-reported device description."""

    fingerprint: str = Field(..., min_length=1, max_length=255)
    name: str | None = Field(None, max_length=255)
    type: DeviceType = DeviceType.DESKTOP
    browser_name: str = Field("Unknown", max_length=100)
    browser_version: str = Field("Unknown", max_length=50)
    os_name: str = Field("Unknown", max_length=100)
    os_version: str = Field("Unknown", max_length=50)
    user_agent: str | None = Field(None, max_length=2048)
    location: str | None = Field(None, max_length=255)


class DeviceLoginRequest(BaseModel):
    """POST /v1/devices/login request body."""

    device: DeviceInfoPayload
    session_token: str = Field(..., min_length=1, max_length=512)
    login_method: str = Field(..., min_length=1, max_length=50)
    expires_at: datetime
    external_session_id: str | None = Field(None, max_length=255)
    fingerprint_converted: bool = Field(
        default=False, description="Mark the device's anonymous trial record as converted"
    )


class DeviceLoginResponse(BaseModel):
    """POST /v1/devices/login response."""

    device_id: UUID
    session_id: UUID
    active_sessions: int
    max_sessions: int
    sessions_terminated: int


class DeviceSessionResponse(BaseModel):
    """One device session."""

    id: UUID
    device_id: UUID
    is_active: bool
    login_method: str
    login_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    logout_at: datetime | None = None
    logout_reason: str | None = None


class UserDeviceResponse(BaseModel):
    """One registered device."""

    id: UUID
    device_fingerprint: str
    device_name: str | None
    device_type: DeviceType
    browser_name: str
    browser_version: str
    os_name: str
    os_version: str
    ip_address: str | None
    is_trusted: bool
    is_active: bool
    first_seen_at: datetime
    last_seen_at: datetime
    sessions: list[DeviceSessionResponse] | None = None


class DeviceListResponse(BaseModel):
    """GET /v1/devices response."""

    devices: list[UserDeviceResponse]
    total: int
    active: int


class LogoutOthersRequest(BaseModel):
    """POST /v1/devices/logout-others request body."""

    current_device_id: UUID


class LogoutMultipleRequest(BaseModel):
    """POST /v1/devices/logout-multiple request body."""

    device_ids: list[UUID] = Field(..., min_length=1, max_length=100)


class LogoutCountResponse(BaseModel):
    """Response for bulk logout endpoints."""

    logged_out_count: int
    message: str


class DeviceTrustRequest(BaseModel):
    """POST /v1/devices/{id}/trust request body."""

    trusted: bool


class SessionTouchRequest(BaseModel):
    """POST /v1/sessions/touch request body."""

    session_token: str = Field(..., min_length=1, max_length=512)


class ActionResponse(BaseModel):
    """Generic acknowledgement."""

    success: bool = True
    message: str


# ============================================================================
# Sync Models
# ============================================================================


class SyncEventResponse(BaseModel):
    """One sync event."""

    id: UUID
    device_id: UUID | None
    event_type: SyncEventType
    event_data: dict[str, Any]
    source_device_id: UUID | None = None
    target_device_id: UUID | None = None
    is_processed: bool
    processed_at: datetime | None = None
    created_at: datetime


class SecurityAlertResponse(BaseModel):
    """One security alert."""

    id: UUID
    device_id: UUID | None
    alert_type: SecurityAlertType
    severity: AlertSeverity
    alert_data: dict[str, Any]
    is_acknowledged: bool
    acknowledged_at: datetime | None = None
    is_resolved: bool
    resolved_at: datetime | None = None
    created_at: datetime


class SyncConfigResponse(BaseModel):
    """Effective sync configuration (defaults merged)."""

    max_concurrent_sessions: int
    auto_logout_inactive_sessions: bool
    inactive_session_timeout: int
    require_device_approval: bool
    enable_security_alerts: bool
    sync_preferences: bool
    sync_activity: bool


class SyncConfigUpdateRequest(BaseModel):
    """PUT /v1/sync/config request body - omitted fields keep their value."""

    max_concurrent_sessions: int | None = Field(None, gt=0, le=100)
    auto_logout_inactive_sessions: bool | None = None
    inactive_session_timeout: int | None = Field(None, gt=0)
    require_device_approval: bool | None = None
    enable_security_alerts: bool | None = None
    sync_preferences: bool | None = None
    sync_activity: bool | None = None


class SyncStatusResponse(BaseModel):
    """GET /v1/sync response."""

    security_alerts: list[SecurityAlertResponse] | None = None
    pending_events: list[SyncEventResponse] | None = None
    sync_config: SyncConfigResponse | None = None


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    trial_store: TrialStoreMode
    timestamp: str
    version: str
