"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed dataclasses.
TrialRecord is the one mutable model: the quota policy edits it in place
inside a store-provided critical section.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from app.models.api import (
    AlertSeverity,
    DeviceType,
    SecurityAlertType,
    SyncEventType,
    TrialDenialReason,
)


@dataclass(frozen=True)
class TrialAction:
    """One consumed trial action, as kept in a record's action log."""

    type: str
    timestamp: datetime
    ip_address: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate trial action fields."""
        if not self.type:
            raise ValueError("Trial action type cannot be empty")
        if self.timestamp.tzinfo is None:
            raise ValueError("Trial action timestamp must be timezone-aware")

    def to_json(self) -> dict[str, Any]:
        """Serialize for the JSON action log column."""
        return {
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "ip_address": self.ip_address,
            "metadata": self.metadata,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "TrialAction":
        """Deserialize one entry of the JSON action log column."""
        return cls(
            type=data["type"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            ip_address=data.get("ip_address"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class TrialRecord:
    """Per-fingerprint trial quota state."""

    fingerprint: str
    trial_count: int
    max_trials: int
    last_reset_at: datetime
    first_visit_at: datetime
    last_action_at: datetime
    actions: list[TrialAction] = field(default_factory=list)
    ip_address: str | None = None
    user_agent_hash: str | None = None
    is_blocked: bool = False
    blocked_until: datetime | None = None
    converted_user_id: str | None = None
    converted_at: datetime | None = None

    @property
    def remaining(self) -> int:
        """Trials left in the current window, never negative."""
        return max(0, self.max_trials - self.trial_count)


@dataclass(frozen=True)
class TrialConsumeResult:
    """Outcome of a consume attempt - denial is a result, not an error."""

    success: bool
    remaining: int
    blocked: bool
    message: str
    next_reset_at: datetime | None = None
    denial_reason: TrialDenialReason | None = None


@dataclass(frozen=True)
class TrialStatus:
    """Read-only projection of a trial record."""

    fingerprint: str
    remaining: int
    total: int
    is_blocked: bool
    blocked_until: datetime | None
    last_reset_at: datetime
    next_reset_at: datetime
    last_used: datetime
    actions: list[TrialAction]


@dataclass(frozen=True)
class RateLimitResult:
    """Advisory hourly throttle decision."""

    allowed: bool
    remaining: int


@dataclass(frozen=True)
class TrialStats:
    """Usage counters derived from the action log."""

    total_actions: int
    actions_today: int
    actions_this_hour: int
    last_action_at: datetime | None


@dataclass(frozen=True)
class LoginAnalyticsEvent:
    """Funnel analytics event - immutable intent."""

    event_type: str
    fingerprint: str | None = None
    user_id: str | None = None
    session_id: str | None = None
    trigger_type: str | None = None
    provider: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None

    def __post_init__(self) -> None:
        """Validate analytics event."""
        if not self.event_type:
            raise ValueError("event_type cannot be empty")


# ============================================================================
# Device Sync Models
# ============================================================================


@dataclass(frozen=True)
class DeviceInfo:
    """Client-reported device description. Fingerprint is the only identity."""

    fingerprint: str
    device_type: DeviceType = DeviceType.DESKTOP
    name: str | None = None
    browser_name: str = "Unknown"
    browser_version: str = "Unknown"
    os_name: str = "Unknown"
    os_version: str = "Unknown"
    ip_address: str | None = None
    user_agent: str | None = None
    location: str | None = None

    def __post_init__(self) -> None:
        """Validate device info."""
        if not self.fingerprint:
            raise ValueError("Device fingerprint cannot be empty")


@dataclass(frozen=True)
class UserDeviceData:
    """Immutable device snapshot."""

    device_id: UUID
    user_id: str
    device_fingerprint: str
    device_name: str | None
    device_type: DeviceType
    browser_name: str
    browser_version: str
    os_name: str
    os_version: str
    ip_address: str | None
    user_agent: str | None
    is_trusted: bool
    is_active: bool
    first_seen_at: datetime
    last_seen_at: datetime
    created_at: datetime


@dataclass(frozen=True)
class DeviceSessionData:
    """Immutable device session snapshot."""

    session_id: UUID
    device_id: UUID
    session_token: str
    external_session_id: str | None
    is_active: bool
    login_method: str
    login_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    logout_at: datetime | None
    logout_reason: str | None


@dataclass(frozen=True)
class LoginConflictReport:
    """Result of comparing a user's active sessions with their cap."""

    has_conflicts: bool
    active_sessions: int
    max_sessions: int
    sessions_to_terminate: int


@dataclass(frozen=True)
class SyncEventData:
    """Immutable sync event snapshot."""

    event_id: UUID
    user_id: str
    device_id: UUID | None
    event_type: SyncEventType
    event_data: dict[str, Any]
    source_device_id: UUID | None
    target_device_id: UUID | None
    is_processed: bool
    processed_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class SecurityAlertData:
    """Immutable security alert snapshot."""

    alert_id: UUID
    user_id: str
    device_id: UUID | None
    alert_type: SecurityAlertType
    severity: AlertSeverity
    alert_data: dict[str, Any]
    is_acknowledged: bool
    acknowledged_at: datetime | None
    is_resolved: bool
    resolved_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class SyncConfigData:
    """Effective per-user sync configuration (defaults already merged)."""

    user_id: str
    max_concurrent_sessions: int
    auto_logout_inactive_sessions: bool
    inactive_session_timeout: int
    require_device_approval: bool
    enable_security_alerts: bool
    sync_preferences: bool
    sync_activity: bool


@dataclass(frozen=True)
class SyncConfigUpdate:
    """Partial sync config update - None means leave unchanged."""

    max_concurrent_sessions: int | None = None
    auto_logout_inactive_sessions: bool | None = None
    inactive_session_timeout: int | None = None
    require_device_approval: bool | None = None
    enable_security_alerts: bool | None = None
    sync_preferences: bool | None = None
    sync_activity: bool | None = None

    def __post_init__(self) -> None:
        """Validate config bounds."""
        if self.max_concurrent_sessions is not None and self.max_concurrent_sessions <= 0:
            raise ValueError(
                f"max_concurrent_sessions must be positive: {self.max_concurrent_sessions}"
            )
        if self.inactive_session_timeout is not None and self.inactive_session_timeout <= 0:
            raise ValueError(
                f"inactive_session_timeout must be positive: {self.inactive_session_timeout}"
            )
