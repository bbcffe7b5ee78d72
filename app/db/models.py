"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
JSON columns (action logs, event payloads) are the only free-form data and
are mapped to domain dataclasses at the service boundary.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """
    Timezone-aware timestamp column.

    PostgreSQL returns aware values already; backends without timezone
    support (SQLite) hand back naive values, which are stored as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        if value is not None and dialect.name == "sqlite":
            return value.astimezone(UTC).replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class AnonymousTrial(Base):
    """
    ORM model for anonymous_trials table.

    One row per device fingerprint; quota window is reset in place.
    """

    __tablename__ = "anonymous_trials"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Identity
    fingerprint: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Provenance (not identity)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Quota
    trial_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_trials: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    actions: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)

    # Window and block state
    first_visit_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    last_action_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    last_reset_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    blocked_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Conversion (funnel analytics)
    converted_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    converted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("trial_count >= 0", name="ck_trial_count_non_negative"),
        CheckConstraint("max_trials > 0", name="ck_max_trials_positive"),
        CheckConstraint("trial_count <= max_trials", name="ck_trial_count_within_quota"),
        Index("idx_anonymous_trials_last_action_at", "last_action_at"),
        Index(
            "idx_anonymous_trials_converted_user_id",
            "converted_user_id",
            postgresql_where=(converted_user_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<AnonymousTrial(fingerprint={self.fingerprint}, "
            f"trial_count={self.trial_count}/{self.max_trials}, blocked={self.is_blocked})>"
        )


class LoginAnalytics(Base):
    """
    ORM model for login_analytics table.

    Append-only funnel events (trial consumed, rate limited, converted).
    """

    __tablename__ = "login_analytics"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    fingerprint: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    trigger_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    context: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_login_analytics_fingerprint", "fingerprint"),
        Index("idx_login_analytics_event_type_created", "event_type", "created_at"),
    )


class UserDevice(Base):
    """
    ORM model for user_devices table.

    One row per (user, fingerprint); deactivated rather than deleted.
    """

    __tablename__ = "user_devices"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    device_fingerprint: Mapped[str] = mapped_column(String(255), nullable=False)

    # Descriptive fields (never identity)
    device_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    device_type: Mapped[str] = mapped_column(String(20), nullable=False, default="desktop")
    browser_name: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown")
    browser_version: Mapped[str] = mapped_column(String(50), nullable=False, default="Unknown")
    os_name: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown")
    os_version: Mapped[str] = mapped_column(String(50), nullable=False, default="Unknown")
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Trust / activity
    is_trusted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    sessions: Mapped[list["DeviceSession"]] = relationship(back_populates="device")

    __table_args__ = (
        CheckConstraint(
            "device_type IN ('desktop', 'mobile', 'tablet')", name="ck_device_type_valid"
        ),
        UniqueConstraint("user_id", "device_fingerprint", name="uq_user_device_fingerprint"),
        Index("idx_user_devices_user_active", "user_id", "is_active"),
        Index("idx_user_devices_last_seen_at", "last_seen_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UserDevice(id={self.id}, user_id={self.user_id}, "
            f"type={self.device_type}, active={self.is_active})>"
        )


class DeviceSession(Base):
    """
    ORM model for device_sessions table.

    One row per login. Terminated sessions stay as audit rows.
    """

    __tablename__ = "device_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    device_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("user_devices.id", ondelete="CASCADE"), nullable=False
    )
    session_token: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    external_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    login_method: Mapped[str] = mapped_column(String(50), nullable=False)
    login_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    last_activity_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    logout_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    logout_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)

    device: Mapped[UserDevice] = relationship(back_populates="sessions")

    __table_args__ = (
        Index("idx_device_sessions_device_active", "device_id", "is_active"),
        Index("idx_device_sessions_login_at", "login_at"),
        Index("idx_device_sessions_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<DeviceSession(id={self.id}, device_id={self.device_id}, "
            f"active={self.is_active}, reason={self.logout_reason})>"
        )


class DeviceSyncEvent(Base):
    """
    ORM model for device_sync_events table.

    Append-only; consumers acknowledge by setting is_processed.
    """

    __tablename__ = "device_sync_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    device_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("user_devices.id", ondelete="SET NULL"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    event_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    source_device_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    target_device_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    is_processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "event_type IN ('login', 'logout', 'conflict', 'security_alert', 'sync')",
            name="ck_sync_event_type_valid",
        ),
        Index("idx_sync_events_user_pending", "user_id", "is_processed", "created_at"),
    )


class DeviceSecurityAlert(Base):
    """
    ORM model for device_security_alerts table.

    Acknowledged and resolved are independent flags.
    """

    __tablename__ = "device_security_alerts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    device_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("user_devices.id", ondelete="SET NULL"), nullable=True
    )
    alert_type: Mapped[str] = mapped_column(String(30), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    alert_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    is_acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "alert_type IN ('new_device', 'suspicious_login', 'concurrent_sessions', "
            "'location_change')",
            name="ck_alert_type_valid",
        ),
        CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')", name="ck_alert_severity_valid"
        ),
        Index("idx_security_alerts_user_resolved", "user_id", "is_resolved"),
    )


class DeviceSyncConfig(Base):
    """
    ORM model for device_sync_config table.

    Columns are nullable: a NULL column means "use the default".
    """

    __tablename__ = "device_sync_config"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    max_concurrent_sessions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    auto_logout_inactive_sessions: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    inactive_session_timeout: Mapped[int | None] = mapped_column(Integer, nullable=True)
    require_device_approval: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    enable_security_alerts: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    sync_preferences: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    sync_activity: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "max_concurrent_sessions IS NULL OR max_concurrent_sessions > 0",
            name="ck_sync_config_max_sessions_positive",
        ),
        CheckConstraint(
            "inactive_session_timeout IS NULL OR inactive_session_timeout > 0",
            name="ck_sync_config_timeout_positive",
        ),
    )
