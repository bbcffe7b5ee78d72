"""Initial schema: anonymous trials, login analytics and device sync tables.

Revision ID: 2026_10_19_0001
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=None if nullable else sa.func.now(),
    )


def upgrade() -> None:
    """Create trial and device sync tables."""
    # ------------------------------------------------------------------
    # Anonymous trials
    # ------------------------------------------------------------------
    op.create_table(
        "anonymous_trials",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("fingerprint", sa.String(255), nullable=False, unique=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent_hash", sa.String(64), nullable=True),
        sa.Column("trial_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_trials", sa.Integer(), nullable=False, server_default="5"),
        sa.Column(
            "actions",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        _timestamp("first_visit_at"),
        _timestamp("last_action_at"),
        _timestamp("last_reset_at"),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("blocked_until", nullable=True),
        sa.Column("converted_user_id", sa.String(255), nullable=True),
        _timestamp("converted_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("trial_count >= 0", name="ck_trial_count_non_negative"),
        sa.CheckConstraint("max_trials > 0", name="ck_max_trials_positive"),
        sa.CheckConstraint("trial_count <= max_trials", name="ck_trial_count_within_quota"),
    )
    op.create_index(
        "idx_anonymous_trials_last_action_at", "anonymous_trials", ["last_action_at"]
    )
    op.create_index(
        "idx_anonymous_trials_converted_user_id",
        "anonymous_trials",
        ["converted_user_id"],
        postgresql_where=sa.text("converted_user_id IS NOT NULL"),
    )

    op.create_table(
        "login_analytics",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("session_id", sa.String(255), nullable=True),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("fingerprint", sa.String(255), nullable=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("trigger_type", sa.String(50), nullable=True),
        sa.Column("provider", sa.String(50), nullable=True),
        sa.Column(
            "context",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("idx_login_analytics_fingerprint", "login_analytics", ["fingerprint"])
    op.create_index(
        "idx_login_analytics_event_type_created",
        "login_analytics",
        ["event_type", "created_at"],
    )

    # ------------------------------------------------------------------
    # Devices and sessions
    # ------------------------------------------------------------------
    op.create_table(
        "user_devices",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("device_fingerprint", sa.String(255), nullable=False),
        sa.Column("device_name", sa.String(255), nullable=True),
        sa.Column("device_type", sa.String(20), nullable=False, server_default="desktop"),
        sa.Column("browser_name", sa.String(100), nullable=False, server_default="Unknown"),
        sa.Column("browser_version", sa.String(50), nullable=False, server_default="Unknown"),
        sa.Column("os_name", sa.String(100), nullable=False, server_default="Unknown"),
        sa.Column("os_version", sa.String(50), nullable=False, server_default="Unknown"),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("is_trusted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("first_seen_at"),
        _timestamp("last_seen_at"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "device_type IN ('desktop', 'mobile', 'tablet')", name="ck_device_type_valid"
        ),
        sa.UniqueConstraint("user_id", "device_fingerprint", name="uq_user_device_fingerprint"),
    )
    op.create_index("idx_user_devices_user_active", "user_devices", ["user_id", "is_active"])
    op.create_index("idx_user_devices_last_seen_at", "user_devices", ["last_seen_at"])

    op.create_table(
        "device_sessions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "device_id",
            sa.Uuid(),
            sa.ForeignKey("user_devices.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("session_token", sa.String(512), nullable=False, unique=True),
        sa.Column("external_session_id", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("login_method", sa.String(50), nullable=False),
        _timestamp("login_at"),
        _timestamp("last_activity_at"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        _timestamp("logout_at", nullable=True),
        sa.Column("logout_reason", sa.String(50), nullable=True),
    )
    op.create_index(
        "idx_device_sessions_device_active", "device_sessions", ["device_id", "is_active"]
    )
    op.create_index("idx_device_sessions_login_at", "device_sessions", ["login_at"])
    op.create_index("idx_device_sessions_expires_at", "device_sessions", ["expires_at"])

    # ------------------------------------------------------------------
    # Sync events, security alerts, per-user config
    # ------------------------------------------------------------------
    op.create_table(
        "device_sync_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column(
            "device_id",
            sa.Uuid(),
            sa.ForeignKey("user_devices.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("event_type", sa.String(20), nullable=False),
        sa.Column(
            "event_data",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("source_device_id", sa.Uuid(), nullable=True),
        sa.Column("target_device_id", sa.Uuid(), nullable=True),
        sa.Column("is_processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("processed_at", nullable=True),
        _timestamp("created_at"),
        sa.CheckConstraint(
            "event_type IN ('login', 'logout', 'conflict', 'security_alert', 'sync')",
            name="ck_sync_event_type_valid",
        ),
    )
    op.create_index(
        "idx_sync_events_user_pending",
        "device_sync_events",
        ["user_id", "is_processed", "created_at"],
    )

    op.create_table(
        "device_security_alerts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column(
            "device_id",
            sa.Uuid(),
            sa.ForeignKey("user_devices.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("alert_type", sa.String(30), nullable=False),
        sa.Column("severity", sa.String(10), nullable=False),
        sa.Column(
            "alert_data",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("is_acknowledged", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("acknowledged_at", nullable=True),
        sa.Column("is_resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("resolved_at", nullable=True),
        _timestamp("created_at"),
        sa.CheckConstraint(
            "alert_type IN ('new_device', 'suspicious_login', 'concurrent_sessions', "
            "'location_change')",
            name="ck_alert_type_valid",
        ),
        sa.CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')", name="ck_alert_severity_valid"
        ),
    )
    op.create_index(
        "idx_security_alerts_user_resolved",
        "device_security_alerts",
        ["user_id", "is_resolved"],
    )

    op.create_table(
        "device_sync_config",
        sa.Column("user_id", sa.String(255), primary_key=True),
        sa.Column("max_concurrent_sessions", sa.Integer(), nullable=True),
        sa.Column("auto_logout_inactive_sessions", sa.Boolean(), nullable=True),
        sa.Column("inactive_session_timeout", sa.Integer(), nullable=True),
        sa.Column("require_device_approval", sa.Boolean(), nullable=True),
        sa.Column("enable_security_alerts", sa.Boolean(), nullable=True),
        sa.Column("sync_preferences", sa.Boolean(), nullable=True),
        sa.Column("sync_activity", sa.Boolean(), nullable=True),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "max_concurrent_sessions IS NULL OR max_concurrent_sessions > 0",
            name="ck_sync_config_max_sessions_positive",
        ),
        sa.CheckConstraint(
            "inactive_session_timeout IS NULL OR inactive_session_timeout > 0",
            name="ck_sync_config_timeout_positive",
        ),
    )


def downgrade() -> None:
    """Drop trial and device sync tables."""
    op.drop_table("device_sync_config")
    op.drop_index("idx_security_alerts_user_resolved", table_name="device_security_alerts")
    op.drop_table("device_security_alerts")
    op.drop_index("idx_sync_events_user_pending", table_name="device_sync_events")
    op.drop_table("device_sync_events")
    op.drop_index("idx_device_sessions_expires_at", table_name="device_sessions")
    op.drop_index("idx_device_sessions_login_at", table_name="device_sessions")
    op.drop_index("idx_device_sessions_device_active", table_name="device_sessions")
    op.drop_table("device_sessions")
    op.drop_index("idx_user_devices_last_seen_at", table_name="user_devices")
    op.drop_index("idx_user_devices_user_active", table_name="user_devices")
    op.drop_table("user_devices")
    op.drop_index("idx_login_analytics_event_type_created", table_name="login_analytics")
    op.drop_index("idx_login_analytics_fingerprint", table_name="login_analytics")
    op.drop_table("login_analytics")
    op.drop_index("idx_anonymous_trials_converted_user_id", table_name="anonymous_trials")
    op.drop_index("idx_anonymous_trials_last_action_at", table_name="anonymous_trials")
    op.drop_table("anonymous_trials")
