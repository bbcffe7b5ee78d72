"""
Device Sync Service - Multi-device registration, session caps and sync events.

NO DICTIONARIES - All operations use strongly typed domain models.

Mutations a caller depends on (register, create session, trust, touch,
logout, acks, alert and config updates, session cleanup) roll back and
raise typed errors. Audit side effects (sync events, security alerts) are
best-effort: a failed write is logged and the surrounding flow continues.
Reads degrade to empty results.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import Settings
from app.db.models import (
    DeviceSecurityAlert,
    DeviceSession,
    DeviceSyncConfig,
    DeviceSyncEvent,
    UserDevice,
)
from app.exceptions import (
    DeviceLogoutError,
    DeviceNotFoundError,
    DeviceRegistrationError,
    DeviceUpdateError,
    SecurityAlertNotFoundError,
    SecurityAlertUpdateError,
    SessionCreationError,
    SessionUpdateError,
    SyncConfigUpdateError,
    SyncEventUpdateError,
)
from app.models.api import (
    AlertSeverity,
    DeviceType,
    LogoutReason,
    SecurityAlertType,
    SyncEventType,
)
from app.models.domain import (
    DeviceInfo,
    DeviceSessionData,
    LoginConflictReport,
    SecurityAlertData,
    SyncConfigData,
    SyncConfigUpdate,
    SyncEventData,
    UserDeviceData,
)
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class DeviceSyncService:
    """Per-user device registry with a concurrent session cap."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.session = session
        self.settings = settings
        self._clock = clock

    # ========================================================================
    # Devices
    # ========================================================================

    async def register_device(self, user_id: str, info: DeviceInfo) -> UUID:
        """
        Upsert the device keyed on (user_id, fingerprint).

        IP address and user agent are descriptive only: a changed IP updates
        the existing row. A fingerprint never seen for a user who already has
        other devices raises a new_device security alert.
        """
        now = self._clock()

        try:
            device = await self._lock_device(user_id, info.fingerprint)
            is_new = device is None

            if device is None:
                other_devices = await self._count_devices(user_id)
                device = UserDevice(
                    user_id=user_id,
                    device_fingerprint=info.fingerprint,
                    is_active=True,
                    is_trusted=False,
                    first_seen_at=now,
                    created_at=now,
                )
                _apply_device_info(device, info, now)
                self.session.add(device)
                try:
                    await self.session.flush()
                except IntegrityError:
                    # Race condition - device registered by a concurrent login
                    await self.session.rollback()
                    device = await self._lock_device(user_id, info.fingerprint)
                    if device is None:
                        raise DeviceRegistrationError(user_id, "concurrent registration lost")
                    is_new = False
                    _apply_device_info(device, info, now)
            else:
                other_devices = 0
                _apply_device_info(device, info, now)

            device.is_active = True
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("device_registration_failed", user_id=user_id, error=str(exc))
            raise DeviceRegistrationError(user_id, str(exc)) from exc

        metrics.record_device_login(new_device=is_new)
        logger.info(
            "device_registered",
            user_id=user_id,
            device_id=str(device.id),
            new_device=is_new,
        )

        if is_new and other_devices > 0:
            await self._raise_new_device_alert(user_id, device)

        return device.id

    async def get_user_devices(self, user_id: str) -> list[UserDeviceData]:
        """All devices of a user, most recently seen first."""
        stmt = (
            select(UserDevice)
            .where(UserDevice.user_id == user_id)
            .order_by(UserDevice.last_seen_at.desc(), UserDevice.id)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("get_user_devices_failed", user_id=user_id, error=str(exc))
            return []
        return [_device_to_domain(d) for d in result.scalars().all()]

    async def get_device(self, user_id: str, device_id: UUID) -> UserDeviceData:
        """Single device scoped to its owner."""
        device = await self._get_owned_device(user_id, device_id)
        return _device_to_domain(device)

    async def set_device_trust(
        self, user_id: str, device_id: UUID, trusted: bool
    ) -> UserDeviceData:
        """Trust or untrust a device owned by user_id."""
        device = await self._get_owned_device(user_id, device_id)
        device.is_trusted = trusted
        device.updated_at = self._clock()
        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("device_trust_update_failed", device_id=str(device_id), error=str(exc))
            raise DeviceUpdateError(device_id, str(exc)) from exc
        logger.info(
            "device_trust_updated", user_id=user_id, device_id=str(device_id), trusted=trusted
        )
        return _device_to_domain(device)

    # ========================================================================
    # Sessions
    # ========================================================================

    async def create_device_session(
        self,
        device_id: UUID,
        session_token: str,
        login_method: str,
        expires_at: datetime,
        external_session_id: str | None = None,
    ) -> UUID:
        """
        Insert a new active session for a device.

        Does not enforce the session cap; callers run handle_login_conflicts
        afterwards.
        """
        now = self._clock()
        try:
            device = await self.session.get(UserDevice, device_id)
            if device is None:
                raise SessionCreationError(device_id, "device not registered")

            row = DeviceSession(
                device_id=device_id,
                session_token=session_token,
                external_session_id=external_session_id,
                is_active=True,
                login_method=login_method,
                login_at=now,
                last_activity_at=now,
                expires_at=expires_at,
            )
            self.session.add(row)
            device.last_seen_at = now
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("session_creation_failed", device_id=str(device_id), error=str(exc))
            raise SessionCreationError(device_id, str(exc)) from exc

        logger.info(
            "device_session_created",
            device_id=str(device_id),
            session_id=str(row.id),
            login_method=login_method,
        )
        return row.id

    async def get_device_sessions(self, device_id: UUID) -> list[DeviceSessionData]:
        """All sessions of a device, newest login first."""
        stmt = (
            select(DeviceSession)
            .where(DeviceSession.device_id == device_id)
            .order_by(DeviceSession.login_at.desc(), DeviceSession.id)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("get_device_sessions_failed", device_id=str(device_id), error=str(exc))
            return []
        return [_session_to_domain(s) for s in result.scalars().all()]

    async def touch_session(self, session_token: str) -> bool:
        """Bump last_activity_at of an active, unexpired session."""
        now = self._clock()
        stmt = (
            update(DeviceSession)
            .where(
                DeviceSession.session_token == session_token,
                DeviceSession.is_active.is_(True),
                DeviceSession.expires_at > now,
            )
            .values(last_activity_at=now)
        )
        try:
            result = await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("session_touch_failed", session_token=session_token, error=str(exc))
            raise SessionUpdateError("touch_session", str(exc)) from exc
        touched = bool(result.rowcount)  # type: ignore[attr-defined]
        if not touched:
            logger.debug("session_touch_missed", session_token=session_token)
        return touched

    # ========================================================================
    # Conflicts
    # ========================================================================

    async def detect_login_conflicts(self, user_id: str, device_id: UUID) -> LoginConflictReport:
        """Compare active sessions across all of a user's devices with the cap. Read only."""
        config = await self.get_sync_config(user_id)
        try:
            stmt = (
                select(func.count(DeviceSession.id))
                .select_from(DeviceSession)
                .join(UserDevice, DeviceSession.device_id == UserDevice.id)
                .where(*self._active_session_filters(user_id, self._clock()))
            )
            active = (await self.session.execute(stmt)).scalar_one()
        except SQLAlchemyError as exc:
            logger.error("detect_login_conflicts_failed", user_id=user_id, error=str(exc))
            return LoginConflictReport(
                has_conflicts=False,
                active_sessions=0,
                max_sessions=config.max_concurrent_sessions,
                sessions_to_terminate=0,
            )

        to_terminate = max(0, active - config.max_concurrent_sessions)
        metrics.record_conflict_check(has_conflicts=to_terminate > 0)
        return LoginConflictReport(
            has_conflicts=to_terminate > 0,
            active_sessions=active,
            max_sessions=config.max_concurrent_sessions,
            sessions_to_terminate=to_terminate,
        )

    async def handle_login_conflicts(self, user_id: str, device_id: UUID) -> int:
        """
        Evict the oldest active sessions until the user is back under the cap.

        Oldest is by login_at, ties broken by session id. Selection and
        eviction share one transaction with the rows locked. Emits a single
        aggregate conflict event. Returns the number of sessions evicted.
        """
        config = await self.get_sync_config(user_id)
        now = self._clock()

        with trace_operation("handle_login_conflicts", user_id=user_id) as span:
            try:
                stmt = (
                    select(DeviceSession)
                    .join(UserDevice, DeviceSession.device_id == UserDevice.id)
                    .where(*self._active_session_filters(user_id, now))
                    .order_by(DeviceSession.login_at.asc(), DeviceSession.id.asc())
                    .with_for_update(of=DeviceSession)
                )
                active = list((await self.session.execute(stmt)).scalars().all())
                excess = len(active) - config.max_concurrent_sessions
                if excess <= 0:
                    await self.session.commit()
                    return 0

                evicted = active[:excess]
                for row in evicted:
                    _terminate(row, LogoutReason.CONFLICT, now)
                await self.session.commit()
            except SQLAlchemyError as exc:
                await self.session.rollback()
                logger.error("handle_login_conflicts_failed", user_id=user_id, error=str(exc))
                metrics.record_error(type(exc).__name__, "handle_login_conflicts")
                return 0
            span.set_attribute("evicted", len(evicted))

        metrics.record_sessions_terminated(LogoutReason.CONFLICT.value, len(evicted))
        logger.info(
            "login_conflicts_resolved",
            user_id=user_id,
            device_id=str(device_id),
            active_sessions=len(active),
            max_sessions=config.max_concurrent_sessions,
            evicted=len(evicted),
        )

        await self.create_sync_event(
            user_id,
            device_id,
            SyncEventType.CONFLICT,
            {
                "action": "terminate_sessions",
                "terminated_sessions": len(evicted),
                "reason": "max_concurrent_sessions_exceeded",
            },
        )
        if config.enable_security_alerts:
            await self.create_security_alert(
                user_id,
                device_id,
                SecurityAlertType.CONCURRENT_SESSIONS,
                AlertSeverity.LOW,
                {
                    "active_sessions": len(active),
                    "max_sessions": config.max_concurrent_sessions,
                    "terminated_sessions": len(evicted),
                },
            )
        return len(evicted)

    # ========================================================================
    # Logout
    # ========================================================================

    async def logout_device(
        self,
        device_id: UUID,
        reason: LogoutReason = LogoutReason.USER_INITIATED,
        user_id: str | None = None,
    ) -> int:
        """
        Terminate every active session of a device and deactivate it.

        When user_id is given the device must belong to that user. Returns the
        number of sessions terminated.
        """
        if user_id is not None:
            await self._get_owned_device(user_id, device_id)

        now = self._clock()
        try:
            result = await self.session.execute(
                update(DeviceSession)
                .where(DeviceSession.device_id == device_id, DeviceSession.is_active.is_(True))
                .values(is_active=False, logout_at=now, logout_reason=reason.value)
            )
            terminated = result.rowcount or 0  # type: ignore[attr-defined]
            await self.session.execute(
                update(UserDevice)
                .where(UserDevice.id == device_id)
                .values(is_active=False, updated_at=now)
            )
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("device_logout_failed", device_id=str(device_id), error=str(exc))
            raise DeviceLogoutError(device_id, str(exc)) from exc

        metrics.record_sessions_terminated(reason.value, terminated)
        logger.info(
            "device_logged_out",
            device_id=str(device_id),
            reason=reason.value,
            sessions_terminated=terminated,
        )
        return terminated

    async def logout_devices(self, user_id: str, device_ids: list[UUID]) -> int:
        """Log out several devices. One failure does not stop the rest; returns successes."""
        succeeded = 0
        for device_id in device_ids:
            try:
                await self.logout_device(device_id, LogoutReason.USER_INITIATED, user_id=user_id)
                succeeded += 1
            except (DeviceNotFoundError, DeviceLogoutError) as exc:
                logger.warning(
                    "bulk_logout_device_skipped",
                    user_id=user_id,
                    device_id=str(device_id),
                    error=str(exc),
                )
        return succeeded

    async def logout_other_devices(self, user_id: str, current_device_id: UUID) -> int:
        """
        Log out every other active device of the user.

        The current device and its sessions are untouched. Returns the number
        of devices logged out.
        """
        now = self._clock()
        try:
            result = await self.session.execute(
                select(UserDevice.id).where(
                    UserDevice.user_id == user_id,
                    UserDevice.id != current_device_id,
                    UserDevice.is_active.is_(True),
                )
            )
            device_ids = list(result.scalars().all())
        except SQLAlchemyError as exc:
            logger.error("logout_other_devices_lookup_failed", user_id=user_id, error=str(exc))
            return 0

        if not device_ids:
            return 0

        reason = LogoutReason.LOGOUT_OTHER_DEVICES
        try:
            sessions = await self.session.execute(
                update(DeviceSession)
                .where(DeviceSession.device_id.in_(device_ids), DeviceSession.is_active.is_(True))
                .values(is_active=False, logout_at=now, logout_reason=reason.value)
            )
            terminated = sessions.rowcount or 0  # type: ignore[attr-defined]
            await self.session.execute(
                update(UserDevice)
                .where(UserDevice.id.in_(device_ids))
                .values(is_active=False, updated_at=now)
            )
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("logout_other_devices_failed", user_id=user_id, error=str(exc))
            raise DeviceLogoutError(current_device_id, str(exc)) from exc

        metrics.record_sessions_terminated(reason.value, terminated)
        logger.info(
            "other_devices_logged_out",
            user_id=user_id,
            current_device_id=str(current_device_id),
            devices=len(device_ids),
            sessions_terminated=terminated,
        )
        await self.create_sync_event(
            user_id,
            current_device_id,
            SyncEventType.LOGOUT,
            {"action": "logout_other_devices", "affected_devices": len(device_ids)},
        )
        return len(device_ids)

    # ========================================================================
    # Sync events
    # ========================================================================

    async def create_sync_event(
        self,
        user_id: str,
        device_id: UUID | None,
        event_type: SyncEventType,
        event_data: dict[str, Any],
        source_device_id: UUID | None = None,
        target_device_id: UUID | None = None,
    ) -> UUID | None:
        """Append a sync event. Best-effort: returns None when the write fails."""
        row = DeviceSyncEvent(
            user_id=user_id,
            device_id=device_id,
            event_type=event_type.value,
            event_data=event_data,
            source_device_id=source_device_id,
            target_device_id=target_device_id,
            is_processed=False,
            created_at=self._clock(),
        )
        try:
            self.session.add(row)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            metrics.record_sync_event(event_type.value, success=False)
            logger.error(
                "sync_event_write_failed",
                user_id=user_id,
                event_type=event_type.value,
                error=str(exc),
            )
            return None

        metrics.record_sync_event(event_type.value, success=True)
        return row.id

    async def get_pending_sync_events(self, user_id: str, limit: int = 100) -> list[SyncEventData]:
        """Unprocessed events, oldest first."""
        stmt = (
            select(DeviceSyncEvent)
            .where(DeviceSyncEvent.user_id == user_id, DeviceSyncEvent.is_processed.is_(False))
            .order_by(DeviceSyncEvent.created_at.asc(), DeviceSyncEvent.id)
            .limit(limit)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("get_pending_sync_events_failed", user_id=user_id, error=str(exc))
            return []
        return [_event_to_domain(e) for e in result.scalars().all()]

    async def mark_sync_event_processed(self, event_id: UUID, user_id: str | None = None) -> bool:
        """
        Acknowledge an event. Idempotent: re-acking keeps the first timestamp.

        Returns False when the event does not exist (or belongs to another user).
        """
        try:
            event = await self.session.get(DeviceSyncEvent, event_id)
            if event is None or (user_id is not None and event.user_id != user_id):
                return False
            if not event.is_processed:
                event.is_processed = True
                event.processed_at = self._clock()
                await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("sync_event_ack_failed", event_id=str(event_id), error=str(exc))
            raise SyncEventUpdateError(event_id, str(exc)) from exc
        return True

    # ========================================================================
    # Security alerts
    # ========================================================================

    async def create_security_alert(
        self,
        user_id: str,
        device_id: UUID | None,
        alert_type: SecurityAlertType,
        severity: AlertSeverity,
        alert_data: dict[str, Any],
    ) -> UUID | None:
        """Append a security alert. Best-effort: returns None when the write fails."""
        row = DeviceSecurityAlert(
            user_id=user_id,
            device_id=device_id,
            alert_type=alert_type.value,
            severity=severity.value,
            alert_data=alert_data,
            created_at=self._clock(),
        )
        try:
            self.session.add(row)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error(
                "security_alert_write_failed",
                user_id=user_id,
                alert_type=alert_type.value,
                error=str(exc),
            )
            return None

        metrics.record_security_alert(alert_type.value, severity.value)
        logger.warning(
            "security_alert_raised",
            user_id=user_id,
            alert_type=alert_type.value,
            severity=severity.value,
        )
        return row.id

    async def get_security_alerts(self, user_id: str) -> list[SecurityAlertData]:
        """Unresolved alerts, newest first."""
        stmt = (
            select(DeviceSecurityAlert)
            .where(
                DeviceSecurityAlert.user_id == user_id,
                DeviceSecurityAlert.is_resolved.is_(False),
            )
            .order_by(DeviceSecurityAlert.created_at.desc(), DeviceSecurityAlert.id)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("get_security_alerts_failed", user_id=user_id, error=str(exc))
            return []
        return [_alert_to_domain(a) for a in result.scalars().all()]

    async def acknowledge_security_alert(
        self, alert_id: UUID, user_id: str | None = None
    ) -> SecurityAlertData:
        """Set the acknowledged flag. Does not resolve the alert."""
        alert = await self._get_alert(alert_id, user_id)
        if not alert.is_acknowledged:
            alert.is_acknowledged = True
            alert.acknowledged_at = self._clock()
        await self._commit_alert(alert_id)
        logger.info("security_alert_acknowledged", alert_id=str(alert_id))
        return _alert_to_domain(alert)

    async def resolve_security_alert(
        self, alert_id: UUID, user_id: str | None = None
    ) -> SecurityAlertData:
        """Set the resolved flag. Does not acknowledge the alert."""
        alert = await self._get_alert(alert_id, user_id)
        if not alert.is_resolved:
            alert.is_resolved = True
            alert.resolved_at = self._clock()
        await self._commit_alert(alert_id)
        logger.info("security_alert_resolved", alert_id=str(alert_id))
        return _alert_to_domain(alert)

    # ========================================================================
    # Config
    # ========================================================================

    def default_sync_config(self, user_id: str) -> SyncConfigData:
        """Config of a user without a stored row."""
        s = self.settings
        return SyncConfigData(
            user_id=user_id,
            max_concurrent_sessions=s.device_default_max_concurrent_sessions,
            auto_logout_inactive_sessions=s.device_default_auto_logout_inactive_sessions,
            inactive_session_timeout=s.device_default_inactive_session_timeout_seconds,
            require_device_approval=s.device_default_require_device_approval,
            enable_security_alerts=s.device_default_enable_security_alerts,
            sync_preferences=s.device_default_sync_preferences,
            sync_activity=s.device_default_sync_activity,
        )

    async def get_sync_config(self, user_id: str) -> SyncConfigData:
        """Stored config coalesced column by column over the defaults."""
        try:
            row = await self.session.get(DeviceSyncConfig, user_id)
        except SQLAlchemyError as exc:
            logger.error("get_sync_config_failed", user_id=user_id, error=str(exc))
            row = None
        return _merge_config(self.default_sync_config(user_id), row)

    async def update_sync_config(self, user_id: str, changes: SyncConfigUpdate) -> SyncConfigData:
        """Write the given fields; fields left as None keep their stored value."""
        try:
            row = await self.session.get(DeviceSyncConfig, user_id)
            if row is None:
                row = DeviceSyncConfig(user_id=user_id)
                self.session.add(row)
            for name in _CONFIG_FIELDS:
                value = getattr(changes, name)
                if value is not None:
                    setattr(row, name, value)
            row.updated_at = self._clock()
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("sync_config_update_failed", user_id=user_id, error=str(exc))
            raise SyncConfigUpdateError(user_id, str(exc)) from exc

        logger.info("sync_config_updated", user_id=user_id)
        return _merge_config(self.default_sync_config(user_id), row)

    # ========================================================================
    # Maintenance
    # ========================================================================

    async def cleanup_expired_sessions(self) -> int:
        """
        Deactivate expired sessions, then sessions idle past their owner's timeout.

        Idle cleanup only applies to users with auto_logout_inactive_sessions.
        Returns the total number of sessions deactivated.
        Both passes commit together or not at all.
        """
        now = self._clock()
        defaults = self.default_sync_config("")
        idle_stmt = (
            select(
                DeviceSession,
                DeviceSyncConfig.auto_logout_inactive_sessions,
                DeviceSyncConfig.inactive_session_timeout,
            )
            .join(UserDevice, DeviceSession.device_id == UserDevice.id)
            .outerjoin(DeviceSyncConfig, DeviceSyncConfig.user_id == UserDevice.user_id)
            .where(DeviceSession.is_active.is_(True))
        )

        try:
            expired = await self.session.execute(
                update(DeviceSession)
                .where(DeviceSession.is_active.is_(True), DeviceSession.expires_at <= now)
                .values(
                    is_active=False,
                    logout_at=now,
                    logout_reason=LogoutReason.SESSION_EXPIRED.value,
                )
            )
            expired_count = expired.rowcount or 0  # type: ignore[attr-defined]

            idle_count = 0
            for row, auto_logout, timeout in (await self.session.execute(idle_stmt)).all():
                if auto_logout is None:
                    auto_logout = defaults.auto_logout_inactive_sessions
                if not auto_logout:
                    continue
                limit = timedelta(seconds=timeout or defaults.inactive_session_timeout)
                if now - row.last_activity_at > limit:
                    _terminate(row, LogoutReason.INACTIVE_TIMEOUT, now)
                    idle_count += 1

            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("expired_sessions_cleanup_failed", error=str(exc))
            metrics.record_error(type(exc).__name__, "cleanup_expired_sessions")
            raise SessionUpdateError("cleanup_expired_sessions", str(exc)) from exc

        metrics.record_sessions_terminated(LogoutReason.SESSION_EXPIRED.value, expired_count)
        metrics.record_sessions_terminated(LogoutReason.INACTIVE_TIMEOUT.value, idle_count)
        logger.info(
            "expired_sessions_cleaned",
            expired=expired_count,
            inactive=idle_count,
        )
        return expired_count + idle_count

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _active_session_filters(user_id: str, now: datetime) -> tuple[Any, ...]:
        """Active, unexpired sessions on any of the user's devices."""
        return (
            UserDevice.user_id == user_id,
            DeviceSession.is_active.is_(True),
            DeviceSession.expires_at > now,
        )

    async def _lock_device(self, user_id: str, fingerprint: str) -> UserDevice | None:
        """Lock the (user, fingerprint) device row for update."""
        stmt = (
            select(UserDevice)
            .where(UserDevice.user_id == user_id, UserDevice.device_fingerprint == fingerprint)
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _count_devices(self, user_id: str) -> int:
        stmt = select(func.count(UserDevice.id)).where(UserDevice.user_id == user_id)
        return (await self.session.execute(stmt)).scalar_one()

    async def _get_owned_device(self, user_id: str, device_id: UUID) -> UserDevice:
        device = await self.session.get(UserDevice, device_id)
        if device is None or device.user_id != user_id:
            raise DeviceNotFoundError(device_id)
        return device

    async def _get_alert(self, alert_id: UUID, user_id: str | None) -> DeviceSecurityAlert:
        alert = await self.session.get(DeviceSecurityAlert, alert_id)
        if alert is None or (user_id is not None and alert.user_id != user_id):
            raise SecurityAlertNotFoundError(alert_id)
        return alert

    async def _commit_alert(self, alert_id: UUID) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("security_alert_update_failed", alert_id=str(alert_id), error=str(exc))
            raise SecurityAlertUpdateError(alert_id, str(exc)) from exc

    async def _raise_new_device_alert(self, user_id: str, device: UserDevice) -> None:
        config = await self.get_sync_config(user_id)
        if not config.enable_security_alerts:
            return

        alert_data = {
            "device_name": device.device_name,
            "device_type": device.device_type,
            "browser": f"{device.browser_name} {device.browser_version}",
            "os": f"{device.os_name} {device.os_version}",
            "ip_address": device.ip_address,
        }
        await self.create_security_alert(
            user_id,
            device.id,
            SecurityAlertType.NEW_DEVICE,
            AlertSeverity.MEDIUM,
            alert_data,
        )
        await self.create_sync_event(
            user_id,
            device.id,
            SyncEventType.SECURITY_ALERT,
            {"alert_type": SecurityAlertType.NEW_DEVICE.value, **alert_data},
        )


# ============================================================================
# Mapping
# ============================================================================

_CONFIG_FIELDS = (
    "max_concurrent_sessions",
    "auto_logout_inactive_sessions",
    "inactive_session_timeout",
    "require_device_approval",
    "enable_security_alerts",
    "sync_preferences",
    "sync_activity",
)


def _apply_device_info(device: UserDevice, info: DeviceInfo, now: datetime) -> None:
    """Copy descriptive fields onto the device row and bump last_seen_at."""
    device.device_name = info.name
    device.device_type = info.device_type.value
    device.browser_name = info.browser_name
    device.browser_version = info.browser_version
    device.os_name = info.os_name
    device.os_version = info.os_version
    device.ip_address = info.ip_address
    device.user_agent = info.user_agent
    device.location = info.location
    device.last_seen_at = now
    device.updated_at = now


def _terminate(row: DeviceSession, reason: LogoutReason, now: datetime) -> None:
    row.is_active = False
    row.logout_at = now
    row.logout_reason = reason.value


def _merge_config(defaults: SyncConfigData, row: DeviceSyncConfig | None) -> SyncConfigData:
    if row is None:
        return defaults
    values = {
        name: getattr(row, name) if getattr(row, name) is not None else getattr(defaults, name)
        for name in _CONFIG_FIELDS
    }
    return SyncConfigData(user_id=defaults.user_id, **values)


def _device_to_domain(device: UserDevice) -> UserDeviceData:
    """Convert ORM model to domain model."""
    return UserDeviceData(
        device_id=device.id,
        user_id=device.user_id,
        device_fingerprint=device.device_fingerprint,
        device_name=device.device_name,
        device_type=DeviceType(device.device_type),
        browser_name=device.browser_name,
        browser_version=device.browser_version,
        os_name=device.os_name,
        os_version=device.os_version,
        ip_address=device.ip_address,
        user_agent=device.user_agent,
        is_trusted=device.is_trusted,
        is_active=device.is_active,
        first_seen_at=device.first_seen_at,
        last_seen_at=device.last_seen_at,
        created_at=device.created_at,
    )


def _session_to_domain(row: DeviceSession) -> DeviceSessionData:
    """Convert ORM model to domain model."""
    return DeviceSessionData(
        session_id=row.id,
        device_id=row.device_id,
        session_token=row.session_token,
        external_session_id=row.external_session_id,
        is_active=row.is_active,
        login_method=row.login_method,
        login_at=row.login_at,
        last_activity_at=row.last_activity_at,
        expires_at=row.expires_at,
        logout_at=row.logout_at,
        logout_reason=row.logout_reason,
    )


def _event_to_domain(row: DeviceSyncEvent) -> SyncEventData:
    """Convert ORM model to domain model."""
    return SyncEventData(
        event_id=row.id,
        user_id=row.user_id,
        device_id=row.device_id,
        event_type=SyncEventType(row.event_type),
        event_data=row.event_data or {},
        source_device_id=row.source_device_id,
        target_device_id=row.target_device_id,
        is_processed=row.is_processed,
        processed_at=row.processed_at,
        created_at=row.created_at,
    )


def _alert_to_domain(row: DeviceSecurityAlert) -> SecurityAlertData:
    """Convert ORM model to domain model."""
    return SecurityAlertData(
        alert_id=row.id,
        user_id=row.user_id,
        device_id=row.device_id,
        alert_type=SecurityAlertType(row.alert_type),
        severity=AlertSeverity(row.severity),
        alert_data=row.alert_data or {},
        is_acknowledged=row.is_acknowledged,
        acknowledged_at=row.acknowledged_at,
        is_resolved=row.is_resolved,
        resolved_at=row.resolved_at,
        created_at=row.created_at,
    )
