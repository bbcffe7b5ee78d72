"""
Trial Quota Service - Anonymous trial gating keyed by device fingerprint.

NO DICTIONARIES - All operations use strongly typed domain models.

Policy lives here; persistence is delegated to a TrialStore. Every policy
step that reads and then writes a record runs as a single store mutation,
so a consume can never over-spend the quota.
"""

import hashlib
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from app.config import Settings
from app.exceptions import InvalidFingerprintError, TrialStoreUnavailableError
from app.models.api import (
    TRIAL_ACTION_WEIGHTS,
    TrialActionType,
    TrialDenialReason,
    TrialStoreMode,
)
from app.models.domain import (
    LoginAnalyticsEvent,
    RateLimitResult,
    TrialAction,
    TrialConsumeResult,
    TrialRecord,
    TrialStats,
    TrialStatus,
)
from app.observability.metrics import metrics, track_duration
from app.observability.tracing import trace_operation
from app.services.trial_store import (
    DurableTrialStore,
    FailoverTrialStore,
    InMemoryTrialStore,
    TrialStore,
    copy_record,
)

logger = get_logger(__name__)

MAX_FINGERPRINT_LENGTH = 255


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def hash_user_agent(user_agent: str | None) -> str | None:
    """SHA-256 hex digest of a user agent; the raw string is never stored."""
    if not user_agent:
        return None
    return hashlib.sha256(user_agent.encode()).hexdigest()


def action_weight(action: TrialActionType | str) -> int:
    """Trials consumed by one action; unknown types cost one."""
    try:
        return TRIAL_ACTION_WEIGHTS[TrialActionType(action)]
    except ValueError:
        return 1


class TrialQuotaService:
    """Consumable per-fingerprint quota with windowed reset and hard block."""

    def __init__(
        self,
        store: TrialStore,
        settings: Settings,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    @property
    def store_mode(self) -> TrialStoreMode:
        """Store currently serving requests (durable or memory)."""
        return self.store.mode

    @property
    def reset_interval(self) -> timedelta:
        return timedelta(hours=self.settings.trial_reset_hours)

    @property
    def blocked_duration(self) -> timedelta:
        return timedelta(hours=self.settings.trial_blocked_duration_hours)

    # ========================================================================
    # Record lifecycle
    # ========================================================================

    async def get_or_create_record(
        self,
        fingerprint: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TrialRecord:
        """
        Load the record for a fingerprint, creating it on first sight.

        Applies the lazy window reset. Never raises on store outages: the
        failover store serves the record from memory instead.
        """
        self._validate_fingerprint(fingerprint)
        now = self._clock()

        def load(record: TrialRecord) -> TrialRecord:
            self._reset_if_due(record, now)
            return copy_record(record)

        result = await self.store.apply(
            fingerprint, load, self._seed(fingerprint, now, ip_address, user_agent)
        )
        assert result is not None  # seeded records always exist
        return result

    def _seed(
        self,
        fingerprint: str,
        now: datetime,
        ip_address: str | None,
        user_agent: str | None,
    ) -> Callable[[], TrialRecord]:
        """Factory for a fresh record with the default quota."""

        def factory() -> TrialRecord:
            logger.info("trial_record_created", fingerprint=fingerprint)
            return TrialRecord(
                fingerprint=fingerprint,
                trial_count=0,
                max_trials=self.settings.trial_default_count,
                last_reset_at=now,
                first_visit_at=now,
                last_action_at=now,
                ip_address=ip_address,
                user_agent_hash=hash_user_agent(user_agent),
            )

        return factory

    def _reset_if_due(self, record: TrialRecord, now: datetime) -> bool:
        """Zero the quota window in place once the reset interval has elapsed."""
        if now - record.last_reset_at <= self.reset_interval:
            return False

        record.trial_count = 0
        record.max_trials = self.settings.trial_default_count
        record.actions = []
        record.is_blocked = False
        record.blocked_until = None
        record.last_reset_at = now
        logger.info("trial_window_reset", fingerprint=record.fingerprint)
        return True

    # ========================================================================
    # Consumption
    # ========================================================================

    async def consume_trial(
        self,
        fingerprint: str,
        action: TrialActionType | str,
        weight: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TrialConsumeResult:
        """
        Consume `weight` trials for one action, all or nothing.

        Order: active block denies; insufficient quota blocks and denies;
        otherwise the action is logged and the count incremented.
        """
        self._validate_fingerprint(fingerprint)
        if weight is None:
            weight = action_weight(action)
        if weight <= 0:
            raise ValueError(f"weight must be positive: {weight}")

        action_type = action.value if isinstance(action, TrialActionType) else str(action)
        now = self._clock()
        max_logged = self.settings.trial_max_logged_actions

        def consume(record: TrialRecord) -> TrialConsumeResult:
            self._reset_if_due(record, now)

            blocked_until = record.blocked_until
            if record.is_blocked and blocked_until is not None and now < blocked_until:
                return TrialConsumeResult(
                    success=False,
                    remaining=record.remaining,
                    blocked=True,
                    message="This device is temporarily blocked. Please log in to continue.",
                    next_reset_at=blocked_until,
                    denial_reason=TrialDenialReason.BLOCKED,
                )

            if record.remaining < weight:
                record.is_blocked = True
                record.blocked_until = now + self.blocked_duration
                record.last_action_at = now
                return TrialConsumeResult(
                    success=False,
                    remaining=0,
                    blocked=True,
                    message="No trials left. Please log in to continue.",
                    # Natural window reset, not the block expiry
                    next_reset_at=record.last_reset_at + self.reset_interval,
                    denial_reason=TrialDenialReason.EXHAUSTED,
                )

            record.actions.append(
                TrialAction(
                    type=action_type,
                    timestamp=now,
                    ip_address=ip_address,
                    metadata=dict(metadata or {}),
                )
            )
            if len(record.actions) > max_logged:
                del record.actions[: len(record.actions) - max_logged]
            record.trial_count += weight
            record.last_action_at = now
            record.is_blocked = False
            record.blocked_until = None

            remaining = record.remaining
            message = (
                f"{remaining} trials left."
                if remaining > 0
                else "No trials left. Please log in to continue."
            )
            return TrialConsumeResult(
                success=True,
                remaining=remaining,
                blocked=False,
                message=message,
            )

        with trace_operation("trial_consume", fingerprint=fingerprint, weight=weight) as span:
            with track_duration() as timer:
                result = await self.store.apply(
                    fingerprint, consume, self._seed(fingerprint, now, ip_address, user_agent)
                )
            assert result is not None
            label = result.denial_reason.value if result.denial_reason else "success"
            span.set_attribute("outcome", label)

        metrics.record_trial_consumption(label, self.store_mode.value, timer.elapsed)
        logger.info(
            "trial_consumed" if result.success else "trial_denied",
            fingerprint=fingerprint,
            action=action_type,
            weight=weight,
            outcome=label,
            remaining=result.remaining,
            store_mode=self.store_mode.value,
        )
        return result

    # ========================================================================
    # Read-side projections
    # ========================================================================

    async def get_trial_status(self, fingerprint: str) -> TrialStatus:
        """Status snapshot. Triggers the same lazy reset as get_or_create_record."""
        record = await self.get_or_create_record(fingerprint)
        return TrialStatus(
            fingerprint=record.fingerprint,
            remaining=record.remaining,
            total=record.max_trials,
            is_blocked=record.is_blocked,
            blocked_until=record.blocked_until,
            last_reset_at=record.last_reset_at,
            next_reset_at=record.last_reset_at + self.reset_interval,
            last_used=record.last_action_at,
            actions=list(record.actions),
        )

    async def check_rate_limit(self, fingerprint: str) -> RateLimitResult:
        """
        Advisory hourly throttle from the action log. Never mutates state.

        An unknown fingerprint is always allowed.
        """
        self._validate_fingerprint(fingerprint)
        cap = self.settings.trial_max_actions_per_hour
        record = await self.store.read(fingerprint)
        if record is None:
            return RateLimitResult(allowed=True, remaining=cap)

        one_hour_ago = self._clock() - timedelta(hours=1)
        count = sum(1 for action in record.actions if action.timestamp > one_hour_ago)
        allowed = count < cap
        if not allowed:
            metrics.trial_rate_limited_total.inc()
            logger.info("trial_rate_limited", fingerprint=fingerprint, actions_last_hour=count)
        return RateLimitResult(allowed=allowed, remaining=max(0, cap - count))

    async def get_trial_stats(self, fingerprint: str) -> TrialStats:
        """Usage counters over the action log, bucketed by UTC day and hour."""
        self._validate_fingerprint(fingerprint)
        record = await self.store.read(fingerprint)
        if record is None:
            return TrialStats(
                total_actions=0, actions_today=0, actions_this_hour=0, last_action_at=None
            )

        now = self._clock().astimezone(UTC)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        hour_start = now.replace(minute=0, second=0, microsecond=0)
        return TrialStats(
            total_actions=len(record.actions),
            actions_today=sum(1 for a in record.actions if a.timestamp >= day_start),
            actions_this_hour=sum(1 for a in record.actions if a.timestamp >= hour_start),
            last_action_at=record.last_action_at,
        )

    # ========================================================================
    # Conversion and analytics
    # ========================================================================

    async def mark_user_converted(self, fingerprint: str, user_id: str) -> bool:
        """
        Stamp the record with the user this device authenticated as.

        One-way: an already converted record keeps its first stamp. Quota is
        untouched. Returns False when no record exists for the fingerprint.
        """
        self._validate_fingerprint(fingerprint)
        now = self._clock()

        def convert(record: TrialRecord) -> bool:
            if record.converted_user_id is None:
                record.converted_user_id = user_id
                record.converted_at = now
            return True

        found = await self.store.apply(fingerprint, convert)
        logger.info(
            "trial_user_converted" if found else "trial_convert_unknown_fingerprint",
            fingerprint=fingerprint,
            user_id=user_id,
        )
        return bool(found)

    async def record_login_analytics(self, event: LoginAnalyticsEvent) -> None:
        """Best-effort funnel event write. Failures are logged, never raised."""
        try:
            await self.store.record_analytics(event, self._clock())
        except TrialStoreUnavailableError as exc:
            logger.error(
                "login_analytics_write_failed",
                event_type=event.event_type,
                error=exc.reason,
            )
            metrics.record_error("TrialStoreUnavailableError", "record_login_analytics")

    async def cleanup_expired_data(self, retention_days: int | None = None) -> int:
        """Delete unconverted records idle longer than the retention window."""
        days = retention_days if retention_days is not None else self.settings.trial_retention_days
        if days <= 0:
            raise ValueError(f"retention_days must be positive: {days}")

        cutoff = self._clock() - timedelta(days=days)
        removed = await self.store.delete_idle(cutoff)
        logger.info("trial_records_cleaned", removed=removed, retention_days=days)
        return removed

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _validate_fingerprint(fingerprint: str) -> None:
        if not fingerprint or not fingerprint.strip():
            raise InvalidFingerprintError(fingerprint, "fingerprint cannot be empty")
        if len(fingerprint) > MAX_FINGERPRINT_LENGTH:
            raise InvalidFingerprintError(
                fingerprint[:32], f"fingerprint exceeds {MAX_FINGERPRINT_LENGTH} characters"
            )


def build_trial_quota_service(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    clock: Callable[[], datetime] = _utc_now,
) -> TrialQuotaService:
    """Durable store with a bounded memory fallback, owned for the process lifetime."""
    store = FailoverTrialStore(
        primary=DurableTrialStore(session_factory),
        fallback=InMemoryTrialStore(settings.trial_memory_cache_max_entries),
        probe_interval=settings.trial_store_probe_interval_seconds,
    )
    return TrialQuotaService(store, settings, clock=clock)
