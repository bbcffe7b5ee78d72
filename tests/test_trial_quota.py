"""
Tests for TrialQuotaService.

Covers quota consumption, windowed reset, blocking, the hourly throttle,
stats, conversion and cleanup against the SQLite-backed failover store.
"""

from datetime import timedelta

import pytest

from app.exceptions import InvalidFingerprintError
from app.models.api import TrialActionType, TrialDenialReason, TrialStoreMode
from app.models.domain import LoginAnalyticsEvent
from app.services.trial_quota import (
    TrialQuotaService,
    action_weight,
    build_trial_quota_service,
    hash_user_agent,
)

# ============================================================================
# Helper Function Tests
# ============================================================================


class TestActionWeight:
    """Tests for action_weight helper."""

    def test_known_weights(self):
        """Heavier analyses cost more trials."""
        assert action_weight(TrialActionType.VIDEO_ANALYSIS) == 1
        assert action_weight(TrialActionType.CHANNEL_ANALYSIS) == 2
        assert action_weight(TrialActionType.BATCH_ANALYSIS) == 3

    def test_string_action_type(self):
        """Plain strings resolve to the enum weight."""
        assert action_weight("channel_analysis") == 2

    def test_unknown_action_costs_one(self):
        """Unknown action types cost a single trial."""
        assert action_weight("thumbnail_preview") == 1


class TestHashUserAgent:
    """Tests for hash_user_agent helper."""

    def test_hash_is_stable_hex(self):
        """Same user agent always hashes to the same 64-char digest."""
        first = hash_user_agent("Mozilla/5.0")
        assert first == hash_user_agent("Mozilla/5.0")
        assert len(first) == 64
        assert first != "Mozilla/5.0"

    def test_missing_user_agent(self):
        """Missing user agent has no hash."""
        assert hash_user_agent(None) is None
        assert hash_user_agent("") is None


# ============================================================================
# Record Lifecycle
# ============================================================================


class TestGetOrCreateRecord:
    """Tests for record creation and lazy reset."""

    @pytest.mark.asyncio
    async def test_creates_record_with_default_quota(self, trial_service, fixed_datetime):
        """First sight of a fingerprint seeds a full quota."""
        record = await trial_service.get_or_create_record(
            "fp-new", ip_address="198.51.100.7", user_agent="Mozilla/5.0"
        )

        assert record.fingerprint == "fp-new"
        assert record.trial_count == 0
        assert record.max_trials == 5
        assert record.remaining == 5
        assert record.first_visit_at == fixed_datetime
        assert record.last_reset_at == fixed_datetime
        assert record.ip_address == "198.51.100.7"
        assert record.user_agent_hash == hash_user_agent("Mozilla/5.0")
        assert record.actions == []

    @pytest.mark.asyncio
    async def test_second_call_returns_same_record(self, trial_service, clock):
        """Existing records are loaded, not re-seeded."""
        await trial_service.consume_trial("fp-1", TrialActionType.VIDEO_ANALYSIS)
        clock.advance(minutes=5)

        record = await trial_service.get_or_create_record("fp-1", ip_address="192.0.2.99")

        assert record.trial_count == 1
        # Provenance is kept from first sight
        assert record.ip_address is None

    @pytest.mark.asyncio
    async def test_returned_record_is_detached(self, trial_service):
        """Mutating the returned record does not change stored state."""
        record = await trial_service.get_or_create_record("fp-1")
        record.trial_count = 5

        status = await trial_service.get_trial_status("fp-1")
        assert status.remaining == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fingerprint", ["", "   ", "x" * 256])
    async def test_invalid_fingerprint_rejected(self, trial_service, fingerprint):
        """Empty or oversized fingerprints are rejected before any store access."""
        with pytest.raises(InvalidFingerprintError):
            await trial_service.get_or_create_record(fingerprint)


# ============================================================================
# Consumption
# ============================================================================


class TestConsumeTrial:
    """Tests for consume_trial."""

    @pytest.mark.asyncio
    async def test_three_trial_walkthrough(self, failover_store, settings_factory, clock):
        """Three successful consumes count down, the fourth blocks."""
        service = TrialQuotaService(
            failover_store, settings_factory(trial_default_count=3), clock=clock
        )

        remaining = []
        for _ in range(3):
            result = await service.consume_trial("fp-1", TrialActionType.VIDEO_ANALYSIS)
            assert result.success is True
            assert result.blocked is False
            remaining.append(result.remaining)
        assert remaining == [2, 1, 0]

        denied = await service.consume_trial("fp-1", TrialActionType.VIDEO_ANALYSIS)
        assert denied.success is False
        assert denied.blocked is True
        assert denied.remaining == 0
        assert denied.denial_reason == TrialDenialReason.EXHAUSTED
        assert denied.next_reset_at == clock.now + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_messages(self, trial_service):
        """Messages tell the user how many trials are left."""
        result = await trial_service.consume_trial("fp-1", TrialActionType.VIDEO_ANALYSIS)
        assert result.message == "4 trials left."

        result = await trial_service.consume_trial("fp-1", "export_data", weight=4)
        assert result.success is True
        assert result.message == "No trials left. Please log in to continue."

    @pytest.mark.asyncio
    async def test_remaining_is_monotonic(self, trial_service):
        """remaining after call n equals max - n, then every call is denied."""
        for n in range(1, 6):
            result = await trial_service.consume_trial("fp-mono", TrialActionType.SAVE_REPORT)
            assert result.success is True
            assert result.remaining == 5 - n

        for _ in range(3):
            result = await trial_service.consume_trial("fp-mono", TrialActionType.SAVE_REPORT)
            assert result.success is False
            assert result.blocked is True

    @pytest.mark.asyncio
    async def test_weighted_action_consumes_weight(self, trial_service):
        """Channel analysis costs two trials."""
        result = await trial_service.consume_trial("fp-1", TrialActionType.CHANNEL_ANALYSIS)

        assert result.success is True
        assert result.remaining == 3

    @pytest.mark.asyncio
    async def test_all_or_nothing(self, trial_service):
        """A weight larger than remaining never partially decrements."""
        await trial_service.consume_trial("fp-1", "export_data", weight=4)

        result = await trial_service.consume_trial("fp-1", TrialActionType.BATCH_ANALYSIS)

        assert result.success is False
        assert result.remaining == 0
        record = await trial_service.get_or_create_record("fp-1")
        assert record.trial_count == 4
        assert record.remaining == 1
        assert len(record.actions) == 1

    @pytest.mark.asyncio
    async def test_active_block_denies_with_block_expiry(self, trial_service, clock):
        """While blocked, next_reset_at reports the block expiry."""
        await trial_service.consume_trial("fp-1", "export_data", weight=5)
        exhausted = await trial_service.consume_trial("fp-1", TrialActionType.VIDEO_ANALYSIS)
        blocked_at = clock.now
        assert exhausted.denial_reason == TrialDenialReason.EXHAUSTED

        clock.advance(hours=1)
        result = await trial_service.consume_trial("fp-1", TrialActionType.VIDEO_ANALYSIS)

        assert result.success is False
        assert result.blocked is True
        assert result.denial_reason == TrialDenialReason.BLOCKED
        assert result.next_reset_at == blocked_at + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_exhausted_reports_natural_reset_not_block_expiry(
        self, failover_store, settings_factory, clock, fixed_datetime
    ):
        """The exhausted denial reports the window reset even when the block is longer."""
        service = TrialQuotaService(
            failover_store,
            settings_factory(trial_blocked_duration_hours=48),
            clock=clock,
        )
        await service.consume_trial("fp-1", "export_data", weight=5)
        clock.advance(hours=2)

        result = await service.consume_trial("fp-1", TrialActionType.VIDEO_ANALYSIS)

        assert result.next_reset_at == fixed_datetime + timedelta(hours=24)
        record = await service.get_or_create_record("fp-1")
        assert record.blocked_until == clock.now + timedelta(hours=48)

    @pytest.mark.asyncio
    async def test_block_expiry_releases_quota(self, trial_service, clock):
        """After the block and the window both pass, consumption succeeds again."""
        await trial_service.consume_trial("fp-1", "export_data", weight=5)
        await trial_service.consume_trial("fp-1", TrialActionType.VIDEO_ANALYSIS)

        clock.advance(hours=23)
        still_blocked = await trial_service.consume_trial("fp-1", TrialActionType.VIDEO_ANALYSIS)
        assert still_blocked.success is False

        clock.advance(hours=1, seconds=1)
        result = await trial_service.consume_trial("fp-1", TrialActionType.VIDEO_ANALYSIS)
        assert result.success is True
        assert result.remaining == 4

    @pytest.mark.asyncio
    async def test_action_log_is_trimmed(self, failover_store, settings_factory):
        """Only the most recent actions are kept."""
        service = TrialQuotaService(
            failover_store,
            settings_factory(trial_default_count=10, trial_max_logged_actions=3),
        )
        for i in range(5):
            await service.consume_trial("fp-1", "export_data", metadata={"n": i})

        record = await service.get_or_create_record("fp-1")
        assert record.trial_count == 5
        assert [a.metadata["n"] for a in record.actions] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_action_metadata_recorded(self, trial_service, fixed_datetime):
        """Each success appends a timestamped action with caller metadata."""
        await trial_service.consume_trial(
            "fp-1",
            TrialActionType.VIDEO_ANALYSIS,
            ip_address="203.0.113.5",
            metadata={"video_id": "dQw4w9WgXcQ"},
        )

        record = await trial_service.get_or_create_record("fp-1")
        action = record.actions[0]
        assert action.type == "video_analysis"
        assert action.timestamp == fixed_datetime
        assert action.ip_address == "203.0.113.5"
        assert action.metadata == {"video_id": "dQw4w9WgXcQ"}

    @pytest.mark.asyncio
    async def test_non_positive_weight_rejected(self, trial_service):
        with pytest.raises(ValueError, match="weight must be positive"):
            await trial_service.consume_trial("fp-1", TrialActionType.VIDEO_ANALYSIS, weight=0)


# ============================================================================
# Reset
# ============================================================================


class TestWindowReset:
    """Tests for lazy window reset."""

    @pytest.mark.asyncio
    async def test_status_after_interval_restores_quota(self, trial_service, clock):
        """A status read after the interval observes a full, empty window."""
        await trial_service.consume_trial("fp-1", "export_data", weight=3)

        clock.advance(hours=24, seconds=1)
        status = await trial_service.get_trial_status("fp-1")

        assert status.remaining == 5
        assert status.actions == []
        assert status.is_blocked is False
        assert status.last_reset_at == clock.now

    @pytest.mark.asyncio
    async def test_no_reset_at_exact_interval(self, trial_service, clock):
        """Reset needs strictly more than the interval to elapse."""
        await trial_service.consume_trial("fp-1", "export_data", weight=3)

        clock.advance(hours=24)
        status = await trial_service.get_trial_status("fp-1")

        assert status.remaining == 2

    @pytest.mark.asyncio
    async def test_reset_clears_block(self, trial_service, clock):
        """Reset also lifts an exhaustion block."""
        await trial_service.consume_trial("fp-1", "export_data", weight=5)
        await trial_service.consume_trial("fp-1", TrialActionType.VIDEO_ANALYSIS)

        clock.advance(hours=25)
        status = await trial_service.get_trial_status("fp-1")

        assert status.is_blocked is False
        assert status.blocked_until is None


# ============================================================================
# Read-side projections
# ============================================================================


class TestTrialStatus:
    """Tests for get_trial_status."""

    @pytest.mark.asyncio
    async def test_status_projection(self, trial_service, fixed_datetime):
        await trial_service.consume_trial("fp-1", TrialActionType.CHANNEL_ANALYSIS)

        status = await trial_service.get_trial_status("fp-1")

        assert status.fingerprint == "fp-1"
        assert status.remaining == 3
        assert status.total == 5
        assert status.next_reset_at == fixed_datetime + timedelta(hours=24)
        assert status.last_used == fixed_datetime
        assert [a.type for a in status.actions] == ["channel_analysis"]


class TestCheckRateLimit:
    """Tests for the advisory hourly throttle."""

    @pytest.mark.asyncio
    async def test_unknown_fingerprint_allowed(self, trial_service):
        result = await trial_service.check_rate_limit("fp-unknown")

        assert result.allowed is True
        assert result.remaining == 20

    @pytest.mark.asyncio
    async def test_counts_actions_in_last_hour(self, failover_store, settings_factory, clock):
        """Only actions newer than one hour count against the cap."""
        service = TrialQuotaService(
            failover_store,
            settings_factory(trial_default_count=10, trial_max_actions_per_hour=3),
            clock=clock,
        )
        await service.consume_trial("fp-1", "export_data")
        clock.advance(minutes=61)
        await service.consume_trial("fp-1", "export_data")
        await service.consume_trial("fp-1", "export_data")

        result = await service.check_rate_limit("fp-1")
        assert result.allowed is True
        assert result.remaining == 1

        await service.consume_trial("fp-1", "export_data")
        result = await service.check_rate_limit("fp-1")
        assert result.allowed is False
        assert result.remaining == 0

    @pytest.mark.asyncio
    async def test_does_not_mutate(self, trial_service):
        """Checking the throttle never creates a record."""
        await trial_service.check_rate_limit("fp-ghost")

        assert await trial_service.store.read("fp-ghost") is None


class TestTrialStats:
    """Tests for get_trial_stats."""

    @pytest.mark.asyncio
    async def test_unknown_fingerprint(self, trial_service):
        stats = await trial_service.get_trial_stats("fp-unknown")

        assert stats.total_actions == 0
        assert stats.last_action_at is None

    @pytest.mark.asyncio
    async def test_buckets_by_utc_day_and_hour(self, failover_store, settings_factory, clock):
        """Counts split at UTC day and hour boundaries."""
        service = TrialQuotaService(
            failover_store, settings_factory(trial_default_count=10), clock=clock
        )
        clock.now = clock.now.replace(hour=10, minute=30)
        await service.consume_trial("fp-1", "export_data")
        clock.now = clock.now.replace(hour=11, minute=5)
        await service.consume_trial("fp-1", "export_data")
        await service.consume_trial("fp-1", "export_data")

        stats = await service.get_trial_stats("fp-1")

        assert stats.total_actions == 3
        assert stats.actions_today == 3
        assert stats.actions_this_hour == 2
        assert stats.last_action_at == clock.now


# ============================================================================
# Conversion, analytics and cleanup
# ============================================================================


class TestMarkUserConverted:
    """Tests for mark_user_converted."""

    @pytest.mark.asyncio
    async def test_stamps_record_once(self, trial_service, clock):
        """Conversion is one-way; the first user id wins."""
        await trial_service.consume_trial("fp-1", TrialActionType.VIDEO_ANALYSIS)

        assert await trial_service.mark_user_converted("fp-1", "user-a") is True
        converted_at = clock.now
        clock.advance(minutes=1)
        assert await trial_service.mark_user_converted("fp-1", "user-b") is True

        record = await trial_service.get_or_create_record("fp-1")
        assert record.converted_user_id == "user-a"
        assert record.converted_at == converted_at
        assert record.remaining == 4

    @pytest.mark.asyncio
    async def test_unknown_fingerprint(self, trial_service):
        """Converting an unseen fingerprint creates nothing."""
        assert await trial_service.mark_user_converted("fp-unknown", "user-a") is False
        assert await trial_service.store.read("fp-unknown") is None


class TestRecordLoginAnalytics:
    """Tests for record_login_analytics."""

    @pytest.mark.asyncio
    async def test_writes_event(self, trial_service, db_session, fixed_datetime):
        from sqlalchemy import select

        from app.db.models import LoginAnalytics

        await trial_service.record_login_analytics(
            LoginAnalyticsEvent(
                event_type="trial_exhausted",
                fingerprint="fp-1",
                trigger_type="video_analysis",
                context={"remaining": 0},
            )
        )

        rows = (await db_session.execute(select(LoginAnalytics))).scalars().all()
        assert len(rows) == 1
        assert rows[0].event_type == "trial_exhausted"
        assert rows[0].context == {"remaining": 0}
        assert rows[0].created_at == fixed_datetime


class TestCleanupExpiredData:
    """Tests for cleanup_expired_data."""

    @pytest.mark.asyncio
    async def test_removes_idle_unconverted_records(self, trial_service, clock):
        """Idle unconverted records are purged; converted ones are kept."""
        await trial_service.consume_trial("fp-idle", "export_data")
        await trial_service.consume_trial("fp-converted", "export_data")
        await trial_service.mark_user_converted("fp-converted", "user-a")
        clock.advance(days=91)
        await trial_service.consume_trial("fp-active", "export_data")

        removed = await trial_service.cleanup_expired_data()

        assert removed == 1
        assert await trial_service.store.read("fp-idle") is None
        assert await trial_service.store.read("fp-converted") is not None
        assert await trial_service.store.read("fp-active") is not None

    @pytest.mark.asyncio
    async def test_retention_override(self, trial_service, clock):
        await trial_service.consume_trial("fp-1", "export_data")
        clock.advance(days=8)

        assert await trial_service.cleanup_expired_data(retention_days=30) == 0
        assert await trial_service.cleanup_expired_data(retention_days=7) == 1

    @pytest.mark.asyncio
    async def test_invalid_retention(self, trial_service):
        with pytest.raises(ValueError, match="retention_days must be positive"):
            await trial_service.cleanup_expired_data(retention_days=0)


class TestBuildTrialQuotaService:
    """Tests for build_trial_quota_service."""

    def test_starts_in_durable_mode(self, session_factory, test_settings):
        service = build_trial_quota_service(session_factory, test_settings)

        assert service.store_mode == TrialStoreMode.DURABLE
