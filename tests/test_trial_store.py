"""
Tests for Trial Stores.

Covers the bounded memory store, the SQLite-backed durable store and the
failover router's degrade/recover behavior.
"""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update

from app.db.models import AnonymousTrial
from app.exceptions import TrialStoreUnavailableError
from app.models.api import TrialActionType, TrialStoreMode
from app.models.domain import LoginAnalyticsEvent, TrialAction, TrialRecord
from app.services.trial_quota import TrialQuotaService
from app.services.trial_store import (
    FailoverTrialStore,
    InMemoryTrialStore,
    TrialStore,
    copy_record,
)

NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=UTC)


def _record(fingerprint: str = "fp-1", **overrides) -> TrialRecord:
    values = {
        "fingerprint": fingerprint,
        "trial_count": 0,
        "max_trials": 5,
        "last_reset_at": NOW,
        "first_visit_at": NOW,
        "last_action_at": NOW,
    }
    values.update(overrides)
    return TrialRecord(**values)


def _increment(record: TrialRecord) -> int:
    record.trial_count += 1
    return record.trial_count


class BrokenTrialStore(TrialStore):
    """Durable stand-in whose every call fails like a lost database."""

    mode = TrialStoreMode.DURABLE

    def __init__(self, probe_ok: bool = True) -> None:
        self.probe_ok = probe_ok
        self.probes = 0
        self.applies = 0

    async def probe(self) -> bool:
        self.probes += 1
        return self.probe_ok

    async def apply(self, fingerprint, mutation, factory=None):
        self.applies += 1
        raise TrialStoreUnavailableError("apply", "connection refused")

    async def read(self, fingerprint):
        raise TrialStoreUnavailableError("read", "connection refused")

    async def record_analytics(self, event, at):
        raise TrialStoreUnavailableError("record_analytics", "connection refused")

    async def delete_idle(self, before):
        raise TrialStoreUnavailableError("delete_idle", "connection refused")


# ============================================================================
# In-memory store
# ============================================================================


class TestInMemoryTrialStore:
    """Tests for InMemoryTrialStore."""

    @pytest.mark.asyncio
    async def test_apply_seeds_and_persists(self, memory_store):
        """Mutations see previous results for the same fingerprint."""
        assert await memory_store.apply("fp-1", _increment, _record) == 1
        assert await memory_store.apply("fp-1", _increment, _record) == 2
        assert len(memory_store) == 1

    @pytest.mark.asyncio
    async def test_apply_without_factory_is_noop(self, memory_store):
        assert await memory_store.apply("fp-1", _increment) is None
        assert "fp-1" not in memory_store

    @pytest.mark.asyncio
    async def test_read_returns_copy(self, memory_store):
        await memory_store.apply("fp-1", _increment, _record)

        record = await memory_store.read("fp-1")
        record.trial_count = 99

        assert (await memory_store.read("fp-1")).trial_count == 1

    @pytest.mark.asyncio
    async def test_bounded_lru_eviction(self):
        """The least recently used fingerprint is evicted past max_entries."""
        store = InMemoryTrialStore(max_entries=2)
        await store.apply("fp-a", _increment, lambda: _record("fp-a"))
        await store.apply("fp-b", _increment, lambda: _record("fp-b"))
        # Touch fp-a so fp-b becomes least recently used
        await store.apply("fp-a", _increment, lambda: _record("fp-a"))
        await store.apply("fp-c", _increment, lambda: _record("fp-c"))

        assert len(store) == 2
        assert "fp-a" in store
        assert "fp-b" not in store
        assert "fp-c" in store

    def test_max_entries_must_be_positive(self):
        with pytest.raises(ValueError, match="max_entries must be positive"):
            InMemoryTrialStore(max_entries=0)

    @pytest.mark.asyncio
    async def test_delete_idle_keeps_converted(self, memory_store):
        await memory_store.apply("fp-old", lambda r: None, lambda: _record("fp-old"))
        await memory_store.apply(
            "fp-conv", lambda r: None, lambda: _record("fp-conv", converted_user_id="user-a")
        )

        removed = await memory_store.delete_idle(NOW + timedelta(days=1))

        assert removed == 1
        assert "fp-old" not in memory_store
        assert "fp-conv" in memory_store

    @pytest.mark.asyncio
    async def test_probe_always_available(self, memory_store):
        assert await memory_store.probe() is True
        assert memory_store.mode == TrialStoreMode.MEMORY


# ============================================================================
# Durable store
# ============================================================================


class TestDurableTrialStore:
    """Tests for DurableTrialStore against SQLite."""

    @pytest.mark.asyncio
    async def test_round_trips_actions(self, durable_store):
        action = TrialAction(
            type="video_analysis", timestamp=NOW, ip_address="192.0.2.1", metadata={"k": "v"}
        )

        def add_action(record: TrialRecord) -> None:
            record.actions.append(action)
            record.trial_count += 1

        await durable_store.apply("fp-1", add_action, _record)
        record = await durable_store.read("fp-1")

        assert record.trial_count == 1
        assert record.actions == [action]
        assert record.last_reset_at == NOW

    @pytest.mark.asyncio
    async def test_probe(self, durable_store):
        assert await durable_store.probe() is True
        assert durable_store.mode == TrialStoreMode.DURABLE

    @pytest.mark.asyncio
    async def test_malformed_action_log_is_store_failure(self, durable_store, db_session):
        """A row whose action log cannot be decoded surfaces as unavailability."""
        await durable_store.apply("fp-1", _increment, _record)
        await db_session.execute(
            update(AnonymousTrial)
            .where(AnonymousTrial.fingerprint == "fp-1")
            .values(actions=[{"unexpected": "shape"}])
        )
        await db_session.commit()

        with pytest.raises(TrialStoreUnavailableError) as exc_info:
            await durable_store.read("fp-1")
        assert exc_info.value.operation == "decode"

    @pytest.mark.asyncio
    async def test_record_analytics_and_delete_idle(self, durable_store):
        await durable_store.record_analytics(LoginAnalyticsEvent(event_type="trial_started"), NOW)
        await durable_store.apply("fp-1", _increment, _record)

        assert await durable_store.delete_idle(NOW) == 0
        assert await durable_store.delete_idle(NOW + timedelta(seconds=1)) == 1


# ============================================================================
# Failover store
# ============================================================================


class TestFailoverTrialStore:
    """Tests for FailoverTrialStore."""

    @pytest.mark.asyncio
    async def test_uses_durable_when_healthy(self, failover_store, memory_store):
        await failover_store.apply("fp-1", _increment, _record)

        assert failover_store.mode == TrialStoreMode.DURABLE
        assert "fp-1" not in memory_store

    @pytest.mark.asyncio
    async def test_falls_back_on_failure(self, monotonic):
        """A failing durable call is retried against memory and marks it down."""
        broken = BrokenTrialStore()
        memory = InMemoryTrialStore()
        store = FailoverTrialStore(broken, memory, probe_interval=60, monotonic=monotonic)

        assert await store.apply("fp-1", _increment, _record) == 1

        assert store.mode == TrialStoreMode.MEMORY
        assert "fp-1" in memory

    @pytest.mark.asyncio
    async def test_probe_result_is_cached(self, monotonic):
        """While marked down, the durable store is not retried until the interval passes."""
        broken = BrokenTrialStore()
        store = FailoverTrialStore(
            broken, InMemoryTrialStore(), probe_interval=60, monotonic=monotonic
        )

        await store.apply("fp-1", _increment, _record)
        await store.apply("fp-1", _increment, _record)
        monotonic.advance(59)
        await store.apply("fp-1", _increment, _record)

        assert broken.applies == 1
        assert broken.probes == 1

    @pytest.mark.asyncio
    async def test_recovers_after_probe_interval(self, monotonic):
        """A successful re-probe routes traffic back to the durable store."""
        broken = BrokenTrialStore(probe_ok=False)
        memory = InMemoryTrialStore()
        store = FailoverTrialStore(broken, memory, probe_interval=60, monotonic=monotonic)

        await store.apply("fp-1", _increment, _record)
        assert store.mode == TrialStoreMode.MEMORY
        assert broken.applies == 0

        broken.probe_ok = True
        monotonic.advance(60)
        await store.apply("fp-1", _increment, _record)

        assert broken.probes == 2
        assert broken.applies == 1

    @pytest.mark.asyncio
    async def test_analytics_degrade_silently(self, monotonic):
        store = FailoverTrialStore(BrokenTrialStore(), InMemoryTrialStore(), monotonic=monotonic)

        await store.record_analytics(LoginAnalyticsEvent(event_type="trial_started"), NOW)

        assert store.mode == TrialStoreMode.MEMORY

    @pytest.mark.asyncio
    async def test_delete_idle_purges_fallback_then_raises_when_durable_down(self, monotonic):
        """Cleanup must report the outage instead of claiming success."""
        memory = InMemoryTrialStore()
        store = FailoverTrialStore(BrokenTrialStore(), memory, monotonic=monotonic)
        await memory.apply("fp-1", lambda r: None, _record)

        with pytest.raises(TrialStoreUnavailableError) as exc_info:
            await store.delete_idle(NOW + timedelta(days=1))

        assert exc_info.value.operation == "delete_idle"
        assert "fp-1" not in memory
        assert store.mode == TrialStoreMode.MEMORY

    @pytest.mark.asyncio
    async def test_delete_idle_raises_when_probe_fails(self, monotonic):
        store = FailoverTrialStore(
            BrokenTrialStore(probe_ok=False), InMemoryTrialStore(), monotonic=monotonic
        )

        with pytest.raises(TrialStoreUnavailableError):
            await store.delete_idle(NOW)


class TestMemoryFallbackIdempotence:
    """Quota state survives across calls while the database is down."""

    @pytest.mark.asyncio
    async def test_consistent_remaining_across_calls(self, monotonic, test_settings, clock):
        store = FailoverTrialStore(
            BrokenTrialStore(), InMemoryTrialStore(), probe_interval=60, monotonic=monotonic
        )
        service = TrialQuotaService(store, test_settings, clock=clock)

        first = await service.get_or_create_record("fp-1")
        second = await service.get_or_create_record("fp-1")
        assert first.remaining == second.remaining == 5

        await service.consume_trial("fp-1", TrialActionType.CHANNEL_ANALYSIS)
        third = await service.get_or_create_record("fp-1")

        assert third.remaining == 3
        assert service.store_mode == TrialStoreMode.MEMORY


def test_copy_record_is_independent():
    """copy_record detaches the action list."""
    original = _record(actions=[TrialAction(type="export_data", timestamp=NOW)])
    duplicate = copy_record(original)
    duplicate.actions.append(TrialAction(type="save_report", timestamp=NOW))

    assert len(original.actions) == 1
    assert duplicate.fingerprint == original.fingerprint
    assert duplicate.last_reset_at == original.last_reset_at
