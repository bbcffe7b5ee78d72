"""
Trial Stores - Durable (PostgreSQL) and in-memory persistence for trial records.

The quota policy never talks to the database directly. It hands a mutation
to a TrialStore, which loads (or seeds) the record for a fingerprint, runs
the mutation with exclusive access to that record and persists the result:

- DurableTrialStore: one transaction, row locked with SELECT ... FOR UPDATE.
- InMemoryTrialStore: process-local bounded map; mutations are synchronous
  and run without awaiting, so each one is atomic on the event loop.
- FailoverTrialStore: routes to the durable store while it is healthy and
  degrades to the memory store when it is not.

The memory store is per process. In a multi-instance deployment each
instance enforces its own fallback quota while the database is down.
"""

import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from app.db.models import AnonymousTrial, LoginAnalytics
from app.exceptions import TrialStoreUnavailableError
from app.models.api import TrialStoreMode
from app.models.domain import LoginAnalyticsEvent, TrialAction, TrialRecord
from app.observability.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")

Mutation = Callable[[TrialRecord], T]
RecordFactory = Callable[[], TrialRecord]

# Errors that mean "the database could not serve this call"
_STORE_ERRORS = (SQLAlchemyError, OSError, TimeoutError)


class TrialStore(ABC):
    """Persistence seam for trial records."""

    mode: TrialStoreMode

    @abstractmethod
    async def probe(self) -> bool:
        """Lightweight availability check."""

    @abstractmethod
    async def apply(
        self,
        fingerprint: str,
        mutation: Mutation[T],
        factory: RecordFactory | None = None,
    ) -> T | None:
        """
        Run mutation against the record for fingerprint and persist it.

        If no record exists, factory seeds a new one; without a factory the
        call is a no-op and returns None.
        """

    @abstractmethod
    async def read(self, fingerprint: str) -> TrialRecord | None:
        """Load a record without creating or locking it."""

    @abstractmethod
    async def record_analytics(self, event: LoginAnalyticsEvent, at: datetime) -> None:
        """Append a funnel analytics event."""

    @abstractmethod
    async def delete_idle(self, before: datetime) -> int:
        """Delete unconverted records whose last action is older than before."""


# ============================================================================
# In-memory store
# ============================================================================


class InMemoryTrialStore(TrialStore):
    """
    Bounded process-local trial store.

    Least recently used fingerprints are evicted once max_entries is
    exceeded. Owned by a single service instance for the process lifetime.
    """

    mode = TrialStoreMode.MEMORY

    def __init__(self, max_entries: int = 10000) -> None:
        if max_entries <= 0:
            raise ValueError(f"max_entries must be positive: {max_entries}")
        self._max_entries = max_entries
        self._records: OrderedDict[str, TrialRecord] = OrderedDict()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self._records

    async def probe(self) -> bool:
        return True

    async def apply(
        self,
        fingerprint: str,
        mutation: Mutation[T],
        factory: RecordFactory | None = None,
    ) -> T | None:
        # No await between lookup and write: atomic on the event loop
        record = self._records.get(fingerprint)
        if record is None:
            if factory is None:
                return None
            record = factory()
            self._records[fingerprint] = record
            self._evict_overflow()
        else:
            self._records.move_to_end(fingerprint)
        return mutation(record)

    async def read(self, fingerprint: str) -> TrialRecord | None:
        record = self._records.get(fingerprint)
        if record is None:
            return None
        return copy_record(record)

    async def record_analytics(self, event: LoginAnalyticsEvent, at: datetime) -> None:
        logger.info(
            "login_analytics_memory_only",
            event_type=event.event_type,
            fingerprint=event.fingerprint,
            trigger_type=event.trigger_type,
        )

    async def delete_idle(self, before: datetime) -> int:
        stale = [
            fp
            for fp, record in self._records.items()
            if record.last_action_at < before and record.converted_user_id is None
        ]
        for fp in stale:
            del self._records[fp]
        return len(stale)

    def _evict_overflow(self) -> None:
        while len(self._records) > self._max_entries:
            evicted, _ = self._records.popitem(last=False)
            logger.debug("trial_memory_cache_evicted", fingerprint=evicted)


# ============================================================================
# Durable store
# ============================================================================


class DurableTrialStore(TrialStore):
    """PostgreSQL-backed trial store. Every failure surfaces as TrialStoreUnavailableError."""

    mode = TrialStoreMode.DURABLE

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def probe(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(select(AnonymousTrial.id).limit(1))
            return True
        except _STORE_ERRORS as exc:
            logger.warning("trial_store_probe_failed", error=str(exc))
            return False

    async def apply(
        self,
        fingerprint: str,
        mutation: Mutation[T],
        factory: RecordFactory | None = None,
    ) -> T | None:
        try:
            async with self._session_factory() as session:
                row = await self._lock_row(session, fingerprint)

                if row is None:
                    if factory is None:
                        return None
                    row = await self._insert_row(session, fingerprint, factory())

                record = _row_to_record(row)
                result = mutation(record)
                _write_row(row, record)
                await session.commit()
                return result
        except _STORE_ERRORS as exc:
            raise TrialStoreUnavailableError("apply", str(exc)) from exc

    async def read(self, fingerprint: str) -> TrialRecord | None:
        try:
            async with self._session_factory() as session:
                stmt = select(AnonymousTrial).where(AnonymousTrial.fingerprint == fingerprint)
                result = await session.execute(stmt)
                row = result.scalar_one_or_none()
                return _row_to_record(row) if row is not None else None
        except _STORE_ERRORS as exc:
            raise TrialStoreUnavailableError("read", str(exc)) from exc

    async def record_analytics(self, event: LoginAnalyticsEvent, at: datetime) -> None:
        try:
            async with self._session_factory() as session:
                session.add(
                    LoginAnalytics(
                        session_id=event.session_id,
                        user_id=event.user_id,
                        fingerprint=event.fingerprint,
                        event_type=event.event_type,
                        trigger_type=event.trigger_type,
                        provider=event.provider,
                        context=event.context,
                        ip_address=event.ip_address,
                        user_agent=event.user_agent,
                        created_at=at,
                    )
                )
                await session.commit()
        except _STORE_ERRORS as exc:
            raise TrialStoreUnavailableError("record_analytics", str(exc)) from exc

    async def delete_idle(self, before: datetime) -> int:
        try:
            async with self._session_factory() as session:
                stmt = delete(AnonymousTrial).where(
                    AnonymousTrial.last_action_at < before,
                    AnonymousTrial.converted_user_id.is_(None),
                )
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount or 0  # type: ignore[attr-defined]
        except _STORE_ERRORS as exc:
            raise TrialStoreUnavailableError("delete_idle", str(exc)) from exc

    async def _lock_row(self, session: AsyncSession, fingerprint: str) -> AnonymousTrial | None:
        """Lock the trial row for update (SELECT FOR UPDATE)."""
        stmt = (
            select(AnonymousTrial)
            .where(AnonymousTrial.fingerprint == fingerprint)
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _insert_row(
        self, session: AsyncSession, fingerprint: str, record: TrialRecord
    ) -> AnonymousTrial:
        """Insert a seeded row, falling back to the concurrently inserted one."""
        row = AnonymousTrial(fingerprint=fingerprint)
        _write_row(row, record)
        session.add(row)
        try:
            await session.flush()
            return row
        except IntegrityError as exc:
            # Race condition - record created by another request
            logger.info("trial_record_insert_race", fingerprint=fingerprint)
            await session.rollback()
            existing = await self._lock_row(session, fingerprint)
            if existing is None:
                raise TrialStoreUnavailableError("insert", str(exc)) from exc
            return existing


# ============================================================================
# Failover store
# ============================================================================


class FailoverTrialStore(TrialStore):
    """
    Health-checked router between a durable and a fallback store.

    Availability is cached for probe_interval seconds so the durable store is
    not probed on every call. Any TrialStoreUnavailableError marks it down
    until the next probe.
    """

    def __init__(
        self,
        primary: TrialStore,
        fallback: TrialStore,
        probe_interval: float = 60.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._probe_interval = probe_interval
        self._monotonic = monotonic
        self._primary_available = True
        self._checked_at: float | None = None

    @property
    def mode(self) -> TrialStoreMode:  # type: ignore[override]
        return self._primary.mode if self._primary_available else self._fallback.mode

    async def probe(self) -> bool:
        return await self._primary_is_available() or await self._fallback.probe()

    async def apply(
        self,
        fingerprint: str,
        mutation: Mutation[T],
        factory: RecordFactory | None = None,
    ) -> T | None:
        if await self._primary_is_available():
            try:
                return await self._primary.apply(fingerprint, mutation, factory)
            except TrialStoreUnavailableError as exc:
                self._mark_unavailable(exc)
        return await self._fallback.apply(fingerprint, mutation, factory)

    async def read(self, fingerprint: str) -> TrialRecord | None:
        if await self._primary_is_available():
            try:
                return await self._primary.read(fingerprint)
            except TrialStoreUnavailableError as exc:
                self._mark_unavailable(exc)
        return await self._fallback.read(fingerprint)

    async def record_analytics(self, event: LoginAnalyticsEvent, at: datetime) -> None:
        if await self._primary_is_available():
            try:
                await self._primary.record_analytics(event, at)
                return
            except TrialStoreUnavailableError as exc:
                self._mark_unavailable(exc)
        await self._fallback.record_analytics(event, at)

    async def delete_idle(self, before: datetime) -> int:
        """Purge both stores; raises if the durable store could not be purged."""
        removed = await self._fallback.delete_idle(before)
        if not await self._primary_is_available():
            raise TrialStoreUnavailableError("delete_idle", "durable store unavailable")
        try:
            removed += await self._primary.delete_idle(before)
        except TrialStoreUnavailableError as exc:
            self._mark_unavailable(exc)
            raise
        return removed

    async def _primary_is_available(self) -> bool:
        now = self._monotonic()
        if self._checked_at is None or now - self._checked_at >= self._probe_interval:
            was_available = self._primary_available
            self._primary_available = await self._primary.probe()
            self._checked_at = now
            if self._primary_available and not was_available:
                logger.info("trial_store_recovered", mode=self._primary.mode.value)
            elif not self._primary_available:
                logger.warning("trial_store_unavailable", operation="probe")
                metrics.record_trial_fallback("probe")
        return self._primary_available

    def _mark_unavailable(self, exc: TrialStoreUnavailableError) -> None:
        logger.warning(
            "trial_store_unavailable",
            operation=exc.operation,
            error=exc.reason,
        )
        metrics.record_trial_fallback(exc.operation)
        self._primary_available = False
        self._checked_at = self._monotonic()


# ============================================================================
# Row mapping
# ============================================================================


def copy_record(record: TrialRecord) -> TrialRecord:
    """Detached copy so callers cannot mutate store state."""
    return TrialRecord(
        fingerprint=record.fingerprint,
        trial_count=record.trial_count,
        max_trials=record.max_trials,
        last_reset_at=record.last_reset_at,
        first_visit_at=record.first_visit_at,
        last_action_at=record.last_action_at,
        actions=list(record.actions),
        ip_address=record.ip_address,
        user_agent_hash=record.user_agent_hash,
        is_blocked=record.is_blocked,
        blocked_until=record.blocked_until,
        converted_user_id=record.converted_user_id,
        converted_at=record.converted_at,
    )


def _row_to_record(row: AnonymousTrial) -> TrialRecord:
    """Convert ORM row to domain record. Malformed rows count as store failure."""
    try:
        actions = [TrialAction.from_json(item) for item in (row.actions or [])]
    except (KeyError, TypeError, ValueError) as exc:
        raise TrialStoreUnavailableError("decode", f"malformed actions log: {exc}") from exc

    return TrialRecord(
        fingerprint=row.fingerprint,
        trial_count=row.trial_count,
        max_trials=row.max_trials,
        last_reset_at=row.last_reset_at,
        first_visit_at=row.first_visit_at,
        last_action_at=row.last_action_at,
        actions=actions,
        ip_address=row.ip_address,
        user_agent_hash=row.user_agent_hash,
        is_blocked=row.is_blocked,
        blocked_until=row.blocked_until,
        converted_user_id=row.converted_user_id,
        converted_at=row.converted_at,
    )


def _write_row(row: AnonymousTrial, record: TrialRecord) -> None:
    """Copy domain record fields onto the ORM row."""
    values: dict[str, Any] = {
        "ip_address": record.ip_address,
        "user_agent_hash": record.user_agent_hash,
        "trial_count": record.trial_count,
        "max_trials": record.max_trials,
        "actions": [action.to_json() for action in record.actions],
        "first_visit_at": record.first_visit_at,
        "last_action_at": record.last_action_at,
        "last_reset_at": record.last_reset_at,
        "is_blocked": record.is_blocked,
        "blocked_until": record.blocked_until,
        "converted_user_id": record.converted_user_id,
        "converted_at": record.converted_at,
    }
    for name, value in values.items():
        if getattr(row, name, None) != value:
            setattr(row, name, value)
