"""Subscription state derivation and the monthly free-usage quota."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import UsageCounterRecord
from ..utils import current_period_key

logger = logging.getLogger(__name__)


class EntitlementState(str, Enum):
    """Subscription status of a user."""

    UNKNOWN = "unknown"
    FREE = "free"
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    EXPIRED = "expired"

    @property
    def has_unlimited_access(self) -> bool:
        return self in (EntitlementState.ACTIVE, EntitlementState.GRACE_PERIOD)


@dataclass(slots=True)
class Entitlement:
    identifier: str
    expiration_date: datetime | None = None
    latest_purchase_date: datetime | None = None


@dataclass(slots=True)
class EntitlementInfo:
    """Raw entitlement facts reported by the purchase backend."""

    active_entitlements: list[str] = field(default_factory=list)
    all_entitlements: list[Entitlement] = field(default_factory=list)


@dataclass(slots=True)
class UsageCounter:
    user_id: str
    period_key: str
    count: int = 0


@dataclass(slots=True)
class GateDecision:
    """Outcome of an entitlement check; ``remaining`` is ``None`` when unlimited."""

    allowed: bool
    state: EntitlementState
    reason: str
    remaining: int | None = None

    def to_payload(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "state": self.state.value,
            "reason": self.reason,
            "remaining": self.remaining,
        }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def derive_entitlement_state(
    info: EntitlementInfo, now: datetime | None = None
) -> EntitlementState:
    """Derive the subscription status from raw entitlement facts.

    Any active entitlement means ``ACTIVE``. Otherwise the first known
    entitlement decides: a future expiration is a canceled subscription still
    inside its paid window (``GRACE_PERIOD``) and a past purchase means the
    subscription lapsed (``EXPIRED``). With no history the user is ``FREE``.
    """

    if info.active_entitlements:
        return EntitlementState.ACTIVE

    moment = _as_utc(now or datetime.now(timezone.utc))
    for entitlement in info.all_entitlements:
        expiration = entitlement.expiration_date
        if expiration is not None and _as_utc(expiration) > moment:
            return EntitlementState.GRACE_PERIOD
        if entitlement.latest_purchase_date is not None:
            return EntitlementState.EXPIRED
    return EntitlementState.FREE


class EntitlementBackend(Protocol):
    async def get_entitlements(self, user_id: str) -> EntitlementInfo:
        ...

    async def set_usage_attribute(self, user_id: str, period_key: str, count: int) -> None:
        ...


class UsageStore(Protocol):
    async def load(self, user_id: str) -> UsageCounter | None:
        ...

    async def save(self, counter: UsageCounter) -> None:
        ...


class SqlUsageStore:
    """Persist usage counters in the application database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def load(self, user_id: str) -> UsageCounter | None:
        async with self._session_factory() as session:
            record = await session.get(UsageCounterRecord, user_id)
            if record is None:
                return None
            return UsageCounter(
                user_id=record.user_id, period_key=record.period_key, count=record.count
            )

    async def save(self, counter: UsageCounter) -> None:
        async with self._session_factory() as session:
            record = await session.get(UsageCounterRecord, counter.user_id)
            if record is None:
                record = UsageCounterRecord(user_id=counter.user_id)
                session.add(record)
            record.period_key = counter.period_key
            record.count = counter.count
            await session.commit()


class EntitlementGate:
    """Decide whether a user may run a recommendation request."""

    def __init__(
        self,
        settings: Settings,
        backend: EntitlementBackend | None,
        store: UsageStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self._settings = settings
        self._backend = backend
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._states: dict[str, EntitlementState] = {}
        self._mirror_tasks: set[asyncio.Task[None]] = set()

    @property
    def max_free_invocations(self) -> int:
        return self._settings.max_free_invocations

    def state_for(self, user_id: str) -> EntitlementState:
        return self._states.get(user_id, EntitlementState.UNKNOWN)

    def gating_state(self, user_id: str) -> EntitlementState:
        """Return the state used for gating; an unresolved state counts as free."""

        state = self.state_for(user_id)
        if state is EntitlementState.UNKNOWN:
            return EntitlementState.FREE
        return state

    async def refresh(self, user_id: str) -> EntitlementState:
        """Fetch entitlements and update the cached state for ``user_id``."""

        if self._backend is None:
            return self.state_for(user_id)
        try:
            info = await self._backend.get_entitlements(user_id)
        except Exception as exc:
            logger.warning("Entitlement check failed for %s: %s", user_id, exc)
            return self.state_for(user_id)

        state = derive_entitlement_state(info, self._clock())
        previous = self._states.get(user_id)
        if previous is not state:
            logger.info(
                "Entitlement state for %s: %s -> %s",
                user_id,
                (previous or EntitlementState.UNKNOWN).value,
                state.value,
            )
        self._states[user_id] = state
        return state

    async def usage(self, user_id: str) -> UsageCounter:
        """Return this month's counter; a stale period reads as zero."""

        period_key = current_period_key(self._clock())
        counter = await self._store.load(user_id)
        if counter is None or counter.period_key != period_key:
            return UsageCounter(user_id=user_id, period_key=period_key, count=0)
        return counter

    async def check(self, user_id: str, *, refresh: bool = True) -> GateDecision:
        if refresh:
            await self.refresh(user_id)
        state = self.gating_state(user_id)
        if state is EntitlementState.ACTIVE:
            return GateDecision(True, state, "active_subscription")
        if state is EntitlementState.GRACE_PERIOD:
            return GateDecision(True, state, "grace_period")

        counter = await self.usage(user_id)
        remaining = max(0, self.max_free_invocations - counter.count)
        if counter.count >= self.max_free_invocations:
            return GateDecision(False, state, "monthly_limit_reached", 0)
        return GateDecision(True, state, "within_monthly_limit", remaining)

    async def can_invoke(self, user_id: str) -> bool:
        decision = await self.check(user_id, refresh=False)
        return decision.allowed

    async def record_invocation(self, user_id: str) -> int:
        """Count one completed request; returns the new count, 0 if unlimited."""

        if self.gating_state(user_id).has_unlimited_access:
            return 0

        counter = await self.usage(user_id)
        counter.count += 1
        await self._store.save(counter)
        logger.info(
            "Recorded invocation for %s: %d/%d in %s",
            user_id,
            counter.count,
            self.max_free_invocations,
            counter.period_key,
        )
        self._schedule_mirror(counter)
        return counter.count

    async def wait_for_mirrors(self) -> None:
        """Wait for pending backend mirror updates."""

        if self._mirror_tasks:
            await asyncio.gather(*list(self._mirror_tasks), return_exceptions=True)

    def _schedule_mirror(self, counter: UsageCounter) -> None:
        if self._backend is None:
            return
        snapshot = UsageCounter(counter.user_id, counter.period_key, counter.count)
        task = asyncio.create_task(self._mirror(self._backend, snapshot))
        self._mirror_tasks.add(task)
        task.add_done_callback(self._mirror_tasks.discard)

    async def _mirror(self, backend: EntitlementBackend, counter: UsageCounter) -> None:
        try:
            await backend.set_usage_attribute(
                counter.user_id, counter.period_key, counter.count
            )
        except Exception as exc:
            logger.warning("Usage mirror failed for %s: %s", counter.user_id, exc)
