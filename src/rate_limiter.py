"""
Two-window rate limiter shared by every region task.

Riot application limits apply per regional cluster: 20 requests per
second and 100 per two minutes. Each scope keeps a local cache of both
window counters so most acquires never touch the shared store; the cache
is reconciled with a shared counter (Redis, or an in-process store) every
few requests or seconds by "increment by pending delta, read back" so
several processes converge on one count.

Request classes partition the budget: `bulk` (crawler traffic) is held
below the ceiling by a static reservation, `overhead`/`priority` may use
the full ceiling, so interactive lookups always have headroom.

Method limits apply per cluster per endpoint on top of the app limit. An
acquire that names a method counts against both budgets and waits for
the later of the two.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from collections_util import KeyedTable
from config import (
    LONG_LIMIT,
    LONG_WINDOW,
    RATE_LIMIT_LOG_THRESHOLD,
    RESERVED_OVERHEAD_LONG,
    RESERVED_OVERHEAD_SHORT,
    SHORT_LIMIT,
    SHORT_WINDOW,
    SYNC_EVERY_REQUESTS,
    SYNC_EVERY_SECONDS,
)
from counter_store import CounterStore
from errors import BackingStoreUnavailable, TimeoutExceeded

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class RequestClass(Enum):
    """Named partitions of a scope's budget."""
    OVERHEAD = "overhead"
    PRIORITY = "priority"
    BULK = "bulk"


@dataclass(frozen=True)
class RateLimits:
    """Window sizes, shared ceilings and the bulk reservation."""
    short_window: float = SHORT_WINDOW
    short_limit: int = SHORT_LIMIT
    long_window: float = LONG_WINDOW
    long_limit: int = LONG_LIMIT
    reserved_short: int = RESERVED_OVERHEAD_SHORT
    reserved_long: int = RESERVED_OVERHEAD_LONG
    throttle_percent: int = 100
    # method -> (short, long) ceilings; unlisted methods share the app ceilings
    method_limits: Dict[str, Tuple[int, int]] = field(default_factory=dict)

    @property
    def throttled_long_limit(self) -> int:
        return math.floor(self.long_limit * self.throttle_percent / 100)

    def effective(self, request_class: RequestClass, method: Optional[str] = None) -> Tuple[int, int]:
        """(short, long) limits for a request class, optionally within one method's budget."""
        short_limit, long_limit = self.short_limit, self.long_limit
        if request_class is RequestClass.BULK:
            short_limit = self.short_limit - self.reserved_short
            long_limit = min(self.throttled_long_limit, self.long_limit - self.reserved_long)
        if method is not None and method in self.method_limits:
            method_short, method_long = self.method_limits[method]
            short_limit = min(short_limit, method_short)
            long_limit = min(long_limit, method_long)
        return short_limit, long_limit


@dataclass
class RateBudget:
    """Local view of one scope's two windows."""
    short_count: int = 0
    long_count: int = 0
    short_expiry: float = 0.0
    long_expiry: float = 0.0
    pending_unsynced: int = 0
    last_sync: Optional[float] = None
    sync_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    sync_task: Optional["asyncio.Task[bool]"] = None

    def reset_expired(self, now: float, limits: RateLimits) -> None:
        """Zero any window whose expiry has passed and start a new one."""
        if now >= self.short_expiry:
            self.short_count = 0
            self.short_expiry = now + limits.short_window
        if now >= self.long_expiry:
            self.long_count = 0
            self.long_expiry = now + limits.long_window
            self.pending_unsynced = 0

    def wait_time(self, now: float, short_limit: int, long_limit: int) -> float:
        """Seconds until every window over its limit has rolled over."""
        wait = 0.0
        if self.short_count >= short_limit:
            wait = max(wait, self.short_expiry - now)
        if self.long_count >= long_limit:
            wait = max(wait, self.long_expiry - now)
        return wait

    @property
    def sync_in_flight(self) -> bool:
        return self.sync_task is not None and not self.sync_task.done()


# (key, budget, short limit, long limit) checked by one acquire
BudgetCheck = Tuple[str, RateBudget, int, int]


@dataclass
class RateLimitStatus:
    """Read-only snapshot returned by RateLimiter.status()."""
    can_proceed: bool
    wait_time: float
    short_count: int
    long_count: int
    short_limit: int
    long_limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.long_limit - self.long_count)


class RateLimiter:
    """
    Per-scope two-window limiter with a local cache and optional shared
    counter store.

    - acquire() suspends the caller until both windows have headroom
    - status() reports usage without consuming a slot
    - flush() pushes every unsynced increment before shutdown
    - fails open when the shared store is unreachable: the local
      windows keep being enforced, nothing blocks on the store
    """

    def __init__(
        self,
        limits: Optional[RateLimits] = None,
        shared_store: Optional[CounterStore] = None,
        *,
        sync_every_requests: int = SYNC_EVERY_REQUESTS,
        sync_every_seconds: float = SYNC_EVERY_SECONDS,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.limits = limits or RateLimits()
        self._store = shared_store
        self._sync_every_requests = sync_every_requests
        self._sync_every_seconds = sync_every_seconds
        self._clock = clock
        self._sleep = sleep

        self._budgets: KeyedTable[str, RateBudget] = KeyedTable(self._new_budget)
        self._method_budgets: KeyedTable[str, RateBudget] = KeyedTable(self._new_budget)
        self._locks: KeyedTable[str, asyncio.Lock] = KeyedTable(asyncio.Lock)
        self._background: Set["asyncio.Task[bool]"] = set()

        # Counters for the dashboard / summaries
        self.total_granted = 0
        self.total_waits = 0
        self.fail_open_count = 0

    def _new_budget(self) -> RateBudget:
        now = self._clock()
        return RateBudget(
            short_expiry=now + self.limits.short_window,
            long_expiry=now + self.limits.long_window,
        )

    @property
    def shared(self) -> bool:
        return self._store is not None

    def scopes(self) -> List[str]:
        return [scope for scope, _ in self._budgets.items()]

    # -------------------------------------------------------------------------
    # acquire
    # -------------------------------------------------------------------------

    async def acquire(
        self,
        scope: str,
        request_class: RequestClass = RequestClass.OVERHEAD,
        max_wait: Optional[float] = None,
        method: Optional[str] = None,
    ) -> None:
        """
        Wait until `scope` has headroom for one `request_class` request,
        then consume it.

        With `method`, the request also counts against the per-method
        budget `{scope}:{method}` and waits for whichever is later.

        Raises TimeoutExceeded if a wait longer than `max_wait` seconds
        would be required.
        """
        checks = self._checks(scope, request_class, method)
        # Method budgets live under their scope, so the scope lock covers both
        lock = self._locks.get_or_insert_default(scope)

        while True:
            async with lock:
                await self._refresh(scope, checks, force=False)
                wait = self._wait_time(checks)
                if wait <= 0:
                    self._grant(checks)
                    return

                if max_wait is not None and wait > max_wait:
                    raise TimeoutExceeded(scope, wait, max_wait)

                # Don't wait on stale data
                if self._store is not None:
                    await self._refresh(scope, checks, force=True)
                    wait = self._wait_time(checks)
                    if wait <= 0:
                        self._grant(checks)
                        return

                if wait > RATE_LIMIT_LOG_THRESHOLD:
                    now = self._clock()
                    key, budget, short_limit, long_limit = max(
                        checks, key=lambda check: check[1].wait_time(now, check[2], check[3])
                    )
                    logger.info(
                        "[RATE LIMIT] Limit reached for %s (%d/%d short, %d/%d long, %s), waiting %.1fs",
                        key,
                        budget.short_count,
                        short_limit,
                        budget.long_count,
                        long_limit,
                        request_class.value,
                        wait,
                    )

            self.total_waits += 1
            await self._sleep(wait)

    def _checks(self, scope: str, request_class: RequestClass, method: Optional[str]) -> List[BudgetCheck]:
        """The app budget, plus the method budget when a method is named."""
        short_limit, long_limit = self.limits.effective(request_class)
        checks = [(scope, self._budgets.get_or_insert_default(scope), short_limit, long_limit)]
        if method:
            key = f"{scope}:{method}"
            method_short, method_long = self.limits.effective(request_class, method)
            checks.append((key, self._method_budgets.get_or_insert_default(key), method_short, method_long))
        return checks

    async def _refresh(self, scope: str, checks: List[BudgetCheck], force: bool) -> None:
        """Resync due budgets; an unreachable store leaves the local counts in charge."""
        for key, budget, _, _ in checks:
            if (force or self._needs_sync(budget)) and not await self._sync(key, budget):
                self._fail_open(scope)

    def _wait_time(self, checks: List[BudgetCheck]) -> float:
        now = self._clock()
        wait = 0.0
        for _, budget, short_limit, long_limit in checks:
            budget.reset_expired(now, self.limits)
            wait = max(wait, budget.wait_time(now, short_limit, long_limit))
        return wait

    def _needs_sync(self, budget: RateBudget) -> bool:
        if self._store is None:
            return False
        if budget.last_sync is None:
            return True
        if budget.pending_unsynced >= self._sync_every_requests:
            return True
        return self._clock() - budget.last_sync >= self._sync_every_seconds

    def _grant(self, checks: List[BudgetCheck]) -> None:
        self.total_granted += 1
        for key, budget, _, _ in checks:
            budget.short_count += 1
            budget.long_count += 1
            if self._store is None:
                continue
            budget.pending_unsynced += 1
            if budget.pending_unsynced >= self._sync_every_requests and not budget.sync_in_flight:
                self._schedule_sync(key, budget)

    def _fail_open(self, scope: str) -> None:
        self.fail_open_count += 1
        logger.warning("[RATE LIMIT] Shared counter unavailable for %s, using local counts only", scope)

    # -------------------------------------------------------------------------
    # shared counter reconciliation
    # -------------------------------------------------------------------------

    def _schedule_sync(self, scope: str, budget: RateBudget) -> None:
        task = asyncio.create_task(self._sync(scope, budget))
        budget.sync_task = task
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _sync(self, scope: str, budget: RateBudget) -> bool:
        """
        Push the pending delta to the shared counter and adopt the
        authoritative counts. Returns False if the store is unreachable.
        """
        store = self._store
        if store is None:
            return True

        async with budget.sync_lock:
            pending = budget.pending_unsynced
            short_key = f"ratelimit:{scope}:short"
            long_key = f"ratelimit:{scope}:long"
            try:
                if pending > 0:
                    short_count = await store.increment(short_key, pending)
                    long_count = await store.increment(long_key, pending)
                else:
                    short_count = await store.get(short_key)
                    long_count = await store.get(long_key)
                short_ttl = await self._arm_expiry(store, short_key, short_count, self.limits.short_window)
                long_ttl = await self._arm_expiry(store, long_key, long_count, self.limits.long_window)
            except BackingStoreUnavailable as exc:
                logger.warning("[RATE LIMIT] Sync error for %s: %s", scope, exc)
                return False

            now = self._clock()
            # Grants made while we were awaiting the store stay pending
            remaining = max(0, budget.pending_unsynced - pending)
            budget.pending_unsynced = remaining
            budget.short_count = short_count + remaining
            budget.long_count = long_count + remaining
            if short_ttl is not None:
                budget.short_expiry = now + short_ttl
            if long_ttl is not None:
                budget.long_expiry = now + long_ttl
            budget.last_sync = now
            return True

    @staticmethod
    async def _arm_expiry(store: CounterStore, key: str, count: int, window: float) -> Optional[float]:
        ttl = await store.ttl(key)
        if ttl is None and count > 0:
            await store.expire_if_unset(key, window)
            ttl = await store.ttl(key)
            if ttl is None:
                ttl = window
        return ttl

    async def flush(self) -> int:
        """
        Wait for in-flight background syncs, then push every remaining
        pending increment. Returns the number of scope and method keys
        flushed.
        """
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self._store is None:
            return 0

        pending = [
            (key, budget)
            for table in (self._budgets, self._method_budgets)
            for key, budget in table.items()
            if budget.pending_unsynced > 0
        ]
        if not pending:
            return 0
        results = await asyncio.gather(*(self._sync(key, budget) for key, budget in pending))
        flushed = sum(1 for ok in results if ok)
        logger.info("[RATE LIMIT] Flushed pending increments for %d keys", flushed)
        return flushed

    # -------------------------------------------------------------------------
    # status
    # -------------------------------------------------------------------------

    async def status(
        self,
        scope: str,
        request_class: RequestClass = RequestClass.OVERHEAD,
        method: Optional[str] = None,
    ) -> RateLimitStatus:
        """
        Current usage and headroom for `scope`, without consuming a slot.
        Counts are the scope's; with `method`, can_proceed and wait_time
        also account for the method budget.
        """
        short_limit, long_limit = self.limits.effective(request_class)
        now = self._clock()

        view = await self._view(scope, self._budgets.get(scope), now)
        can_proceed = view.short_count < short_limit and view.long_count < long_limit
        wait = max(0.0, view.wait_time(now, short_limit, long_limit))
        if method:
            key = f"{scope}:{method}"
            method_short, method_long = self.limits.effective(request_class, method)
            method_view = await self._view(key, self._method_budgets.get(key), now)
            can_proceed = can_proceed and method_view.short_count < method_short and method_view.long_count < method_long
            wait = max(wait, method_view.wait_time(now, method_short, method_long))

        return RateLimitStatus(
            can_proceed=can_proceed,
            wait_time=wait,
            short_count=view.short_count,
            long_count=view.long_count,
            short_limit=short_limit,
            long_limit=long_limit,
        )

    async def _view(self, key: str, budget: Optional[RateBudget], now: float) -> RateBudget:
        """A detached copy of `budget` with expired windows reset and shared counts applied."""
        if budget is None:
            view = RateBudget(short_expiry=now + self.limits.short_window, long_expiry=now + self.limits.long_window)
        else:
            view = RateBudget(
                short_count=budget.short_count,
                long_count=budget.long_count,
                short_expiry=budget.short_expiry,
                long_expiry=budget.long_expiry,
                pending_unsynced=budget.pending_unsynced,
            )
            view.reset_expired(now, self.limits)

        if self._store is not None:
            try:
                view.short_count = await self._store.get(f"ratelimit:{key}:short") + view.pending_unsynced
                view.long_count = await self._store.get(f"ratelimit:{key}:long") + view.pending_unsynced
            except BackingStoreUnavailable as exc:
                logger.warning("[RATE LIMIT] Status check failed for %s: %s", key, exc)
        return view

    def snapshot(self) -> Dict[str, Tuple[int, int]]:
        """Local (short, long) counts per scope, for display."""
        return {scope: (b.short_count, b.long_count) for scope, b in self._budgets.items()}

    def method_snapshot(self) -> Dict[str, Tuple[int, int]]:
        """Local (short, long) counts per `{scope}:{method}` key."""
        return {key: (b.short_count, b.long_count) for key, b in self._method_budgets.items()}
