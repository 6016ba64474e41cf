"""
Per-region depth-first crawler over the player -> match -> player graph.

Features:
- One RegionCrawler (and one RegionState) per regional cluster
- LIFO stack for depth-first order; visited/dry memoisation
- Dry-streak backoff so idle regions cede rate budget to busy ones
- Backtracking to previously productive players when the stack runs out
- Reseed ladder: seed pool -> stored matches -> dry eviction + cool-down
- Rate-limited nodes go back to the bottom of the stack, unvisited
"""

import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence

from collections_util import BoundedSet, DedupCache, bounded_deque
from config import (
    CRAWLER_ERROR_PAUSE,
    DRY_BACKOFF_MAX,
    DRY_BACKOFF_STEP,
    DRY_BACKOFF_THRESHOLD,
    DRY_EVICT_FRACTION,
    DRY_RESET_THRESHOLD,
    MATCH_BATCH_PAUSE,
    MATCH_HISTORY_DAYS,
    MAX_BACKTRACK_HISTORY,
    MAX_DRY,
    MAX_RETRY_AFTER,
    MAX_SEED_POOL,
    MAX_STACK_SIZE,
    MAX_VISITED,
    RESEED_COOLDOWN,
    SATURATED_COOLDOWN,
    SATURATION_THRESHOLD,
    SEED_SAMPLE_SIZE,
)
from errors import BackingStoreUnavailable, UpstreamError, UpstreamRateLimited
from match_store import MatchStore
from regions import Region
from riot_client import RiotClient, extract_patch
from stats_buffer import ChampionStatsBuffer

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class CrawlOutcome(Enum):
    """What processing one popped node amounted to."""
    PRODUCTIVE = "productive"
    DRY = "dry"
    SKIPPED = "skipped"            # visited, but no dry/backtrack bookkeeping
    RATE_LIMITED = "rate_limited"  # requeued at the bottom, not visited
    ALREADY_SEEN = "already_seen"  # popped a visited/dry node, no upstream call


class DryReason(Enum):
    NO_ACTIVITY = "no_activity"    # upstream lists no recent matches
    ALL_KNOWN = "all_known"        # matches exist but every one is already stored


# =============================================================================
# STATE
# =============================================================================

@dataclass
class RegionState:
    """Mutable crawl state owned by exactly one RegionCrawler."""
    stack: List[str] = field(default_factory=list)
    visited: BoundedSet[str] = field(default_factory=lambda: BoundedSet(MAX_VISITED))
    dry: BoundedSet[str] = field(default_factory=lambda: BoundedSet(MAX_DRY))
    seed_pool: BoundedSet[str] = field(default_factory=lambda: BoundedSet(MAX_SEED_POOL))
    backtrack_history: Deque[str] = field(default_factory=lambda: bounded_deque(MAX_BACKTRACK_HISTORY))

    def is_explored(self, puuid: str) -> bool:
        return puuid in self.visited or puuid in self.dry


@dataclass
class RegionStats:
    """Counters shown on the dashboard and in periodic summaries."""
    status: str = "idle"
    nodes_processed: int = 0
    productive: int = 0
    dry_no_activity: int = 0
    dry_all_known: int = 0
    skipped: int = 0
    rate_limited: int = 0
    matches_stored: int = 0
    matches_filtered: int = 0
    backtracks: int = 0
    reseeds: int = 0
    saturated: int = 0
    errors: int = 0
    last_event: str = ""
    last_event_time: float = field(default_factory=time.time)

    @property
    def dry(self) -> int:
        return self.dry_no_activity + self.dry_all_known

    @property
    def hit_rate(self) -> float:
        if not self.nodes_processed:
            return 0.0
        return self.productive / self.nodes_processed * 100

    def event(self, message: str):
        self.last_event = message
        self.last_event_time = time.time()


# =============================================================================
# MATCH HARVESTING (upstream + dedup + store)
# =============================================================================

@dataclass
class HarvestResult:
    """What one player's recent match list yielded."""
    listed: int = 0
    stored: int = 0
    filtered: int = 0
    discovered: List[str] = field(default_factory=list)
    dry_reason: Optional[DryReason] = None
    rate_limited: bool = False
    retry_after: Optional[float] = None


class MatchHarvester:
    """
    Lists a player's recent ARAM matches, drops the ones already known,
    fetches and stores the rest and returns the co-players found in them.
    Shared by every region crawler.
    """

    def __init__(
        self,
        client: RiotClient,
        store: MatchStore,
        known_matches: DedupCache,
        stats_buffer: Optional[ChampionStatsBuffer] = None,
        accepted_patches: Sequence[str] = (),
        batch_size: int = 3,
        rng: Optional[random.Random] = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.client = client
        self.store = store
        self.known_matches = known_matches
        self.stats_buffer = stats_buffer
        self.accepted_patches = tuple(accepted_patches)
        self.batch_size = max(1, batch_size)
        self._rng = rng or random.Random()
        self._sleep = sleep

        self.total_stored = 0
        self.cache_hits = 0

    def accepts(self, match: Dict[str, Any]) -> bool:
        if not self.accepted_patches:
            return True
        return extract_patch(match.get("info", {}).get("gameVersion", "")) in self.accepted_patches

    async def harvest(self, puuid: str, region: Region) -> HarvestResult:
        start_time = int(time.time()) - MATCH_HISTORY_DAYS * 24 * 60 * 60
        match_ids = await self.client.get_match_ids(puuid, region, start_time=start_time)
        result = HarvestResult(listed=len(match_ids))
        if not match_ids:
            result.dry_reason = DryReason.NO_ACTIVITY
            return result

        unknown = self.known_matches.filter_unknown(match_ids)
        self.cache_hits += len(match_ids) - len(unknown)
        if not unknown:
            result.dry_reason = DryReason.ALL_KNOWN
            return result

        existing = await self.store.existing_match_ids(unknown)
        self.known_matches.add_many(unknown)
        new_ids = [match_id for match_id in unknown if match_id not in existing]
        if not new_ids:
            result.dry_reason = DryReason.ALL_KNOWN
            return result

        seen = {puuid}
        for i in range(0, len(new_ids), self.batch_size):
            if i:
                await self._sleep(MATCH_BATCH_PAUSE)
            batch = new_ids[i:i + self.batch_size]
            responses = await asyncio.gather(
                *(self.client.get_match(match_id, region) for match_id in batch),
                return_exceptions=True,
            )

            valid: List[Dict[str, Any]] = []
            unfetched: List[str] = []
            for match_id, response in zip(batch, responses):
                if isinstance(response, UpstreamRateLimited):
                    result.rate_limited = True
                    if response.retry_after is not None:
                        result.retry_after = max(result.retry_after or 0.0, response.retry_after)
                    unfetched.append(match_id)
                elif isinstance(response, UpstreamError):
                    unfetched.append(match_id)
                    logger.warning("[%s] Error fetching match %s: %s", region.label, match_id, response)
                elif isinstance(response, BaseException):
                    raise response
                elif response is None:
                    continue
                elif not self.accepts(response):
                    result.filtered += 1
                else:
                    valid.append(response)
                    for participant in response.get("info", {}).get("participants", []):
                        other = participant.get("puuid")
                        if other and other not in seen:
                            seen.add(other)
                            result.discovered.append(other)

            if valid:
                try:
                    stored = await self.store.insert_matches(valid)
                except BackingStoreUnavailable as exc:
                    logger.error("[%s] Failed to store %d matches: %s", region.label, len(valid), exc)
                    unfetched.extend(match["metadata"]["matchId"] for match in valid)
                else:
                    result.stored += stored
                    self.total_stored += stored
                    if self.stats_buffer is not None:
                        for match in valid:
                            self.stats_buffer.add_match(match)

            if result.rate_limited:
                unfetched.extend(new_ids[i + self.batch_size:])
            # Let a later pass retry what was never fetched or stored
            self.known_matches.discard_many(unfetched)

            if result.rate_limited:
                logger.info("[%s] Rate limited mid-batch, stopping at %d stored", region.label, result.stored)
                break

        return result

    async def mine_seeds(self, region: Region) -> List[str]:
        """
        One store query for recent matches in this region plus one match
        fetch; returns the participants of that match.
        """
        prefixes = region.match_prefixes
        self._rng.shuffle(prefixes)
        match_ids = await self.store.recent_match_ids(prefixes, self.accepted_patches)
        if not match_ids:
            return []
        match = await self.client.get_match(self._rng.choice(match_ids), region)
        if not match:
            return []
        return [p["puuid"] for p in match.get("info", {}).get("participants", []) if p.get("puuid")]


# =============================================================================
# REGION CRAWLER
# =============================================================================

class RegionCrawler:
    """Drives one region's DFS state machine until stopped."""

    def __init__(
        self,
        region: Region,
        state: RegionState,
        harvester: MatchHarvester,
        rng: Optional[random.Random] = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.region = region
        self.state = state
        self.harvester = harvester
        self.stats = RegionStats()
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._running = False

        self.consecutive_dry = 0
        self.consecutive_backtracks = 0
        self.last_backtrack: Optional[str] = None

    @property
    def label(self) -> str:
        return self.region.label

    @property
    def running(self) -> bool:
        return self._running

    def _log(self, level: int, message: str, *args):
        logger.log(level, "[%s] " + message, self.label, *args)

    # -------------------------------------------------------------------------
    # main loop
    # -------------------------------------------------------------------------

    async def run(self):
        """Loop until stop(). Unexpected errors are logged and the loop resumes."""
        self._running = True
        self.stats.status = "crawling"
        self._log(logging.INFO, "Crawler started (stack=%d, visited=%d)", len(self.state.stack), len(self.state.visited))
        while self._running:
            try:
                outcome = await self.step()
                if outcome is CrawlOutcome.ALREADY_SEEN:
                    await asyncio.sleep(0)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.stats.errors += 1
                logger.exception("[%s] Crawler error, pausing %.0fs", self.label, CRAWLER_ERROR_PAUSE)
                await self._sleep(CRAWLER_ERROR_PAUSE)
        self.stats.status = "stopped"
        self._log(logging.INFO, "Crawler stopped")

    def stop(self):
        self._running = False

    async def step(self) -> Optional[CrawlOutcome]:
        """
        One state-machine transition: process the top of the stack, or
        backtrack/reseed when it is empty (returns None in that case).
        """
        if not self.state.stack:
            await self.handle_empty_stack()
            return None
        puuid = self.state.stack.pop()
        if self.state.is_explored(puuid):
            return CrawlOutcome.ALREADY_SEEN
        return await self.process_node(puuid)

    # -------------------------------------------------------------------------
    # PROCESS
    # -------------------------------------------------------------------------

    async def process_node(self, puuid: str) -> CrawlOutcome:
        state = self.state
        self.stats.status = "crawling"
        try:
            result = await self.harvester.harvest(puuid, self.region)
        except UpstreamRateLimited as exc:
            return await self._requeue(puuid, exc.retry_after)
        except (UpstreamError, BackingStoreUnavailable) as exc:
            state.visited.add(puuid)
            self.stats.nodes_processed += 1
            self.stats.skipped += 1
            self._log(logging.WARNING, "Skipping %s: %s", puuid[:8], exc)
            return CrawlOutcome.SKIPPED

        if result.rate_limited and not result.stored:
            return await self._requeue(puuid, result.retry_after)

        state.visited.add(puuid)
        self.stats.nodes_processed += 1
        self.stats.matches_filtered += result.filtered

        if result.stored:
            self._mark_productive(puuid, result)
            return CrawlOutcome.PRODUCTIVE
        if result.dry_reason is not None:
            await self._mark_dry(puuid, result.dry_reason)
            return CrawlOutcome.DRY

        self.stats.skipped += 1
        self._log(logging.INFO, "%s: %d new matches, none stored (%d off-patch)", puuid[:8], result.listed, result.filtered)
        return CrawlOutcome.SKIPPED

    async def _requeue(self, puuid: str, retry_after: Optional[float] = None) -> CrawlOutcome:
        self.state.stack.insert(0, puuid)
        self.stats.rate_limited += 1
        self.stats.event(f"rate limited on {puuid[:8]}")
        if not retry_after or retry_after <= 0:
            self._log(logging.INFO, "Rate limited on %s, requeued", puuid[:8])
            return CrawlOutcome.RATE_LIMITED

        delay = min(retry_after, MAX_RETRY_AFTER)
        self.stats.status = "rate limited"
        self._log(logging.INFO, "Rate limited on %s, requeued, honouring Retry-After %.0fs", puuid[:8], delay)
        await self._sleep(delay)
        return CrawlOutcome.RATE_LIMITED

    def _mark_productive(self, puuid: str, result: HarvestResult):
        state = self.state
        self.consecutive_dry = 0
        self.consecutive_backtracks = 0
        state.backtrack_history.append(puuid)

        room = max(0, MAX_STACK_SIZE - len(state.stack))
        to_push = result.discovered[:room]
        # Reversed so the first discovered neighbour is popped next
        state.stack.extend(reversed(to_push))
        state.seed_pool.update(result.discovered)

        self.stats.productive += 1
        self.stats.matches_stored += result.stored
        self.stats.event(f"+{result.stored} matches from {puuid[:8]}")
        self._log(
            logging.INFO,
            "%s: stored %d, discovered %d (pushed %d, stack=%d)",
            puuid[:8], result.stored, len(result.discovered), len(to_push), len(state.stack),
        )

    async def _mark_dry(self, puuid: str, reason: DryReason):
        self.state.dry.add(puuid)
        self.consecutive_dry += 1
        if reason is DryReason.NO_ACTIVITY:
            self.stats.dry_no_activity += 1
        else:
            self.stats.dry_all_known += 1
        self._log(logging.DEBUG, "%s dry (%s), streak %d", puuid[:8], reason.value, self.consecutive_dry)

        if self.consecutive_dry >= DRY_BACKOFF_THRESHOLD:
            delay = min(self.consecutive_dry * DRY_BACKOFF_STEP, DRY_BACKOFF_MAX)
            self.stats.status = "dry backoff"
            self.stats.event(f"{self.consecutive_dry} dry in a row, backing off {delay:.0f}s")
            self._log(logging.INFO, "%d consecutive dry players, backing off %.0fs", self.consecutive_dry, delay)
            await self._sleep(delay)

        if self.consecutive_dry >= DRY_RESET_THRESHOLD:
            self.state.backtrack_history.clear()
            self.consecutive_dry = 0
            self.stats.event("dry streak, backtrack history cleared")
            self._log(logging.INFO, "Dry streak, clearing backtrack history to explore new territory")

    # -------------------------------------------------------------------------
    # EMPTY STACK -> BACKTRACK / RESEED / SATURATED
    # -------------------------------------------------------------------------

    async def handle_empty_stack(self):
        if self.consecutive_backtracks >= SATURATION_THRESHOLD:
            await self.reseed(saturated=True)
            return
        if self.backtrack():
            return
        await self.reseed(saturated=False)

    def backtrack(self) -> bool:
        """Push a random previously productive player back onto the stack."""
        candidates = [p for p in self.state.backtrack_history if p not in self.state.dry]
        if not candidates:
            return False
        fresh = [p for p in candidates if p != self.last_backtrack]
        target = self._rng.choice(fresh or candidates)

        self.state.visited.discard(target)
        self.state.stack.append(target)
        self.last_backtrack = target
        self.consecutive_backtracks += 1
        self.stats.backtracks += 1
        self.stats.status = "backtracking"
        self._log(logging.INFO, "Backtracking to %s (%d in a row)", target[:8], self.consecutive_backtracks)
        return True

    def sample_seed_pool(self, count: int = SEED_SAMPLE_SIZE) -> List[str]:
        available = [p for p in self.state.seed_pool if not self.state.is_explored(p)]
        if not available:
            return []
        return self._rng.sample(available, min(count, len(available)))

    async def reseed(self, saturated: bool = False) -> List[str]:
        """
        Refill the stack: seed pool first, then one store+upstream mining
        pass, else evict part of the dry set and cool down.
        """
        state = self.state
        kind = "SATURATED" if saturated else "RESEED"
        if saturated:
            self.stats.saturated += 1
        else:
            self.stats.reseeds += 1
        self.stats.status = kind.lower()

        seeds = self.sample_seed_pool()
        source = "seed pool"
        if not seeds:
            source = "stored matches"
            try:
                mined = await self.harvester.mine_seeds(self.region)
            except (UpstreamError, BackingStoreUnavailable) as exc:
                self._log(logging.WARNING, "[%s] Seed mining failed: %s", kind, exc)
                mined = []
            seeds = list(dict.fromkeys(p for p in mined if not state.is_explored(p)))

        self.consecutive_backtracks = 0
        if seeds:
            state.stack.extend(seeds)
            state.seed_pool.update(seeds)
            self.stats.event(f"{kind.lower()}: {len(seeds)} seeds from {source}")
            self._log(logging.INFO, "[%s] %d seeds from %s", kind, len(seeds), source)
            return seeds

        evicted = state.dry.evict_oldest(math.ceil(len(state.dry) * DRY_EVICT_FRACTION))
        cooldown = SATURATED_COOLDOWN if saturated else RESEED_COOLDOWN
        self.stats.status = "cooling down"
        self.stats.event(f"{kind.lower()}: no seeds, evicted {len(evicted)} dry, cooling {cooldown:.0f}s")
        self._log(
            logging.INFO,
            "[%s] No seeds available, evicted %d dry players, cooling down %.0fs",
            kind, len(evicted), cooldown,
        )
        await self._sleep(cooldown)
        return []
