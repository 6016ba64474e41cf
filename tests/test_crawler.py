import asyncio
import random

import pytest

from collections_util import BoundedSet, DedupCache
from config import (
    CRAWLER_ERROR_PAUSE,
    MAX_RETRY_AFTER,
    MAX_STACK_SIZE,
    RESEED_COOLDOWN,
    SATURATED_COOLDOWN,
    SATURATION_THRESHOLD,
    SEED_SAMPLE_SIZE,
)
from crawler import (
    CrawlOutcome,
    DryReason,
    HarvestResult,
    MatchHarvester,
    RegionCrawler,
    RegionState,
)
from errors import BackingStoreUnavailable, UpstreamRateLimited, UpstreamTransient
from match_store import InMemoryMatchStore
from regions import Region
from stats_buffer import ChampionStatsBuffer

from conftest import make_match


def productive(*discovered, stored=1):
    return HarvestResult(listed=stored, stored=stored, discovered=list(discovered))


def dry(reason=DryReason.NO_ACTIVITY):
    return HarvestResult(dry_reason=reason)


class FakeHarvester:
    """Scripted harvest results; unknown players are dry."""

    def __init__(self, results=None, seed_batches=None):
        self.results = dict(results or {})
        self.seed_batches = list(seed_batches or [])
        self.calls = []
        self.mine_calls = 0

    async def harvest(self, puuid, region):
        self.calls.append(puuid)
        result = self.results.get(puuid, dry())
        if isinstance(result, Exception):
            raise result
        return result

    async def mine_seeds(self, region):
        self.mine_calls += 1
        return self.seed_batches.pop(0) if self.seed_batches else []


def make_crawler(clock, state=None, harvester=None):
    return RegionCrawler(
        Region.EUROPE,
        state or RegionState(),
        harvester or FakeHarvester(),
        rng=random.Random(7),
        sleep=clock.sleep,
    )


# =============================================================================
# PROCESS
# =============================================================================

def test_productive_node_pushes_neighbours_in_reverse(clock):
    harvester = FakeHarvester({"A": productive("B", "C")})
    crawler = make_crawler(clock, RegionState(stack=["A"]), harvester)

    outcome = asyncio.run(crawler.step())

    state = crawler.state
    assert outcome is CrawlOutcome.PRODUCTIVE
    assert set(state.visited) == {"A"}
    assert state.stack == ["C", "B"]
    assert list(state.backtrack_history) == ["A"]
    assert {"B", "C"} <= set(state.seed_pool)
    assert crawler.stats.matches_stored == 1


def test_first_discovered_neighbour_is_processed_first(clock):
    harvester = FakeHarvester({"A": productive("n1", "n2", "n3")})
    crawler = make_crawler(clock, RegionState(stack=["A"]), harvester)

    async def run():
        for _ in range(4):
            await crawler.step()

    asyncio.run(run())
    assert harvester.calls == ["A", "n1", "n2", "n3"]


def test_dry_node_is_memoised(clock):
    state = RegionState(stack=["Z", "A"])
    state.backtrack_history.append("P")
    crawler = make_crawler(clock, state, FakeHarvester({"A": dry()}))

    outcome = asyncio.run(crawler.step())

    assert outcome is CrawlOutcome.DRY
    assert set(state.dry) == {"A"}
    assert set(state.visited) == {"A"}
    assert list(state.backtrack_history) == ["P"]
    assert state.stack == ["Z"]


def test_dry_reasons_are_counted_separately(clock):
    harvester = FakeHarvester({"A": dry(DryReason.NO_ACTIVITY), "B": dry(DryReason.ALL_KNOWN)})
    crawler = make_crawler(clock, RegionState(stack=["B", "A"]), harvester)

    async def run():
        await crawler.step()
        await crawler.step()

    asyncio.run(run())
    assert crawler.stats.dry_no_activity == 1
    assert crawler.stats.dry_all_known == 1
    assert crawler.stats.dry == 2


def test_visited_or_dry_nodes_are_skipped_without_upstream_calls(clock):
    state = RegionState(stack=["D", "V"])
    state.visited.add("V")
    state.dry.add("D")
    harvester = FakeHarvester()
    crawler = make_crawler(clock, state, harvester)

    async def run():
        return [await crawler.step(), await crawler.step()]

    assert asyncio.run(run()) == [CrawlOutcome.ALREADY_SEEN, CrawlOutcome.ALREADY_SEEN]
    assert harvester.calls == []
    assert state.stack == []


def test_rate_limited_node_goes_to_bottom_unvisited(clock):
    harvester = FakeHarvester({"A": UpstreamRateLimited("429", retry_after=1)})
    state = RegionState(stack=["Z", "A"])
    crawler = make_crawler(clock, state, harvester)

    outcome = asyncio.run(crawler.step())

    assert outcome is CrawlOutcome.RATE_LIMITED
    assert state.stack == ["A", "Z"]
    assert "A" not in state.visited
    assert "A" not in state.dry


def test_rate_limited_mid_batch_without_stores_is_requeued(clock):
    harvester = FakeHarvester({"A": HarvestResult(listed=3, rate_limited=True)})
    state = RegionState(stack=["A"])
    crawler = make_crawler(clock, state, harvester)

    assert asyncio.run(crawler.step()) is CrawlOutcome.RATE_LIMITED
    assert state.stack == ["A"]
    assert "A" not in state.visited
    assert clock.sleeps == []


def test_rate_limited_node_honours_retry_after(clock):
    harvester = FakeHarvester({
        "A": UpstreamRateLimited("429", retry_after=3),
        "B": HarvestResult(listed=2, rate_limited=True, retry_after=600),
    })
    crawler = make_crawler(clock, RegionState(stack=["B", "A"]), harvester)

    async def run():
        await crawler.step()
        await crawler.step()

    asyncio.run(run())

    assert clock.sleeps == [3, MAX_RETRY_AFTER]
    assert crawler.state.stack == ["B", "A"]
    assert crawler.stats.rate_limited == 2


def test_transient_error_skips_node(clock):
    state = RegionState(stack=["A"])
    state.backtrack_history.append("P")
    crawler = make_crawler(clock, state, FakeHarvester({"A": UpstreamTransient("503", status=503)}))

    assert asyncio.run(crawler.step()) is CrawlOutcome.SKIPPED
    assert "A" in state.visited
    assert "A" not in state.dry
    assert list(state.backtrack_history) == ["P"]


def test_new_but_filtered_matches_skip_dry_bookkeeping(clock):
    state = RegionState(stack=["A"])
    crawler = make_crawler(clock, state, FakeHarvester({"A": HarvestResult(listed=4, filtered=4)}))

    assert asyncio.run(crawler.step()) is CrawlOutcome.SKIPPED
    assert "A" in state.visited
    assert len(state.dry) == 0
    assert crawler.consecutive_dry == 0
    assert crawler.stats.matches_filtered == 4


def test_soft_stack_cap_still_fills_seed_pool(clock):
    filler = [f"f{i}" for i in range(MAX_STACK_SIZE - 1)]
    state = RegionState(stack=filler + ["A"])
    harvester = FakeHarvester({"A": productive("n1", "n2", "n3", "n4", "n5")})
    crawler = make_crawler(clock, state, harvester)

    asyncio.run(crawler.step())

    assert len(state.stack) == MAX_STACK_SIZE
    assert state.stack[-1] == "n1"
    assert {"n1", "n2", "n3", "n4", "n5"} <= set(state.seed_pool)


def test_dry_streak_backs_off_then_clears_backtrack_history(clock):
    players = [f"p{i}" for i in range(20)]
    state = RegionState(stack=list(reversed(players)))
    state.backtrack_history.extend(["P", "Q"])
    crawler = make_crawler(clock, state)

    async def run():
        for _ in range(20):
            await crawler.step()

    asyncio.run(run())

    assert clock.sleeps == [float(n) for n in range(10, 21)]
    assert list(state.backtrack_history) == []
    assert crawler.consecutive_dry == 0


def test_productive_node_resets_dry_streak(clock):
    harvester = FakeHarvester({"p3": productive("x")})
    state = RegionState(stack=["p3", "p2", "p1"])
    crawler = make_crawler(clock, state, harvester)

    async def run():
        for _ in range(3):
            await crawler.step()

    asyncio.run(run())
    assert crawler.consecutive_dry == 0


def test_bounded_sets_never_exceed_caps(clock):
    state = RegionState(
        stack=[f"p{i}" for i in range(30)],
        dry=BoundedSet(5),
        seed_pool=BoundedSet(8),
    )
    results = {f"p{i}": productive(*(f"q{i}_{j}" for j in range(3))) for i in range(0, 30, 2)}
    crawler = make_crawler(clock, state, FakeHarvester(results))

    async def run():
        for _ in range(60):
            await crawler.step()
            assert len(state.dry) <= 5
            assert len(state.seed_pool) <= 8

    asyncio.run(run())


# =============================================================================
# EMPTY STACK
# =============================================================================

def test_empty_stack_backtracks_to_non_dry_history(clock):
    state = RegionState()
    state.backtrack_history.extend(["P", "Q"])
    state.visited.update(["P", "Q"])
    state.dry.add("Q")
    crawler = make_crawler(clock, state)

    assert asyncio.run(crawler.step()) is None
    assert state.stack == ["P"]
    assert "P" not in state.visited
    assert crawler.consecutive_backtracks == 1


def test_backtrack_avoids_repeating_last_target(clock):
    state = RegionState()
    state.backtrack_history.extend(["P", "Q"])
    crawler = make_crawler(clock, state)
    crawler.last_backtrack = "P"

    for _ in range(5):
        state.stack.clear()
        crawler.last_backtrack = "P"
        assert crawler.backtrack()
        assert state.stack == ["Q"]


def test_reseed_samples_seed_pool_first(clock):
    state = RegionState()
    state.seed_pool.update(f"s{i}" for i in range(30))
    state.visited.update(f"s{i}" for i in range(5))
    harvester = FakeHarvester()
    crawler = make_crawler(clock, state, harvester)

    asyncio.run(crawler.step())

    assert len(state.stack) == SEED_SAMPLE_SIZE
    assert not any(p in state.visited for p in state.stack)
    assert harvester.mine_calls == 0
    assert crawler.stats.reseeds == 1


def test_reseed_mines_stored_matches_when_pool_is_empty(clock):
    state = RegionState()
    state.visited.add("old")
    harvester = FakeHarvester(seed_batches=[["s1", "s2", "old", "s1"]])
    crawler = make_crawler(clock, state, harvester)

    asyncio.run(crawler.step())

    assert state.stack == ["s1", "s2"]
    assert {"s1", "s2"} <= set(state.seed_pool)
    assert harvester.mine_calls == 1
    assert clock.sleeps == []


def test_reseed_evicts_dry_and_cools_down_when_nothing_found(clock):
    state = RegionState()
    state.dry.update(["d1", "d2", "d3", "d4"])
    crawler = make_crawler(clock, state)

    asyncio.run(crawler.step())

    assert list(state.dry) == ["d3", "d4"]
    assert clock.sleeps == [RESEED_COOLDOWN]
    assert state.stack == []


def test_saturated_region_uses_longer_cooldown(clock):
    state = RegionState()
    state.backtrack_history.append("P")
    crawler = make_crawler(clock, state)
    crawler.consecutive_backtracks = SATURATION_THRESHOLD

    asyncio.run(crawler.step())

    assert clock.sleeps == [SATURATED_COOLDOWN]
    assert crawler.stats.saturated == 1
    assert crawler.consecutive_backtracks == 0
    assert state.stack == []


def test_exhausted_region_keeps_backing_off(clock):
    crawler = make_crawler(clock)

    async def run():
        for _ in range(5):
            await crawler.step()

    asyncio.run(run())
    assert clock.sleeps == [RESEED_COOLDOWN] * 5


def test_run_survives_unexpected_errors(clock):
    crawler = None

    class ExplodingHarvester(FakeHarvester):
        async def harvest(self, puuid, region):
            self.calls.append(puuid)
            if len(self.calls) == 1:
                raise RuntimeError("boom")
            crawler.stop()
            return dry()

    harvester = ExplodingHarvester()
    crawler = make_crawler(clock, RegionState(stack=["B", "A"]), harvester)

    asyncio.run(crawler.run())

    assert harvester.calls == ["A", "B"]
    assert clock.sleeps == [CRAWLER_ERROR_PAUSE]
    assert crawler.stats.errors == 1
    assert crawler.stats.status == "stopped"


# =============================================================================
# HARVESTER
# =============================================================================

class FakeClient:
    def __init__(self, match_ids=None, matches=None, rate_limited=()):
        self.match_ids = match_ids or {}
        self.matches = matches or {}
        self.rate_limited = set(rate_limited)
        self.fetched = []

    async def get_match_ids(self, puuid, region, **kwargs):
        return list(self.match_ids.get(puuid, []))

    async def get_match(self, match_id, region):
        self.fetched.append(match_id)
        if match_id in self.rate_limited:
            raise UpstreamRateLimited("429")
        return self.matches.get(match_id)


def make_harvester(client, store=None, cache=None, **kwargs):
    async def no_sleep(seconds):
        return None

    return MatchHarvester(
        client,
        store or InMemoryMatchStore(),
        cache if cache is not None else DedupCache(1000),
        sleep=no_sleep,
        **kwargs,
    )


def test_harvest_without_matches_is_no_activity():
    harvester = make_harvester(FakeClient())
    result = asyncio.run(harvester.harvest("me", Region.EUROPE))
    assert result.dry_reason is DryReason.NO_ACTIVITY


def test_harvest_with_cached_matches_skips_store():
    store = InMemoryMatchStore()
    cache = DedupCache(1000, ["EUW1_1", "EUW1_2"])
    harvester = make_harvester(FakeClient({"me": ["EUW1_1", "EUW1_2"]}), store, cache)

    result = asyncio.run(harvester.harvest("me", Region.EUROPE))

    assert result.dry_reason is DryReason.ALL_KNOWN
    assert store.existence_queries == 0
    assert harvester.cache_hits == 2


def test_harvest_with_stored_matches_is_all_known_and_caches_them():
    store = InMemoryMatchStore()
    cache = DedupCache(1000)
    asyncio.run(store.insert_matches([make_match("EUW1_1", ["a", "b"])]))
    harvester = make_harvester(FakeClient({"me": ["EUW1_1"]}), store, cache)

    result = asyncio.run(harvester.harvest("me", Region.EUROPE))

    assert result.dry_reason is DryReason.ALL_KNOWN
    assert "EUW1_1" in cache


def test_harvest_stores_new_matches_and_discovers_players():
    matches = {
        "EUW1_1": make_match("EUW1_1", ["me", "b", "c"]),
        "EUW1_2": make_match("EUW1_2", ["c", "me", "d"]),
    }
    store = InMemoryMatchStore()
    buffer = ChampionStatsBuffer()
    harvester = make_harvester(FakeClient({"me": ["EUW1_1", "EUW1_2"]}, matches), store, stats_buffer=buffer, batch_size=1)

    result = asyncio.run(harvester.harvest("me", Region.EUROPE))

    assert result.stored == 2
    assert result.discovered == ["b", "c", "d"]
    assert result.dry_reason is None
    assert set(store.matches) == {"EUW1_1", "EUW1_2"}
    assert buffer.participant_count == 6


def test_harvest_filters_unaccepted_patches():
    matches = {
        "EUW1_1": make_match("EUW1_1", ["me", "b"], version="15.3.1.1"),
        "EUW1_2": make_match("EUW1_2", ["me", "c"], version="15.2.1.1"),
    }
    store = InMemoryMatchStore()
    harvester = make_harvester(FakeClient({"me": ["EUW1_1", "EUW1_2"]}, matches), store, accepted_patches=("25.3",))

    result = asyncio.run(harvester.harvest("me", Region.EUROPE))

    assert result.stored == 1
    assert result.filtered == 1
    assert result.discovered == ["b"]


def test_harvest_stops_on_rate_limit_and_forgets_unfetched_ids():
    ids = ["EUW1_1", "EUW1_2", "EUW1_3"]
    matches = {match_id: make_match(match_id, ["me", f"x{match_id}"]) for match_id in ids}
    cache = DedupCache(1000)
    client = FakeClient({"me": ids}, matches, rate_limited={"EUW1_2"})
    harvester = make_harvester(client, cache=cache, batch_size=1)

    result = asyncio.run(harvester.harvest("me", Region.EUROPE))

    assert result.rate_limited
    assert result.stored == 1
    assert client.fetched == ["EUW1_1", "EUW1_2"]
    assert "EUW1_1" in cache
    assert "EUW1_2" not in cache
    assert "EUW1_3" not in cache


def test_mine_seeds_returns_participants_of_a_stored_match():
    store = InMemoryMatchStore()
    stored = make_match("EUW1_9", ["a", "b", "c"])
    asyncio.run(store.insert_matches([stored]))
    harvester = make_harvester(FakeClient(matches={"EUW1_9": stored}), store)

    assert asyncio.run(harvester.mine_seeds(Region.EUROPE)) == ["a", "b", "c"]
    assert asyncio.run(harvester.mine_seeds(Region.ASIA)) == []


def test_mine_seeds_draws_from_the_injected_rng():
    class PickOldest(random.Random):
        def shuffle(self, items):
            items.sort()

        def choice(self, items):
            return items[-1]

    store = InMemoryMatchStore()
    older = make_match("EUW1_1", ["a", "b"], creation=1)
    newer = make_match("EUW1_2", ["c", "d"], creation=2)
    asyncio.run(store.insert_matches([older, newer]))
    client = FakeClient(matches={"EUW1_1": older, "EUW1_2": newer})
    harvester = make_harvester(client, store, rng=PickOldest())

    assert asyncio.run(harvester.mine_seeds(Region.EUROPE)) == ["a", "b"]
    assert client.fetched == ["EUW1_1"]


class FlakyStore(InMemoryMatchStore):
    """Fails the first insert, then behaves."""

    def __init__(self):
        super().__init__()
        self.failures = 1

    async def insert_matches(self, matches):
        if self.failures:
            self.failures -= 1
            raise BackingStoreUnavailable("insert timed out")
        return await super().insert_matches(matches)


def test_failed_store_write_is_retried_on_a_later_pass():
    store = FlakyStore()
    cache = DedupCache(1000)
    client = FakeClient({"me": ["EUW1_1"]}, {"EUW1_1": make_match("EUW1_1", ["me", "b"])})
    harvester = make_harvester(client, store, cache)

    first = asyncio.run(harvester.harvest("me", Region.EUROPE))
    assert first.stored == 0
    assert first.dry_reason is None
    assert "EUW1_1" not in cache

    second = asyncio.run(harvester.harvest("me", Region.EUROPE))
    assert second.stored == 1
    assert second.dry_reason is None
    assert list(store.matches) == ["EUW1_1"]
    assert "EUW1_1" in cache


def test_harvest_keeps_the_longest_retry_after_hint():
    class HintingClient(FakeClient):
        async def get_match(self, match_id, region):
            self.fetched.append(match_id)
            raise UpstreamRateLimited("429", retry_after=float(match_id[-1]))

    client = HintingClient({"me": ["EUW1_2", "EUW1_5"]})
    harvester = make_harvester(client, batch_size=2)

    result = asyncio.run(harvester.harvest("me", Region.EUROPE))

    assert result.rate_limited
    assert result.retry_after == 5.0
