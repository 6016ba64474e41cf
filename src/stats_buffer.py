"""
Buffered champion aggregates.

Stored matches are folded into per-(champion, patch) totals in memory and
written out in one pass, which turns one upsert per participant into one
per champion+patch combination.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import (
    STATS_BUFFER_FLUSH_SIZE,
    STATS_FLUSH_COOLDOWN,
    STATS_FLUSH_INTERVAL,
    STATS_UPSERT_BATCH_SIZE,
)
from errors import BackingStoreUnavailable
from match_store import MatchStore
from riot_client import extract_patch

logger = logging.getLogger(__name__)


@dataclass
class ChampionAggregate:
    games: int = 0
    wins: int = 0
    kills: int = 0
    deaths: int = 0
    assists: int = 0
    damage_to_champions: int = 0
    heals_on_teammates: int = 0
    game_duration: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "games": self.games,
            "wins": self.wins,
            "kills": self.kills,
            "deaths": self.deaths,
            "assists": self.assists,
            "damage_to_champions": self.damage_to_champions,
            "heals_on_teammates": self.heals_on_teammates,
            "game_duration": self.game_duration,
        }


@dataclass
class ChampionStatsBuffer:
    """In-memory aggregates keyed by (champion_name, patch)."""
    aggregates: Dict[Tuple[str, str], ChampionAggregate] = field(default_factory=dict)
    participant_count: int = 0

    def add_match(self, match: Dict[str, Any]):
        info = match.get("info", {})
        patch = extract_patch(info.get("gameVersion", ""))
        duration = int(info.get("gameDuration") or 0)
        for p in info.get("participants", []):
            champion = p.get("championName")
            if not champion:
                continue
            agg = self.aggregates.setdefault((champion, patch), ChampionAggregate())
            agg.games += 1
            agg.wins += 1 if p.get("win") else 0
            agg.kills += int(p.get("kills") or 0)
            agg.deaths += int(p.get("deaths") or 0)
            agg.assists += int(p.get("assists") or 0)
            agg.damage_to_champions += int(p.get("totalDamageDealtToChampions") or 0)
            agg.heals_on_teammates += int(p.get("totalHealsOnTeammates") or 0)
            agg.game_duration += duration
            self.participant_count += 1

    def drain(self) -> List[Dict[str, Any]]:
        """Take every aggregate as upsert rows and empty the buffer."""
        rows = [
            {"champion_name": champion, "patch": patch, "data": agg.as_dict()}
            for (champion, patch), agg in self.aggregates.items()
        ]
        self.aggregates = {}
        self.participant_count = 0
        return rows

    def __len__(self) -> int:
        return len(self.aggregates)


class AggregateFlusher:
    """
    Decides when the buffer is written out and runs the write as a
    tracked background task, one at a time.

    Size OR interval triggers a flush; the cooldown caps flush frequency.
    """

    def __init__(
        self,
        buffer: ChampionStatsBuffer,
        store: MatchStore,
        flush_size: int = STATS_BUFFER_FLUSH_SIZE,
        flush_interval: float = STATS_FLUSH_INTERVAL,
        cooldown: float = STATS_FLUSH_COOLDOWN,
        batch_size: int = STATS_UPSERT_BATCH_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.buffer = buffer
        self.store = store
        self.flush_size = flush_size
        self.flush_interval = flush_interval
        self.cooldown = cooldown
        self.batch_size = batch_size
        self._clock = clock
        self.last_flush = clock()
        self._task: Optional["asyncio.Task[int]"] = None

        self.total_flushed = 0
        self.failed_batches = 0

    @property
    def in_progress(self) -> bool:
        return self._task is not None and not self._task.done()

    def should_flush(self) -> bool:
        if self.in_progress or not self.buffer.participant_count:
            return False
        elapsed = self._clock() - self.last_flush
        if elapsed < self.cooldown:
            return False
        return self.buffer.participant_count >= self.flush_size or elapsed >= self.flush_interval

    def maybe_flush(self) -> bool:
        """Start a background flush if a trigger fired. Returns True if started."""
        if not self.should_flush():
            return False
        self.last_flush = self._clock()
        self._task = asyncio.create_task(self._write(self.buffer.drain()))
        return True

    async def flush(self) -> int:
        """Wait for any running flush, then drain whatever is left."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if not self.buffer.participant_count:
            return 0
        self.last_flush = self._clock()
        return await self._write(self.buffer.drain())

    async def _write(self, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        logger.info("[FLUSH] Writing %d champion+patch combos", len(rows))
        flushed = 0
        failed = 0
        for i in range(0, len(rows), self.batch_size):
            batch = rows[i:i + self.batch_size]
            try:
                flushed += await self.store.upsert_champion_stats(batch)
            except BackingStoreUnavailable as exc:
                failed += 1
                logger.error("[FLUSH] Batch %d failed: %s", i // self.batch_size + 1, exc)
        self.total_flushed += flushed
        self.failed_batches += failed
        if failed:
            logger.warning("[FLUSH] Flushed %d/%d combos (%d batches failed)", flushed, len(rows), failed)
        else:
            logger.info("[FLUSH] Flushed %d champion+patch combos", flushed)
        return flushed
