"""
Durable match store.

SupabaseMatchStore writes to the hosted Postgres tables the web app reads
from; InMemoryMatchStore keeps everything in dicts for dry runs
(--memory-store) and tests. Both expose the same coroutines.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from config import DB_CHECK_BATCH_SIZE, DB_SEED_MATCH_LIMIT
from errors import BackingStoreUnavailable
from riot_client import extract_patch

logger = logging.getLogger(__name__)

MATCH_SOURCE = "scraper"
CLEANUP_RPC = "cleanup_champion_stats_noise"
STATS_UPSERT_RPC = "upsert_aggregated_champion_stats_batch"


# =============================================================================
# ROW BUILDERS
# =============================================================================

def match_row(match: Dict[str, Any]) -> Dict[str, Any]:
    info = match.get("info", {})
    return {
        "match_id": match["metadata"]["matchId"],
        "game_creation": info.get("gameCreation"),
        "game_duration": info.get("gameDuration"),
        "patch": extract_patch(info.get("gameVersion", "")),
        "source": MATCH_SOURCE,
    }


def participant_rows(match: Dict[str, Any]) -> List[Dict[str, Any]]:
    """One summoner_matches row per participant (node metadata for reseeding)."""
    info = match.get("info", {})
    match_id = match["metadata"]["matchId"]
    rows = []
    for p in info.get("participants", []):
        rows.append({
            "match_id": match_id,
            "puuid": p.get("puuid"),
            "riot_id_game_name": p.get("riotIdGameName", ""),
            "riot_id_tagline": p.get("riotIdTagline", ""),
            "champion_name": p.get("championName"),
            "team_id": p.get("teamId"),
            "win": bool(p.get("win")),
            "kills": p.get("kills", 0),
            "deaths": p.get("deaths", 0),
            "assists": p.get("assists", 0),
            "damage_dealt_to_champions": p.get("totalDamageDealtToChampions", 0),
            "total_heals_on_teammates": p.get("totalHealsOnTeammates", 0),
            "gold_earned": p.get("goldEarned", 0),
            "game_creation": info.get("gameCreation"),
        })
    return rows


def _chunks(items: Sequence, size: int) -> Iterable[Sequence]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


# =============================================================================
# INTERFACE
# =============================================================================

class MatchStore:
    """Coroutines the crawler and the stats flusher rely on."""

    async def existing_match_ids(self, match_ids: Sequence[str]) -> Set[str]:
        raise NotImplementedError

    async def insert_matches(self, matches: Sequence[Dict[str, Any]]) -> int:
        """Insert-if-absent. Returns how many matches were actually new."""
        raise NotImplementedError

    async def recent_match_ids(
        self,
        prefixes: Sequence[str],
        patches: Sequence[str] = (),
        limit: int = DB_SEED_MATCH_LIMIT,
    ) -> List[str]:
        raise NotImplementedError

    async def upsert_champion_stats(self, rows: Sequence[Dict[str, Any]]) -> int:
        raise NotImplementedError

    async def run_cleanup(self) -> Optional[Any]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


# =============================================================================
# SUPABASE
# =============================================================================

class SupabaseMatchStore(MatchStore):
    """Async supabase client over the `matches` / `summoner_matches` tables."""

    def __init__(self, url: str, key: str):
        self.url = url
        self.key = key
        self._client: Optional[AsyncClient] = None

    async def open(self):
        if self._client is None:
            self._client = await acreate_client(self.url, self.key)

    async def _require_client(self) -> AsyncClient:
        if self._client is None:
            await self.open()
        return self._client

    async def existing_match_ids(self, match_ids: Sequence[str]) -> Set[str]:
        client = await self._require_client()
        existing: Set[str] = set()
        for batch in _chunks(list(match_ids), DB_CHECK_BATCH_SIZE):
            try:
                response = await client.table("matches").select("match_id").in_("match_id", list(batch)).execute()
            except (APIError, httpx.HTTPError) as exc:
                raise BackingStoreUnavailable(f"match existence check failed: {exc}") from exc
            existing.update(row["match_id"] for row in response.data or [])
        return existing

    async def insert_matches(self, matches: Sequence[Dict[str, Any]]) -> int:
        if not matches:
            return 0
        client = await self._require_client()
        try:
            response = await (
                client.table("matches")
                .upsert([match_row(m) for m in matches], on_conflict="match_id", ignore_duplicates=True)
                .execute()
            )
        except (APIError, httpx.HTTPError) as exc:
            raise BackingStoreUnavailable(f"match insert failed: {exc}") from exc

        # Rows skipped as duplicates are not returned
        inserted = {row["match_id"] for row in response.data or []}
        rows: List[Dict[str, Any]] = []
        for match in matches:
            if match["metadata"]["matchId"] in inserted:
                rows.extend(participant_rows(match))
        if rows:
            try:
                await client.table("summoner_matches").insert(rows).execute()
            except (APIError, httpx.HTTPError) as exc:
                # Match rows are already in; only participant rows are lost
                logger.error("[DB] Participant insert failed for %d matches: %s", len(inserted), exc)
        return len(inserted)

    async def recent_match_ids(
        self,
        prefixes: Sequence[str],
        patches: Sequence[str] = (),
        limit: int = DB_SEED_MATCH_LIMIT,
    ) -> List[str]:
        client = await self._require_client()
        for prefix in prefixes:
            query = client.table("matches").select("match_id").like("match_id", f"{prefix}_%")
            if patches:
                query = query.in_("patch", list(patches))
            try:
                response = await query.order("game_creation", desc=True).limit(limit).execute()
            except (APIError, httpx.HTTPError) as exc:
                raise BackingStoreUnavailable(f"recent match query failed: {exc}") from exc
            if response.data:
                return [row["match_id"] for row in response.data]
        return []

    async def upsert_champion_stats(self, rows: Sequence[Dict[str, Any]]) -> int:
        client = await self._require_client()
        payload = [
            {"champion_name": r["champion_name"], "patch": r["patch"], "data": json.dumps(r["data"])}
            for r in rows
        ]
        try:
            response = await client.rpc(STATS_UPSERT_RPC, {"p_stats_array": payload}).execute()
        except (APIError, httpx.HTTPError) as exc:
            raise BackingStoreUnavailable(f"champion stats upsert failed: {exc}") from exc
        return response.data if isinstance(response.data, int) else len(payload)

    async def run_cleanup(self) -> Optional[Any]:
        client = await self._require_client()
        try:
            response = await client.rpc(CLEANUP_RPC).execute()
        except (APIError, httpx.HTTPError) as exc:
            raise BackingStoreUnavailable(f"cleanup rpc failed: {exc}") from exc
        return response.data


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryMatchStore(MatchStore):
    """Dict-backed store with the same semantics as SupabaseMatchStore."""

    def __init__(self):
        self.matches: Dict[str, Dict[str, Any]] = {}
        self.participants: List[Dict[str, Any]] = []
        self.champion_stats: Dict[tuple, Dict[str, Any]] = {}
        self.cleanup_runs = 0
        self.existence_queries = 0

    async def existing_match_ids(self, match_ids: Sequence[str]) -> Set[str]:
        ids = list(match_ids)
        self.existence_queries += len(list(_chunks(ids, DB_CHECK_BATCH_SIZE)))
        return {match_id for match_id in ids if match_id in self.matches}

    async def insert_matches(self, matches: Sequence[Dict[str, Any]]) -> int:
        stored = 0
        for match in matches:
            row = match_row(match)
            if row["match_id"] in self.matches:
                continue
            self.matches[row["match_id"]] = row
            self.participants.extend(participant_rows(match))
            stored += 1
        return stored

    async def recent_match_ids(
        self,
        prefixes: Sequence[str],
        patches: Sequence[str] = (),
        limit: int = DB_SEED_MATCH_LIMIT,
    ) -> List[str]:
        for prefix in prefixes:
            rows = [
                row for row in self.matches.values()
                if row["match_id"].startswith(f"{prefix}_") and (not patches or row["patch"] in patches)
            ]
            if rows:
                rows.sort(key=lambda r: r.get("game_creation") or 0, reverse=True)
                return [row["match_id"] for row in rows[:limit]]
        return []

    async def upsert_champion_stats(self, rows: Sequence[Dict[str, Any]]) -> int:
        for row in rows:
            key = (row["champion_name"], row["patch"])
            current = self.champion_stats.setdefault(key, {})
            for name, value in row["data"].items():
                current[name] = current.get(name, 0) + value
        return len(rows)

    async def run_cleanup(self) -> Optional[Any]:
        self.cleanup_runs += 1
        return {"deleted": 0}
