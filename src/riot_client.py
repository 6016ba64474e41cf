"""
Riot API client used both for seed lookups and for crawler traffic.

Every request first acquires a slot from the shared RateLimiter for the
region's scope and the endpoint's method budget; crawler calls use the
`bulk` class, foreground lookups use `overhead`.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from config import (
    ARAM_QUEUE_ID,
    CONNECTION_LIMIT,
    DNS_CACHE_TTL,
    MATCH_IDS_PER_PLAYER,
    METHOD_ACCOUNT,
    METHOD_MATCH_DETAIL,
    METHOD_MATCH_LIST,
    REQUEST_TIMEOUT,
    USER_AGENT,
)
from errors import (
    UpstreamError,
    UpstreamNotFound,
    UpstreamRateLimited,
    UpstreamTransient,
)
from rate_limiter import RateLimiter, RequestClass
from regions import Region

logger = logging.getLogger(__name__)


# =============================================================================
# HELPERS
# =============================================================================

def raise_for_upstream_status(status: int, url: str, retry_after: Optional[str] = None) -> None:
    """Map a non-2xx HTTP status onto the upstream exception taxonomy."""
    if 200 <= status < 300:
        return
    if status == 429:
        try:
            wait = float(retry_after) if retry_after else None
        except ValueError:
            wait = None
        raise UpstreamRateLimited(f"429 from {url}", retry_after=wait)
    if status == 404:
        raise UpstreamNotFound(f"404 from {url}")
    if status >= 500:
        raise UpstreamTransient(f"{status} from {url}", status=status)
    raise UpstreamError(f"{status} from {url}", status=status)


def extract_patch(game_version: str) -> str:
    """
    "15.3.652.1234" -> "25.3". The API still reports season-15 versions
    while the client shows 25.x, so the major number is remapped.
    """
    if not game_version:
        return ""
    parts = game_version.split(".")
    if len(parts) < 2:
        return game_version
    major, minor = parts[0], parts[1]
    if major == "15":
        major = "25"
    return f"{major}.{minor}"


# =============================================================================
# CLIENT
# =============================================================================

class RiotClient:
    """Thin async wrapper over account-v1 and match-v5."""

    def __init__(self, api_key: str, rate_limiter: RateLimiter):
        self.api_key = api_key
        self.rate_limiter = rate_limiter
        self._session: Optional[aiohttp.ClientSession] = None

        self.requests_made = 0
        self.rate_limited_responses = 0

    async def open(self):
        """Create the pooled HTTP session."""
        if self._session is not None:
            return
        timeout = aiohttp.ClientTimeout(
            total=REQUEST_TIMEOUT,
            connect=5,
            sock_read=REQUEST_TIMEOUT,
        )
        connector = aiohttp.TCPConnector(
            limit=CONNECTION_LIMIT,
            ttl_dns_cache=DNS_CACHE_TTL,
            enable_cleanup_closed=True,
        )
        self._session = aiohttp.ClientSession(
            headers={"X-Riot-Token": self.api_key, "User-Agent": USER_AGENT},
            timeout=timeout,
            connector=connector,
        )

    async def close(self):
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _get_json(
        self,
        url: str,
        scope: str,
        request_class: RequestClass,
        method: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if self._session is None:
            await self.open()
        await self.rate_limiter.acquire(scope, request_class, method=method)
        self.requests_made += 1
        try:
            async with self._session.get(url, params=params) as response:
                if response.status == 429:
                    self.rate_limited_responses += 1
                raise_for_upstream_status(response.status, url, response.headers.get("Retry-After"))
                return await response.json()
        except asyncio.TimeoutError as exc:
            raise UpstreamTransient(f"timeout for {url}") from exc
        except aiohttp.ClientError as exc:
            raise UpstreamTransient(f"connection error for {url}: {exc}") from exc

    # -------------------------------------------------------------------------
    # endpoints
    # -------------------------------------------------------------------------

    async def get_account_by_riot_id(
        self,
        game_name: str,
        tag_line: str,
        region: Region,
        request_class: RequestClass = RequestClass.OVERHEAD,
    ) -> Optional[Dict[str, Any]]:
        """Resolve "name#tag" to an account dict, or None if it doesn't exist."""
        url = f"{region.account_base_url}/riot/account/v1/accounts/by-riot-id/{game_name}/{tag_line}"
        try:
            return await self._get_json(url, region.label, request_class, METHOD_ACCOUNT)
        except UpstreamNotFound:
            return None

    async def get_match_ids(
        self,
        puuid: str,
        region: Region,
        queue: int = ARAM_QUEUE_ID,
        count: int = MATCH_IDS_PER_PLAYER,
        start: int = 0,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        request_class: RequestClass = RequestClass.BULK,
    ) -> List[str]:
        """Match IDs for a player, newest first. Empty when the player is unknown."""
        params: Dict[str, Any] = {
            "queue": queue,
            "start": start,
            "count": min(count, MATCH_IDS_PER_PLAYER),
        }
        if start_time is not None:
            params["startTime"] = start_time
        if end_time is not None:
            params["endTime"] = end_time
        url = f"{region.base_url}/lol/match/v5/matches/by-puuid/{puuid}/ids"
        try:
            ids = await self._get_json(url, region.label, request_class, METHOD_MATCH_LIST, params=params)
            return list(ids or [])
        except UpstreamNotFound:
            return []

    async def get_match(
        self,
        match_id: str,
        region: Region,
        request_class: RequestClass = RequestClass.BULK,
    ) -> Optional[Dict[str, Any]]:
        """Full match detail, or None if the match is gone."""
        url = f"{region.base_url}/lol/match/v5/matches/{match_id}"
        try:
            return await self._get_json(url, region.label, request_class, METHOD_MATCH_DETAIL)
        except UpstreamNotFound:
            return None
