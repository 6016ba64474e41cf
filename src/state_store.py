"""
Crash-safe persistence of per-region crawl state and the known-match cache.

Blob layout (scraper_state.json):
    {
      "stacks":    {"europe": [...], ...},
      "visited":   {...},
      "backtrack": {...},
      "dry":       {...},
      "seedPool":  {...},
      "lastPatch": "25.3"
    }

Every list is capped at save time, so a restored state never exceeds the
in-memory caps.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiofiles

from collections_util import BoundedSet, DedupCache, bounded_deque
from config import (
    FILE_ENCODING,
    MATCH_CACHE_FILE,
    MAX_BACKTRACK_HISTORY,
    MAX_DRY,
    MAX_KNOWN_MATCHES,
    MAX_SEED_POOL,
    MAX_STACK_SIZE,
    MAX_VISITED,
    STATE_FILE,
)
from crawler import RegionState

logger = logging.getLogger(__name__)

SECTIONS = ("stacks", "visited", "backtrack", "dry", "seedPool")


# =============================================================================
# (DE)SERIALISATION
# =============================================================================

def _tail(items: Iterable[str], cap: int) -> List[str]:
    """Newest `cap` entries (iteration order is oldest first)."""
    items = list(items)
    return items[-cap:] if cap > 0 else []


def snapshot_state(states: Dict[str, RegionState], last_patch: str = "") -> Dict[str, Any]:
    """Capped, JSON-ready snapshot of every region's state."""
    blob: Dict[str, Any] = {section: {} for section in SECTIONS}
    for label, state in states.items():
        # The top of the stack is its end; keep the entries about to be popped
        blob["stacks"][label] = _tail(state.stack, MAX_STACK_SIZE)
        blob["visited"][label] = _tail(state.visited, MAX_VISITED)
        blob["backtrack"][label] = _tail(state.backtrack_history, MAX_BACKTRACK_HISTORY)
        blob["dry"][label] = _tail(state.dry, MAX_DRY)
        blob["seedPool"][label] = _tail(state.seed_pool, MAX_SEED_POOL)
    blob["lastPatch"] = last_patch
    return blob


def _section(blob: Dict[str, Any], section: str, label: str) -> List[str]:
    values = (blob.get(section) or {}).get(label) or []
    return [str(v) for v in values]


def restore_state(blob: Dict[str, Any], labels: Iterable[str], current_patch: str = "") -> Dict[str, RegionState]:
    """
    Rebuild RegionState objects from a blob. If the blob was written on a
    different patch, dry and visited are dropped so every player is
    re-checked for new-patch games.
    """
    patch_changed = bool(blob.get("lastPatch")) and bool(current_patch) and blob["lastPatch"] != current_patch
    if patch_changed:
        logger.info("[STATE] Patch change detected: %s -> %s, clearing dry and visited", blob["lastPatch"], current_patch)

    states: Dict[str, RegionState] = {}
    for label in labels:
        state = RegionState(
            stack=_section(blob, "stacks", label),
            visited=BoundedSet(MAX_VISITED, _section(blob, "visited", label)),
            dry=BoundedSet(MAX_DRY, _section(blob, "dry", label)),
            seed_pool=BoundedSet(MAX_SEED_POOL, _section(blob, "seedPool", label)),
            backtrack_history=bounded_deque(MAX_BACKTRACK_HISTORY, _section(blob, "backtrack", label)),
        )
        if patch_changed:
            state.visited.clear()
            state.dry.clear()
        states[label] = state
    return states


# =============================================================================
# FILE I/O
# =============================================================================

async def _write_json_atomic(path: Path, payload: Any, indent: Optional[int] = None):
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    async with aiofiles.open(tmp_path, mode="w", encoding=FILE_ENCODING) as f:
        await f.write(json.dumps(payload, indent=indent))
    os.replace(tmp_path, path)


async def _read_json(path: Path) -> Optional[Any]:
    try:
        async with aiofiles.open(path, mode="r", encoding=FILE_ENCODING) as f:
            content = await f.read()
    except FileNotFoundError:
        return None
    if not content.strip():
        return None
    return json.loads(content)


class StateStore:
    """Loads and saves the state blob and the match cache."""

    def __init__(self, state_file: Path = STATE_FILE, match_cache_file: Path = MATCH_CACHE_FILE):
        self.state_file = Path(state_file)
        self.match_cache_file = Path(match_cache_file)
        self.last_saved: Optional[float] = None

    @property
    def files(self) -> List[Path]:
        return [self.state_file, self.match_cache_file]

    async def load(self, labels: Iterable[str], current_patch: str = "", reset: bool = False) -> Optional[Dict[str, RegionState]]:
        """Restored states, or None when starting fresh (reset, missing or corrupt blob)."""
        if reset:
            logger.info("[STATE] Starting with fresh state (reset requested)")
            return None
        try:
            blob = await _read_json(self.state_file)
        except (OSError, ValueError) as exc:
            logger.warning("[STATE] Failed to load %s (%s), starting fresh", self.state_file.name, exc)
            return None
        if not isinstance(blob, dict):
            if blob is not None:
                logger.warning("[STATE] Unexpected content in %s, starting fresh", self.state_file.name)
            else:
                logger.info("[STATE] No saved state, starting fresh")
            return None
        logger.info("[STATE] Loaded state from %s", self.state_file.name)
        return restore_state(blob, labels, current_patch)

    async def save(self, states: Dict[str, RegionState], last_patch: str = ""):
        await _write_json_atomic(self.state_file, snapshot_state(states, last_patch), indent=2)

    async def load_match_cache(self, cache: DedupCache) -> int:
        """Add cached match IDs to `cache`. Returns how many were loaded."""
        try:
            ids = await _read_json(self.match_cache_file)
        except (OSError, ValueError) as exc:
            logger.error("[STATE] Error loading match cache: %s", exc)
            return 0
        if not isinstance(ids, list):
            logger.info("[STATE] No match cache file found")
            return 0
        cache.add_many(str(match_id) for match_id in ids)
        logger.info("[STATE] Loaded %d known match IDs from cache", len(cache))
        return len(ids)

    async def save_match_cache(self, cache: DedupCache):
        await _write_json_atomic(self.match_cache_file, _tail(cache.snapshot(), MAX_KNOWN_MATCHES))
