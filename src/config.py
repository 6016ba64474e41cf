"""
Configuration settings for the ARAM match crawler.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple

# =============================================================================
# PATHS (using pathlib for cross-platform compatibility)
# =============================================================================

BASE_DIR = Path(__file__).parent.parent.resolve()  # Go up one level from src/ to project root
SEEDS_FILE = BASE_DIR / "configs" / "seeds.json"
STATE_DIR = BASE_DIR / "data" / "crawler_state"
STATE_FILE = STATE_DIR / "scraper_state.json"
MATCH_CACHE_FILE = STATE_DIR / "match_cache.json"
ARCHIVE_DIR = BASE_DIR / "archive"

# =============================================================================
# RATE LIMITS (per regional cluster, application-wide)
# =============================================================================

SHORT_WINDOW = 1.0               # seconds
SHORT_LIMIT = 20                 # requests per short window
LONG_WINDOW = 120.0              # seconds
LONG_LIMIT = 100                 # requests per long window

# Headroom kept free for overhead/priority lookups (bulk never uses it)
RESERVED_OVERHEAD_SHORT = 2
RESERVED_OVERHEAD_LONG = 10

# Local cache -> shared counter reconciliation
SYNC_EVERY_REQUESTS = 5
SYNC_EVERY_SECONDS = 2.0

# Waits longer than this are logged
RATE_LIMIT_LOG_THRESHOLD = 1.0

# Per-method budgets tracked alongside the app budget of each scope
METHOD_ACCOUNT = "account"
METHOD_MATCH_LIST = "match-list"
METHOD_MATCH_DETAIL = "match-detail"

# =============================================================================
# CRAWL SETTINGS
# =============================================================================

ARAM_QUEUE_ID = 450
MATCH_HISTORY_DAYS = 14          # Only list matches from the last N days
MATCH_IDS_PER_PLAYER = 100       # Upstream cap per list call
DB_CHECK_BATCH_SIZE = 500        # IDs per durable-store existence query

# Memory limits
MAX_KNOWN_MATCHES = 100000
MAX_SEED_POOL = 30000
MAX_DRY = 8000
MAX_VISITED = 50000
MAX_BACKTRACK_HISTORY = 300
MAX_STACK_SIZE = 200             # Soft cap: neighbours are only pushed below this

# Dry streaks
DRY_BACKOFF_THRESHOLD = 10       # Start sleeping after this many consecutive dry nodes
DRY_BACKOFF_STEP = 1.0           # Seconds added per consecutive dry node
DRY_BACKOFF_MAX = 30.0
DRY_RESET_THRESHOLD = 20         # Clear backtrack history after this many

# Empty stack / reseed ladder
SATURATION_THRESHOLD = 20        # Consecutive unproductive backtracks before SATURATED
SEED_SAMPLE_SIZE = 15
DB_SEED_MATCH_LIMIT = 50
DRY_EVICT_FRACTION = 0.5
RESEED_COOLDOWN = 15.0
SATURATED_COOLDOWN = 45.0

CRAWLER_ERROR_PAUSE = 5.0        # Pause after an unexpected exception in a region loop
MAX_RETRY_AFTER = 30.0           # Cap on an upstream Retry-After hint before requeueing
MATCH_BATCH_PAUSE = 0.2          # Small delay between match detail batches

# =============================================================================
# PERSISTENCE & MAINTENANCE
# =============================================================================

STATE_SAVE_INTERVAL = 60.0       # Seconds between state snapshots
SUMMARY_INTERVAL = 300.0         # Seconds between progress summaries
MAINTENANCE_TICK = 5.0           # Periodic task wake-up
CLEANUP_INTERVAL = 12 * 60 * 60  # Durable-store cleanup RPC
SHUTDOWN_GRACE = 5.0             # Seconds to let region loops finish before cancelling

# Stats buffer: flush when large OR after an interval, never more often than the cooldown
STATS_BUFFER_FLUSH_SIZE = 50000
STATS_FLUSH_INTERVAL = 2 * 60 * 60
STATS_FLUSH_COOLDOWN = 10 * 60
STATS_UPSERT_BATCH_SIZE = 10

# =============================================================================
# HTTP
# =============================================================================

REQUEST_TIMEOUT = 10             # Seconds per upstream request
CONNECTION_LIMIT = 20
DNS_CACHE_TTL = 300

USER_AGENT = "aram-crawler/0.1"

# =============================================================================
# FILE ENCODING (Cross-platform)
# =============================================================================

FILE_ENCODING = "utf-8"


# =============================================================================
# ENVIRONMENT
# =============================================================================

def _clamp_throttle(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        value = 100
    return min(100, max(10, value))


def _parse_patches(raw: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    """Process settings read from the environment (after .env is loaded)."""
    riot_api_key: str = ""
    supabase_url: str = ""
    supabase_key: str = ""
    use_redis: bool = False
    redis_url: str = "redis://localhost:6379/0"
    throttle_percent: int = 100
    accepted_patches: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def match_batch_size(self) -> int:
        return 2 if self.throttle_percent <= 50 else 3

    @property
    def current_patch(self) -> str:
        return self.accepted_patches[0] if self.accepted_patches else ""

    def missing_credentials(self, memory_store: bool = False) -> List[str]:
        """Names of mandatory variables that are not set."""
        missing = []
        if not self.riot_api_key:
            missing.append("RIOT_API_KEY")
        if not memory_store:
            if not self.supabase_url:
                missing.append("SUPABASE_URL")
            if not self.supabase_key:
                missing.append("SUPABASE_SECRET_KEY")
        return missing


def _strip_quotes(value: str) -> str:
    return value.strip().strip("'\"")


def load_settings() -> Settings:
    """Build Settings from os.environ."""
    return Settings(
        riot_api_key=_strip_quotes(os.getenv("RIOT_API_KEY", "")),
        supabase_url=_strip_quotes(os.getenv("SUPABASE_URL", "")),
        supabase_key=_strip_quotes(os.getenv("SUPABASE_SECRET_KEY", "")),
        use_redis=os.getenv("USE_REDIS_RATE_LIMIT", "").lower() == "true",
        redis_url=_strip_quotes(os.getenv("REDIS_URL", "redis://localhost:6379/0")),
        throttle_percent=_clamp_throttle(os.getenv("SCRAPER_THROTTLE", "100")),
        accepted_patches=_parse_patches(os.getenv("ACCEPTED_PATCHES", "")),
    )
