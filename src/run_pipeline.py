#!/usr/bin/env python3
"""
ARAM Match Crawler
==================
Main entry point: one depth-first crawler per regional cluster, a shared
rate limiter, periodic persistence and an optional live dashboard.

State files:
- data/crawler_state/scraper_state.json   (per-region stacks, visited, dry, ...)
- data/crawler_state/match_cache.json     (recently ingested match IDs)
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import signal
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from collections_util import DedupCache
from config import (
    ARCHIVE_DIR,
    CLEANUP_INTERVAL,
    FILE_ENCODING,
    MAINTENANCE_TICK,
    MAX_KNOWN_MATCHES,
    SEEDS_FILE,
    SHUTDOWN_GRACE,
    STATE_SAVE_INTERVAL,
    SUMMARY_INTERVAL,
    Settings,
    load_settings,
)
from counter_store import RedisCounterStore
from crawler import MatchHarvester, RegionCrawler, RegionState
from dashboard import LiveDashboard, print_final_summary
from errors import BackingStoreUnavailable, UpstreamError
from match_store import InMemoryMatchStore, MatchStore, SupabaseMatchStore
from rate_limiter import RateLimiter, RateLimits
from regions import Region, parse_region
from riot_client import RiotClient
from state_store import StateStore
from stats_buffer import AggregateFlusher, ChampionStatsBuffer

console = Console()
logger = logging.getLogger("run_pipeline")


def setup_logging(verbose: bool = False):
    """Route stdlib logging through Rich onto the shared console."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # Request-level noise from the HTTP clients
    for name in ("httpx", "httpcore", "hpack"):
        logging.getLogger(name).setLevel(logging.WARNING)


# =============================================================================
# SESSION
# =============================================================================

class CrawlSession:
    """Everything one crawler process owns, wired together once at startup."""

    def __init__(
        self,
        settings: Settings,
        rate_limiter: RateLimiter,
        client: RiotClient,
        store: MatchStore,
        known_matches: DedupCache,
        flusher: AggregateFlusher,
        harvester: MatchHarvester,
        states: Dict[str, RegionState],
        crawlers: Dict[str, RegionCrawler],
    ):
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.client = client
        self.store = store
        self.known_matches = known_matches
        self.flusher = flusher
        self.harvester = harvester
        self.states = states
        self.crawlers = crawlers
        self.started_at = time.time()

    @property
    def elapsed(self) -> float:
        return time.time() - self.started_at

    @property
    def total_stored(self) -> int:
        return sum(c.stats.matches_stored for c in self.crawlers.values())

    @property
    def matches_per_minute(self) -> float:
        minutes = self.elapsed / 60
        return self.total_stored / minutes if minutes > 0 else 0.0

    def stop(self):
        for crawler in self.crawlers.values():
            crawler.stop()


# =============================================================================
# SEEDS
# =============================================================================

async def load_seeds(path: Path) -> Dict[str, Dict[str, List[str]]]:
    """Read configs/seeds.json: {"europe": {"riot_ids": [...], "puuids": [...]}, ...}."""
    try:
        async with aiofiles.open(path, mode="r", encoding=FILE_ENCODING) as f:
            content = await f.read()
    except FileNotFoundError:
        logger.warning("[SEEDS] No seeds file at %s", path)
        return {}
    try:
        data = json.loads(content) if content.strip() else {}
    except ValueError as exc:
        logger.error("[SEEDS] Invalid seeds file %s: %s", path, exc)
        return {}

    seeds: Dict[str, Dict[str, List[str]]] = {}
    for key, entry in data.items():
        region = parse_region(key)
        if region is None:
            logger.warning("[SEEDS] Unknown region %r in seeds file", key)
            continue
        if isinstance(entry, list):
            entry = {"riot_ids": entry}
        target = seeds.setdefault(region.label, {"riot_ids": [], "puuids": []})
        target["riot_ids"].extend(entry.get("riot_ids", []))
        target["puuids"].extend(entry.get("puuids", []))
    return seeds


async def resolve_seeds(client: RiotClient, region: Region, entry: Dict[str, List[str]]) -> List[str]:
    """Raw puuids plus the puuids of every resolvable riot ID."""
    puuids = list(entry.get("puuids", []))
    for riot_id in entry.get("riot_ids", []):
        game_name, _, tag_line = riot_id.partition("#")
        if not tag_line:
            logger.warning("[%s] Seed %r is not in name#tag form", region.label, riot_id)
            continue
        try:
            account = await client.get_account_by_riot_id(game_name, tag_line, region)
        except UpstreamError as exc:
            logger.warning("[%s] Could not resolve seed %s: %s", region.label, riot_id, exc)
            continue
        if account and account.get("puuid"):
            puuids.append(account["puuid"])
            logger.info("[%s] Seed %s resolved", region.label, riot_id)
        else:
            logger.warning("[%s] Seed %s not found", region.label, riot_id)
    return list(dict.fromkeys(puuids))


# =============================================================================
# MAINTENANCE
# =============================================================================

def log_summary(session: CrawlSession):
    minutes = session.elapsed / 60
    logger.info(
        "[SUMMARY] %.0f min | %d matches | %.1f/min | stats buffer %d | known IDs %d",
        minutes,
        session.total_stored,
        session.matches_per_minute,
        session.flusher.buffer.participant_count,
        len(session.known_matches),
    )
    for label, crawler in session.crawlers.items():
        state, stats = crawler.state, crawler.stats
        logger.info(
            "[SUMMARY] %s: stack=%d visited=%d dry=%d pool=%d stored=%d hit=%.0f%%",
            label,
            len(state.stack),
            len(state.visited),
            len(state.dry),
            len(state.seed_pool),
            stats.matches_stored,
            stats.hit_rate,
        )


async def save_all(session: CrawlSession, state_store: StateStore):
    """Persist every region's state and the dedup cache. Errors are logged."""
    try:
        await state_store.save(session.states, session.settings.current_patch)
        await state_store.save_match_cache(session.known_matches)
    except OSError as exc:
        logger.error("[STATE] Save failed: %s", exc)
        return
    state_store.last_saved = time.time()
    logger.debug("[STATE] Saved state for %d regions", len(session.states))


async def run_cleanup(session: CrawlSession):
    logger.info("[CRAWLER] Running scheduled database cleanup...")
    try:
        result = await session.store.run_cleanup()
    except BackingStoreUnavailable as exc:
        logger.error("[CRAWLER] Cleanup failed: %s", exc)
        return
    logger.info("[CRAWLER] Cleanup complete: %s", result)


async def run_maintenance(session: CrawlSession, state_store: StateStore, tick: float = MAINTENANCE_TICK):
    """Periodically save state, log summaries, flush stats and run cleanup."""
    last_save = last_summary = last_cleanup = time.monotonic()

    while True:
        await asyncio.sleep(tick)
        now = time.monotonic()

        if now - last_save >= STATE_SAVE_INTERVAL:
            await save_all(session, state_store)
            last_save = now

        if now - last_summary >= SUMMARY_INTERVAL:
            log_summary(session)
            last_summary = now

        session.flusher.maybe_flush()

        if now - last_cleanup >= CLEANUP_INTERVAL:
            await run_cleanup(session)
            last_cleanup = now


# =============================================================================
# RUN / SHUTDOWN
# =============================================================================

async def run_crawlers(session: CrawlSession, state_store: StateStore, show_dashboard: bool = True):
    """Run every region crawler until SIGINT/SIGTERM."""
    stop_event = asyncio.Event()
    dashboard: Optional[LiveDashboard] = LiveDashboard(session, console) if show_dashboard else None

    crawler_tasks = [
        asyncio.create_task(crawler.run(), name=f"crawler-{label}")
        for label, crawler in session.crawlers.items()
    ]
    maintenance_task = asyncio.create_task(run_maintenance(session, state_store))
    dashboard_task = asyncio.create_task(dashboard.run()) if dashboard else None

    def shutdown_handler():
        """Handle shutdown signal - stop crawlers."""
        console.print("\n[yellow]Shutting down...[/yellow]")
        session.stop()
        stop_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown_handler)

    try:
        await stop_event.wait()
    finally:
        session.stop()
        # Let in-flight nodes finish, then cut long back-offs short
        done, pending = await asyncio.wait(crawler_tasks, timeout=SHUTDOWN_GRACE)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        maintenance_task.cancel()
        await asyncio.gather(maintenance_task, return_exceptions=True)

        if dashboard is not None:
            dashboard.stop()
            try:
                await asyncio.wait_for(dashboard_task, timeout=1.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass


async def shutdown(session: CrawlSession, state_store: StateStore, counter_store: Optional[RedisCounterStore]):
    """Flush limiter -> drain stats -> save state -> close connections."""
    flushed = await session.rate_limiter.flush()
    logger.info("[SHUTDOWN] Rate limiter flushed (%d scopes)", flushed)

    written = await session.flusher.flush()
    logger.info("[SHUTDOWN] Stats buffer drained (%d combos)", written)

    await save_all(session, state_store)
    logger.info("[SHUTDOWN] State saved")

    await session.client.close()
    await session.store.close()
    if counter_store is not None:
        await counter_store.close()


def archive_files(file_paths: List[Path], archive_name: str):
    """Move files to an archive folder with timestamp."""
    archive_dir = ARCHIVE_DIR / archive_name
    archive_dir.mkdir(parents=True, exist_ok=True)

    archived = []
    for file_path in file_paths:
        if file_path.exists():
            dest = archive_dir / file_path.name
            # If file already exists in archive, add timestamp
            if dest.exists():
                timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
                dest = archive_dir / f"{file_path.stem}_{timestamp}{file_path.suffix}"

            file_path.rename(dest)
            archived.append(file_path.name)

    return archive_dir, archived


def selected_regions(value: Optional[str]) -> List[Region]:
    if not value:
        return list(Region)
    regions = []
    for item in value.split(","):
        region = parse_region(item)
        if region is None:
            raise argparse.ArgumentTypeError(f"unknown region: {item}")
        if region not in regions:
            regions.append(region)
    return regions


async def main(args) -> int:
    """Main entry point. Returns the process exit code."""
    load_dotenv()
    setup_logging(args.verbose)

    console.print("""
[bold blue]╔══════════════════════════════════════════════════════════════╗
║     [cyan]ARAM Match Crawler[/cyan]                                       ║
║     [dim]Depth-first discovery across regional clusters[/dim]           ║
╚══════════════════════════════════════════════════════════════╝[/bold blue]
    """)

    settings = load_settings()
    if args.throttle is not None:
        settings = dataclasses.replace(settings, throttle_percent=min(100, max(10, args.throttle)))

    missing = settings.missing_credentials(memory_store=args.memory_store)
    if missing:
        console.print(f"[red]Missing required environment variables: {', '.join(missing)}[/red]")
        return 1

    regions = args.regions
    state_store = StateStore()

    if args.fresh:
        console.print("[yellow]--fresh flag: Archiving old state...[/yellow]")
        archive_name = f"fresh_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        _, archived = archive_files(state_store.files, archive_name)
        if archived:
            console.print(f"   Archived {len(archived)} files to: archive/{archive_name}/")
            for fname in archived:
                console.print(f"      • {fname}")
        console.print()

    # Rate limiting
    counter_store = RedisCounterStore(settings.redis_url) if settings.use_redis else None
    rate_limiter = RateLimiter(RateLimits(throttle_percent=settings.throttle_percent), counter_store)
    client = RiotClient(settings.riot_api_key, rate_limiter)
    await client.open()

    # Durable store
    if args.memory_store:
        store: MatchStore = InMemoryMatchStore()
    else:
        store = SupabaseMatchStore(settings.supabase_url, settings.supabase_key)
        await store.open()

    known_matches = DedupCache(MAX_KNOWN_MATCHES)
    await state_store.load_match_cache(known_matches)

    stats_buffer = ChampionStatsBuffer()
    flusher = AggregateFlusher(stats_buffer, store)
    harvester = MatchHarvester(
        client,
        store,
        known_matches,
        stats_buffer=stats_buffer,
        accepted_patches=settings.accepted_patches,
        batch_size=settings.match_batch_size,
    )

    # Region state: restored for every region so unselected ones survive the next save
    all_labels = [region.label for region in Region]
    restored = await state_store.load(all_labels, settings.current_patch, reset=args.fresh)
    states = restored or {label: RegionState() for label in all_labels}

    if restored is None:
        seeds = await load_seeds(args.seeds_file)
        for region in regions:
            entry = seeds.get(region.label)
            if not entry:
                continue
            puuids = await resolve_seeds(client, region, entry)
            states[region.label].stack.extend(puuids)
            states[region.label].seed_pool.update(puuids)

    crawlers = {
        region.label: RegionCrawler(region, states[region.label], harvester)
        for region in regions
    }
    session = CrawlSession(settings, rate_limiter, client, store, known_matches, flusher, harvester, states, crawlers)

    for label, crawler in crawlers.items():
        state = crawler.state
        console.print(
            f"   {label}: stack [green]{len(state.stack)}[/green], "
            f"visited [green]{len(state.visited)}[/green], seed pool [green]{len(state.seed_pool)}[/green]"
        )
    console.print(f"   Rate limit: {'redis' if counter_store else 'in-process'}, throttle {settings.throttle_percent}%")
    console.print()

    if not any(s.stack or s.seed_pool or s.backtrack_history for s in (c.state for c in crawlers.values())):
        console.print("[yellow]Nothing to crawl: no saved state and no resolvable seeds.[/yellow]")
        await shutdown(session, state_store, counter_store)
        return 0

    try:
        await run_crawlers(session, state_store, show_dashboard=not args.no_dashboard)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
    finally:
        await shutdown(session, state_store, counter_store)
        print_final_summary(session, console)
        console.print("\n[green]Progress saved. Run again to resume.[/green]")
    return 0


def cli():
    """Command-line interface."""
    parser = argparse.ArgumentParser(
        description="ARAM match crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_crawler.py                         # Normal run (resumes saved state)
  python run_crawler.py --fresh                 # Archive state and start from seeds
  python run_crawler.py --regions europe,kr     # Only crawl some clusters
  python run_crawler.py --memory-store          # Dry run without Supabase
        """
    )

    parser.add_argument('--no-dashboard', action='store_true',
                        help='Run without the live dashboard')
    parser.add_argument('--fresh', action='store_true',
                        help='Start fresh: archive saved state and reseed from the seeds file')
    parser.add_argument('--regions', type=selected_regions, default=list(Region),
                        help='Comma-separated clusters or platforms (default: all)')
    parser.add_argument('--seeds-file', type=Path, default=SEEDS_FILE,
                        help='Seed players file (default: configs/seeds.json)')
    parser.add_argument('--memory-store', action='store_true',
                        help='Keep matches in memory instead of Supabase')
    parser.add_argument('--throttle', type=int, default=None,
                        help='Bulk long-window budget in percent, 10-100 (default: SCRAPER_THROTTLE or 100)')
    parser.add_argument('--verbose', action='store_true',
                        help='Debug logging')

    args = parser.parse_args()

    if sys.platform == 'win32':
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    sys.exit(asyncio.run(main(args)))


if __name__ == "__main__":
    cli()
