"""
Live dashboard for monitoring the crawl using Rich.
Shows per-region crawl state and per-scope rate budget usage.
"""

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from rate_limiter import RequestClass

if TYPE_CHECKING:
    from run_pipeline import CrawlSession


STATUS_STYLES = {
    "crawling": "green",
    "backtracking": "cyan",
    "reseed": "yellow",
    "saturated": "red",
    "dry backoff": "yellow",
    "rate limited": "red",
    "cooling down": "magenta",
    "stopped": "dim",
}


def _format_duration(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    return str(timedelta(seconds=int(seconds)))


def _bar(used: int, limit: int, width: int = 15) -> str:
    filled = int(min(used, limit) / max(limit, 1) * width)
    return "█" * filled + "░" * (width - filled)


class LiveDashboard:
    """Real-time terminal dashboard for the region crawlers."""

    def __init__(self, session: "CrawlSession", console: Optional[Console] = None):
        self.session = session
        self.console = console or Console()
        self._running = False

    def _make_header(self) -> Panel:
        header_text = Text()
        header_text.append("ARAM Match Crawler", style="bold cyan")
        header_text.append(f"  ·  {len(self.session.crawlers)} regions", style="bold")
        if self.session.settings.accepted_patches:
            header_text.append(f"  ·  patches {', '.join(self.session.settings.accepted_patches)}", style="dim")
        return Panel(header_text, style="bold white on dark_blue")

    def _make_regions_table(self) -> Table:
        table = Table(title="Regions", expand=True, title_style="bold magenta")

        table.add_column("Region", style="cyan", justify="left")
        table.add_column("Status", justify="left")
        table.add_column("Stack", justify="right")
        table.add_column("Visited", justify="right")
        table.add_column("Dry", justify="right")
        table.add_column("Seed pool", justify="right")
        table.add_column("Stored", style="green", justify="right")
        table.add_column("Hit rate", style="yellow", justify="right")

        for label, crawler in self.session.crawlers.items():
            state, stats = crawler.state, crawler.stats
            style = STATUS_STYLES.get(stats.status, "white")
            table.add_row(
                label,
                f"[{style}]{stats.status}[/{style}]",
                f"{len(state.stack):,}",
                f"{len(state.visited):,}",
                f"{len(state.dry):,}",
                f"{len(state.seed_pool):,}",
                f"{stats.matches_stored:,}",
                f"{stats.hit_rate:.0f}%",
            )

        table.add_section()
        table.add_row(
            "[bold]TOTAL[/bold]", "", "", "", "", "",
            f"[bold]{self.session.total_stored:,}[/bold]", "",
        )
        return table

    def _make_status_panel(self) -> Panel:
        session = self.session
        status_table = Table.grid(padding=(0, 2))
        status_table.add_column(justify="right", style="bold")
        status_table.add_column(justify="left")

        status_table.add_row("Session:", _format_duration(session.elapsed))
        status_table.add_row("Speed:", f"{session.matches_per_minute:.1f} matches/min")
        status_table.add_row("Known IDs:", f"{len(session.known_matches):,}")
        status_table.add_row("Stats buffer:", f"{session.flusher.buffer.participant_count:,} participants")
        status_table.add_row("Flushed:", f"{session.flusher.total_flushed:,} combos")
        return Panel(status_table, title="Status", border_style="blue")

    def _make_rate_limit_panel(self) -> Panel:
        limiter = self.session.rate_limiter
        short_limit, long_limit = limiter.limits.effective(RequestClass.BULK)

        rate_table = Table.grid(padding=(0, 2))
        rate_table.add_column(justify="right", style="bold")
        rate_table.add_column(justify="left")

        for scope, (short_count, long_count) in sorted(limiter.snapshot().items()):
            line = Text()
            line.append(f"{_bar(long_count, long_limit)} ", style="green" if long_count < long_limit else "red")
            line.append(f"{long_count}/{long_limit}", style="bold")
            line.append(f"  ({short_count}/{short_limit}/s)", style="dim")
            rate_table.add_row(f"{scope}:", line)

        rate_table.add_row("Backend:", "shared" if limiter.shared else "local")
        rate_table.add_row("Waits:", f"{limiter.total_waits:,}")
        rate_table.add_row("Fail-open:", f"{limiter.fail_open_count:,}")
        rate_table.add_row("429s:", f"{self.session.client.rate_limited_responses:,}")
        return Panel(rate_table, title="Rate budget (bulk)", border_style="yellow")

    def _make_activity_panel(self) -> Panel:
        lines = [
            (label, crawler.stats.last_event)
            for label, crawler in self.session.crawlers.items()
            if crawler.stats.last_event
        ]
        if lines:
            activity_text = Text()
            for i, (label, event) in enumerate(lines):
                if i > 0:
                    activity_text.append("\n")
                activity_text.append(f"{label} → ", style="green")
                activity_text.append(event, style="dim")
        else:
            activity_text = Text("Waiting for the first crawl...", style="dim italic")
        return Panel(activity_text, title="Recent activity", border_style="green")

    def generate_layout(self) -> Layout:
        layout = Layout()

        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="body"),
            Layout(name="footer", size=7)
        )

        layout["body"].split_row(
            Layout(name="main", ratio=2),
            Layout(name="sidebar", ratio=1)
        )

        layout["sidebar"].split_column(
            Layout(name="status", size=8),
            Layout(name="rate_limit"),
        )

        layout["header"].update(self._make_header())
        layout["main"].update(self._make_regions_table())
        layout["status"].update(self._make_status_panel())
        layout["rate_limit"].update(self._make_rate_limit_panel())
        layout["footer"].update(self._make_activity_panel())

        return layout

    async def run(self, refresh_rate: float = 0.5):
        """Run the live dashboard."""
        self._running = True

        with Live(self.generate_layout(), console=self.console,
                  refresh_per_second=int(1 / refresh_rate)) as live:
            while self._running:
                live.update(self.generate_layout())
                await asyncio.sleep(refresh_rate)

    def stop(self):
        self._running = False


def print_final_summary(session: "CrawlSession", console: Optional[Console] = None):
    """Print final summary after the crawl shuts down."""
    if console is None:
        console = Console()

    console.print("\n")
    console.print(Panel.fit("[bold green]Crawler stopped cleanly[/bold green]", border_style="green"))

    table = Table(title="Final Results", expand=False)
    table.add_column("Region", style="cyan")
    table.add_column("Processed", justify="right")
    table.add_column("Productive", style="green", justify="right")
    table.add_column("Dry", justify="right")
    table.add_column("Stored", style="yellow", justify="right")

    for label, crawler in session.crawlers.items():
        stats = crawler.stats
        table.add_row(
            label,
            f"{stats.nodes_processed:,}",
            f"{stats.productive:,}",
            f"{stats.dry:,}",
            f"{stats.matches_stored:,}",
        )

    table.add_section()
    table.add_row("[bold]Total[/bold]", "", "", "", f"[bold]{session.total_stored:,}[/bold]")
    console.print(table)

    if session.client.rate_limited_responses or session.rate_limiter.fail_open_count:
        console.print("\n[yellow]Rate limiting:[/yellow]")
        console.print(f"   Upstream 429s: {session.client.rate_limited_responses:,}")
        console.print(f"   Fail-open grants: {session.rate_limiter.fail_open_count:,}")

    console.print(f"\nSession runtime: {_format_duration(session.elapsed)}")
    console.print(f"Average speed: {session.matches_per_minute:.1f} matches/minute")
