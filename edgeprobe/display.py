"""Rich terminal output for edgeprobe."""

from __future__ import annotations

from typing import Optional, Sequence

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from edgeprobe.config import (
    FAST_SPEED_MBPS,
    FAST_THRESHOLD_MS,
    MEDIUM_SPEED_MBPS,
    MEDIUM_THRESHOLD_MS,
    UNKNOWN_COUNTRY,
)
from edgeprobe.location import country_flag
from edgeprobe.models import RankedRecord, Summary

console = Console()

PHASE_LABELS = {
    "probe": "Probing",
    "speed": "Speed test",
}


def _color_for_ms(value: float) -> str:
    """Return a Rich color name based on a latency value."""
    if value <= FAST_THRESHOLD_MS:
        return "green"
    elif value <= MEDIUM_THRESHOLD_MS:
        return "yellow"
    return "red"


def _color_for_speed(value: float) -> str:
    if value >= FAST_SPEED_MBPS:
        return "green"
    elif value >= MEDIUM_SPEED_MBPS:
        return "yellow"
    return "red"


def _fmt_ms(value: float) -> Text:
    return Text(f"{value:.0f}ms", style=_color_for_ms(value))


def _fmt_speed(value: float) -> Text:
    return Text(f"{value:.2f} MB/s", style=_color_for_speed(value))


# ── Input summary ─────────────────────────────────────────────────────


def render_load_summary(raw_count: int, unique_count: int) -> None:
    """Show how many candidates were read and how many were duplicates."""
    duplicates = raw_count - unique_count
    console.print(
        Panel(
            f"Read [bold]{raw_count}[/bold], kept [bold]{unique_count}[/bold], "
            f"removed [bold]{duplicates}[/bold] duplicates",
            expand=False,
            border_style="bright_black",
        )
    )


# ── Progress tracking ─────────────────────────────────────────────────


class ProgressTracker:
    """Live single-line progress display for one scan phase at a time."""

    def __init__(self):
        self.phase: Optional[str] = None
        self.completed = 0
        self.total = 0
        self.live: Optional[Live] = None

    def _build_line(self) -> Text:
        label = PHASE_LABELS.get(self.phase or "", self.phase or "")
        pct = (self.completed / self.total * 100) if self.total > 0 else 100.0
        bar_width = 30
        filled = int(pct / 100 * bar_width)
        line = Text()
        line.append(f"{label:<11}", style="bold")
        line.append("█" * filled, style="green")
        line.append("░" * (bar_width - filled), style="dim")
        line.append(f" {self.completed}/{self.total} ({pct:.2f}%)")
        return line

    def start(self) -> None:
        self.live = Live(self._build_line(), console=console, refresh_per_second=4)
        self.live.start()

    def update(self, phase: str, completed: int, total: int) -> None:
        if phase != self.phase and self.live and self.phase:
            # Keep the finished phase's line on screen
            self.live.console.print(self._build_line())
        self.phase = phase
        self.completed = completed
        self.total = total
        if self.live:
            self.live.update(self._build_line())

    def finish(self) -> None:
        if self.live:
            self.live.stop()


# ── Results ───────────────────────────────────────────────────────────


def build_results_table(records: Sequence[RankedRecord], include_speed: bool, limit: int = 20) -> Table:
    """Build the ranked results table (first *limit* rows)."""
    title = "sorted by download speed" if include_speed else "sorted by connect latency"
    table = Table(
        show_header=True,
        border_style="bright_black",
        expand=False,
        header_style="bold",
        title=f"[bold]Edge IPs[/bold] [dim]({title})[/dim]",
        title_style="",
    )
    table.add_column("#", justify="right", width=3, style="dim")
    table.add_column("IP", style="bold", min_width=15)
    table.add_column("Port", justify="right")
    table.add_column("Colo")
    table.add_column("Location")
    table.add_column("Latency", justify="right")
    if include_speed:
        table.add_column("Speed", justify="right")

    for rank, r in enumerate(records[:limit], 1):
        p = r.probe
        loc = ", ".join(part for part in [p.city, p.country_name] if part) or "-"
        row = [str(rank), p.host, str(p.port), p.facility_code, loc, _fmt_ms(p.connect_latency_ms)]
        if include_speed:
            row.append(_fmt_speed(r.download_speed_mbps or 0.0))
        table.add_row(*row)

    return table


def render_results(records: Sequence[RankedRecord], include_speed: bool, limit: int = 20) -> None:
    if not records:
        console.print("[dim]No usable IPs found.[/dim]")
        return
    console.print()
    console.print(build_results_table(records, include_speed, limit))
    if len(records) > limit:
        console.print(f"[dim]  ... and {len(records) - limit} more in the CSV file[/dim]")


def render_summary(summary: Summary) -> None:
    """Print the country breakdown and latency/speed statistics."""
    table = Table(show_header=False, box=None, pad_edge=False)
    table.add_column(style="bold")
    table.add_column()

    table.add_row("Candidates", str(summary.total_candidates))
    table.add_row("Usable", str(summary.survivors))

    countries = []
    for code, count in summary.country_counts.items():
        name = summary.country_names.get(code) or code
        if code == UNKNOWN_COUNTRY:
            name = "unknown"
        countries.append(f"{country_flag(code)} {name} ({count})")
    if countries:
        table.add_row("Countries", ", ".join(countries))

    lat = summary.latency
    table.add_row("Latency", f"min {lat.min:.0f}ms / avg {lat.avg:.2f}ms / max {lat.max:.0f}ms")
    if summary.speed is not None:
        spd = summary.speed
        table.add_row(
            "Speed",
            f"min {spd.min:.2f} / avg {spd.avg:.2f} / max {spd.max:.2f} MB/s",
        )

    console.print()
    console.print(Panel(table, title="[bold]Summary[/bold]", expand=False, border_style="bright_black"))


def render_error(message: str) -> None:
    """Display an error message."""
    console.print(f"[bold red]Error:[/bold red] {message}")


def render_warning(message: str) -> None:
    """Display a warning message."""
    console.print(f"[yellow]Warning:[/yellow] {message}")
