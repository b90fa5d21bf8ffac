"""CLI entry point and orchestration for edgeprobe."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import click
from rich.logging import RichHandler

from edgeprobe import __version__
from edgeprobe.config import (
    CHAT_IDS_ENV,
    DEFAULT_CLASSIFY_HOST,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_INPUT_PATH,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MIN_SPEED,
    DEFAULT_OUTPUT_FILE,
    DEFAULT_OVERALL_BUDGET,
    DEFAULT_SPEED_TEST_URL,
    DEFAULT_SPEED_TIMEOUT,
    DEFAULT_SPEED_WORKERS,
    TELEGRAM_TOKEN_ENV,
)
from edgeprobe.models import ScanConfig

if TYPE_CHECKING:
    from edgeprobe.notify import TelegramNotifier

logger = logging.getLogger("edgeprobe")


def _parse_ports(ctx: click.Context, param: click.Parameter, value: str) -> frozenset[int]:
    ports = set()
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            port = int(part)
        except ValueError:
            raise click.BadParameter(f"not a port number: {part!r}")
        if not 0 < port < 65536:
            raise click.BadParameter(f"port out of range: {port}")
        ports.add(port)
    return frozenset(ports)


def _configure_logging(verbose: bool) -> None:
    from edgeprobe.display import console

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )


def _chat_ids(option_value: str) -> list[str]:
    ids = [c.strip() for c in option_value.split(",") if c.strip()]
    ids.extend(c for c in os.environ.get(CHAT_IDS_ENV, "").split() if c)
    return list(dict.fromkeys(ids))


@click.command()
@click.option("--path", default=DEFAULT_INPUT_PATH, show_default=True,
              help="File or directory holding candidate IPs")
@click.option("--outfile", default=DEFAULT_OUTPUT_FILE, show_default=True, help="Output CSV file")
@click.option("--max", "max_concurrency", default=DEFAULT_MAX_CONCURRENCY, show_default=True,
              help="Maximum concurrent connections")
@click.option("--speedtest", "speed_workers", default=DEFAULT_SPEED_WORKERS, show_default=True,
              help="Speed test workers, 0 disables speed testing")
@click.option("--min-speed", default=DEFAULT_MIN_SPEED, show_default=True,
              help="Minimum download speed to keep (MB/s)")
@click.option("--url", "speed_test_url", default=DEFAULT_SPEED_TEST_URL, show_default=True,
              help="Speed test file location (host/path, no scheme)")
@click.option("--connect-timeout", default=DEFAULT_CONNECT_TIMEOUT, show_default=True,
              help="TCP connect timeout in seconds")
@click.option("--budget", "overall_budget", default=DEFAULT_OVERALL_BUDGET, show_default=True,
              help="Seconds from dial start to complete classifying response")
@click.option("--speed-timeout", default=DEFAULT_SPEED_TIMEOUT, show_default=True,
              help="Seconds allowed for each download measurement")
@click.option("--tls/--no-tls", default=True, show_default=True, help="Probe over TLS")
@click.option("--ca-file", default=None, type=click.Path(exists=True, dir_okay=False),
              help="PEM bundle used instead of the system trust store")
@click.option("--tcpurl", "classify_host", default=DEFAULT_CLASSIFY_HOST, show_default=True,
              help="Host name sent with the classifying request")
@click.option("--ports", default="", callback=_parse_ports,
              help="Comma-separated ports to keep in the output [default: all]")
@click.option("--locations", "locations_file", default=None, type=click.Path(dir_okay=False),
              help="Custom facility location JSON file")
@click.option("--telegram-token", default="", envvar=TELEGRAM_TOKEN_ENV, help="Telegram bot token")
@click.option("--telegram-chat-id", default="",
              help=f"Comma-separated Telegram chat ids (also read from ${CHAT_IDS_ENV})")
@click.option("--preset-proxy", default="", help="Comma-separated SOCKS5 proxies for Telegram")
@click.option("-q", "--quiet", is_flag=True, help="Suppress progress, show only errors")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.version_option(version=__version__)
def main(
    path: str,
    outfile: str,
    max_concurrency: int,
    speed_workers: int,
    min_speed: float,
    speed_test_url: str,
    connect_timeout: float,
    overall_budget: float,
    speed_timeout: float,
    tls: bool,
    ca_file: str | None,
    classify_host: str,
    ports: frozenset[int],
    locations_file: str | None,
    telegram_token: str,
    telegram_chat_id: str,
    preset_proxy: str,
    quiet: bool,
    verbose: bool,
) -> None:
    """edgeprobe: find edge-network IPs and rank them by latency and speed.

    Every candidate is dialled once and asked for /cdn-cgi/trace over the
    same connection; answering edge nodes can then be speed tested.
    """
    if max_concurrency < 1:
        raise click.BadParameter("must be at least 1", param_hint="--max")
    if speed_workers < 0:
        raise click.BadParameter("must not be negative", param_hint="--speedtest")
    if connect_timeout <= 0:
        raise click.BadParameter("must be positive", param_hint="--connect-timeout")
    if overall_budget < connect_timeout:
        raise click.BadParameter("must not be shorter than --connect-timeout", param_hint="--budget")

    _configure_logging(verbose)

    config = ScanConfig(
        connect_timeout=connect_timeout,
        overall_budget=overall_budget,
        use_tls=tls,
        ca_file=ca_file,
        classify_host=classify_host,
        max_concurrency=max_concurrency,
        speed_workers=speed_workers,
        speed_test_url=speed_test_url,
        speed_timeout=speed_timeout,
        min_speed=min_speed,
        port_allow_list=ports,
        output_file=outfile,
        quiet=quiet,
        verbose=verbose,
    )

    from edgeprobe.notify import TelegramNotifier

    notifier = TelegramNotifier(
        token=telegram_token,
        chat_ids=_chat_ids(telegram_chat_id),
        proxies=preset_proxy.split(","),
    )

    try:
        code = asyncio.run(_run(config, path, locations_file, notifier))
    except KeyboardInterrupt:
        if not quiet:
            from edgeprobe.display import console
            console.print("\n[yellow]Interrupted.[/yellow]")
        sys.exit(130)

    sys.exit(code)


async def _run(
    config: ScanConfig,
    path: str,
    locations_file: Optional[str],
    notifier: TelegramNotifier,
) -> int:
    """Main async orchestration; returns the process exit status."""
    from edgeprobe.exceptions import SetupError
    from edgeprobe.report import FINISH_MESSAGE, START_MESSAGE

    try:
        if notifier.enabled:
            await notifier.send(START_MESSAGE)
        try:
            await _scan_and_report(config, path, locations_file, notifier)
        except SetupError as exc:
            return await _fatal(str(exc), notifier)
        if notifier.enabled:
            await notifier.send(FINISH_MESSAGE)
        return 0
    finally:
        await notifier.aclose()


async def _fatal(message: str, notifier: TelegramNotifier) -> int:
    """Report a fatal setup error on screen and, best effort, through Telegram."""
    from edgeprobe.display import render_error
    from edgeprobe.report import FINISH_MESSAGE

    render_error(message)
    if notifier.enabled:
        await notifier.send(f"*⚠️ Error*\n{message}")
        await notifier.send(FINISH_MESSAGE)
    return 1


async def _scan_and_report(
    config: ScanConfig,
    path: str,
    locations_file: Optional[str],
    notifier: TelegramNotifier,
) -> None:
    from edgeprobe.display import (
        ProgressTracker,
        console,
        render_load_summary,
        render_results,
        render_summary,
        render_warning,
    )
    from edgeprobe.export import CsvReportSink, select_rows
    from edgeprobe.location import LocationDirectory
    from edgeprobe.pipeline import raise_open_file_limit, run_scan
    from edgeprobe.report import NO_RESULTS_MESSAGE, build_report
    from edgeprobe.sources import CandidateSource
    from edgeprobe.stats import compute_summary

    locations = LocationDirectory.load(locations_file)
    source = CandidateSource(path)
    candidates, total = source.load()

    if not config.quiet:
        render_load_summary(source.raw_count, total)

    raise_open_file_limit()

    progress = None
    if not config.quiet:
        progress = ProgressTracker()
        console.print(f"[bold]Probing {total} candidates, {config.max_concurrency} at a time...[/bold]")
        progress.start()

    try:
        result = await run_scan(
            candidates, config, locations,
            progress_callback=progress.update if progress else None,
        )
    finally:
        if progress:
            progress.finish()

    if not result.records:
        if not config.quiet:
            console.print("[yellow]No usable IPs found.[/yellow]")
        if notifier.enabled:
            await notifier.send(NO_RESULTS_MESSAGE)
        return

    sink = CsvReportSink(config.output_file, use_tls=config.use_tls)
    rows = sink.write(
        result.records,
        include_speed=config.speed_enabled,
        port_allow_list=config.port_allow_list,
        min_speed=config.min_speed,
    )

    summary = compute_summary(result.records, result.total_candidates, config.speed_enabled)
    if not config.quiet:
        shown = select_rows(
            result.records, config.speed_enabled, config.port_allow_list, config.min_speed,
        )
        render_results(shown, config.speed_enabled)
        render_summary(summary)
        console.print(f"\n[dim]{rows} rows written to {config.output_file} in {result.elapsed_s:.0f}s[/dim]")

    if notifier.enabled:
        await notifier.send(build_report(summary, result.elapsed_s, result.started_at))
        output = Path(config.output_file)
        if output.is_file() and output.stat().st_size > 0:
            await notifier.send_file(output)
        else:
            render_warning(f"Result file {config.output_file} is missing or empty")
            await notifier.send(f"*⚠️ Error*\nResult file `{config.output_file}` is missing or empty")


if __name__ == "__main__":
    main()
