"""Plain-text run report, as pushed through the notification channel.

Bold (``*...*``) and code (`` `...` ``) markers survive the MarkdownV2
escaping done by :mod:`edgeprobe.notify`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from edgeprobe.location import country_flag
from edgeprobe.models import Summary

START_MESSAGE = "*🚀 Latency/speed test started*"
FINISH_MESSAGE = "*🎉 Run finished*"
NO_RESULTS_MESSAGE = "*⚠️ No results*"


def format_duration(seconds: float) -> str:
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}h {minutes:02d}m {secs:02d}s"


def build_report(
    summary: Summary,
    elapsed_s: float,
    started_at: Optional[datetime] = None,
) -> str:
    """Render *summary* as the text of the final status message."""
    lines: list[str] = []

    if summary.survivors == 0:
        lines.append(NO_RESULTS_MESSAGE)
        lines.append(f"⏰ Elapsed: {format_duration(elapsed_s)}")
        lines.append(f"  - Candidates tested: {summary.total_candidates}")
        lines.append("  - Usable IPs: 0")
        return "\n".join(lines) + "\n"

    lines.append("*✅ Latency/speed test complete*")
    if started_at is not None:
        lines.append(f"⏰ Started: {started_at.strftime('%Y/%m/%d %H:%M:%S')}")
    lines.append(f"⏰ Elapsed: {format_duration(elapsed_s)}")
    lines.append(f"  - Candidates tested: {summary.total_candidates}")
    lines.append(f"  - Usable IPs: {summary.survivors}")

    lines.append("*🌍 Countries*")
    for code, count in summary.country_counts.items():
        name = summary.country_names.get(code) or code
        flag = country_flag(code)
        lines.append(f"- {flag} {name} ({count})")

    lines.append("*📈 Latency*")
    lines.append(f"  - Avg: {summary.latency.avg:.2f}ms")
    lines.append(f"  - Min: {summary.latency.min:.2f}ms")
    lines.append(f"  - Max: {summary.latency.max:.2f}ms")

    lines.append("*⚡️ Speed*")
    if summary.speed is not None:
        lines.append(f"  - Avg: {summary.speed.avg:.2f} MB/s")
        lines.append(f"  - Max: {summary.speed.max:.2f} MB/s")
        lines.append(f"  - Min: {summary.speed.min:.2f} MB/s")
    else:
        lines.append("  - not measured")

    return "\n".join(lines) + "\n"
