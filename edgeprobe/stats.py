"""Ranking and statistical aggregation of scan results."""

from __future__ import annotations

from typing import Sequence

from edgeprobe.config import UNKNOWN_COUNTRY
from edgeprobe.models import LatencyStats, RankedRecord, SpeedStats, Summary


def rank_records(records: Sequence[RankedRecord], speed_enabled: bool) -> list[RankedRecord]:
    """Order records by speed (descending) when speed testing ran, else by latency.

    The sort is stable, so ties keep the order in which records were consumed.
    """
    if speed_enabled:
        return sorted(records, key=lambda r: r.download_speed_mbps or 0.0, reverse=True)
    return sorted(records, key=lambda r: r.connect_latency_ms)


def compute_summary(
    records: Sequence[RankedRecord],
    total_candidates: int,
    speed_enabled: bool,
) -> Summary:
    """Compute per-country counts and latency/speed statistics."""
    summary = Summary(total_candidates=total_candidates, survivors=len(records))

    for r in records:
        code = r.probe.country_code or UNKNOWN_COUNTRY
        summary.country_counts[code] = summary.country_counts.get(code, 0) + 1
        if code not in summary.country_names:
            summary.country_names[code] = r.probe.country_name

    summary.country_counts = dict(sorted(summary.country_counts.items()))

    latencies = [r.connect_latency_ms for r in records]
    summary.latency = _extrema(latencies, LatencyStats)

    if speed_enabled:
        speeds = [r.download_speed_mbps or 0.0 for r in records]
        summary.speed = _extrema(speeds, SpeedStats)

    return summary


def _extrema(values: list[float], cls):
    if not values:
        return cls()
    return cls(
        min=min(values),
        max=max(values),
        avg=round(sum(values) / len(values), 2),
    )
