"""CSV export of ranked scan results."""

from __future__ import annotations

import csv
import io
import logging
from typing import Iterable, Sequence

from edgeprobe.exceptions import SetupError
from edgeprobe.models import RankedRecord

logger = logging.getLogger(__name__)

BASE_COLUMNS = [
    "ip",
    "port",
    "tls",
    "facility",
    "region",
    "country_code",
    "country",
    "city",
    "latency",
]
SPEED_COLUMN = "download_speed_mbps"


def select_rows(
    records: Iterable[RankedRecord],
    include_speed: bool,
    port_allow_list: Iterable[int] = (),
    min_speed: float = 0.0,
) -> list[RankedRecord]:
    """Apply the output-time filters, keeping the ranked order.

    The port allow-list applies only when non-empty; the minimum speed only
    when speed testing ran.
    """
    allowed = set(port_allow_list)
    rows = []
    for r in records:
        if allowed and r.port not in allowed:
            continue
        if include_speed and (r.download_speed_mbps or 0.0) < min_speed:
            continue
        rows.append(r)
    return rows


def export_csv(records: Sequence[RankedRecord], include_speed: bool, use_tls: bool) -> str:
    """Export already-filtered records as a CSV string."""
    output = io.StringIO()
    writer = csv.writer(output)

    header = list(BASE_COLUMNS)
    if include_speed:
        header.append(SPEED_COLUMN)
    writer.writerow(header)

    for r in records:
        p = r.probe
        row = [
            p.host,
            p.port,
            str(use_tls).lower(),
            p.facility_code,
            p.region,
            p.country_code,
            p.country_name,
            p.city,
            f"{p.connect_latency_ms:.0f} ms",
        ]
        if include_speed:
            row.append(f"{r.download_speed_mbps or 0.0:.2f}")
        writer.writerow(row)

    return output.getvalue()


def write_to_file(content: str, filepath: str) -> None:
    """Write export content to a file.

    Raises
    ------
    SetupError
        If the file cannot be created.
    """
    try:
        with open(filepath, "w", encoding="utf-8", newline="") as f:
            f.write(content)
    except OSError as exc:
        raise SetupError(f"Cannot create output file {filepath}: {exc}") from exc


class CsvReportSink:
    """Writes ranked records to a CSV file after output-time filtering."""

    def __init__(self, filepath: str, use_tls: bool = True):
        self.filepath = filepath
        self.use_tls = use_tls

    def write(
        self,
        records: Sequence[RankedRecord],
        include_speed: bool,
        port_allow_list: Iterable[int] = (),
        min_speed: float = 0.0,
    ) -> int:
        """Filter, write and return the number of data rows written."""
        rows = select_rows(records, include_speed, port_allow_list, min_speed)
        write_to_file(export_csv(rows, include_speed, self.use_tls), self.filepath)
        logger.info("Wrote %d rows to %s", len(rows), self.filepath)
        return len(rows)
