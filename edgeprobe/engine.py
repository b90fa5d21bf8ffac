"""Probe and speed engines for edgeprobe.

Each candidate goes through, at most:

  DNS (names only) -> TCP -> [TLS] -> GET /cdn-cgi/trace

on a single connection.  The TCP connect is timed on its own with
time.perf_counter(); the TLS upgrade and the request reuse that socket, so
the recorded latency is the dial alone while the overall budget covers the
whole exchange.

The speed engine re-dials a survivor and times one bulk download over the
new connection.

Public API:
    probe_candidate  -- classify and time one candidate
    measure_speed    -- download-speed measurement for one survivor
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Optional

from edgeprobe import wire
from edgeprobe.config import CLASSIFY_MARKER, FACILITY_PATTERN, TRACE_PATH
from edgeprobe.location import LocationDirectory
from edgeprobe.models import Candidate, ProbeRecord, RankedRecord, ScanConfig

logger = logging.getLogger(__name__)

_FACILITY_RE = re.compile(FACILITY_PATTERN)


def classify_body(body: str) -> Optional[str]:
    """Return the facility code if *body* came from the expected edge stack."""
    if CLASSIFY_MARKER not in body:
        return None
    match = _FACILITY_RE.search(body)
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# Probe engine
# ---------------------------------------------------------------------------

async def probe_candidate(
    candidate: Candidate,
    config: ScanConfig,
    locations: LocationDirectory,
) -> Optional[ProbeRecord]:
    """Dial *candidate* once and send one classifying request over that socket.

    Returns a :class:`ProbeRecord` only when the connect finished within
    ``config.connect_timeout``, the full response arrived within
    ``config.overall_budget`` of the connect attempt starting, the body
    carries the user-agent echo marker and a ``colo=`` facility code.
    Anything else returns None; nothing is retried.
    """
    host, port = candidate.host, candidate.port
    writer: asyncio.StreamWriter | None = None

    try:
        # ---- DNS (names only, not part of the connect budget) ----
        try:
            ip = await wire.resolve_host(host, config.connect_timeout)
        except Exception as exc:
            logger.debug("DNS failed for %s: %s", host, exc)
            return None

        # ---- TCP ----
        started = time.perf_counter()
        deadline = started + config.overall_budget
        try:
            reader, writer, connect_ms = await wire.open_connection(
                ip, port, config.connect_timeout,
            )
        except Exception as exc:
            logger.debug("TCP connect failed for %s:%d: %s", host, port, exc)
            return None

        # ---- TLS + classifying request on the same socket ----
        try:
            if config.use_tls:
                await wire.upgrade_tls(writer, config.classify_host, deadline, config.ca_file)
            result = await wire.http_get(
                reader, writer, config.classify_host, TRACE_PATH, deadline,
            )
        except asyncio.TimeoutError:
            logger.debug("Probe budget exceeded for %s:%d", host, port)
            return None
        except Exception as exc:
            logger.debug("Classifying request failed for %s:%d: %s", host, port, exc)
            return None

        if time.perf_counter() > deadline:
            logger.debug("Probe budget exceeded for %s:%d", host, port)
            return None

    finally:
        wire.safe_close(writer)

    code = classify_body(result.body.decode(errors="replace"))
    if code is None:
        logger.debug("%s:%d did not answer as an edge node", host, port)
        return None

    location = locations.lookup(code)
    if location is None:
        logger.info(
            "Found edge %s port %d, facility %s (location unknown), %.0f ms",
            host, port, code, connect_ms,
        )
    else:
        logger.info(
            "Found edge %s port %d in %s, %.0f ms",
            host, port, location.city or code, connect_ms,
        )

    return ProbeRecord(
        host=host,
        port=port,
        facility_code=code,
        connect_latency_ms=connect_ms,
        location=location,
    )


# ---------------------------------------------------------------------------
# Speed engine
# ---------------------------------------------------------------------------

async def measure_speed(
    record: ProbeRecord,
    config: ScanConfig,
) -> Optional[RankedRecord]:
    """Re-dial *record* and time one download of ``config.speed_test_url``.

    Returns None only when the re-dial fails.  If the request fails or no
    response arrives within ``config.speed_timeout`` the record is kept with
    speed 0; a body still streaming at the deadline, or cut short by a
    connection reset, is measured on the bytes received so far.
    """
    host, port = record.host, record.port
    speed_host, speed_path = wire.split_target(config.speed_test_url)
    writer: asyncio.StreamWriter | None = None

    try:
        try:
            ip = await wire.resolve_host(host, config.connect_timeout)
            reader, writer, _ = await wire.open_connection(
                ip, port, config.connect_timeout,
            )
        except Exception as exc:
            logger.debug("Speed test re-dial failed for %s:%d: %s", host, port, exc)
            return None

        logger.debug("Testing download speed of %s port %d", host, port)
        started = time.perf_counter()
        deadline = started + config.speed_timeout
        try:
            if config.use_tls:
                await wire.upgrade_tls(writer, speed_host, deadline, config.ca_file)
            stats = await wire.stream_download(
                reader, writer, speed_host, speed_path, deadline,
            )
        except Exception as exc:
            logger.debug("Speed test failed for %s:%d: %r", host, port, exc)
            return RankedRecord(probe=record, download_speed_mbps=0.0)

        elapsed = time.perf_counter() - started
    finally:
        wire.safe_close(writer)

    speed = stats.bytes_received / elapsed / 1024 / 1024 if elapsed > 0 else 0.0
    logger.info("Download speed of %s port %d: %.2f MB/s", host, port, speed)
    return RankedRecord(probe=record, download_speed_mbps=round(speed, 2))
