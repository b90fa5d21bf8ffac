"""Two-stage scan orchestration.

Stage one launches one probe task per candidate; stage two runs a small
fixed set of speed workers over the probe survivors.  Both stages draw from
one ``asyncio.Semaphore``: each probe, and each individual speed measurement,
holds a slot from dial to last byte.

Survivors travel through a :class:`SurvivorChannel` that only the
coordinator closes, once every probe task has finished.

Public API:
    run_probe_phase  -- stage one, returns the closed survivor channel
    run_speed_phase  -- stage two (or pass-through when disabled)
    run_scan         -- both stages plus ranking
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from datetime import datetime
from typing import AsyncIterator, Callable, Optional, Sequence

from edgeprobe import wire
from edgeprobe.config import TARGET_OPEN_FILES
from edgeprobe.engine import measure_speed, probe_candidate
from edgeprobe.location import LocationDirectory
from edgeprobe.models import Candidate, ProbeRecord, RankedRecord, ScanConfig, ScanResult
from edgeprobe.stats import rank_records

logger = logging.getLogger(__name__)

# Type alias for the progress callback.
# Signature: (phase, completed, total)
ProgressCallback = Callable[[str, int, int], None]

_CLOSED = object()


class ChannelClosedError(RuntimeError):
    """Raised on a send to, or a second close of, a closed channel."""


class SurvivorChannel:
    """Bounded hand-off of probe survivors to the speed stage.

    Any number of consumers may iterate the channel concurrently; iteration
    ends once the channel is closed and drained.
    """

    def __init__(self, capacity: int):
        # One extra slot for the close marker
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(capacity, 0) + 1)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        """Number of records waiting (excludes the close marker)."""
        size = self._queue.qsize()
        return size - 1 if self._closed and size else size

    async def send(self, record: ProbeRecord) -> None:
        if self._closed:
            raise ChannelClosedError("send on closed channel")
        await self._queue.put(record)

    def close(self) -> None:
        if self._closed:
            raise ChannelClosedError("channel already closed")
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[ProbeRecord]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                # Leave the marker for the other consumers
                self._queue.put_nowait(_CLOSED)
                return
            yield item


class _Progress:
    """Best-effort completion counter; display only."""

    def __init__(self, phase: str, total: int, callback: Optional[ProgressCallback]):
        self.phase = phase
        self.total = total
        self.completed = 0
        self._callback = callback

    def tick(self) -> None:
        self.completed += 1
        if self._callback:
            self._callback(self.phase, self.completed, self.total)


# ---------------------------------------------------------------------------
# Stage one: probing
# ---------------------------------------------------------------------------

async def run_probe_phase(
    candidates: Sequence[Candidate],
    config: ScanConfig,
    locations: LocationDirectory,
    semaphore: asyncio.Semaphore,
    progress_callback: ProgressCallback | None = None,
) -> SurvivorChannel:
    """Probe every candidate and return the closed channel of survivors.

    A task is only created once a semaphore slot is free, so at most
    ``config.max_concurrency`` probes exist at any time.
    """
    total = len(candidates)
    channel = SurvivorChannel(total)
    progress = _Progress("probe", total, progress_callback)

    async def _probe(candidate: Candidate) -> None:
        try:
            record = await probe_candidate(candidate, config, locations)
            if record is not None:
                await channel.send(record)
        except Exception:
            logger.exception("Unexpected error probing %s", candidate)
        finally:
            semaphore.release()
            progress.tick()

    tasks: list[asyncio.Task] = []
    for candidate in candidates:
        await semaphore.acquire()
        tasks.append(asyncio.create_task(_probe(candidate)))

    # Completion barrier: the channel is closed here and nowhere else
    await asyncio.gather(*tasks)
    channel.close()

    logger.info("Probe phase finished: %d of %d candidates answered", channel.qsize(), total)
    return channel


# ---------------------------------------------------------------------------
# Stage two: speed testing
# ---------------------------------------------------------------------------

async def run_speed_phase(
    channel: SurvivorChannel,
    config: ScanConfig,
    semaphore: asyncio.Semaphore,
    progress_callback: ProgressCallback | None = None,
) -> list[RankedRecord]:
    """Drain *channel* through ``config.speed_workers`` long-lived workers.

    With zero workers every survivor passes through without a speed value.
    """
    if not config.speed_enabled:
        return [RankedRecord(probe=record) async for record in channel]

    results: list[RankedRecord] = []
    results_lock = asyncio.Lock()
    progress = _Progress("speed", channel.qsize(), progress_callback)

    async def _worker(worker_id: int) -> None:
        async for record in channel:
            try:
                async with semaphore:
                    ranked = await measure_speed(record, config)
            except Exception:
                logger.exception("Unexpected error in speed worker %d for %s:%d",
                                 worker_id, record.host, record.port)
                ranked = None
            if ranked is not None:
                async with results_lock:
                    results.append(ranked)
            progress.tick()

    await asyncio.gather(*(_worker(i) for i in range(config.speed_workers)))
    return results


# ---------------------------------------------------------------------------
# Whole scan
# ---------------------------------------------------------------------------

async def run_scan(
    candidates: Sequence[Candidate],
    config: ScanConfig,
    locations: LocationDirectory,
    progress_callback: ProgressCallback | None = None,
) -> ScanResult:
    """Run both stages and return the ranked records.

    Parameters
    ----------
    candidates:
        De-duplicated candidates, in input order.
    config:
        Scan parameters (budgets, pool sizes, speed test settings).
    locations:
        Directory used to resolve facility codes.
    progress_callback:
        Optional callable invoked whenever a probe or speed test completes.
        Signature: ``(phase, completed, total)``
    """
    started_at = datetime.now().astimezone()
    t0 = time.perf_counter()
    semaphore = asyncio.Semaphore(config.max_concurrency)
    if config.use_tls:
        wire.build_ssl_context(config.ca_file)

    channel = await run_probe_phase(
        candidates, config, locations, semaphore, progress_callback,
    )
    survivors = channel.qsize()

    records = await run_speed_phase(channel, config, semaphore, progress_callback)

    return ScanResult(
        records=rank_records(records, config.speed_enabled),
        total_candidates=len(candidates),
        probe_survivors=survivors,
        config=config,
        started_at=started_at,
        elapsed_s=round(time.perf_counter() - t0, 3),
    )


def raise_open_file_limit(target: int = TARGET_OPEN_FILES) -> int:
    """Raise the soft open-file limit towards *target* on Linux.

    Returns the soft limit in effect afterwards (0 where unsupported).
    """
    if not sys.platform.startswith("linux"):
        return 0

    import resource

    soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    desired = target
    if hard != resource.RLIM_INFINITY:
        desired = min(desired, hard)
    if soft >= desired:
        return soft
    try:
        resource.setrlimit(resource.RLIMIT_NOFILE, (desired, hard))
    except (ValueError, OSError) as exc:
        logger.warning("Could not raise open file limit to %d: %s", desired, exc)
        return soft
    logger.debug("Raised open file limit from %d to %d", soft, desired)
    return desired
