"""Data models for edgeprobe."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from edgeprobe.config import (
    DEFAULT_CLASSIFY_HOST,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MIN_SPEED,
    DEFAULT_OUTPUT_FILE,
    DEFAULT_OVERALL_BUDGET,
    DEFAULT_SPEED_TEST_URL,
    DEFAULT_SPEED_TIMEOUT,
    DEFAULT_SPEED_WORKERS,
)


@dataclass(frozen=True)
class Candidate:
    """A host/port pair to be probed."""

    host: str
    port: int

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ValueError(f"port out of range: {self.port}")

    def __str__(self) -> str:
        return f"{self.host} {self.port}"


@dataclass(frozen=True)
class LocationInfo:
    """Descriptive attributes of an edge facility."""

    region: str = ""
    country_code: str = ""
    country_name: str = ""
    city: str = ""
    lat: Optional[float] = None
    lon: Optional[float] = None


@dataclass(frozen=True)
class ProbeRecord:
    """A candidate that answered the classifying request in budget."""

    host: str
    port: int
    facility_code: str
    connect_latency_ms: float  # TCP connect only, not the full round trip
    location: Optional[LocationInfo] = None

    @property
    def country_code(self) -> str:
        return self.location.country_code if self.location else ""

    @property
    def country_name(self) -> str:
        return self.location.country_name if self.location else ""

    @property
    def region(self) -> str:
        return self.location.region if self.location else ""

    @property
    def city(self) -> str:
        return self.location.city if self.location else ""


@dataclass(frozen=True)
class RankedRecord:
    """A probe survivor, with download speed when speed testing ran."""

    probe: ProbeRecord
    download_speed_mbps: Optional[float] = None  # None = speed test disabled

    @property
    def host(self) -> str:
        return self.probe.host

    @property
    def port(self) -> int:
        return self.probe.port

    @property
    def connect_latency_ms(self) -> float:
        return self.probe.connect_latency_ms


@dataclass
class SpeedStats:
    """Download speed extrema and average in MB/s."""

    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0


@dataclass
class LatencyStats:
    """Connect latency extrema and average in milliseconds."""

    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0


@dataclass
class Summary:
    """Statistics derived once from the final record set."""

    total_candidates: int = 0
    survivors: int = 0
    country_counts: dict[str, int] = field(default_factory=dict)
    country_names: dict[str, str] = field(default_factory=dict)
    latency: LatencyStats = field(default_factory=LatencyStats)
    speed: Optional[SpeedStats] = None  # only when speed testing is active


@dataclass
class ScanConfig:
    """Configuration for a scan run."""

    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    overall_budget: float = DEFAULT_OVERALL_BUDGET
    use_tls: bool = True
    ca_file: Optional[str] = None  # replaces the system trust store
    classify_host: str = DEFAULT_CLASSIFY_HOST
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    speed_workers: int = DEFAULT_SPEED_WORKERS  # 0 disables speed testing
    speed_test_url: str = DEFAULT_SPEED_TEST_URL
    speed_timeout: float = DEFAULT_SPEED_TIMEOUT
    min_speed: float = DEFAULT_MIN_SPEED
    port_allow_list: frozenset[int] = frozenset()
    output_file: str = DEFAULT_OUTPUT_FILE
    quiet: bool = False
    verbose: bool = False

    @property
    def speed_enabled(self) -> bool:
        return self.speed_workers > 0


@dataclass
class ScanResult:
    """Complete scan run results."""

    records: list[RankedRecord] = field(default_factory=list)
    total_candidates: int = 0
    probe_survivors: int = 0
    config: Optional[ScanConfig] = None
    started_at: Optional[datetime] = None
    elapsed_s: float = 0.0
