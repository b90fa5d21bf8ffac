from edgeprobe.models import LocationInfo, ProbeRecord, RankedRecord
from edgeprobe.stats import compute_summary, rank_records

US = LocationInfo(region="北美洲", country_code="US", country_name="美国", city="洛杉矶")
JP = LocationInfo(region="亚洲", country_code="JP", country_name="日本", city="东京")


def _ranked(host: str, latency: float, speed=None, location=US) -> RankedRecord:
    probe = ProbeRecord(
        host=host, port=443, facility_code="LAX", connect_latency_ms=latency, location=location,
    )
    return RankedRecord(probe=probe, download_speed_mbps=speed)


def test_rank_by_speed_descending_with_stable_ties() -> None:
    records = [
        _ranked("a", 50, 1.5),
        _ranked("b", 10, 7.25),
        _ranked("c", 20, 1.5),
        _ranked("d", 30, 0.0),
    ]
    ranked = rank_records(records, speed_enabled=True)
    assert [r.host for r in ranked] == ["b", "a", "c", "d"]


def test_rank_by_latency_when_speed_disabled() -> None:
    records = [_ranked("a", 50), _ranked("b", 10), _ranked("c", 20)]
    ranked = rank_records(records, speed_enabled=False)
    assert [r.host for r in ranked] == ["b", "c", "a"]


def test_rank_is_idempotent() -> None:
    records = [_ranked("a", 50, 3.0), _ranked("b", 10, 3.0), _ranked("c", 20, 9.0)]
    once = rank_records(records, speed_enabled=True)
    assert rank_records(once, speed_enabled=True) == once


def test_summary_counts_countries_and_unknowns() -> None:
    records = [
        _ranked("a", 10, 4.0, US),
        _ranked("b", 30, 2.0, JP),
        _ranked("c", 20, 6.0, US),
        _ranked("d", 40, 0.0, None),
    ]
    summary = compute_summary(records, total_candidates=10, speed_enabled=True)

    assert summary.total_candidates == 10
    assert summary.survivors == 4
    assert summary.country_counts == {"JP": 1, "UNKNOWN": 1, "US": 2}
    assert sum(summary.country_counts.values()) == summary.survivors
    assert summary.country_names["US"] == "美国"
    assert summary.latency.min == 10
    assert summary.latency.max == 40
    assert summary.latency.avg == 25.0
    assert summary.speed.max == 6.0
    assert summary.speed.min == 0.0
    assert summary.speed.avg == 3.0


def test_summary_without_speed_or_records() -> None:
    summary = compute_summary([], total_candidates=5, speed_enabled=False)
    assert summary.survivors == 0
    assert summary.country_counts == {}
    assert summary.latency.avg == 0.0
    assert summary.speed is None
