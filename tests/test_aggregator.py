from datetime import datetime, timedelta
from itertools import chain, repeat

import pytest
from sqlalchemy import select, func

from optimizer_intelligence.intelligence.aggregator import (
    IntelligenceAggregator,
    day_version,
    profile_key,
    confidence_for,
)
from optimizer_intelligence.models.tables import AggregatedIntelligence
from tests.conftest import make_telemetry


def _rows(db_session, intelligence_type=None):
    q = select(AggregatedIntelligence).order_by(AggregatedIntelligence.intelligence_key, AggregatedIntelligence.version)
    if intelligence_type:
        q = q.where(AggregatedIntelligence.intelligence_type == intelligence_type)
    db_session.expire_all()
    return db_session.scalars(q).all()


def _ingest(services, when, n=1, **overrides):
    for _ in range(n):
        services.ingestor.ingest(make_telemetry(**overrides), received_at=when)


def test_helpers():
    assert profile_key("apple_silicon", 16) == "apple_silicon_16gb"
    assert profile_key("intel", 12) == "intel_8gb"
    assert profile_key("intel", 4) == "intel_0gb"
    assert confidence_for(1) == 0.01
    assert confidence_for(250) == 1.0
    assert day_version(datetime(1970, 1, 4, 23, 30)) == "v3"


def test_global_intelligence_from_window(services, db_session, now, hours_ago):
    for eff, mem in ((0.8, 500.0), (0.9, 600.0), (0.7, 400.0)):
        _ingest(services, hours_ago(2), memory_freed_mb=mem, effectiveness_score=eff)
    out = services.aggregator.run(now)
    assert out["status"] == "ok"
    assert out["samples"] == 3
    assert out["passes"] == ["global", "app_specific", "system_profile"]
    [row] = _rows(db_session, "global")
    assert row.intelligence_key == "strategy_effectiveness"
    assert row.version == day_version(now)
    assert row.intelligence_data["balanced"] == {"effectiveness": 0.8, "avg_memory_recovery": 500.0, "sample_size": 3}
    assert row.intelligence_data["low_trust_samples"] == 0
    assert row.sample_size == 3
    assert row.confidence_score == pytest.approx(0.03)


def test_rerun_same_day_rewrites_rows(services, db_session, now, hours_ago):
    _ingest(services, hours_ago(1), n=2)
    services.aggregator.run(now)
    first = len(_rows(db_session))
    _ingest(services, hours_ago(1))
    services.aggregator.run(now + timedelta(minutes=5))
    rows = _rows(db_session)
    assert len(rows) == first
    [glob] = [r for r in rows if r.intelligence_type == "global"]
    assert glob.sample_size == 3


def test_rerun_same_day_drops_keys_that_left_the_window(services, db_session, now, hours_ago):
    _ingest(services, now - timedelta(days=6, hours=23), memory_gb=8, app_optimizations=[
        {"app_category": "video", "memory_freed_mb": 300.0, "action_count": 1, "success": True},
    ])
    _ingest(services, hours_ago(1))
    services.aggregator.run(now)
    assert "video" in {r.intelligence_key for r in _rows(db_session, "app_specific")}
    assert len(_rows(db_session, "system_profile")) == 2

    later = now + timedelta(hours=11)
    assert day_version(later) == day_version(now)
    out = services.aggregator.run(later)
    assert out["samples"] == 1
    assert {r.intelligence_key for r in _rows(db_session, "app_specific")} == {"browser", "chat"}
    assert [r.intelligence_key for r in _rows(db_session, "system_profile")] == ["apple_silicon_16gb"]
    [glob] = _rows(db_session, "global")
    assert glob.sample_size == 1


def test_rerun_same_day_over_empty_window_clears_that_version(services, db_session, now, hours_ago):
    _ingest(services, now - timedelta(days=6, hours=23))
    services.aggregator.run(now - timedelta(days=1))
    services.aggregator.run(now)
    assert {r.version for r in _rows(db_session)} == {day_version(now - timedelta(days=1)), day_version(now)}
    out = services.aggregator.run(now + timedelta(hours=11))
    assert out["status"] == "no_data"
    assert {r.version for r in _rows(db_session)} == {day_version(now - timedelta(days=1))}

def test_duplicate_ingest_does_not_change_aggregates(services, db_session, now, hours_ago):
    payload = make_telemetry(session_id="only-once", effectiveness_score=0.6)
    services.ingestor.ingest(payload, received_at=hours_ago(1))
    services.ingestor.ingest(payload, received_at=hours_ago(1))
    services.aggregator.run(now)
    [row] = _rows(db_session, "global")
    assert row.sample_size == 1
    assert row.intelligence_data["balanced"]["effectiveness"] == 0.6


def test_new_day_adds_version_and_keeps_previous(services, db_session, now, hours_ago):
    _ingest(services, hours_ago(1))
    services.aggregator.run(now)
    services.aggregator.run(now + timedelta(days=1))
    versions = [r.version for r in _rows(db_session, "global")]
    assert sorted(versions) == sorted({day_version(now), day_version(now + timedelta(days=1))})


def test_app_specific_rows(services, db_session, now, hours_ago):
    _ingest(services, hours_ago(1), n=2)
    _ingest(services, hours_ago(1), app_optimizations=[
        {"app_category": "browser", "memory_freed_mb": 100.0, "action_count": 4, "success": False},
    ])
    services.aggregator.run(now)
    rows = {r.intelligence_key: r for r in _rows(db_session, "app_specific")}
    assert set(rows) == {"browser", "chat"}
    browser = rows["browser"].intelligence_data
    assert browser["sample_size"] == 3
    assert browser["avg_memory_recovery"] == pytest.approx(300.0)
    assert browser["success_rate"] == pytest.approx(0.6667)
    assert browser["total_actions"] == 8
    assert rows["chat"].intelligence_data["success_rate"] == 1.0


def test_system_profiles_recommend_best_strategy(services, db_session, now, hours_ago):
    _ingest(services, hours_ago(1), n=2, effectiveness_score=0.5, optimization_strategy="conservative")
    _ingest(services, hours_ago(1), n=2, effectiveness_score=0.9, optimization_strategy="aggressive")
    _ingest(services, hours_ago(1), memory_gb=8, effectiveness_score=0.0)
    services.aggregator.run(now)
    rows = {r.intelligence_key: r for r in _rows(db_session, "system_profile")}
    assert set(rows) == {"apple_silicon_16gb", "apple_silicon_8gb"}
    big = rows["apple_silicon_16gb"].intelligence_data
    assert big["recommended_strategy"] == "aggressive"
    assert big["best_strategy_effectiveness"] == 0.9
    assert big["avg_effectiveness"] == pytest.approx(0.7)
    small = rows["apple_silicon_8gb"]
    assert small.intelligence_data["recommended_strategy"] == "balanced"
    assert small.confidence_score == pytest.approx(0.01)


def test_empty_window_writes_nothing(services, db_session, now, hours_ago):
    _ingest(services, now - timedelta(days=10))
    out = services.aggregator.run(now)
    assert out["status"] == "no_data"
    assert out["version"] == day_version(now)
    assert _rows(db_session) == []


def test_window_excludes_old_and_caps_samples(session_factory, services, db_session, now, hours_ago):
    _ingest(services, now - timedelta(days=8), effectiveness_score=0.1)
    _ingest(services, hours_ago(3), n=3, effectiveness_score=0.2)
    _ingest(services, hours_ago(1), n=2, effectiveness_score=0.9)
    agg = IntelligenceAggregator(session_factory, window_days=7, max_samples=2, chunk_size=1)
    out = agg.run(now)
    assert out["samples"] == 2
    [row] = _rows(db_session, "global")
    assert row.intelligence_data["balanced"]["effectiveness"] == 0.9


def test_budget_exhaustion_keeps_completed_passes(session_factory, services, db_session, now, hours_ago):
    _ingest(services, hours_ago(1), n=2)
    clock = chain([0.0, 0.0], repeat(1000.0))
    agg = IntelligenceAggregator(session_factory, budget_seconds=10, clock=lambda: next(clock))
    out = agg.run(now)
    assert out["status"] == "timeout"
    assert out["passes"] == ["global"]
    assert {r.intelligence_type for r in _rows(db_session)} == {"global"}
    assert db_session.scalar(select(func.count(AggregatedIntelligence.id))) == 1
