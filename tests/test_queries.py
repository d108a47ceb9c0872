import json
from datetime import timedelta

import pytest
from sqlalchemy import select, func

from optimizer_intelligence.apps import AppSupportService
from optimizer_intelligence.catalog import StrategyCatalog
from optimizer_intelligence.errors import ValidationFailedError
from optimizer_intelligence.intelligence.aggregator import day_version
from optimizer_intelligence.models.tables import AggregatedIntelligence, Telemetry
from optimizer_intelligence.tasks.maintenance import run_retention
from tests.conftest import make_telemetry


def _seed(services, when, **overrides):
    services.ingestor.ingest(make_telemetry(**overrides), received_at=when)


def test_empty_store_answers_no_data(services, now):
    assert services.queries.latest() == []
    assert services.queries.update_feed("apple_silicon") == {"status": "no_data"}
    assert services.queries.analytics(now)["status"] == "no_data"


def test_latest_filters_by_type_and_key(services, now, hours_ago):
    _seed(services, hours_ago(1))
    services.aggregator.run(now)
    rows = services.queries.latest("app_specific")
    assert {r["intelligence_key"] for r in rows} == {"browser", "chat"}
    [browser] = services.queries.latest("app_specific", key="browser")
    assert browser["version"] == day_version(now)
    assert browser["intelligence_data"]["sample_size"] == 1
    assert len(services.queries.latest(limit=50)) <= 10


def test_update_feed_versions(services, now, hours_ago):
    _seed(services, hours_ago(1))
    _seed(services, hours_ago(1), architecture="intel", memory_gb=32)
    services.aggregator.run(now)
    version = day_version(now)
    feed = services.queries.update_feed("apple_silicon")
    assert feed["status"] == "update_available"
    assert feed["version"] == version
    assert feed["global"]["sample_size"] == 2
    assert set(feed["app_specific"]) == {"browser", "chat"}
    assert list(feed["system_profiles"]) == ["apple_silicon_16gb"]
    assert set(services.queries.update_feed()["system_profiles"]) == {"apple_silicon_16gb", "intel_32gb"}
    assert services.queries.update_feed("apple_silicon", current_version=version) == {"status": "up_to_date",
                                                                                     "version": version}


def test_update_feed_serves_newest_version(services, now, hours_ago):
    _seed(services, hours_ago(1))
    services.aggregator.run(now)
    services.aggregator.run(now + timedelta(days=1))
    feed = services.queries.update_feed(current_version=day_version(now))
    assert feed["status"] == "update_available"
    assert feed["version"] == day_version(now + timedelta(days=1))


def test_analytics_summarises_recent_window(services, now, hours_ago):
    _seed(services, hours_ago(1), effectiveness_score=0.8)
    _seed(services, hours_ago(2), effectiveness_score=0.6)
    _seed(services, hours_ago(3), optimization_strategy="aggressive", effectiveness_score=0.9,
          memory_freed_mb=10.0, speed_gain_percent=0.0, app_optimizations=[])
    _seed(services, now - timedelta(days=3), effectiveness_score=0.1)
    out = services.queries.analytics(now)
    assert out["status"] == "ok"
    assert out["total_telemetry"] == 4
    assert out["recent_telemetry"] == 3
    assert out["low_trust_telemetry"] == 1
    assert out["strategy_effectiveness"] == {
        "aggressive": {"effectiveness": 0.9, "sample_size": 1},
        "balanced": {"effectiveness": 0.7, "sample_size": 2},
    }
    assert out["latest_version"] is None


def test_retention_prunes_old_telemetry_and_versions(services, session_factory, db_session, now, hours_ago):
    _seed(services, now - timedelta(days=400))
    _seed(services, hours_ago(1))
    for d in range(3):
        services.aggregator.run(now + timedelta(days=d))
    out = run_retention(now, telemetry_days=365, intelligence_versions=2, session_factory=session_factory)
    assert out["telemetry_deleted"] == 1
    assert out["intelligence_deleted"] == 4
    assert db_session.scalar(select(func.count(Telemetry.id))) == 1
    versions = db_session.scalars(
        select(AggregatedIntelligence.version).where(AggregatedIntelligence.intelligence_type == "global")
    ).all()
    assert sorted(versions) == sorted([day_version(now + timedelta(days=1)), day_version(now + timedelta(days=2))])


def test_retention_keeps_every_version_by_default(services, session_factory, now, hours_ago):
    _seed(services, hours_ago(1))
    services.aggregator.run(now)
    services.aggregator.run(now + timedelta(days=1))
    out = run_retention(now, session_factory=session_factory)
    assert out == {"status": "ok", "telemetry_deleted": 0, "intelligence_deleted": 0}


def test_catalog_load(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps({"version": "2024-06", "apps": {
        "com.google.Chrome": {"name": "Chrome", "strategies": {"conservative": {}, "aggressive": {}}},
    }}))
    catalog = StrategyCatalog.load(str(path))
    assert catalog.version == "2024-06"
    assert catalog.strategies_for("com.google.Chrome") == ["conservative", "aggressive"]
    assert catalog.strategies_for("com.example.Unknown") == ["conservative", "balanced", "aggressive"]
    assert StrategyCatalog.load(None).apps == {}
    path.write_text("[]")
    with pytest.raises(ValueError):
        StrategyCatalog.load(str(path))


def test_app_support_upserts(session_factory):
    apps = AppSupportService(session_factory, StrategyCatalog({"com.slack": {"strategies": ["conservative"]}}))
    first = apps.build("com.slack", "Slack", user_count=10, avg_memory_usage_mb=800, created_by="ops")
    assert first["support_level"] == "full"
    assert first["strategies_available"] == ["conservative"]
    apps.build("com.slack", "Slack", user_count=25)
    apps.build("com.google.Chrome", "Chrome")
    listed = apps.list_apps()
    assert [a["app_id"] for a in listed] == ["com.google.Chrome", "com.slack"]
    assert listed[1]["user_count"] == 25
    assert listed[1]["created_by"] == "ops"
    with pytest.raises(ValidationFailedError):
        apps.build("", "Nameless")
