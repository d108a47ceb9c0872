import pytest
from sqlalchemy import select, func

from optimizer_intelligence.errors import ValidationFailedError
from optimizer_intelligence.models.tables import Telemetry
from tests.conftest import make_telemetry


def _count(db_session):
    return db_session.scalar(select(func.count(Telemetry.id)))


def test_ingest_accepts_and_persists(services, db_session, now):
    out = services.ingestor.ingest(make_telemetry(session_id="s-accept", optimization_strategy="Balanced"), received_at=now)
    assert out["status"] == "accepted"
    assert out["session_id"] == "s-accept"
    assert out["validation_passed"] is True
    assert out["validation_confidence"] == pytest.approx(0.9)
    assert out["low_trust"] is False
    row = db_session.scalar(select(Telemetry).where(Telemetry.session_id == "s-accept"))
    assert row.id == out["id"]
    assert row.optimization_strategy == "balanced"
    assert row.created_at == now
    assert len(row.app_optimizations) == 2


def test_failed_validation_battery_stores_low_trust_record(services, db_session):
    out = services.ingestor.ingest(make_telemetry(memory_freed_mb=50.0, speed_gain_percent=0.0, app_optimizations=[]))
    assert out["status"] == "accepted"
    assert out["low_trust"] is True
    assert out["validation_passed"] is False
    assert _count(db_session) == 1


def test_duplicate_session_is_idempotent(services, db_session):
    payload = make_telemetry(session_id="s-dup")
    first = services.ingestor.ingest(payload)
    second = services.ingestor.ingest(dict(payload, memory_freed_mb=9999.0))
    assert first["status"] == "accepted"
    assert second == {"status": "duplicate", "session_id": "s-dup"}
    assert _count(db_session) == 1
    assert db_session.scalar(select(Telemetry.memory_freed_mb)) == 600.0


@pytest.mark.parametrize("overrides, field", [
    ({"session_id": ""}, "session_id"),
    ({"memory_gb": -4}, "memory_gb"),
    ({"effectiveness_score": 1.5}, "effectiveness_score"),
    ({"cpu_usage": 140}, "cpu_usage"),
])
def test_malformed_record_rejected_before_write(services, db_session, overrides, field):
    with pytest.raises(ValidationFailedError) as exc:
        services.ingestor.ingest(make_telemetry(**overrides))
    assert exc.value.message.startswith(f"validation_error:{field}")
    assert exc.value.http_status == 422
    assert _count(db_session) == 0


def test_missing_required_field_rejected(services, db_session):
    payload = make_telemetry()
    del payload["device_id"]
    with pytest.raises(ValidationFailedError):
        services.ingestor.ingest(payload)
    assert _count(db_session) == 0


def test_effectiveness_derived_when_absent(services, db_session):
    out = services.ingestor.ingest(make_telemetry(effectiveness_score=None, memory_freed_mb=500.0, speed_gain_percent=25.0,
                                                  errors=["timeout", "denied"]))
    assert out["effectiveness_score"] == pytest.approx(0.4)


def test_metrics_snapshots_are_scored(services, db_session):
    before = {"memory_pressure": 4, "cpu_usage": 95, "memory_used_mb": 15000, "memory_total_mb": 16000}
    after = {"memory_pressure": 1, "cpu_usage": 10, "memory_used_mb": 14000, "memory_total_mb": 16000}
    out = services.ingestor.ingest(make_telemetry(session_id="s-metrics", metrics_before=before, metrics_after=after))
    assert out["score_estimated"] is False
    row = db_session.scalar(select(Telemetry).where(Telemetry.session_id == "s-metrics"))
    assert row.score_after > row.score_before
    assert row.memory_pressure == 4
    assert row.cpu_usage == 95


def test_incomplete_metrics_are_flagged_estimated(services, db_session):
    out = services.ingestor.ingest(make_telemetry(metrics_before={"memory_pressure": 1}, metrics_after={"memory_pressure": 1}))
    assert out["status"] == "accepted"
    assert out["score_estimated"] is True
