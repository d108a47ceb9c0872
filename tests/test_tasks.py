from datetime import datetime, timedelta

import pytest
from tenacity import wait_none

from optimizer_intelligence.errors import StorageUnavailableError, ValidationFailedError
from optimizer_intelligence.infrastructure.celery_app import celery_app
from optimizer_intelligence.tasks.aggregation import aggregate_intelligence
from optimizer_intelligence.tasks.ingestion import ingest_telemetry, ingest_telemetry_batch, storage_retry
from optimizer_intelligence.tasks.maintenance import enforce_retention
from tests.conftest import make_telemetry


def test_beat_schedule_registers_nightly_jobs():
    tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert tasks == {
        "optimizer_intelligence.tasks.aggregation.aggregate_intelligence",
        "optimizer_intelligence.tasks.maintenance.enforce_retention",
    }


def test_ingest_task_runs_body(engine, settings):
    payload = make_telemetry(session_id="task-1")
    assert ingest_telemetry(payload)["status"] == "accepted"
    assert ingest_telemetry(payload)["status"] == "duplicate"
    with pytest.raises(ValidationFailedError):
        ingest_telemetry(make_telemetry(architecture=""))


def test_batch_task_counts(engine, settings):
    out = ingest_telemetry_batch([make_telemetry(), make_telemetry(memory_gb="lots")])
    assert out["accepted"] == 1
    assert out["rejected"][0]["error"] == "validation_failed"


def test_aggregate_task_accepts_iso_timestamp(engine, settings):
    now = datetime.utcnow()
    ingest_telemetry(make_telemetry())
    out = aggregate_intelligence((now + timedelta(minutes=1)).isoformat())
    assert out["status"] == "ok"
    assert out["samples"] == 1


def test_retention_task(engine, settings):
    assert enforce_retention() == {"status": "ok", "telemetry_deleted": 0, "intelligence_deleted": 0}


def test_storage_retry_retries_only_unavailable_store():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise StorageUnavailableError("down")
        return "ok"

    assert storage_retry(flaky).retry_with(wait=wait_none())() == "ok"
    assert len(calls) == 3

    def invalid():
        calls.append(1)
        raise ValidationFailedError("bad")

    calls.clear()
    with pytest.raises(ValidationFailedError):
        storage_retry(invalid).retry_with(wait=wait_none())()
    assert len(calls) == 1


def test_storage_retry_gives_up_after_three_attempts():
    calls = []

    def down():
        calls.append(1)
        raise StorageUnavailableError("still down")

    with pytest.raises(StorageUnavailableError):
        storage_retry(down).retry_with(wait=wait_none())()
    assert len(calls) == 3
