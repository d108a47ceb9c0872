"""
Pytest configuration and fixtures

Every test gets its own sqlite file created from the ORM metadata and wired in through
``db.override_engine`` so that services, tasks and the API all see the same database.
"""
import os
from datetime import datetime, timedelta

import pytest

os.environ.setdefault("APP_ENV", "test")

from optimizer_intelligence.config import Settings, reset_settings
from optimizer_intelligence.infrastructure import db
from optimizer_intelligence.models import tables  # noqa: F401 - registers tables
from optimizer_intelligence.services import build_services


@pytest.fixture
def engine(tmp_path):
    previous = db.engine
    e = db.make_engine(f"sqlite:///{tmp_path / 'pipeline.db'}")
    db.Base.metadata.create_all(e)
    db.override_engine(e)
    yield e
    db.override_engine(previous)
    e.dispose()


@pytest.fixture
def session_factory(engine):
    return db.new_session


@pytest.fixture
def db_session(engine):
    session = db.new_session()
    yield session
    session.close()


@pytest.fixture
def settings(monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    reset_settings()
    yield Settings()
    reset_settings()


@pytest.fixture
def services(engine, settings):
    svc = build_services(db.new_session, settings)
    svc.validator.settle_seconds = 0.0
    return svc


@pytest.fixture
def now():
    return datetime(2024, 6, 1, 12, 0, 0)


_counter = {"n": 0}


def make_telemetry(**overrides) -> dict:
    """A well-formed record that clears the validation battery."""
    _counter["n"] += 1
    payload = {
        "session_id": f"session-{_counter['n']}",
        "device_id": "device-1",
        "architecture": "apple_silicon",
        "memory_gb": 16,
        "core_count": 8,
        "optimization_strategy": "balanced",
        "target_app": "com.google.Chrome",
        "memory_freed_mb": 600.0,
        "speed_gain_percent": 10.0,
        "effectiveness_score": 0.8,
        "time_of_day": 14,
        "day_of_week": 2,
        "app_optimizations": [
            {"app_category": "browser", "memory_freed_mb": 400.0, "action_count": 2, "success": True},
            {"app_category": "chat", "memory_freed_mb": 200.0, "action_count": 1, "success": True},
        ],
    }
    payload.update(overrides)
    return payload


def make_proposal(**overrides) -> dict:
    _counter["n"] += 1
    payload = {
        "app_id": "com.google.Chrome",
        "strategy_type": "balanced",
        "update_type": "parameter_tuning",
        "update_data": {"cache_threshold_mb": 512},
        "sample_size": 200,
        "confidence_score": 0.9,
        "statistical_significance": True,
        "risk_level": "low",
        "safety_score": 0.95,
        "version": f"chrome_balanced_v{_counter['n']}",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def telemetry_payload():
    return make_telemetry


@pytest.fixture
def proposal_payload():
    return make_proposal


@pytest.fixture
def hours_ago(now):
    return lambda h: now - timedelta(hours=h)


# Canary observations that satisfy every success threshold and trip no rollback trigger.
CLEAN_RESULTS = {"effectiveness": 0.9, "user_satisfaction": 0.8, "stability": 0.99, "crash_rate": 0.001}
