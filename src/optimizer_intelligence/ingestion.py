"""Validate, score and persist one telemetry record.

Ingestion is idempotent per session id: a second record with the same id is reported as
``duplicate`` and leaves the store untouched. Records that fail the benchmark battery are still
persisted, flagged ``low_trust``.
"""
from __future__ import annotations
from datetime import datetime
from typing import Callable
import logging
import json
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from optimizer_intelligence.infrastructure.db import session_scope
from optimizer_intelligence.infrastructure.metrics import (
    TELEMETRY_INGESTED,
    TELEMETRY_DUPLICATES,
    TELEMETRY_LOW_TRUST,
    TELEMETRY_REJECTED,
)
from optimizer_intelligence.errors import ValidationFailedError
from optimizer_intelligence.models.tables import Telemetry
from optimizer_intelligence.performance.benchmark import BenchmarkValidator
from optimizer_intelligence.performance.effectiveness import EffectivenessScorer, optimization_effectiveness
from optimizer_intelligence.validation.telemetry import TelemetryIn, validate_telemetry

logger = logging.getLogger(__name__)


def _snapshot(metrics, report) -> dict | None:
    if metrics is None:
        return None
    snap = {"memory_used_mb": metrics.memory_used_mb}
    if not report.estimated:
        snap["speed"] = report.speed
    return snap


class TelemetryIngestor:
    def __init__(self, session_factory: Callable[[], Session] | None = None, validator: BenchmarkValidator | None = None):
        self.session_factory = session_factory
        self.validator = validator or BenchmarkValidator()

    def build_record(self, rec: TelemetryIn, received_at: datetime | None = None) -> Telemetry:
        score_before = score_after = None
        estimated = False
        before = after = None
        if rec.metrics_before is not None or rec.metrics_after is not None:
            scorer = EffectivenessScorer()
            rb = scorer.score(rec.metrics_before)
            ra = scorer.score(rec.metrics_after)
            estimated = rb.estimated or ra.estimated
            score_before, score_after = rb.speed, ra.speed
            before, after = _snapshot(rec.metrics_before, rb), _snapshot(rec.metrics_after, ra)
        actions = sum(a.action_count for a in rec.app_optimizations)
        bench = self.validator.validate_optimization(
            rec.target_app,
            rec.optimization_strategy,
            before,
            after,
            {
                "memory_freed_mb": rec.memory_freed_mb,
                "speed_gain_percent": rec.speed_gain_percent,
                "actions_completed": actions,
                "errors_encountered": len(rec.errors),
            },
        )
        effectiveness = rec.effectiveness_score
        if effectiveness is None:
            effectiveness = optimization_effectiveness(rec.memory_freed_mb, rec.speed_gain_percent, len(rec.errors))
        memory_pressure = rec.memory_pressure
        cpu_usage = rec.cpu_usage
        if rec.metrics_before is not None:
            if memory_pressure is None:
                memory_pressure = rec.metrics_before.memory_pressure
            if cpu_usage is None:
                cpu_usage = rec.metrics_before.cpu_usage
        return Telemetry(
            session_id=rec.session_id,
            device_id=rec.device_id,
            user_id=rec.user_id,
            architecture=rec.architecture,
            memory_gb=rec.memory_gb,
            core_count=rec.core_count,
            optimization_strategy=rec.optimization_strategy,
            target_app=rec.target_app,
            memory_freed_mb=rec.memory_freed_mb,
            speed_gain_percent=rec.speed_gain_percent,
            effectiveness_score=effectiveness,
            time_of_day=rec.time_of_day,
            day_of_week=rec.day_of_week,
            memory_pressure=memory_pressure,
            cpu_usage=cpu_usage,
            app_optimizations=[a.model_dump() for a in rec.app_optimizations],
            system_state_before=rec.system_state_before,
            system_state_after=rec.system_state_after,
            errors=list(rec.errors),
            score_before=score_before,
            score_after=score_after,
            score_estimated=estimated,
            validation_confidence=bench.confidence,
            validation_passed=bench.passed,
            low_trust=not bench.passed,
            created_at=received_at or datetime.utcnow(),
        )

    def ingest(self, payload: dict, received_at: datetime | None = None) -> dict:
        try:
            rec = validate_telemetry(payload)
        except ValidationFailedError as exc:
            TELEMETRY_REJECTED.labels(reason="schema").inc()
            logger.info(json.dumps({"event": "telemetry_rejected", "detail": exc.message}))
            raise
        row = self.build_record(rec, received_at)
        duplicate = False
        try:
            with session_scope(self.session_factory) as session:
                exists = session.scalar(select(Telemetry.id).where(Telemetry.session_id == rec.session_id))
                if exists is not None:
                    duplicate = True
                else:
                    session.add(row)
        except IntegrityError:
            # lost the race against a concurrent insert of the same session
            duplicate = True
        if duplicate:
            TELEMETRY_DUPLICATES.inc()
            logger.info(json.dumps({"event": "telemetry_duplicate", "session_id": rec.session_id}))
            return {"status": "duplicate", "session_id": rec.session_id}
        TELEMETRY_INGESTED.labels(strategy=row.optimization_strategy).inc()
        if row.low_trust:
            TELEMETRY_LOW_TRUST.inc()
        return {
            "status": "accepted",
            "id": row.id,
            "session_id": row.session_id,
            "effectiveness_score": row.effectiveness_score,
            "validation_confidence": row.validation_confidence,
            "validation_passed": row.validation_passed,
            "low_trust": row.low_trust,
            "score_estimated": row.score_estimated,
        }
