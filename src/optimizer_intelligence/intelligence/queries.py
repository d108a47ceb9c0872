"""Read side: latest intelligence, the client update feed and ingestion analytics.

All reads degrade to a ``no_data`` answer on an empty store instead of raising.
"""
from __future__ import annotations
from datetime import datetime, timedelta
from typing import Callable
from sqlalchemy import select, func
from sqlalchemy.orm import Session
from optimizer_intelligence.infrastructure.db import session_scope
from optimizer_intelligence.models.tables import (
    AggregatedIntelligence,
    Telemetry,
    INTELLIGENCE_GLOBAL,
    INTELLIGENCE_APP_SPECIFIC,
    INTELLIGENCE_SYSTEM_PROFILE,
)

LATEST_LIMIT = 10
ANALYTICS_WINDOW_HOURS = 24


def intelligence_to_dict(row: AggregatedIntelligence) -> dict:
    return {
        "intelligence_type": row.intelligence_type,
        "intelligence_key": row.intelligence_key,
        "version": row.version,
        "intelligence_data": row.intelligence_data,
        "confidence_score": row.confidence_score,
        "sample_size": row.sample_size,
        "last_calculated_at": row.last_calculated_at.isoformat() if row.last_calculated_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


class IntelligenceQueries:
    def __init__(self, session_factory: Callable[[], Session] | None = None):
        self.session_factory = session_factory

    def latest(self, intelligence_type: str | None = None, key: str | None = None, limit: int = LATEST_LIMIT) -> list[dict]:
        q = select(AggregatedIntelligence)
        if intelligence_type:
            q = q.where(AggregatedIntelligence.intelligence_type == intelligence_type)
        if key:
            q = q.where(AggregatedIntelligence.intelligence_key == key)
        q = q.order_by(AggregatedIntelligence.updated_at.desc(), AggregatedIntelligence.id.desc()).limit(min(limit, LATEST_LIMIT))
        with session_scope(self.session_factory) as session:
            return [intelligence_to_dict(r) for r in session.scalars(q).all()]

    def latest_version(self, session: Session) -> str | None:
        return session.scalar(
            select(AggregatedIntelligence.version)
            .where(AggregatedIntelligence.intelligence_type == INTELLIGENCE_GLOBAL)
            .order_by(AggregatedIntelligence.last_calculated_at.desc(), AggregatedIntelligence.id.desc())
            .limit(1)
        )

    def update_feed(self, device_type: str | None = None, current_version: str | None = None) -> dict:
        """What a client needs to refresh its local strategy intelligence."""
        with session_scope(self.session_factory) as session:
            version = self.latest_version(session)
            if version is None:
                return {"status": "no_data"}
            if current_version == version:
                return {"status": "up_to_date", "version": version}
            rows = session.scalars(
                select(AggregatedIntelligence)
                .where(AggregatedIntelligence.version == version)
                .order_by(AggregatedIntelligence.intelligence_type, AggregatedIntelligence.intelligence_key)
            ).all()
            out = {"status": "update_available", "version": version, "global": None, "app_specific": {}, "system_profiles": {}}
            prefix = f"{device_type.lower()}_" if device_type else None
            for r in rows:
                if r.intelligence_type == INTELLIGENCE_GLOBAL:
                    out["global"] = {"data": r.intelligence_data, "confidence": r.confidence_score, "sample_size": r.sample_size}
                elif r.intelligence_type == INTELLIGENCE_APP_SPECIFIC:
                    out["app_specific"][r.intelligence_key] = {"data": r.intelligence_data, "confidence": r.confidence_score}
                elif r.intelligence_type == INTELLIGENCE_SYSTEM_PROFILE:
                    if prefix and not r.intelligence_key.startswith(prefix):
                        continue
                    out["system_profiles"][r.intelligence_key] = {"data": r.intelligence_data, "confidence": r.confidence_score}
            return out

    def analytics(self, now: datetime | None = None) -> dict:
        now = now or datetime.utcnow()
        since = now - timedelta(hours=ANALYTICS_WINDOW_HOURS)
        with session_scope(self.session_factory) as session:
            total = session.scalar(select(func.count(Telemetry.id))) or 0
            if total == 0:
                return {"status": "no_data", "total_telemetry": 0, "recent_telemetry": 0, "strategy_effectiveness": {},
                        "latest_version": None}
            recent = session.scalar(select(func.count(Telemetry.id)).where(Telemetry.created_at >= since)) or 0
            per_strategy = session.execute(
                select(Telemetry.optimization_strategy, func.avg(Telemetry.effectiveness_score), func.count(Telemetry.id))
                .where(Telemetry.created_at >= since)
                .group_by(Telemetry.optimization_strategy)
                .order_by(Telemetry.optimization_strategy)
            ).all()
            low_trust = session.scalar(select(func.count(Telemetry.id)).where(Telemetry.low_trust.is_(True))) or 0
            return {
                "status": "ok",
                "total_telemetry": total,
                "recent_telemetry": recent,
                "low_trust_telemetry": low_trust,
                "strategy_effectiveness": {
                    name: {"effectiveness": round(float(avg or 0.0), 2), "sample_size": n} for name, avg, n in per_strategy
                },
                "latest_version": self.latest_version(session),
            }
