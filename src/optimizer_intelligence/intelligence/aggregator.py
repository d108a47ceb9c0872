"""Batch job turning a rolling telemetry window into versioned intelligence rows.

One chunked read feeds the accumulators of all three passes (global, app-specific,
system-profile). Each pass is then written in its own transaction as upserts keyed by
(type, key, day version), so overlapping or repeated runs for the same day converge on the same
rows. Keys that fell out of the window are deleted from that day's version, and a run over an
empty window clears it. The wall-clock budget is checked between passes only; a pass that has
started is always written completely.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable
import logging
import json
import math
import time
from sqlalchemy import select, delete
from sqlalchemy.orm import Session
from optimizer_intelligence.infrastructure.db import session_scope
from optimizer_intelligence.infrastructure.metrics import AGGREGATION_RUNS, AGGREGATION_DURATION, AGGREGATION_ROWS
from optimizer_intelligence.models.tables import (
    Telemetry,
    AggregatedIntelligence,
    INTELLIGENCE_GLOBAL,
    INTELLIGENCE_APP_SPECIFIC,
    INTELLIGENCE_SYSTEM_PROFILE,
)

logger = logging.getLogger(__name__)

GLOBAL_KEY = "strategy_effectiveness"
DEFAULT_RECOMMENDED_STRATEGY = "balanced"
PROFILE_MEMORY_BUCKET_GB = 8
FULL_CONFIDENCE_SAMPLES = 100
_EPOCH = datetime(1970, 1, 1)


def day_version(now: datetime) -> str:
    """'v<days since epoch>' for the UTC day containing ``now`` (naive datetimes are UTC)."""
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    return f"v{(now - _EPOCH).days}"


def confidence_for(sample_size: int) -> float:
    return min(sample_size / FULL_CONFIDENCE_SAMPLES, 1.0)


def profile_key(architecture: str, memory_gb: float) -> str:
    bucket = int(math.floor(memory_gb / PROFILE_MEMORY_BUCKET_GB)) * PROFILE_MEMORY_BUCKET_GB
    return f"{architecture}_{bucket}gb"


def _mean(total: float, n: int) -> float:
    return round(total / n, 4) if n else 0.0


@dataclass
class _Stat:
    n: int = 0
    effectiveness: float = 0.0
    memory: float = 0.0

    def add(self, effectiveness: float, memory: float):
        self.n += 1
        self.effectiveness += effectiveness
        self.memory += memory


@dataclass
class _AppStat:
    n: int = 0
    memory: float = 0.0
    successes: int = 0
    actions: int = 0


@dataclass
class _Profile:
    overall: _Stat = field(default_factory=_Stat)
    strategies: dict[str, _Stat] = field(default_factory=dict)


@dataclass
class WindowAccumulator:
    samples: int = 0
    low_trust: int = 0
    strategies: dict[str, _Stat] = field(default_factory=dict)
    apps: dict[str, _AppStat] = field(default_factory=dict)
    profiles: dict[str, _Profile] = field(default_factory=dict)

    def add(self, strategy, effectiveness, memory, architecture, memory_gb, app_optimizations, low_trust):
        effectiveness = effectiveness or 0.0
        memory = memory or 0.0
        self.samples += 1
        if low_trust:
            self.low_trust += 1
        self.strategies.setdefault(strategy, _Stat()).add(effectiveness, memory)
        for entry in app_optimizations or []:
            category = entry.get("app_category")
            if not category:
                continue
            st = self.apps.setdefault(category, _AppStat())
            st.n += 1
            st.memory += entry.get("memory_freed_mb") or 0.0
            st.actions += entry.get("action_count") or 0
            if entry.get("success"):
                st.successes += 1
        prof = self.profiles.setdefault(profile_key(architecture, memory_gb or 0.0), _Profile())
        prof.overall.add(effectiveness, memory)
        prof.strategies.setdefault(strategy, _Stat()).add(effectiveness, memory)


class IntelligenceAggregator:
    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        window_days: int = 7,
        max_samples: int = 1000,
        chunk_size: int = 200,
        budget_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.window_days = window_days
        self.max_samples = max_samples
        self.chunk_size = chunk_size
        self.budget_seconds = budget_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, settings, session_factory=None) -> "IntelligenceAggregator":
        return cls(
            session_factory=session_factory,
            window_days=settings.aggregation_window_days,
            max_samples=settings.aggregation_max_samples,
            chunk_size=settings.aggregation_chunk_size,
            budget_seconds=settings.aggregation_budget_seconds,
        )

    def run(self, now: datetime | None = None) -> dict:
        now = now or datetime.utcnow()
        version = day_version(now)
        started = self.clock()
        acc = self.accumulate(now)
        if acc.samples == 0:
            with session_scope(self.session_factory) as session:
                for name in (INTELLIGENCE_GLOBAL, INTELLIGENCE_APP_SPECIFIC, INTELLIGENCE_SYSTEM_PROFILE):
                    prune_intelligence(session, name, version, keep=())
            AGGREGATION_RUNS.labels(status="no_data").inc()
            logger.info(json.dumps({"event": "aggregation_no_data", "version": version}))
            return {"status": "no_data", "version": version, "samples": 0, "passes": [], "rows": 0}
        passes: list[tuple[str, Callable[[WindowAccumulator], list[dict]]]] = [
            (INTELLIGENCE_GLOBAL, self.global_rows),
            (INTELLIGENCE_APP_SPECIFIC, self.app_rows),
            (INTELLIGENCE_SYSTEM_PROFILE, self.profile_rows),
        ]
        status = "ok"
        completed: list[str] = []
        written = 0
        for name, build in passes:
            if self.clock() - started > self.budget_seconds:
                status = "timeout"
                break
            rows = build(acc)
            with session_scope(self.session_factory) as session:
                for row in rows:
                    upsert_intelligence(session, version=version, now=now, **row)
                prune_intelligence(session, name, version, keep=[r["intelligence_key"] for r in rows])
            AGGREGATION_ROWS.labels(type=name).inc(len(rows))
            written += len(rows)
            completed.append(name)
        elapsed = self.clock() - started
        AGGREGATION_RUNS.labels(status=status).inc()
        AGGREGATION_DURATION.observe(elapsed)
        log = logger.warning if status == "timeout" else logger.info
        log(json.dumps({"event": "aggregation_run", "status": status, "version": version, "samples": acc.samples,
                        "passes": completed, "rows": written, "elapsed": round(elapsed, 3)}))
        return {"status": status, "version": version, "samples": acc.samples, "passes": completed, "rows": written}

    def accumulate(self, now: datetime) -> WindowAccumulator:
        since = now - timedelta(days=self.window_days)
        stmt = (
            select(
                Telemetry.optimization_strategy,
                Telemetry.effectiveness_score,
                Telemetry.memory_freed_mb,
                Telemetry.architecture,
                Telemetry.memory_gb,
                Telemetry.app_optimizations,
                Telemetry.low_trust,
            )
            .where(Telemetry.created_at >= since, Telemetry.created_at <= now)
            .order_by(Telemetry.created_at.desc(), Telemetry.id.desc())
            .limit(self.max_samples)
            .execution_options(yield_per=self.chunk_size)
        )
        acc = WindowAccumulator()
        with session_scope(self.session_factory) as session:
            for chunk in session.execute(stmt).partitions():
                for row in chunk:
                    acc.add(*row)
        return acc

    def global_rows(self, acc: WindowAccumulator) -> list[dict]:
        payload = {
            name: {
                "effectiveness": _mean(st.effectiveness, st.n),
                "avg_memory_recovery": _mean(st.memory, st.n),
                "sample_size": st.n,
            }
            for name, st in sorted(acc.strategies.items())
        }
        payload["low_trust_samples"] = acc.low_trust
        return [{
            "intelligence_type": INTELLIGENCE_GLOBAL,
            "intelligence_key": GLOBAL_KEY,
            "intelligence_data": payload,
            "sample_size": acc.samples,
            "confidence_score": confidence_for(acc.samples),
        }]

    def app_rows(self, acc: WindowAccumulator) -> list[dict]:
        rows = []
        for category, st in sorted(acc.apps.items()):
            rows.append({
                "intelligence_type": INTELLIGENCE_APP_SPECIFIC,
                "intelligence_key": category,
                "intelligence_data": {
                    "avg_memory_recovery": _mean(st.memory, st.n),
                    "success_rate": _mean(st.successes, st.n),
                    "total_actions": st.actions,
                    "sample_size": st.n,
                },
                "sample_size": st.n,
                "confidence_score": confidence_for(st.n),
            })
        return rows

    def profile_rows(self, acc: WindowAccumulator) -> list[dict]:
        rows = []
        for key, prof in sorted(acc.profiles.items()):
            best_name, best = DEFAULT_RECOMMENDED_STRATEGY, 0.0
            for name, st in sorted(prof.strategies.items()):
                mean = _mean(st.effectiveness, st.n)
                if mean > best:
                    best_name, best = name, mean
            rows.append({
                "intelligence_type": INTELLIGENCE_SYSTEM_PROFILE,
                "intelligence_key": key,
                "intelligence_data": {
                    "recommended_strategy": best_name,
                    "avg_effectiveness": _mean(prof.overall.effectiveness, prof.overall.n),
                    "avg_memory_recovery": _mean(prof.overall.memory, prof.overall.n),
                    "best_strategy_effectiveness": best,
                    "sample_size": prof.overall.n,
                },
                "sample_size": prof.overall.n,
                "confidence_score": confidence_for(prof.overall.n),
            })
        return rows


def upsert_intelligence(session: Session, intelligence_type: str, intelligence_key: str, version: str,
                        intelligence_data: dict, sample_size: int, confidence_score: float, now: datetime):
    """Insert or replace the row for (type, key, version); other versions are never touched."""
    values = {
        "intelligence_type": intelligence_type,
        "intelligence_key": intelligence_key,
        "version": version,
        "intelligence_data": intelligence_data,
        "sample_size": sample_size,
        "confidence_score": confidence_score,
        "last_calculated_at": now,
        "updated_at": now,
    }
    dialect = session.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        stmt = insert(AggregatedIntelligence).values(created_at=now, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["intelligence_type", "intelligence_key", "version"],
            set_={k: stmt.excluded[k] for k in ("intelligence_data", "sample_size", "confidence_score",
                                               "last_calculated_at", "updated_at")},
        )
        session.execute(stmt)
        return
    row = session.execute(
        select(AggregatedIntelligence).where(
            AggregatedIntelligence.intelligence_type == intelligence_type,
            AggregatedIntelligence.intelligence_key == intelligence_key,
            AggregatedIntelligence.version == version,
        )
    ).scalar_one_or_none()
    if row is None:
        session.add(AggregatedIntelligence(created_at=now, **values))
    else:
        for k, v in values.items():
            setattr(row, k, v)


def prune_intelligence(session: Session, intelligence_type: str, version: str, keep) -> int:
    """Delete rows of (type, version) whose key is not in ``keep``; a rerun replaces the whole set."""
    stmt = delete(AggregatedIntelligence).where(
        AggregatedIntelligence.intelligence_type == intelligence_type,
        AggregatedIntelligence.version == version,
    )
    keep = list(keep)
    if keep:
        stmt = stmt.where(AggregatedIntelligence.intelligence_key.not_in(keep))
    return session.execute(stmt).rowcount or 0
