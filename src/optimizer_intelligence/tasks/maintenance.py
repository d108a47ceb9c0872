from __future__ import annotations
from collections import defaultdict
from datetime import datetime, timedelta
import logging
import json
from celery import shared_task
from sqlalchemy import delete, select
from sqlalchemy.orm import Session
from optimizer_intelligence.config import get_settings
from optimizer_intelligence.infrastructure.db import session_scope
from optimizer_intelligence.infrastructure.metrics import RETENTION_DELETED
from optimizer_intelligence.models.tables import Telemetry, AggregatedIntelligence
from optimizer_intelligence.tasks.ingestion import storage_retry

logger = logging.getLogger(__name__)


def _version_day(version: str) -> int:
    try:
        return int(version.lstrip("v"))
    except ValueError:
        return -1


def prune_telemetry(session: Session, cutoff: datetime) -> int:
    """Bulk retention is the only path that ever deletes telemetry."""
    res = session.execute(delete(Telemetry).where(Telemetry.created_at < cutoff))
    return res.rowcount or 0


def prune_intelligence_versions(session: Session, keep: int) -> int:
    """Keep the ``keep`` newest day versions of every (type, key); older versions are deleted."""
    rows = session.execute(
        select(AggregatedIntelligence.intelligence_type, AggregatedIntelligence.intelligence_key,
               AggregatedIntelligence.version).distinct()
    ).all()
    versions: dict[tuple[str, str], list[str]] = defaultdict(list)
    for itype, key, version in rows:
        versions[(itype, key)].append(version)
    deleted = 0
    for (itype, key), vs in versions.items():
        stale = sorted(vs, key=_version_day, reverse=True)[keep:]
        if not stale:
            continue
        res = session.execute(
            delete(AggregatedIntelligence).where(
                AggregatedIntelligence.intelligence_type == itype,
                AggregatedIntelligence.intelligence_key == key,
                AggregatedIntelligence.version.in_(stale),
            )
        )
        deleted += res.rowcount or 0
    return deleted


def run_retention(now: datetime | None = None, telemetry_days: int | None = None,
                  intelligence_versions: int | None = None, session_factory=None) -> dict:
    settings = get_settings()
    now = now or datetime.utcnow()
    days = telemetry_days if telemetry_days is not None else settings.telemetry_retention_days
    keep = intelligence_versions if intelligence_versions is not None else settings.intelligence_retention_versions
    with session_scope(session_factory) as session:
        telemetry_deleted = prune_telemetry(session, now - timedelta(days=days))
        intelligence_deleted = prune_intelligence_versions(session, keep) if keep else 0
    RETENTION_DELETED.labels(table="telemetry").inc(telemetry_deleted)
    RETENTION_DELETED.labels(table="aggregated_intelligence").inc(intelligence_deleted)
    logger.info(json.dumps({"event": "retention", "telemetry_deleted": telemetry_deleted,
                            "intelligence_deleted": intelligence_deleted}))
    return {"status": "ok", "telemetry_deleted": telemetry_deleted, "intelligence_deleted": intelligence_deleted}


@shared_task
def enforce_retention():
    return storage_retry(run_retention)()
