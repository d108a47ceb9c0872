from __future__ import annotations
from datetime import datetime
from celery import shared_task
from optimizer_intelligence.services import build_services
from optimizer_intelligence.tasks.ingestion import storage_retry


@shared_task
def aggregate_intelligence(now: str | None = None):
    """Nightly (or on-demand) aggregation run; ``now`` is an ISO timestamp for backfills."""
    services = build_services()
    at = datetime.fromisoformat(now) if now else None
    return storage_retry(services.aggregator.run)(at)
