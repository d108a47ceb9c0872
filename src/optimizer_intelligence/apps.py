from __future__ import annotations
from datetime import datetime
from typing import Callable
import logging
import json
from sqlalchemy import select
from sqlalchemy.orm import Session
from optimizer_intelligence.catalog import StrategyCatalog
from optimizer_intelligence.errors import ValidationFailedError
from optimizer_intelligence.infrastructure.db import session_scope
from optimizer_intelligence.models.tables import SupportedApp

logger = logging.getLogger(__name__)


def app_to_dict(a: SupportedApp) -> dict:
    return {
        "app_id": a.app_id,
        "app_name": a.app_name,
        "user_count": a.user_count,
        "avg_memory_usage_mb": a.avg_memory_usage_mb,
        "support_level": a.support_level,
        "strategies_available": a.strategies_available,
        "created_by": a.created_by,
    }


class AppSupportService:
    """Registers the apps that aggregation results are reported against."""

    def __init__(self, session_factory: Callable[[], Session] | None = None, catalog: StrategyCatalog | None = None):
        self.session_factory = session_factory
        self.catalog = catalog or StrategyCatalog()

    def build(self, app_id: str, app_name: str, user_count: int = 0, avg_memory_usage_mb: float = 0.0,
              created_by: str | None = None) -> dict:
        if not app_id or not app_name:
            raise ValidationFailedError("app_id and app_name are required")
        if user_count < 0 or avg_memory_usage_mb < 0:
            raise ValidationFailedError("user_count and avg_memory_usage_mb must be non-negative")
        now = datetime.utcnow()
        with session_scope(self.session_factory) as session:
            row = session.scalar(select(SupportedApp).where(SupportedApp.app_id == app_id))
            if row is None:
                row = SupportedApp(app_id=app_id, created_at=now, created_by=created_by)
                session.add(row)
            row.app_name = app_name
            row.user_count = user_count
            row.avg_memory_usage_mb = avg_memory_usage_mb
            row.support_level = "full"
            row.strategies_available = self.catalog.strategies_for(app_id)
            row.updated_at = now
            session.flush()
            out = app_to_dict(row)
        logger.info(json.dumps({"event": "app_support_built", "app_id": app_id}))
        return out

    def list_apps(self) -> list[dict]:
        with session_scope(self.session_factory) as session:
            return [app_to_dict(a) for a in session.scalars(select(SupportedApp).order_by(SupportedApp.app_id)).all()]
