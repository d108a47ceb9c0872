"""Per-app optimization catalogs, loaded from an external JSON document and consumed by app id.

Expected layout::

    {"version": "2024-06", "apps": {"com.google.Chrome": {"name": "Chrome",
        "strategies": {"conservative": {...}, "balanced": {...}}, "cache_paths": [...]}}}
"""
from __future__ import annotations
from pathlib import Path
import json
import logging

logger = logging.getLogger(__name__)

DEFAULT_STRATEGIES = ["conservative", "balanced", "aggressive"]


class StrategyCatalog:
    def __init__(self, apps: dict | None = None, version: str | None = None):
        self.apps = apps or {}
        self.version = version

    @classmethod
    def load(cls, path: str | None) -> "StrategyCatalog":
        if not path:
            return cls()
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict) or not isinstance(data.get("apps", {}), dict):
            raise ValueError(f"catalog {path} must be an object with an 'apps' mapping")
        logger.info(json.dumps({"event": "catalog_loaded", "path": path, "apps": len(data.get("apps", {}))}))
        return cls(apps=data.get("apps", {}), version=data.get("version"))

    def get(self, app_id: str) -> dict | None:
        return self.apps.get(app_id)

    def strategies_for(self, app_id: str) -> list[str]:
        entry = self.get(app_id)
        if not entry or not entry.get("strategies"):
            return list(DEFAULT_STRATEGIES)
        strategies = entry["strategies"]
        return list(strategies) if isinstance(strategies, (dict, list)) else list(DEFAULT_STRATEGIES)
