"""Process-wide service container.

Built once at process start (API startup hook, or per Celery task) and passed to whoever needs it;
``close`` releases the database engine at shutdown.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Callable
from sqlalchemy.orm import Session
from optimizer_intelligence.config import Settings, get_settings
from optimizer_intelligence.infrastructure import db
from optimizer_intelligence.apps import AppSupportService
from optimizer_intelligence.catalog import StrategyCatalog
from optimizer_intelligence.ingestion import TelemetryIngestor
from optimizer_intelligence.intelligence.aggregator import IntelligenceAggregator
from optimizer_intelligence.intelligence.queries import IntelligenceQueries
from optimizer_intelligence.approval.gating import GatingPolicy
from optimizer_intelligence.approval.registry import StrategyUpdateRegistry
from optimizer_intelligence.approval.rollout import RolloutOrchestrator
from optimizer_intelligence.performance.benchmark import BenchmarkValidator


@dataclass
class PipelineServices:
    settings: Settings
    validator: BenchmarkValidator
    ingestor: TelemetryIngestor
    aggregator: IntelligenceAggregator
    registry: StrategyUpdateRegistry
    rollout: RolloutOrchestrator
    queries: IntelligenceQueries
    apps: AppSupportService
    catalog: StrategyCatalog

    def close(self):
        db.dispose()


def build_services(session_factory: Callable[[], Session] | None = None, settings: Settings | None = None) -> PipelineServices:
    settings = settings or get_settings()
    session_factory = session_factory or db.new_session
    catalog = StrategyCatalog.load(settings.strategy_catalog_path)
    validator = BenchmarkValidator.from_settings(settings)
    return PipelineServices(
        settings=settings,
        validator=validator,
        ingestor=TelemetryIngestor(session_factory, validator),
        aggregator=IntelligenceAggregator.from_settings(settings, session_factory),
        registry=StrategyUpdateRegistry(session_factory, GatingPolicy.from_settings(settings),
                                        settings.canary_phase_duration_hours),
        rollout=RolloutOrchestrator(session_factory, settings.canary_phase_duration_hours),
        queries=IntelligenceQueries(session_factory),
        apps=AppSupportService(session_factory, catalog),
        catalog=catalog,
    )
