from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, JSON, ForeignKey, Float, Boolean, Text, Index, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from optimizer_intelligence.infrastructure.db import Base


# Strategy update lifecycle
STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_TESTING = "testing"
STATUS_DEPLOYED = "deployed"
STATUS_ROLLED_BACK = "rolled_back"
TERMINAL_STATUSES = (STATUS_REJECTED, STATUS_ROLLED_BACK)

# Canary run lifecycle
CANARY_READY = "ready"
CANARY_RUNNING = "running"
CANARY_COMPLETED = "completed"
CANARY_ABORTED = "aborted"
ACTIVE_CANARY_STATUSES = (CANARY_READY, CANARY_RUNNING)

INTELLIGENCE_GLOBAL = "global"
INTELLIGENCE_APP_SPECIFIC = "app_specific"
INTELLIGENCE_SYSTEM_PROFILE = "system_profile"
INTELLIGENCE_TYPES = (INTELLIGENCE_GLOBAL, INTELLIGENCE_APP_SPECIFIC, INTELLIGENCE_SYSTEM_PROFILE)


class Telemetry(Base):
    """One optimization session as reported by a device. Write-once."""
    __tablename__ = "telemetry"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    device_id: Mapped[str] = mapped_column(String(128), index=True)
    user_id: Mapped[str | None] = mapped_column(String(128), index=True, default=None)
    architecture: Mapped[str] = mapped_column(String(32), index=True)
    memory_gb: Mapped[float] = mapped_column(Float)
    core_count: Mapped[int | None] = mapped_column(Integer, default=None)
    optimization_strategy: Mapped[str] = mapped_column(String(64), index=True)
    target_app: Mapped[str | None] = mapped_column(String(128), index=True, default=None)
    memory_freed_mb: Mapped[float] = mapped_column(Float, default=0.0)
    speed_gain_percent: Mapped[float] = mapped_column(Float, default=0.0)
    effectiveness_score: Mapped[float] = mapped_column(Float, default=0.0)
    time_of_day: Mapped[int | None] = mapped_column(Integer, default=None)
    day_of_week: Mapped[int | None] = mapped_column(Integer, default=None)
    memory_pressure: Mapped[float | None] = mapped_column(Float, default=None)
    cpu_usage: Mapped[float | None] = mapped_column(Float, default=None)
    app_optimizations: Mapped[list] = mapped_column(JSON, default=list)
    system_state_before: Mapped[dict | None] = mapped_column(JSON, default=None)
    system_state_after: Mapped[dict | None] = mapped_column(JSON, default=None)
    errors: Mapped[list] = mapped_column(JSON, default=list)
    score_before: Mapped[float | None] = mapped_column(Float, default=None)
    score_after: Mapped[float | None] = mapped_column(Float, default=None)
    score_estimated: Mapped[bool] = mapped_column(Boolean, default=False)
    validation_confidence: Mapped[float | None] = mapped_column(Float, default=None)
    validation_passed: Mapped[bool] = mapped_column(Boolean, default=False)
    low_trust: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_telemetry_strategy_created", "optimization_strategy", "created_at"),
    )


class AggregatedIntelligence(Base):
    __tablename__ = "aggregated_intelligence"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    intelligence_type: Mapped[str] = mapped_column(String(32), index=True)
    intelligence_key: Mapped[str] = mapped_column(String(128), index=True)
    version: Mapped[str] = mapped_column(String(32), index=True)
    intelligence_data: Mapped[dict] = mapped_column(JSON)
    confidence_score: Mapped[float] = mapped_column(Float, default=0.0)
    sample_size: Mapped[int] = mapped_column(Integer, default=0)
    last_calculated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        UniqueConstraint("intelligence_type", "intelligence_key", "version", name="uq_intelligence_type_key_version"),
    )


class StrategyUpdate(Base):
    """Proposed strategy change. Only the transition functions in approval.state_machine write status."""
    __tablename__ = "strategy_updates"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    app_id: Mapped[str] = mapped_column(String(128), index=True)
    strategy_type: Mapped[str] = mapped_column(String(64), index=True)
    update_type: Mapped[str] = mapped_column(String(64))
    version: Mapped[str] = mapped_column(String(64))
    base_strategy_version: Mapped[str] = mapped_column(String(64), default="1.0.0")
    update_data: Mapped[dict] = mapped_column(JSON)
    estimated_impact: Mapped[dict] = mapped_column(JSON, default=dict)
    sample_size: Mapped[int] = mapped_column(Integer)
    confidence_score: Mapped[float] = mapped_column(Float)
    statistical_significance: Mapped[bool] = mapped_column(Boolean, default=False)
    consistency_period_days: Mapped[int | None] = mapped_column(Integer, default=None)
    risk_level: Mapped[str] = mapped_column(String(16), default="medium")
    safety_score: Mapped[float] = mapped_column(Float, default=0.5)
    potential_issues: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(16), default=STATUS_PENDING, index=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(128), default=None)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    approval_notes: Mapped[str | None] = mapped_column(Text, default=None)
    supersedes_update_id: Mapped[int | None] = mapped_column(ForeignKey("strategy_updates.id"), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    ab_tests: Mapped[list["ABTest"]] = relationship(back_populates="strategy_update", order_by="ABTest.id")

    __table_args__ = (
        UniqueConstraint("app_id", "strategy_type", "version", name="uq_strategy_update_version"),
    )


class ABTest(Base):
    """Canary run for a strategy update."""
    __tablename__ = "ab_tests"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    strategy_update_id: Mapped[int] = mapped_column(ForeignKey("strategy_updates.id"), index=True)
    test_name: Mapped[str] = mapped_column(String(256))
    test_description: Mapped[str | None] = mapped_column(Text, default=None)
    deployment_phase: Mapped[str] = mapped_column(String(16), default="canary")
    rollout_phases: Mapped[list] = mapped_column(JSON)
    current_phase: Mapped[int] = mapped_column(Integer, default=0)
    user_percentage: Mapped[float] = mapped_column(Float)
    phase_duration_hours: Mapped[int] = mapped_column(Integer, default=48)
    success_thresholds: Mapped[dict] = mapped_column(JSON)
    rollback_triggers: Mapped[dict] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(String(16), default=CANARY_READY, index=True)
    results: Mapped[dict | None] = mapped_column(JSON, default=None)
    conclusion: Mapped[str | None] = mapped_column(String(32), default=None)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    strategy_update: Mapped[StrategyUpdate] = relationship(back_populates="ab_tests")

    __table_args__ = (
        # At most one ready/running canary per strategy update.
        Index(
            "uq_ab_tests_active_update",
            "strategy_update_id",
            unique=True,
            sqlite_where=text("status IN ('ready', 'running')"),
            postgresql_where=text("status IN ('ready', 'running')"),
        ),
    )


class DeploymentLog(Base):
    __tablename__ = "deployment_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    strategy_update_id: Mapped[int] = mapped_column(ForeignKey("strategy_updates.id"), index=True)
    ab_test_id: Mapped[int | None] = mapped_column(ForeignKey("ab_tests.id"), default=None)
    log_level: Mapped[str] = mapped_column(String(16))
    log_message: Mapped[str] = mapped_column(Text)
    log_data: Mapped[dict] = mapped_column(JSON, default=dict)
    deployment_phase: Mapped[str | None] = mapped_column(String(32), default=None)
    user_percentage: Mapped[float | None] = mapped_column(Float, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class SupportedApp(Base):
    __tablename__ = "supported_apps"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    app_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    app_name: Mapped[str] = mapped_column(String(256))
    user_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_memory_usage_mb: Mapped[float] = mapped_column(Float, default=0.0)
    support_level: Mapped[str] = mapped_column(String(16), default="full")
    strategies_available: Mapped[list] = mapped_column(JSON, default=list)
    created_by: Mapped[str | None] = mapped_column(String(128), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
