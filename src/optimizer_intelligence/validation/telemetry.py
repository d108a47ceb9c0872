from __future__ import annotations
from pydantic import BaseModel, Field, ValidationError, field_validator
from typing import Any, Dict, List
from optimizer_intelligence.errors import ValidationFailedError


class SystemMetrics(BaseModel):
    """Raw subsystem readings a device reports around an optimization."""
    memory_used_mb: float | None = Field(None, ge=0)
    memory_total_mb: float | None = Field(None, ge=0)
    memory_pressure: int | None = Field(None, ge=0)  # 1 normal, 2 warn, 4 critical
    cpu_usage: float | None = Field(None, ge=0, le=100)
    disk_read_ops: int = Field(0, ge=0)
    disk_write_ops: int = Field(0, ge=0)
    disk_avg_time_ms: float = Field(0.0, ge=0)
    swap_used_mb: float | None = Field(None, ge=0)
    swap_total_mb: float | None = Field(None, ge=0)
    thermal_state: int | None = Field(None, ge=0)  # 0 nominal .. 3 critical


class AppOptimization(BaseModel):
    app_category: str = Field(min_length=1, max_length=128)
    memory_freed_mb: float = 0.0
    action_count: int = Field(0, ge=0)
    success: bool = True


class TelemetryIn(BaseModel):
    session_id: str = Field(min_length=1, max_length=128)
    device_id: str = Field(min_length=1, max_length=128)
    user_id: str | None = Field(None, max_length=128)
    architecture: str = Field(min_length=1, max_length=32)
    memory_gb: float = Field(gt=0, le=4096)
    core_count: int | None = Field(None, ge=1)
    optimization_strategy: str = Field(min_length=1, max_length=64)
    target_app: str | None = Field(None, max_length=128)
    memory_freed_mb: float = 0.0
    speed_gain_percent: float = 0.0
    effectiveness_score: float | None = Field(None, ge=0, le=1)
    time_of_day: int | None = Field(None, ge=0, le=23)
    day_of_week: int | None = Field(None, ge=0, le=6)
    memory_pressure: float | None = None
    cpu_usage: float | None = Field(None, ge=0, le=100)
    app_optimizations: List[AppOptimization] = Field(default_factory=list, max_length=200)
    metrics_before: SystemMetrics | None = None
    metrics_after: SystemMetrics | None = None
    system_state_before: Dict[str, Any] | None = None
    system_state_after: Dict[str, Any] | None = None
    errors: List[str] = Field(default_factory=list, max_length=100)

    @field_validator("architecture", "optimization_strategy")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.strip().lower()


def validate_telemetry(payload: dict) -> TelemetryIn:
    """Parse an inbound record or raise ValidationFailedError before anything touches the store."""
    try:
        return TelemetryIn(**payload)
    except ValidationError as ve:
        first = ve.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationFailedError(f"validation_error:{loc}:{first.get('msg', 'invalid')}") from ve
    except TypeError as te:
        raise ValidationFailedError(f"validation_error:{te}") from te
