"""Defaults derived for a new strategy update when the proposer leaves them out."""
from __future__ import annotations
from datetime import datetime
from pydantic import BaseModel, Field, ValidationError, field_validator
from typing import Any, Dict, List
from optimizer_intelligence.approval.gating import RISK_LEVELS
from optimizer_intelligence.errors import ValidationFailedError

SIGNIFICANCE_MIN_CONFIDENCE = 0.95
SIGNIFICANCE_MIN_SAMPLES = 100
HIGH_RISK_SAVINGS_MB = 2000
MEDIUM_RISK_SAVINGS_MB = 500
DEFAULT_BASE_VERSION = "1.0.0"
DEFAULT_SAFETY_SCORE = 0.5


class StrategyUpdateProposal(BaseModel):
    app_id: str = Field(min_length=1, max_length=128)
    strategy_type: str = Field(min_length=1, max_length=64)
    update_type: str = Field(min_length=1, max_length=64)
    update_data: Dict[str, Any]
    sample_size: int = Field(ge=0)
    confidence_score: float = Field(ge=0, le=1)
    version: str | None = Field(None, min_length=1, max_length=64)
    base_strategy_version: str = DEFAULT_BASE_VERSION
    estimated_impact: Dict[str, Any] = Field(default_factory=dict)
    statistical_significance: bool | None = None
    consistency_period_days: int | None = Field(None, ge=0)
    risk_level: str | None = None
    safety_score: float = Field(DEFAULT_SAFETY_SCORE, ge=0, le=1)
    potential_issues: List[str] = Field(default_factory=list)
    supersedes_update_id: int | None = None

    @field_validator("risk_level")
    @classmethod
    def _known_risk(cls, v):
        if v is not None and v not in RISK_LEVELS:
            raise ValueError(f"risk_level must be one of {', '.join(RISK_LEVELS)}")
        return v


def parse_proposal(payload: dict) -> StrategyUpdateProposal:
    try:
        return StrategyUpdateProposal(**payload)
    except ValidationError as ve:
        first = ve.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationFailedError(f"validation_error:{loc}:{first.get('msg', 'invalid')}") from ve


def is_statistically_significant(confidence_score: float, sample_size: int) -> bool:
    return confidence_score >= SIGNIFICANCE_MIN_CONFIDENCE and sample_size >= SIGNIFICANCE_MIN_SAMPLES


def assess_risk(update_type: str, strategy_type: str, estimated_impact: dict | None) -> str:
    savings = float((estimated_impact or {}).get("memory_savings_mb") or 0)
    new_action = update_type == "new_action"
    aggressive = strategy_type == "aggressive"
    if (new_action and aggressive) or savings > HIGH_RISK_SAVINGS_MB:
        return "high"
    if new_action or aggressive or savings > MEDIUM_RISK_SAVINGS_MB:
        return "medium"
    return "low"


def generate_version(app_id: str, strategy_type: str, now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    stamp = str(int(now.timestamp() * 1000))[-6:]
    return f"{app_id.split('.')[-1]}_{strategy_type}_v{stamp}"


def resolve_defaults(p: StrategyUpdateProposal, now: datetime | None = None) -> dict:
    """Column values for the new row, with significance, risk and version filled in."""
    values = p.model_dump()
    if values["statistical_significance"] is None:
        values["statistical_significance"] = is_statistically_significant(p.confidence_score, p.sample_size)
    if values["risk_level"] is None:
        values["risk_level"] = assess_risk(p.update_type, p.strategy_type, p.estimated_impact)
    if values["version"] is None:
        values["version"] = generate_version(p.app_id, p.strategy_type, now)
    return values
