from __future__ import annotations
from dataclasses import dataclass, field

RISK_LEVELS = ("low", "medium", "high")


@dataclass
class GatingPolicy:
    min_confidence: float = 0.8
    min_sample_size: int = 100
    safety_by_risk: dict[str, float] = field(default_factory=lambda: {"low": 0.7, "medium": 0.85, "high": 0.95})

    @classmethod
    def from_settings(cls, settings) -> "GatingPolicy":
        return cls(
            min_confidence=settings.gating_min_confidence,
            min_sample_size=settings.gating_min_sample_size,
            safety_by_risk=settings.safety_thresholds(),
        )

    def required_safety(self, risk_level: str | None) -> float:
        # unknown risk is held to the strictest bar
        return self.safety_by_risk.get(risk_level or "", self.safety_by_risk["high"])

    def evaluate(self, update) -> list[dict]:
        """Every gating check with its outcome; approval requires all to pass."""
        required_safety = self.required_safety(update.risk_level)
        return [
            {"name": "confidence_score", "passed": update.confidence_score >= self.min_confidence,
             "actual": update.confidence_score, "required": self.min_confidence},
            {"name": "statistical_significance", "passed": bool(update.statistical_significance),
             "actual": bool(update.statistical_significance), "required": True},
            {"name": "sample_size", "passed": update.sample_size >= self.min_sample_size,
             "actual": update.sample_size, "required": self.min_sample_size},
            {"name": "safety_score", "passed": update.safety_score >= required_safety,
             "actual": update.safety_score, "required": required_safety, "risk_level": update.risk_level},
        ]

    def failed_checks(self, update) -> list[dict]:
        return [c for c in self.evaluate(update) if not c["passed"]]
