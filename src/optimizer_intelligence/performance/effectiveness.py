"""Composite performance score from raw subsystem metrics.

Each subsystem is scored by a step function into 0-100, the weighted sum is rounded and clamped to
[5, 95]. A missing memory or CPU reading never raises: the scorer answers with a fixed
conservative estimate flagged ``estimated``.
"""
from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field, asdict
import math
import logging
import json
from pydantic import ValidationError
from optimizer_intelligence.validation.telemetry import SystemMetrics
from optimizer_intelligence.infrastructure.metrics import SCORER_FALLBACKS

logger = logging.getLogger(__name__)

WEIGHTS = {
    "memory": 0.35,
    "cpu": 0.25,
    "disk": 0.20,
    "swap": 0.15,
    "thermal": 0.05,
}
MIN_SCORE = 5
MAX_SCORE = 95
BOTTLENECK_THRESHOLD = 40
HISTORY_SIZE = 10
TREND_DELTA = 5

BOTTLENECK_NAMES = {
    "memory": "memory_pressure",
    "cpu": "cpu_overload",
    "disk": "disk_io",
    "swap": "swap_usage",
    "thermal": "thermal_throttling",
}
# Remediation order when several subsystems are saturated at once.
PRIORITY_ORDER = ["memory_pressure", "swap_usage", "disk_io", "cpu_overload", "thermal_throttling"]
REMEDIATION_ACTIONS = {
    "memory_pressure": ["close_memory_heavy_apps", "clear_app_caches", "kill_background_processes"],
    "swap_usage": ["restart_apps", "clear_system_cache"],
    "disk_io": ["clear_temp_files", "optimize_storage"],
    "cpu_overload": ["limit_background_apps", "pause_heavy_processes"],
}

FALLBACK_SCORE = 30
FALLBACK_COMPONENTS = {"memory": 30, "cpu": 50, "disk": 50, "swap": 30, "thermal": 80}
FALLBACK_IMPROVEMENT = 40


def _round(x: float) -> int:
    # half-up, so 52.5 -> 53 regardless of banker's rounding
    return int(math.floor(x + 0.5))


@dataclass
class SpeedReport:
    speed: int
    components: dict[str, int]
    trend: str
    bottlenecks: list[str]
    potential_improvement: int
    estimated: bool = False
    error: str | None = None
    composite: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def memory_score(m: SystemMetrics) -> int:
    if m.memory_pressure is not None:
        if m.memory_pressure == 1:
            return 85
        if m.memory_pressure == 2:
            return 45
        return 15
    usage = m.memory_used_mb / m.memory_total_mb * 100
    if usage < 60:
        return 85
    if usage < 75:
        return 65
    if usage < 85:
        return 40
    return 20


def cpu_score(m: SystemMetrics) -> int:
    usage = m.cpu_usage
    if usage < 20:
        return 90
    if usage < 40:
        return 75
    if usage < 60:
        return 55
    if usage < 80:
        return 35
    return 15


def disk_score(m: SystemMetrics) -> int:
    total_ops = m.disk_read_ops + m.disk_write_ops
    avg_time = m.disk_avg_time_ms
    if total_ops < 100 and avg_time < 10:
        return 85
    if total_ops < 500 and avg_time < 25:
        return 65
    if total_ops < 1000 and avg_time < 50:
        return 45
    return 25


def swap_score(m: SystemMetrics) -> int:
    if not m.swap_used_mb or not m.swap_total_mb:
        return 90
    pct = m.swap_used_mb / m.swap_total_mb * 100
    if pct < 10:
        return 75
    if pct < 25:
        return 50
    if pct < 50:
        return 25
    return 10


def thermal_score(m: SystemMetrics) -> int:
    return {0: 90, 1: 70, 2: 40, 3: 15}.get(m.thermal_state, 80)


def potential_improvement(m: SystemMetrics) -> int:
    if m.memory_total_mb and m.memory_used_mb is not None:
        ratio = m.memory_used_mb / m.memory_total_mb
    else:
        ratio = 0.0
    if (m.memory_pressure or 0) >= 2 or ratio > 0.8:
        mem = 35
    elif ratio > 0.6:
        mem = 20
    else:
        mem = 10
    if m.cpu_usage > 60:
        cpu = 15
    elif m.cpu_usage > 40:
        cpu = 10
    else:
        cpu = 5
    return min(70, mem + cpu)


def missing_metrics(m: SystemMetrics) -> list[str]:
    missing = []
    if m.cpu_usage is None:
        missing.append("cpu_usage")
    if m.memory_pressure is None and (not m.memory_total_mb or m.memory_used_mb is None):
        missing.append("memory")
    return missing


def optimization_effectiveness(memory_freed_mb: float, speed_gain_percent: float, error_count: int = 0) -> float:
    """0-1 effectiveness of one optimization: memory normalised to 1GB, speed to 50%, 10% off per error."""
    mem = min(memory_freed_mb / 1000.0, 1.0)
    speed = min(speed_gain_percent / 50.0, 1.0)
    value = (mem * 0.6 + speed * 0.4) * (1 - error_count * 0.1)
    return max(0.0, min(1.0, value))


class EffectivenessScorer:
    """Stateful per device: keeps the last ten composites to label the trend."""

    def __init__(self, history_size: int = HISTORY_SIZE):
        self.history: deque[int] = deque(maxlen=history_size)
        self.last_report: SpeedReport | None = None

    def score(self, metrics: SystemMetrics | dict | None) -> SpeedReport:
        if isinstance(metrics, dict):
            try:
                metrics = SystemMetrics(**metrics)
            except ValidationError as exc:
                first = exc.errors()[0]
                loc = ".".join(str(p) for p in first.get("loc", ()))
                return self._fallback(f"invalid metrics: {loc}")
        missing = ["metrics"] if metrics is None else missing_metrics(metrics)
        if missing:
            return self._fallback(f"missing metrics: {', '.join(missing)}")
        try:
            components = {
                "memory": memory_score(metrics),
                "cpu": cpu_score(metrics),
                "disk": disk_score(metrics),
                "swap": swap_score(metrics),
                "thermal": thermal_score(metrics),
            }
            improvement = potential_improvement(metrics)
        except (ArithmeticError, TypeError, ValueError) as exc:
            return self._fallback(f"{exc.__class__.__name__}: {exc}")
        composite = _round(sum(components[k] * w for k, w in WEIGHTS.items()))
        self.history.append(composite)
        report = SpeedReport(
            speed=max(MIN_SCORE, min(MAX_SCORE, composite)),
            components=components,
            trend=self.trend(),
            bottlenecks=identify_bottlenecks(components),
            potential_improvement=improvement,
            composite=composite,
        )
        self.last_report = report
        return report

    def _fallback(self, reason: str) -> SpeedReport:
        SCORER_FALLBACKS.inc()
        logger.warning(json.dumps({"event": "scorer_fallback", "reason": reason}))
        report = SpeedReport(
            speed=FALLBACK_SCORE,
            components=dict(FALLBACK_COMPONENTS),
            trend="unknown",
            bottlenecks=["system_unavailable"],
            potential_improvement=FALLBACK_IMPROVEMENT,
            estimated=True,
            error=reason,
        )
        self.last_report = report
        return report

    def trend(self) -> str:
        samples = list(self.history)
        if len(samples) < 2:
            return "stable"
        recent = samples[-3:]
        older = samples[-6:-3]
        if len(recent) < 2 or len(older) < 2:
            return "stable"
        diff = sum(recent) / len(recent) - sum(older) / len(older)
        if diff > TREND_DELTA:
            return "improving"
        if diff < -TREND_DELTA:
            return "declining"
        return "stable"

    def detailed_report(self) -> dict | None:
        if self.last_report is None:
            return None
        report = self.last_report.to_dict()
        report["system_analysis"] = {
            "primary_bottleneck": primary_bottleneck(self.last_report.components),
            "optimization_priority": optimization_priority(self.last_report.bottlenecks),
            "recommended_actions": recommended_actions(self.last_report.bottlenecks),
        }
        return report


def identify_bottlenecks(components: dict[str, int]) -> list[str]:
    return [BOTTLENECK_NAMES[k] for k in WEIGHTS if components[k] < BOTTLENECK_THRESHOLD]


def primary_bottleneck(components: dict[str, int]) -> str:
    # first lowest in weight order
    return min(WEIGHTS, key=lambda k: components[k])


def optimization_priority(bottlenecks: list[str]) -> str:
    for name in PRIORITY_ORDER:
        if name in bottlenecks:
            return name
    return "general_cleanup"


def recommended_actions(bottlenecks: list[str]) -> list[str]:
    actions: list[str] = []
    for name in ("memory_pressure", "swap_usage", "disk_io", "cpu_overload"):
        if name in bottlenecks:
            actions.extend(REMEDIATION_ACTIONS[name])
    return actions
