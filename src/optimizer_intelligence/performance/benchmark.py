"""Weighted check batteries that turn a measurement into a validation confidence.

Two batteries exist: one for a single optimization's before/after pair and one for a full-system
benchmark driven through a ``SystemProbe``. Both always return a ``BenchmarkResult``; failures
inside a battery are recorded on the result, never raised.
"""
from __future__ import annotations
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Protocol, Any
import logging
import json
import time
import uuid
from optimizer_intelligence.performance.effectiveness import EffectivenessScorer
from optimizer_intelligence.validation.telemetry import SystemMetrics
from optimizer_intelligence.infrastructure.metrics import BENCHMARK_RESULTS

logger = logging.getLogger(__name__)

UX_PASS_SCORE = 60
SUBTEST_PASS_RATIO = 0.75
RESPONSIVENESS_PROBES = 5
RESPONSIVENESS_LIMIT_SECONDS = 2.0
CACHE_IMPACT_LIMIT = 10
MAX_PROCESSES = 200
HIGH_MEMORY_PROCESS_MB = 500
MAX_HIGH_MEMORY_PROCESSES = 10


class SystemProbe(Protocol):
    """Source of live readings for a full-system benchmark."""

    def collect(self) -> SystemMetrics: ...

    def processes(self) -> list[dict]: ...


@dataclass
class BenchmarkResult:
    kind: str
    id: str = field(default_factory=lambda: f"benchmark_{uuid.uuid4().hex[:12]}")
    label: str | None = None
    app_id: str | None = None
    strategy: str | None = None
    passed: bool = False
    confidence: float = 0.0
    tests: list[dict] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    effectiveness: dict[str, Any] = field(default_factory=dict)
    sub_tests: dict[str, dict] = field(default_factory=dict)
    duration_seconds: float = 0.0
    error: str | None = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d


def user_experience_score(memory_improvement: float, speed_improvement: float, errors: int, actions: int) -> float:
    score = max(0.0, min(40.0, memory_improvement / 1000 * 40))
    score += max(0.0, min(40.0, speed_improvement / 50 * 40))
    score -= errors * 20
    score += min(20, actions * 5)
    return max(0.0, min(100.0, score))


def _confidence(tests: list[dict]) -> float:
    # round so that float sums like 0.7 + 0.1 compare cleanly against thresholds
    return round(sum(t["weight"] for t in tests if t["passed"]), 4)


class BenchmarkValidator:
    def __init__(
        self,
        min_memory_mb: float = 100.0,
        min_speed_pct: float = 5.0,
        max_regression_pct: float = 2.0,
        validation_confidence: float = 0.8,
        timeout_seconds: float = 30.0,
        settle_seconds: float = 1.0,
        history_size: int = 100,
    ):
        self.min_memory_mb = min_memory_mb
        self.min_speed_pct = min_speed_pct
        self.max_regression_pct = max_regression_pct
        self.validation_confidence = validation_confidence
        self.timeout_seconds = timeout_seconds
        self.settle_seconds = settle_seconds
        self.history: deque[BenchmarkResult] = deque(maxlen=history_size)

    @classmethod
    def from_settings(cls, settings) -> "BenchmarkValidator":
        return cls(
            min_memory_mb=settings.validation_min_memory_mb,
            min_speed_pct=settings.validation_min_speed_pct,
            max_regression_pct=settings.validation_max_regression_pct,
            validation_confidence=settings.validation_confidence,
            timeout_seconds=settings.benchmark_timeout_seconds,
        )

    # --- single optimization -------------------------------------------------

    def compute_effectiveness(self, before: dict | None, after: dict | None, result: dict | None) -> dict:
        """Memory (MB freed) and speed (points gained) from snapshots plus what the optimizer claims."""
        memory = 0.0
        speed = 0.0
        if before and after and before.get("memory_used_mb") is not None and after.get("memory_used_mb") is not None:
            memory = before["memory_used_mb"] - after["memory_used_mb"]
        if before and after and before.get("speed") is not None and after.get("speed") is not None:
            speed = after["speed"] - before["speed"]
        actions = errors = 0
        if result:
            memory += result.get("memory_freed_mb") or 0.0
            speed += result.get("speed_gain_percent") or 0.0
            actions = result.get("actions_completed") or 0
            errors = result.get("errors_encountered") or 0
        return {
            "memory_improvement": memory,
            "speed_improvement": speed,
            "actions_completed": actions,
            "errors_encountered": errors,
            "user_experience_score": user_experience_score(memory, speed, errors, actions),
        }

    def validate_optimization(self, app_id: str | None, strategy: str | None, before: dict | None,
                              after: dict | None, result: dict | None) -> BenchmarkResult:
        bench = BenchmarkResult(kind="optimization", app_id=app_id, strategy=strategy)
        try:
            eff = self.compute_effectiveness(before, after, result)
            bench.effectiveness = eff
            bench.tests = [
                {"name": "memory_improvement", "passed": eff["memory_improvement"] >= self.min_memory_mb, "weight": 0.4,
                 "details": f"{eff['memory_improvement']:.1f}MB freed"},
                {"name": "speed_improvement", "passed": eff["speed_improvement"] >= self.min_speed_pct, "weight": 0.3,
                 "details": f"{eff['speed_improvement']:.1f}% faster"},
                {"name": "no_regression", "passed": eff["speed_improvement"] >= -self.max_regression_pct, "weight": 0.2},
                {"name": "user_experience", "passed": eff["user_experience_score"] >= UX_PASS_SCORE, "weight": 0.1,
                 "details": f"{eff['user_experience_score']:.1f}/100"},
            ]
            bench.issues = [t["name"] for t in bench.tests if not t["passed"]]
            bench.confidence = _confidence(bench.tests)
            bench.passed = bench.confidence >= self.validation_confidence
        except (ArithmeticError, TypeError, ValueError, KeyError) as exc:
            bench.error = f"{exc.__class__.__name__}: {exc}"
            bench.passed = False
            logger.warning(json.dumps({"event": "optimization_benchmark_failed", "app_id": app_id, "detail": bench.error}))
        self._record(bench)
        return bench

    # --- full system ---------------------------------------------------------

    def run_system_benchmark(self, probe: SystemProbe, label: str = "system_benchmark") -> BenchmarkResult:
        bench = BenchmarkResult(kind="system", label=label)
        start = time.monotonic()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="benchmark")
        future = pool.submit(self._system_battery, probe)
        system_state_ok = False
        try:
            system_state_ok, bench.sub_tests = future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            bench.error = f"benchmark exceeded {self.timeout_seconds:g}s timeout"
            logger.warning(json.dumps({"event": "benchmark_timeout", "label": label, "timeout": self.timeout_seconds}))
        except Exception as exc:  # noqa - a broken probe is a failed benchmark, not a crash
            bench.error = f"{exc.__class__.__name__}: {exc}"
        finally:
            # the battery thread may still be blocked in the probe; do not wait for it
            pool.shutdown(wait=False, cancel_futures=True)
        bench.duration_seconds = time.monotonic() - start
        if bench.error and bench.error.startswith("benchmark exceeded"):
            bench.duration_seconds = max(bench.duration_seconds, self.timeout_seconds)
        passed_sub = sum(1 for t in bench.sub_tests.values() if t.get("passed"))
        total_sub = len(bench.sub_tests)
        bench.tests = [
            {"name": "metrics_collection", "passed": system_state_ok, "weight": 0.3},
            {"name": "performance_tests", "passed": total_sub > 0 and passed_sub >= total_sub * SUBTEST_PASS_RATIO,
             "weight": 0.4, "details": f"{passed_sub}/{total_sub} passed"},
            {"name": "reasonable_duration", "passed": bench.duration_seconds < self.timeout_seconds, "weight": 0.2,
             "details": f"{bench.duration_seconds:.2f}s"},
            {"name": "no_critical_errors", "passed": bench.error is None, "weight": 0.1},
        ]
        bench.issues = [t["name"] for t in bench.tests if not t["passed"]]
        bench.confidence = _confidence(bench.tests)
        bench.passed = bench.confidence >= self.validation_confidence
        self._record(bench)
        return bench

    def _system_battery(self, probe: SystemProbe) -> tuple[bool, dict]:
        probe.collect()  # raises if metrics collection itself is broken
        scorer = EffectivenessScorer()
        return True, {
            "memory_pressure": self._subtest(self._memory_pressure_test, probe, scorer),
            "responsiveness": self._subtest(self._responsiveness_test, probe, scorer),
            "cache_efficiency": self._subtest(self._cache_efficiency_test, probe, scorer),
            "process_optimization": self._subtest(self._process_test, probe, scorer),
        }

    @staticmethod
    def _subtest(fn, probe, scorer) -> dict:
        started = time.monotonic()
        try:
            out = fn(probe, scorer)
        except Exception as exc:  # noqa - recorded as a failed sub-test
            out = {"passed": False, "error": f"{exc.__class__.__name__}: {exc}"}
        out["duration_seconds"] = time.monotonic() - started
        return out

    def _memory_pressure_test(self, probe, scorer) -> dict:
        initial = scorer.score(probe.collect()).components["memory"]
        time.sleep(self.settle_seconds)
        final = scorer.score(probe.collect()).components["memory"]
        return {"passed": final - initial >= -5, "initial": initial, "final": final, "improvement": final - initial}

    def _responsiveness_test(self, probe, scorer) -> dict:
        timings = []
        for _ in range(RESPONSIVENESS_PROBES):
            t0 = time.monotonic()
            scorer.score(probe.collect())
            timings.append(time.monotonic() - t0)
        avg = sum(timings) / len(timings)
        return {"passed": avg < RESPONSIVENESS_LIMIT_SECONDS, "average_response_seconds": avg}

    def _cache_efficiency_test(self, probe, scorer) -> dict:
        before = scorer.score(probe.collect()).speed
        time.sleep(self.settle_seconds / 2)
        after = scorer.score(probe.collect()).speed
        return {"passed": abs(after - before) < CACHE_IMPACT_LIMIT, "before": before, "after": after, "impact": after - before}

    def _process_test(self, probe, scorer) -> dict:
        procs = probe.processes()
        high = sum(1 for p in procs if (p.get("memory_mb") or 0) > HIGH_MEMORY_PROCESS_MB)
        return {
            "passed": len(procs) < MAX_PROCESSES and high < MAX_HIGH_MEMORY_PROCESSES,
            "total_processes": len(procs),
            "high_memory_processes": high,
        }

    # --- history ---------------------------------------------------------------

    def _record(self, bench: BenchmarkResult):
        self.history.append(bench)
        BENCHMARK_RESULTS.labels(kind=bench.kind, outcome="passed" if bench.passed else "failed").inc()

    def analytics(self) -> dict:
        history = list(self.history)
        out = {
            "total_benchmarks": len(history),
            "system_benchmarks": sum(1 for b in history if b.kind == "system"),
            "optimization_benchmarks": sum(1 for b in history if b.kind == "optimization"),
            "overall_pass_rate": 0.0,
            "average_confidence": 0.0,
            "recommendations": [],
        }
        if not history:
            return out
        out["overall_pass_rate"] = sum(1 for b in history if b.passed) / len(history) * 100
        out["average_confidence"] = sum(b.confidence for b in history) / len(history)
        recs = []
        if out["overall_pass_rate"] < 80:
            recs.append({"type": "improvement", "priority": "high",
                         "message": "benchmark pass rate below 80%; review optimization strategies"})
        if out["average_confidence"] < 0.7:
            recs.append({"type": "improvement", "priority": "medium",
                         "message": "average validation confidence is low"})
        if out["system_benchmarks"] < 5:
            recs.append({"type": "suggestion", "priority": "low",
                         "message": "run more system benchmarks to establish a baseline"})
        out["recommendations"] = recs
        return out
