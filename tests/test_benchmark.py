import threading

import pytest

from optimizer_intelligence.performance.benchmark import BenchmarkValidator, user_experience_score
from optimizer_intelligence.validation.telemetry import SystemMetrics

HEALTHY = SystemMetrics(memory_pressure=1, cpu_usage=10, thermal_state=0)
STRESSED = SystemMetrics(memory_pressure=4, cpu_usage=95, disk_read_ops=1500, disk_avg_time_ms=80, thermal_state=3)


class StaticProbe:
    def __init__(self, metrics=HEALTHY, processes=None):
        self.metrics = metrics
        self._processes = processes or []

    def collect(self):
        return self.metrics

    def processes(self):
        return self._processes


class DegradingProbe(StaticProbe):
    """Healthy for the first two readings, stressed afterwards."""

    def __init__(self, processes=None):
        super().__init__(HEALTHY, processes)
        self.calls = 0

    def collect(self):
        self.calls += 1
        return HEALTHY if self.calls <= 2 else STRESSED


class BlockingProbe(StaticProbe):
    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def collect(self):
        self.release.wait(5)
        return HEALTHY


class BrokenProbe(StaticProbe):
    def collect(self):
        raise RuntimeError("sensor offline")


@pytest.fixture()
def validator():
    return BenchmarkValidator(settle_seconds=0, timeout_seconds=5)


def test_user_experience_score_components():
    assert user_experience_score(600, 10, 0, 3) == pytest.approx(47)
    assert user_experience_score(5000, 500, 0, 10) == 100
    assert user_experience_score(0, 0, 3, 0) == 0


def test_optimization_passes_with_memory_and_speed_gains(validator):
    bench = validator.validate_optimization(
        "com.example.browser", "balanced",
        {"memory_used_mb": 8000, "speed": 40}, {"memory_used_mb": 7400, "speed": 50},
        {"actions_completed": 3},
    )
    assert bench.effectiveness["memory_improvement"] == pytest.approx(600)
    assert bench.effectiveness["speed_improvement"] == pytest.approx(10)
    assert bench.effectiveness["user_experience_score"] == pytest.approx(47)
    assert bench.confidence == pytest.approx(0.9)
    assert bench.passed is True
    assert bench.issues == ["user_experience"]


def test_optimization_fails_on_small_gains(validator):
    bench = validator.validate_optimization(
        None, "conservative", {"memory_used_mb": 8000, "speed": 40}, {"memory_used_mb": 7950, "speed": 39}, None,
    )
    assert bench.confidence == pytest.approx(0.2)
    assert bench.passed is False
    assert "memory_improvement" in bench.issues


def test_optimization_battery_records_errors_instead_of_raising(validator):
    bench = validator.validate_optimization(None, None, {"memory_used_mb": "lots"}, {"memory_used_mb": 10}, None)
    assert bench.passed is False
    assert bench.error.startswith("TypeError")
    assert validator.history[-1] is bench


def test_system_benchmark_on_healthy_probe(validator):
    bench = validator.run_system_benchmark(StaticProbe(), label="nightly")
    assert bench.label == "nightly"
    assert bench.error is None
    assert set(bench.sub_tests) == {"memory_pressure", "responsiveness", "cache_efficiency", "process_optimization"}
    assert all(t["passed"] for t in bench.sub_tests.values())
    assert bench.confidence == pytest.approx(1.0)
    assert bench.passed is True


def test_system_benchmark_timeout_is_a_failed_result():
    validator = BenchmarkValidator(settle_seconds=0, timeout_seconds=0.2)
    probe = BlockingProbe()
    try:
        bench = validator.run_system_benchmark(probe)
    finally:
        probe.release.set()
    assert "timeout" in bench.error
    assert bench.duration_seconds >= 0.2
    assert bench.confidence == 0
    assert bench.passed is False


def test_system_benchmark_with_broken_probe(validator):
    bench = validator.run_system_benchmark(BrokenProbe())
    assert bench.error == "RuntimeError: sensor offline"
    assert bench.sub_tests == {}
    assert bench.confidence == pytest.approx(0.2)
    assert bench.passed is False


def test_system_benchmark_subtest_failures_lower_confidence(validator):
    processes = [{"pid": i, "memory_mb": 50} for i in range(250)]
    bench = validator.run_system_benchmark(DegradingProbe(processes))
    assert bench.sub_tests["memory_pressure"]["passed"] is False
    assert bench.sub_tests["process_optimization"]["total_processes"] == 250
    assert bench.sub_tests["process_optimization"]["passed"] is False
    assert bench.sub_tests["cache_efficiency"]["passed"] is True
    assert bench.confidence == pytest.approx(0.6)
    assert bench.passed is False
    assert bench.issues == ["performance_tests"]


def test_analytics_recommends_more_benchmarks(validator):
    assert validator.analytics()["total_benchmarks"] == 0
    validator.validate_optimization(None, None, {"memory_used_mb": 100}, {"memory_used_mb": 100}, None)
    out = validator.analytics()
    assert out["optimization_benchmarks"] == 1
    assert out["overall_pass_rate"] == 0
    priorities = [r["priority"] for r in out["recommendations"]]
    assert priorities == ["high", "medium", "low"]
