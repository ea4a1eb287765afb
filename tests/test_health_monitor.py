"""Tests for health scoring, alerts, recommendations and snapshots."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from marketscan.config import AlertConfig
from marketscan.db.models import HealthSnapshot
from marketscan.monitoring.health_monitor import (
    CRITICAL,
    DEGRADED,
    FAILING,
    HEALTHY,
    SLOW,
    ExtractionResult,
    HealthMonitor,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monitor(clock):
    return HealthMonitor(clock=clock)


def _actions(report):
    return [(r["action"], r.get("target")) for r in report["recommendations"]]


def test_fresh_monitor_is_healthy(monitor):
    report = monitor.get_health_report()

    assert report["status"]["overall"] == HEALTHY
    assert report["summary"]["total_extractions"] == 0
    assert report["recommendations"] == []
    assert set(report) == {"status", "summary", "data_types", "strategies", "recommendations"}


def test_consecutive_failures_mark_strategy_failing(monitor):
    for _ in range(10):
        monitor.record_extraction_result(ExtractionResult(success=False, data_type="price", strategy="class"))

    report = monitor.get_health_report()

    assert report["strategies"]["class"]["health"] == FAILING
    assert ("update-strategy", "class") in _actions(report)
    assert ("refresh-strategies", None) in _actions(report)
    assert report["status"]["overall"] == CRITICAL
    assert any(a.type == "health" and a.severity == "critical" for a in monitor.get_active_alerts())


def test_train_patterns_needs_more_than_ten_samples(monitor):
    for _ in range(10):
        monitor.record_extraction_result(ExtractionResult(success=False, data_type="price"))
    assert ("train-patterns", "price") not in _actions(monitor.get_health_report())

    monitor.record_extraction_result(ExtractionResult(success=False, data_type="price"))
    assert ("train-patterns", "price") in _actions(monitor.get_health_report())


def test_partial_results_count_as_yield(monitor):
    monitor.record_extraction_result(ExtractionResult(success=True))
    monitor.record_extraction_result(ExtractionResult(success=False, partial=True))
    monitor.record_extraction_result(ExtractionResult(success=False))

    counter = monitor.extraction
    assert (counter.total, counter.successful, counter.partial, counter.failed) == (3, 1, 1, 1)
    assert counter.success_rate == pytest.approx(2 / 3)
    assert monitor.status.extraction == DEGRADED


def test_field_outcomes_tracked_per_data_type(monitor):
    monitor.record_extraction_result(
        ExtractionResult(
            success=True,
            data_type="listing_card",
            extracted=["title", "price"],
            missing=["views"],
        )
    )

    assert monitor.by_data_type["listing_card"].successful == 1
    assert monitor.by_data_type["title"].successful == 1
    assert monitor.by_data_type["views"].failed == 1
    assert monitor.extraction.total == 1


def test_three_degraded_axes_degrade_overall(monitor):
    for strategy in ("class", "id"):
        monitor.record_extraction_result(ExtractionResult(success=True, strategy=strategy))
        monitor.record_extraction_result(ExtractionResult(success=False, strategy=strategy))

    assert monitor.status.extraction == DEGRADED
    assert monitor.status.strategies == {"class": DEGRADED, "id": DEGRADED}
    assert monitor.status.overall == DEGRADED


def test_two_degraded_axes_stay_healthy(monitor):
    monitor.record_extraction_result(ExtractionResult(success=True, strategy="class"))
    monitor.record_extraction_result(ExtractionResult(success=False, strategy="class"))

    assert monitor.status.extraction == DEGRADED
    assert monitor.status.overall == HEALTHY


def test_performance_average_excludes_timeouts(monitor):
    monitor.record_performance(2.0)
    monitor.record_performance(4.0)
    monitor.record_performance(0, timed_out=True)

    perf = monitor.performance
    assert perf.average_time == pytest.approx(3.0)
    assert (perf.min_time, perf.max_time, perf.timeouts) == (2.0, 4.0, 1)


def test_timeouts_degrade_performance(monitor):
    for _ in range(10):
        monitor.record_extraction_result(ExtractionResult(success=True))
    monitor.record_performance(0, timed_out=True)
    assert monitor.status.performance == HEALTHY

    monitor.record_performance(0, timed_out=True)
    assert monitor.status.performance == DEGRADED


def test_slow_pages_raise_performance_alert(monitor):
    monitor.record_performance(25.0)
    assert [a.type for a in monitor.get_active_alerts()] == ["performance"]
    assert monitor.status.performance == HEALTHY
    assert ("optimize-performance", None) in _actions(monitor.get_health_report())

    monitor.record_performance(45.0)
    assert monitor.status.performance == SLOW
    alert = monitor.get_active_alerts()[0]
    assert alert.occurrences == 2


def test_error_burst_alert(monitor, clock):
    for i in range(10):
        monitor.record_error(RuntimeError(f"boom {i}"), {"component": "test"})
    assert monitor.get_active_alerts() == []

    monitor.record_error(RuntimeError("boom 10"))
    alerts = monitor.get_active_alerts()
    assert len(alerts) == 1
    assert alerts[0].type == "error-rate"
    assert alerts[0].severity == "high"
    assert alerts[0].message == "High error rate: more than 10 errors in 5 minutes"


def test_old_errors_leave_the_burst_window(monitor, clock):
    for i in range(10):
        monitor.record_error(RuntimeError(f"boom {i}"))
    clock.advance(minutes=6)
    monitor.record_error(RuntimeError("late"))

    assert monitor.get_active_alerts() == []
    assert len(monitor.errors) == 11


def test_error_log_is_bounded(clock):
    monitor = HealthMonitor(AlertConfig(error_log_size=5, error_burst_threshold=100), clock=clock)
    for i in range(8):
        monitor.record_error(ValueError(str(i)))

    assert [e["message"] for e in monitor.errors] == ["3", "4", "5", "6", "7"]
    recent = monitor.get_health_report()["summary"]["recent_errors"]
    assert [e["message"] for e in recent] == ["3", "4", "5", "6", "7"]


def test_alerts_deduplicate_and_resolve_independently(monitor):
    first = monitor.raise_alert("selector", "Price selector broken")
    again = monitor.raise_alert("selector", "Price selector broken")
    other = monitor.raise_alert("selector", "Title selector broken")

    assert first is again
    assert first.occurrences == 2
    assert first.id != other.id

    assert monitor.resolve_alert(first.id)
    assert not monitor.resolve_alert(first.id)
    assert not monitor.resolve_alert("alert-unknown")
    assert monitor.get_active_alerts() == [other]

    reopened = monitor.raise_alert("selector", "Price selector broken")
    assert reopened.id != first.id


def test_alerts_survive_recomputation_and_reset(monitor):
    alert = monitor.raise_alert("selector", "Price selector broken")
    monitor.check_health()
    monitor.reset_metrics()

    assert monitor.get_active_alerts() == [alert]
    assert monitor.extraction.total == 0


def test_performance_trends_bucket_by_hour(monitor, clock):
    monitor.record_extraction_result(ExtractionResult(success=True))
    clock.advance(minutes=30)
    monitor.record_extraction_result(ExtractionResult(success=False))
    clock.advance(hours=1)
    monitor.record_extraction_result(ExtractionResult(success=True))

    trends = monitor.get_performance_trends(hours=24)
    assert trends == {
        "2024-03-01T12:00:00": {"total": 2, "successful": 1, "failed": 1},
        "2024-03-01T13:00:00": {"total": 1, "successful": 1, "failed": 0},
    }
    assert monitor.get_performance_trends(hours=1) == {
        "2024-03-01T13:00:00": {"total": 1, "successful": 1, "failed": 0},
    }


def test_export_metrics_is_json_safe(monitor):
    monitor.record_extraction_result(ExtractionResult(success=True, data_type="price", strategy="id"))
    monitor.raise_alert("selector", "Price selector broken")

    exported = monitor.export_metrics()

    assert exported["metrics"]["extraction"]["successful"] == 1
    assert exported["alerts"][0]["timestamp"] == "2024-03-01T12:00:00"
    assert exported["report"]["summary"]["total_extractions"] == 1


async def test_flush_and_load_round_trip(session_factory, clock):
    monitor = HealthMonitor(session_factory=session_factory, clock=clock)
    monitor.record_extraction_result(ExtractionResult(success=False, data_type="price", strategy="class"))
    alert = monitor.raise_alert("selector", "Price selector broken")
    await monitor.drain()
    await monitor.flush()

    restored = HealthMonitor(session_factory=session_factory, clock=clock)
    assert await restored.load()

    assert restored.extraction.failed == 1
    assert restored.by_strategy["class"].total == 1
    assert alert.id in [a.id for a in restored.get_active_alerts()]


async def test_load_without_snapshot(session_factory):
    assert not await HealthMonitor(session_factory=session_factory).load()


async def test_recordings_trigger_periodic_flush(session_factory, clock):
    monitor = HealthMonitor(AlertConfig(flush_every=3), session_factory=session_factory, clock=clock)
    for _ in range(3):
        monitor.record_performance(1.0)
    await monitor.drain()

    async with session_factory() as session:
        count = (await session.execute(select(func.count(HealthSnapshot.id)))).scalar()
    assert count == 1


async def test_flush_failure_never_reaches_the_caller(clock):
    def broken_factory():
        raise RuntimeError("database down")

    monitor = HealthMonitor(AlertConfig(flush_every=1), session_factory=broken_factory, clock=clock)
    monitor.record_performance(1.0)
    await monitor.drain()

    assert monitor.flush_failures == 1
