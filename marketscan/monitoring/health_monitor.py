"""Extraction health monitoring, alerting and recommendations.

Tracks extraction outcomes (globally, per data type and per strategy),
page load performance and errors in memory. Health is folded from three
axes: extraction success, performance and per-strategy success. Snapshots
are flushed to the health_snapshots table every few recordings and when an
alert is raised, as background tasks, so recording never waits on I/O.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketscan import metrics
from marketscan.config import AlertConfig
from marketscan.db.models import HealthSnapshot

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
CRITICAL = "critical"
FAILING = "failing"
SLOW = "slow"


@dataclass
class ExtractionResult:
    """Outcome of one extraction attempt reported to the monitor."""

    success: bool
    partial: bool = False
    data_type: Optional[str] = None
    strategy: Optional[str] = None
    extracted: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    details: dict = field(default_factory=dict)

    @property
    def outcome(self) -> str:
        if self.success:
            return "successful"
        if self.partial:
            return "partial"
        return "failed"


@dataclass
class OutcomeCounter:
    total: int = 0
    successful: int = 0
    partial: int = 0
    failed: int = 0

    def record(self, outcome: str):
        self.total += 1
        setattr(self, outcome, getattr(self, outcome) + 1)

    @property
    def success_rate(self) -> float:
        """Share of attempts that yielded data (partial counts as yield)."""
        if self.total == 0:
            return 0.0
        return (self.successful + self.partial) / self.total


@dataclass
class PerformanceCounter:
    samples: int = 0
    average_time: float = 0.0
    min_time: Optional[float] = None
    max_time: float = 0.0
    timeouts: int = 0


@dataclass
class Alert:
    id: str
    type: str
    message: str
    severity: str
    timestamp: datetime
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    occurrences: int = 1
    last_seen_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("timestamp", "resolved_at", "last_seen_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Alert":
        values = dict(data)
        for key in ("timestamp", "resolved_at", "last_seen_at"):
            if values.get(key):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)


@dataclass
class HealthStatus:
    overall: str = HEALTHY
    extraction: str = HEALTHY
    performance: str = HEALTHY
    strategies: dict[str, str] = field(default_factory=dict)
    last_updated: Optional[datetime] = None


def _rate_health(rate: float, low: str) -> str:
    if rate < 0.3:
        return low
    if rate < 0.7:
        return DEGRADED
    return HEALTHY


class HealthMonitor:
    """Scores system health from extraction, performance and error reports."""

    def __init__(
        self,
        config: Optional[AlertConfig] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.config = config or AlertConfig()
        self._session_factory = session_factory
        self._clock = clock

        self.alerts: list[Alert] = []
        self.status = HealthStatus()
        self._pending_flushes: set[asyncio.Task] = set()
        self._recordings_since_flush = 0
        self.flush_failures = 0
        self._reset_counters()

    def _reset_counters(self):
        self.extraction = OutcomeCounter()
        self.by_data_type: dict[str, OutcomeCounter] = {}
        self.by_strategy: dict[str, OutcomeCounter] = {}
        self.performance = PerformanceCounter()
        self.errors: deque = deque(maxlen=self.config.error_log_size)
        self.history: deque = deque(maxlen=self.config.history_size)

    # Recording

    def record_extraction_result(self, result: ExtractionResult) -> None:
        """
        Count an extraction outcome globally, per data type and per strategy.

        Data types listed in result.extracted count as successful and those
        in result.missing as failed for their own buckets.
        """
        outcome = result.outcome
        now = self._clock()
        self.extraction.record(outcome)

        if result.data_type:
            self.by_data_type.setdefault(result.data_type, OutcomeCounter()).record(outcome)
        for data_type in result.extracted:
            if data_type != result.data_type:
                self.by_data_type.setdefault(data_type, OutcomeCounter()).record("successful")
        for data_type in result.missing:
            if data_type != result.data_type:
                self.by_data_type.setdefault(data_type, OutcomeCounter()).record("failed")

        if result.strategy:
            self.by_strategy.setdefault(result.strategy, OutcomeCounter()).record(outcome)

        self.history.append(
            {
                "type": "extraction",
                "success": outcome != "failed",
                "timestamp": now,
                "data_type": result.data_type,
                "strategy": result.strategy,
            }
        )
        metrics.record_extraction(result.data_type or "page", result.strategy or "none", outcome)

        self.check_health()
        self._count_recording()

    def record_performance(self, duration: float, timed_out: bool = False) -> None:
        """
        Record one page load time in seconds, or a timeout.

        Timeouts are counted separately and do not enter the average.
        """
        perf = self.performance
        if timed_out:
            perf.timeouts += 1
        else:
            perf.samples += 1
            perf.average_time += (duration - perf.average_time) / perf.samples
            perf.max_time = max(perf.max_time, duration)
            perf.min_time = duration if perf.min_time is None else min(perf.min_time, duration)

        if perf.average_time > self.config.performance_alert_seconds:
            self.raise_alert(
                "performance",
                f"Average extraction time exceeds {self.config.performance_alert_seconds:g} seconds",
            )
        self.check_health()
        self._count_recording()

    def record_error(self, error: BaseException, context: Optional[dict] = None) -> None:
        """Append to the bounded error log and raise a burst alert when errors pile up."""
        now = self._clock()
        self.errors.append(
            {
                "type": type(error).__name__,
                "message": str(error),
                "timestamp": now,
                "context": context or {},
            }
        )
        metrics.health_errors_total.labels(error_type=type(error).__name__).inc()

        window_start = now - timedelta(seconds=self.config.error_burst_window_seconds)
        recent = sum(1 for e in self.errors if e["timestamp"] > window_start)
        if recent > self.config.error_burst_threshold:
            minutes = self.config.error_burst_window_seconds / 60
            self.raise_alert(
                "error-rate",
                f"High error rate: more than {self.config.error_burst_threshold} errors in {minutes:g} minutes",
                severity="high",
            )
        self._count_recording()

    # Health

    def compute_status(self) -> HealthStatus:
        """Fold the three health axes into one status without side effects."""
        status = HealthStatus(last_updated=self._clock())

        if self.extraction.total:
            status.extraction = _rate_health(self.extraction.success_rate, CRITICAL)

        perf = self.performance
        if perf.timeouts > self.extraction.total * 0.1:
            status.performance = DEGRADED
        elif perf.average_time > self.config.performance_degraded_seconds:
            status.performance = SLOW

        for strategy, counter in self.by_strategy.items():
            status.strategies[strategy] = _rate_health(counter.success_rate, FAILING)

        states = [status.extraction, status.performance, *status.strategies.values()]
        if CRITICAL in states:
            status.overall = CRITICAL
        elif sum(1 for s in states if s in (DEGRADED, FAILING)) > 2:
            status.overall = DEGRADED
        else:
            status.overall = HEALTHY
        return status

    def check_health(self) -> HealthStatus:
        self.status = self.compute_status()
        metrics.record_health_status(self.status.overall)
        if self.status.overall == CRITICAL:
            self.raise_alert("health", "System health is critical", severity="critical")
        return self.status

    def generate_recommendations(self) -> list[dict]:
        recommendations = []

        total = self.extraction.total
        if total and self.extraction.successful / total < 0.5:
            recommendations.append(
                {
                    "severity": "high",
                    "type": "success-rate",
                    "message": "Overall success rate is below 50%. Consider refreshing detection strategies.",
                    "action": "refresh-strategies",
                }
            )

        for strategy, health in self.status.strategies.items():
            if health == FAILING:
                recommendations.append(
                    {
                        "severity": "medium",
                        "type": "strategy-failure",
                        "message": f'Strategy "{strategy}" is failing. Consider disabling or updating it.',
                        "action": "update-strategy",
                        "target": strategy,
                    }
                )

        if self.performance.average_time > self.config.performance_alert_seconds:
            recommendations.append(
                {
                    "severity": "medium",
                    "type": "performance",
                    "message": "Average extraction time is high. Consider optimizing strategies or increasing timeouts.",
                    "action": "optimize-performance",
                }
            )

        for data_type, counter in self.by_data_type.items():
            rate = counter.success_rate
            if rate < 0.3 and counter.total > 10:
                recommendations.append(
                    {
                        "severity": "high",
                        "type": "data-type-failure",
                        "message": f'Extraction for "{data_type}" is failing ({rate * 100:.1f}% success rate)',
                        "action": "train-patterns",
                        "target": data_type,
                    }
                )
        return recommendations

    def get_health_report(self) -> dict[str, Any]:
        """
        Current health, summary figures, breakdowns and recommendations.

        Returns:
            Dict with status, summary, data_types, strategies and
            recommendations keys
        """
        status = self.status
        return {
            "status": {
                "overall": status.overall,
                "extraction": status.extraction,
                "performance": status.performance,
                "strategies": dict(status.strategies),
                "last_updated": status.last_updated.isoformat() if status.last_updated else None,
            },
            "summary": {
                "total_extractions": self.extraction.total,
                "successful": self.extraction.successful,
                "partial": self.extraction.partial,
                "failed": self.extraction.failed,
                "success_rate": self.extraction.success_rate,
                "average_time": round(self.performance.average_time, 3),
                "min_time": self.performance.min_time,
                "max_time": self.performance.max_time,
                "timeouts": self.performance.timeouts,
                "recent_errors": [_error_to_dict(e) for e in list(self.errors)[-5:]],
                "active_alerts": [a.to_dict() for a in self.get_active_alerts()],
            },
            "data_types": {
                dt: {"total": c.total, "success_rate": c.success_rate}
                for dt, c in self.by_data_type.items()
            },
            "strategies": {
                name: {
                    "total": c.total,
                    "success_rate": c.success_rate,
                    "health": status.strategies.get(name, "unknown"),
                }
                for name, c in self.by_strategy.items()
            },
            "recommendations": self.generate_recommendations(),
        }

    def get_performance_trends(self, hours: int = 24) -> dict[str, dict[str, int]]:
        """Extraction outcomes from history grouped into hourly buckets."""
        cutoff = self._clock() - timedelta(hours=hours)
        buckets: dict[str, dict[str, int]] = {}
        for record in self.history:
            if record["timestamp"] <= cutoff:
                continue
            hour = record["timestamp"].replace(minute=0, second=0, microsecond=0).isoformat()
            bucket = buckets.setdefault(hour, {"total": 0, "successful": 0, "failed": 0})
            bucket["total"] += 1
            bucket["successful" if record["success"] else "failed"] += 1
        return buckets

    # Alerts

    def raise_alert(self, alert_type: str, message: str, severity: str = "medium") -> Alert:
        """
        Raise an alert, or bump the occurrence count of an identical unresolved one.

        Returns:
            The new or existing Alert
        """
        now = self._clock()
        for alert in self.alerts:
            if not alert.resolved and alert.type == alert_type and alert.message == message:
                alert.occurrences += 1
                alert.last_seen_at = now
                return alert

        alert = Alert(
            id=f"alert-{uuid.uuid4().hex[:12]}",
            type=alert_type,
            message=message,
            severity=severity,
            timestamp=now,
            last_seen_at=now,
        )
        self.alerts.append(alert)
        metrics.record_alert_raised(alert_type, severity)
        logger.warning(f"ALERT [{severity}] {alert_type}: {message}")
        self._schedule_flush()
        return alert

    def resolve_alert(self, alert_id: str) -> bool:
        """Mark an alert resolved. Returns False for unknown or already resolved ids."""
        for alert in self.alerts:
            if alert.id == alert_id and not alert.resolved:
                alert.resolved = True
                alert.resolved_at = self._clock()
                logger.info(f"Resolved alert {alert_id} ({alert.type})")
                return True
        return False

    def get_active_alerts(self) -> list[Alert]:
        return [a for a in self.alerts if not a.resolved]

    # Snapshots

    def reset_metrics(self) -> None:
        """Clear counters, errors and history. Alerts are kept."""
        self._reset_counters()
        self.status = HealthStatus()
        logger.info("Health metrics reset")

    def export_metrics(self) -> dict[str, Any]:
        """JSON-safe dump of counters, alerts and the current report."""
        return {
            "metrics": self._counters_to_dict(),
            "alerts": [a.to_dict() for a in self.alerts],
            "report": self.get_health_report(),
            "exported_at": self._clock().isoformat(),
        }

    def _counters_to_dict(self) -> dict[str, Any]:
        return {
            "extraction": asdict(self.extraction),
            "by_data_type": {k: asdict(v) for k, v in self.by_data_type.items()},
            "by_strategy": {k: asdict(v) for k, v in self.by_strategy.items()},
            "performance": asdict(self.performance),
        }

    def _count_recording(self):
        self._recordings_since_flush += 1
        if self._recordings_since_flush >= self.config.flush_every:
            self._schedule_flush()

    def _schedule_flush(self):
        if self._session_factory is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Called outside the event loop; the next in-loop recording will flush
            return
        self._recordings_since_flush = 0
        task = loop.create_task(self.flush())
        self._pending_flushes.add(task)
        task.add_done_callback(self._flush_done)

    def _flush_done(self, task: asyncio.Task):
        self._pending_flushes.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.flush_failures += 1
            logger.error(f"Health snapshot flush failed: {error}")

    async def flush(self) -> None:
        """Persist a snapshot of counters, alerts and recommendations."""
        if self._session_factory is None:
            return
        snapshot = HealthSnapshot(
            status=self.status.overall,
            metrics=self._counters_to_dict(),
            alerts=[a.to_dict() for a in self.alerts],
            recommendations=self.generate_recommendations(),
            created_at=self._clock(),
        )
        async with self._session_factory() as session:
            session.add(snapshot)
            await session.commit()
        logger.debug("Flushed health snapshot")

    async def drain(self) -> None:
        """Wait for scheduled flushes to finish."""
        if self._pending_flushes:
            await asyncio.gather(*self._pending_flushes, return_exceptions=True)

    async def load(self) -> bool:
        """
        Restore counters and alerts from the latest snapshot.

        Returns:
            True if a snapshot was found
        """
        if self._session_factory is None:
            return False
        async with self._session_factory() as session:
            result = await session.execute(
                select(HealthSnapshot).order_by(HealthSnapshot.created_at.desc(), HealthSnapshot.id.desc()).limit(1)
            )
            snapshot = result.scalar_one_or_none()
        if snapshot is None:
            logger.info("Starting fresh health metrics")
            return False

        data = snapshot.metrics or {}
        self.extraction = OutcomeCounter(**data.get("extraction", {}))
        self.by_data_type = {k: OutcomeCounter(**v) for k, v in data.get("by_data_type", {}).items()}
        self.by_strategy = {k: OutcomeCounter(**v) for k, v in data.get("by_strategy", {}).items()}
        self.performance = PerformanceCounter(**data.get("performance", {}))
        self.alerts = [Alert.from_dict(a) for a in snapshot.alerts or []]
        self.check_health()
        logger.info(f"Loaded health metrics from snapshot {snapshot.id}")
        return True


def _error_to_dict(record: dict) -> dict:
    return {**record, "timestamp": record["timestamp"].isoformat()}
