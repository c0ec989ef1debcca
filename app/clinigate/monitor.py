"""Request metrics, health scoring and alerting for the gateway."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


PERIODS = {"minute": 60, "hour": 3600, "day": 86400}

LATENCY_WARNING_MS = 5000
LATENCY_CRITICAL_MS = 10000
ERROR_RATE_WARNING = 0.05
ERROR_RATE_CRITICAL = 0.15
OVERRIDE_RATE_WARNING = 0.02
OVERRIDE_RATE_CRITICAL = 0.05

MAX_RECENT_ALERTS = 100


@dataclass(frozen=True)
class RequestRecord:
    timestamp: float
    task: str
    success: bool
    latency_ms: int
    was_overridden: bool
    from_cache: bool = False
    error_category: str | None = None
    risk_flags: tuple[str, ...] = ()


@dataclass
class Alert:
    type: str
    severity: str
    message: str
    timestamp: float
    details: dict[str, Any] = field(default_factory=dict)


def _percentile(sorted_values: list[int], pct: float) -> int:
    if not sorted_values:
        return 0
    index = min(len(sorted_values) - 1, max(0, int(round(pct * (len(sorted_values) - 1)))))
    return sorted_values[index]


def health_from_rates(error_rate: float, override_rate: float) -> dict[str, Any]:
    score = 100
    issues: list[str] = []
    if error_rate > ERROR_RATE_CRITICAL:
        score -= 40
        issues.append(f"Critical error rate: {error_rate:.1%}")
    elif error_rate > ERROR_RATE_WARNING:
        score -= 20
        issues.append(f"Elevated error rate: {error_rate:.1%}")

    if override_rate > OVERRIDE_RATE_CRITICAL:
        score -= 30
        issues.append(f"Critical safety override rate: {override_rate:.1%}")
    elif override_rate > OVERRIDE_RATE_WARNING:
        score -= 15
        issues.append(f"Elevated safety override rate: {override_rate:.1%}")

    if score >= 80:
        status = "healthy"
    elif score >= 60:
        status = "degraded"
    elif score >= 40:
        status = "unhealthy"
    else:
        status = "critical"
    return {"score": score, "status": status, "issues": issues}


class Monitor:
    def __init__(self, *, clock: Callable[[], float] = time.time, max_records: int = 50000):
        self._clock = clock
        self._records: deque[RequestRecord] = deque(maxlen=max_records)
        self._alerts: deque[Alert] = deque(maxlen=MAX_RECENT_ALERTS)
        self._last_alert_minute: dict[str, int] = {}

    def record(
        self,
        task: str,
        *,
        success: bool,
        latency_ms: int,
        was_overridden: bool = False,
        from_cache: bool = False,
        error_category: str | None = None,
        risk_flags: tuple[str, ...] | list[str] = (),
    ) -> None:
        now = self._clock()
        self._records.append(
            RequestRecord(
                timestamp=now,
                task=task,
                success=success,
                latency_ms=max(0, int(latency_ms)),
                was_overridden=was_overridden,
                from_cache=from_cache,
                error_category=error_category,
                risk_flags=tuple(risk_flags),
            )
        )
        self._prune(now)

        if latency_ms >= LATENCY_CRITICAL_MS:
            self._alert("high_latency", "critical", f"{task} took {latency_ms} ms", now, task=task)
        elif latency_ms >= LATENCY_WARNING_MS:
            self._alert("high_latency", "warning", f"{task} took {latency_ms} ms", now, task=task)
        if was_overridden:
            self._alert("safety_override", "warning", f"{task} output was blocked by the safety filter", now, task=task)
        if error_category in {"timeout", "provider_unavailable"}:
            self._alert("provider_failure", "warning", f"{task} failed with {error_category}", now, task=task)

    def _prune(self, now: float) -> None:
        horizon = now - PERIODS["day"]
        while self._records and self._records[0].timestamp < horizon:
            self._records.popleft()

    def _alert(self, alert_type: str, severity: str, message: str, now: float, **details: Any) -> None:
        minute = int(now // 60)
        if self._last_alert_minute.get(alert_type) == minute:
            return
        self._last_alert_minute[alert_type] = minute
        self._alerts.append(Alert(type=alert_type, severity=severity, message=message, timestamp=now, details=details))
        level = logging.ERROR if severity == "critical" else logging.WARNING
        logger.log(level, "monitor_alert: type=%s severity=%s message=%s", alert_type, severity, message)

    def metrics(self, period: str = "hour") -> dict[str, Any]:
        if period not in PERIODS:
            raise ValueError(f"period must be one of {', '.join(PERIODS)}")
        now = self._clock()
        window = PERIODS[period]
        records = [r for r in self._records if r.timestamp >= now - window]

        total = len(records)
        failed = sum(1 for r in records if not r.success)
        overridden = sum(1 for r in records if r.was_overridden)
        error_rate = failed / total if total else 0.0
        override_rate = overridden / total if total else 0.0

        latencies = sorted(r.latency_ms for r in records)
        by_task: dict[str, dict[str, Any]] = {}
        for record in records:
            stats = by_task.setdefault(
                record.task,
                {"total": 0, "failed": 0, "overridden": 0, "from_cache": 0, "_latency": []},
            )
            stats["total"] += 1
            stats["failed"] += int(not record.success)
            stats["overridden"] += int(record.was_overridden)
            stats["from_cache"] += int(record.from_cache)
            stats["_latency"].append(record.latency_ms)
        for stats in by_task.values():
            task_latency = stats.pop("_latency")
            stats["error_rate"] = round(stats["failed"] / stats["total"], 4)
            stats["avg_latency_ms"] = round(sum(task_latency) / len(task_latency), 1)

        errors_by_category: dict[str, int] = {}
        for record in records:
            if record.error_category:
                errors_by_category[record.error_category] = errors_by_category.get(record.error_category, 0) + 1

        return {
            "period": period,
            "window_seconds": window,
            "total_requests": total,
            "successful": total - failed,
            "failed": failed,
            "error_rate": round(error_rate, 4),
            "override_rate": round(override_rate, 4),
            "errors_by_category": errors_by_category,
            "latency_ms": {
                "count": len(latencies),
                "min": latencies[0] if latencies else 0,
                "max": latencies[-1] if latencies else 0,
                "avg": round(sum(latencies) / len(latencies), 1) if latencies else 0.0,
                "p50": _percentile(latencies, 0.50),
                "p95": _percentile(latencies, 0.95),
            },
            "by_task": by_task,
            "health": health_from_rates(error_rate, override_rate),
        }

    def recent_alerts(self, limit: int = 20) -> list[dict[str, Any]]:
        alerts = list(self._alerts)[-limit:]
        return [
            {
                "type": a.type,
                "severity": a.severity,
                "message": a.message,
                "timestamp": a.timestamp,
                "details": a.details,
            }
            for a in reversed(alerts)
        ]

    def dashboard(self) -> dict[str, Any]:
        return {
            "minute": self.metrics("minute"),
            "hour": self.metrics("hour"),
            "day": self.metrics("day"),
            "recent_alerts": self.recent_alerts(),
        }
