"""
Token refresh metrics.

Counts attempts, successes and failures per instance and per refresh method,
keeps a rolling latency average and a short window of recent activity, and
turns those numbers into a health verdict for monitoring.
"""

from __future__ import annotations

import logging
import time
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

INSTANCE_WINDOW = 10
DAILY_RETENTION_DAYS = 7


@dataclass
class RefreshAttempt:
    """A single broker or direct refresh call."""

    instance_id: str
    method: str
    start_time: float
    end_time: float
    success: bool
    error_type: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def latency_ms(self) -> float:
        return max(0.0, self.end_time - self.start_time)


@dataclass
class _InstanceStats:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    average_latency: float = 0.0
    last_attempt: Optional[RefreshAttempt] = None
    recent: deque = field(default_factory=lambda: deque(maxlen=INSTANCE_WINDOW))


@dataclass
class _MethodStats:
    attempts: int = 0
    successes: int = 0


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _day(epoch_ms: float) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).date().isoformat()


class MetricsRecorder:
    """In-memory refresh metrics owned by the process context."""

    SUCCESS_RATE_UNHEALTHY = 90.0
    SUCCESS_RATE_DEGRADED = 95.0
    LATENCY_UNHEALTHY_MS = 5000.0
    LATENCY_DEGRADED_MS = 2000.0
    FALLBACK_RATE_DEGRADED = 20.0
    TOP_ERRORS = 5

    def __init__(
        self,
        *,
        recent_activity_size: int = 20,
        clock: Callable[[], float] = lambda: time.time() * 1000,
    ) -> None:
        self._recent_activity_size = recent_activity_size
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        """Drop every counter. Used between tests and on operator request."""
        self._attempts = 0
        self._successes = 0
        self._failures = 0
        self._fallbacks = 0
        self._total_success_latency = 0.0
        self._max_latency = 0.0
        self._min_latency: Optional[float] = None
        self._errors_by_type: Counter[str] = Counter()
        self._methods: dict[str, _MethodStats] = {}
        self._instances: dict[str, _InstanceStats] = {}
        self._daily: dict[str, dict[str, int]] = {}
        self._recent: deque[RefreshAttempt] = deque(maxlen=self._recent_activity_size)
        self._started_at = self._clock()

    def record(
        self,
        instance_id: str,
        method: str,
        success: bool,
        error_type: Optional[str] = None,
        error_message: Optional[str] = None,
        *,
        start_time: float,
        end_time: float,
        fallback: bool = False,
    ) -> RefreshAttempt:
        """
        Record one refresh call. ``fallback`` marks a direct call made because
        the broker path failed or was skipped.
        """
        attempt = RefreshAttempt(
            instance_id=instance_id,
            method=method,
            start_time=start_time,
            end_time=end_time,
            success=success,
            error_type=error_type,
            error_message=error_message,
        )
        latency = attempt.latency_ms

        self._attempts += 1
        method_stats = self._methods.setdefault(method, _MethodStats())
        method_stats.attempts += 1

        instance = self._instances.setdefault(instance_id, _InstanceStats())
        instance.attempts += 1
        instance.last_attempt = attempt
        instance.recent.append(attempt)
        # Rolling average over every attempt of this instance.
        instance.average_latency += (latency - instance.average_latency) / instance.attempts

        day = _day(start_time)
        if day not in self._daily:
            self._prune_daily()
        daily = self._daily.setdefault(
            day, {"attempts": 0, "successes": 0, "failures": 0, "direct_fallbacks": 0}
        )
        daily["attempts"] += 1
        if fallback:
            self._fallbacks += 1
            daily["direct_fallbacks"] += 1

        if success:
            self._successes += 1
            method_stats.successes += 1
            instance.successes += 1
            daily["successes"] += 1
            self._total_success_latency += latency
            self._max_latency = max(self._max_latency, latency)
            self._min_latency = latency if self._min_latency is None else min(self._min_latency, latency)
            logger.info(
                "Token refresh success: %s via %s (%.0fms)", instance_id, method, latency
            )
        else:
            self._failures += 1
            instance.failures += 1
            daily["failures"] += 1
            self._errors_by_type[error_type or "UNKNOWN_ERROR"] += 1
            logger.info(
                "Token refresh failure: %s via %s - %s (%.0fms)",
                instance_id,
                method,
                error_type,
                latency,
            )

        self._recent.append(attempt)
        return attempt

    def _prune_daily(self) -> None:
        oldest = (self._today() - timedelta(days=DAILY_RETENTION_DAYS - 1)).isoformat()
        for day in [day for day in self._daily if day < oldest]:
            del self._daily[day]

    def _today(self) -> date:
        return datetime.fromtimestamp(self._clock() / 1000, tz=timezone.utc).date()

    @property
    def success_rate(self) -> float:
        return _rate(self._successes, self._attempts)

    @property
    def average_latency(self) -> float:
        return round(self._total_success_latency / self._successes, 2) if self._successes else 0.0

    def method_success_rates(self) -> dict[str, float]:
        return {
            method: _rate(stats.successes, stats.attempts)
            for method, stats in sorted(self._methods.items())
        }

    def direct_fallback_rate(self) -> float:
        return _rate(self._fallbacks, self._attempts)

    def top_errors(self, limit: int = TOP_ERRORS) -> list[dict[str, Any]]:
        return [
            {"error_type": error_type, "count": count}
            for error_type, count in self._errors_by_type.most_common(limit)
        ]

    def recent_activity(self) -> list[dict[str, Any]]:
        """Most recent attempts first."""
        return [asdict(attempt) for attempt in reversed(self._recent)]

    def summary(self) -> dict[str, Any]:
        return {
            "overview": {
                "total_attempts": self._attempts,
                "total_successes": self._successes,
                "total_failures": self._failures,
                "success_rate": self.success_rate,
                "method_success_rates": self.method_success_rates(),
                "direct_fallback_rate": self.direct_fallback_rate(),
            },
            "performance": {
                "average_latency_ms": self.average_latency,
                "max_latency_ms": round(self._max_latency, 2),
                "min_latency_ms": round(self._min_latency or 0.0, 2),
            },
            "errors": {
                "errors_by_type": dict(self._errors_by_type),
                "top_errors": self.top_errors(),
            },
            "uptime": {
                "metrics_started": datetime.fromtimestamp(
                    self._started_at / 1000, tz=timezone.utc
                ).isoformat(),
                "uptime_hours": round((self._clock() - self._started_at) / 3_600_000, 2),
            },
        }

    def instance_metrics(self, instance_id: str) -> Optional[dict[str, Any]]:
        instance = self._instances.get(instance_id)
        if instance is None:
            return None
        return {
            "instance_id": instance_id,
            "total_attempts": instance.attempts,
            "total_successes": instance.successes,
            "total_failures": instance.failures,
            "success_rate": _rate(instance.successes, instance.attempts),
            "average_latency_ms": round(instance.average_latency, 2),
            "last_attempt": asdict(instance.last_attempt) if instance.last_attempt else None,
            "recent_attempts": [asdict(attempt) for attempt in instance.recent],
        }

    def daily_stats(self, days: int = DAILY_RETENTION_DAYS) -> dict[str, dict[str, int]]:
        days = min(days, DAILY_RETENTION_DAYS)
        today = self._today()
        stats = {}
        for offset in range(days):
            day = (today - timedelta(days=offset)).isoformat()
            stats[day] = dict(
                self._daily.get(
                    day,
                    {"attempts": 0, "successes": 0, "failures": 0, "direct_fallbacks": 0},
                )
            )
        return stats

    def health_assessment(self) -> dict[str, Any]:
        summary = self.summary()
        issues: list[str] = []
        warnings: list[str] = []

        if self._attempts:
            success_rate = self.success_rate
            if success_rate < self.SUCCESS_RATE_UNHEALTHY:
                issues.append(f"Low success rate: {success_rate}%")
            elif success_rate < self.SUCCESS_RATE_DEGRADED:
                warnings.append(f"Success rate below target: {success_rate}%")

            latency = self.average_latency
            if latency > self.LATENCY_UNHEALTHY_MS:
                issues.append(f"High average latency: {latency}ms")
            elif latency > self.LATENCY_DEGRADED_MS:
                warnings.append(f"Elevated latency: {latency}ms")

            fallback_rate = self.direct_fallback_rate()
            if "broker" in self._methods and fallback_rate > self.FALLBACK_RATE_DEGRADED:
                warnings.append(f"High direct fallback rate: {fallback_rate}%")

        if issues:
            status = "unhealthy"
        elif warnings:
            status = "degraded"
        else:
            status = "healthy"
        return {"status": status, "issues": issues, "warnings": warnings, "summary": summary}

    def export(self) -> dict[str, Any]:
        """JSON-ready snapshot for external monitoring."""
        summary = self.summary()
        return {
            "timestamp": self._clock(),
            "overview": summary["overview"],
            "performance": summary["performance"],
            "errors": summary["errors"],
            "uptime": summary["uptime"],
            "instances": [self.instance_metrics(instance_id) for instance_id in sorted(self._instances)],
            "recent_activity": self.recent_activity(),
            "daily_stats": self.daily_stats(),
        }

    def log_summary(self) -> None:
        overview = self.summary()["overview"]
        logger.info(
            "Token metrics: attempts=%s successes=%s failures=%s success_rate=%s%% "
            "direct_fallback_rate=%s%%",
            overview["total_attempts"],
            overview["total_successes"],
            overview["total_failures"],
            overview["success_rate"],
            overview["direct_fallback_rate"],
        )


__all__ = ["MetricsRecorder", "RefreshAttempt"]
