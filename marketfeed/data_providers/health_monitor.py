"""
Source Health Registry

Tracks the up/down status of every registered data source together with
the time it was last checked and its success and failure counters.

A source starts healthy. A failed call marks it down until a later
success or a passing probe marks it up again.
"""
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from loguru import logger


@dataclass
class SourceHealth:
    """Health state of one source."""
    is_healthy: bool = True
    last_check: Optional[datetime] = None
    success_count: int = 0
    failure_count: int = 0
    last_error: Optional[str] = None

    # Latency of recent successful calls
    latencies: deque = field(default_factory=lambda: deque(maxlen=100))

    @property
    def avg_latency_ms(self) -> float:
        if not self.latencies:
            return 0.0
        return sum(self.latencies) / len(self.latencies)

    @property
    def error_rate(self) -> float:
        total = self.success_count + self.failure_count
        if total == 0:
            return 0.0
        return self.failure_count / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_healthy": self.is_healthy,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "error_rate": round(self.error_rate * 100, 2),
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "last_error": self.last_error,
        }


class SourceHealthRegistry:
    """
    Registry of source health.

    Updates are plain attribute writes with no await in between, so on a
    single event loop they never interleave. Readers may observe a value
    that is one update behind, which is acceptable for routing decisions.

    Usage:
        registry = SourceHealthRegistry()
        registry.register("yahoo")

        registry.mark_unhealthy("yahoo", "timeout")
        if registry.needs_probe("yahoo", stale_after=timedelta(minutes=5)):
            ...
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._health: dict[str, SourceHealth] = {}
        self._clock = clock or datetime.now

    def register(self, source_id: str) -> SourceHealth:
        """Start tracking a source as healthy. Re-registering resets its state."""
        health = SourceHealth(is_healthy=True, last_check=self._clock())
        self._health[source_id] = health
        logger.debug(f"Health tracking started for {source_id}")
        return health

    def unregister(self, source_id: str) -> None:
        self._health.pop(source_id, None)

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._health

    # ==================== Updates ====================

    def mark_healthy(self, source_id: str, latency_ms: Optional[float] = None) -> None:
        """Record a success."""
        health = self._get_or_create(source_id)
        was_healthy = health.is_healthy

        health.is_healthy = True
        health.last_check = self._clock()
        health.success_count += 1
        if latency_ms is not None:
            health.latencies.append(latency_ms)

        if not was_healthy:
            logger.info(f"Source {source_id} recovered")

    def mark_unhealthy(self, source_id: str, error: Optional[str] = None) -> None:
        """Record a failure."""
        health = self._get_or_create(source_id)
        was_healthy = health.is_healthy

        health.is_healthy = False
        health.last_check = self._clock()
        health.failure_count += 1
        health.last_error = error

        if was_healthy:
            logger.warning(f"Source {source_id} marked unhealthy: {error}")

    def record_probe(self, source_id: str, healthy: bool, error: Optional[str] = None) -> None:
        """Record a probe result. Probes refresh the status but not the call counters."""
        health = self._get_or_create(source_id)
        was_healthy = health.is_healthy

        health.is_healthy = healthy
        health.last_check = self._clock()
        if not healthy:
            health.last_error = error or "Health probe failed"

        if was_healthy != healthy:
            state = "healthy" if healthy else "unhealthy"
            logger.info(f"Probe marked {source_id} {state}")

    # ==================== Queries ====================

    def is_healthy(self, source_id: str) -> bool:
        health = self._health.get(source_id)
        return health.is_healthy if health else False

    def get(self, source_id: str) -> Optional[SourceHealth]:
        return self._health.get(source_id)

    def needs_probe(self, source_id: str, stale_after: timedelta) -> bool:
        """Whether the source was last checked longer than ``stale_after`` ago."""
        health = self._health.get(source_id)
        if health is None:
            return False
        if health.last_check is None:
            return True
        return self._clock() - health.last_check > stale_after

    def unhealthy_sources(self) -> list[str]:
        return [source_id for source_id, health in self._health.items() if not health.is_healthy]

    def snapshot(self) -> dict[str, SourceHealth]:
        """Copy of the current state of every source."""
        return {
            source_id: SourceHealth(
                is_healthy=health.is_healthy,
                last_check=health.last_check,
                success_count=health.success_count,
                failure_count=health.failure_count,
                last_error=health.last_error,
                latencies=deque(health.latencies, maxlen=100),
            )
            for source_id, health in self._health.items()
        }

    def get_all_health(self) -> dict[str, dict]:
        """Health of all sources as plain dictionaries."""
        return {
            source_id: health.to_dict()
            for source_id, health in self._health.items()
        }

    def _get_or_create(self, source_id: str) -> SourceHealth:
        if source_id not in self._health:
            self._health[source_id] = SourceHealth(last_check=self._clock())
        return self._health[source_id]
