"""
Rate Limiter

Tracks per-provider call quotas across several time windows at once
(per second, minute, hour, day and month).

Short windows slide from the moment they were last reset. Day and month
windows are aligned to local midnight and to the first day of the next
calendar month so they follow provider billing cycles.
"""
import asyncio
from collections import defaultdict
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import datetime, timedelta, time
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional
from loguru import logger


class Window(str, Enum):
    """Quota windows. Values are the names used in limit tables and denial reasons."""
    SECOND = "perSecond"
    MINUTE = "perMinute"
    HOUR = "perHour"
    DAY = "perDay"
    MONTH = "perMonth"


# Lock acquisition order for multi-window updates
WINDOW_ORDER: tuple[Window, ...] = (
    Window.SECOND,
    Window.MINUTE,
    Window.HOUR,
    Window.DAY,
    Window.MONTH,
)

SLIDING_WINDOWS: dict[Window, timedelta] = {
    Window.SECOND: timedelta(seconds=1),
    Window.MINUTE: timedelta(minutes=1),
    Window.HOUR: timedelta(hours=1),
}

# Window reported in usage snapshots when a call is allowed
PRIMARY_WINDOW_PREFERENCE: tuple[Window, ...] = (
    Window.MINUTE,
    Window.HOUR,
    Window.DAY,
    Window.SECOND,
    Window.MONTH,
)


class CallPriority(str, Enum):
    """Relative importance of a provider or call."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def next_reset_time(window: Window, now: datetime) -> datetime:
    """Compute when a window that resets at ``now`` will reset next."""
    if window in SLIDING_WINDOWS:
        return now + SLIDING_WINDOWS[window]

    if window == Window.DAY:
        tomorrow = now.date() + timedelta(days=1)
        return datetime.combine(tomorrow, time.min, tzinfo=now.tzinfo)

    # Month: first moment of the next calendar month
    if now.month == 12:
        return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class RateLimitConfig:
    """
    Quota configuration for one provider.

    ``limits`` maps a window to its maximum number of calls. Keys may be
    ``Window`` members or their string values (``"perMinute"``). A limit of
    zero means the window is unlimited.
    """
    provider: str
    limits: Mapping[Window, int] = field(default_factory=dict)
    cost: Decimal = Decimal("0")  # Per call
    priority: CallPriority = CallPriority.MEDIUM

    def __post_init__(self) -> None:
        normalized: dict[Window, int] = {}
        for key, value in dict(self.limits).items():
            window = Window(key)
            limit = int(value or 0)
            if limit < 0:
                raise ValueError(f"Limit for {window.value} must not be negative: {limit}")
            normalized[window] = limit

        object.__setattr__(self, "limits", MappingProxyType(normalized))
        object.__setattr__(self, "cost", Decimal(str(self.cost or 0)))
        object.__setattr__(self, "priority", CallPriority(self.priority))

    def active_limits(self) -> list[tuple[Window, int]]:
        """Windows with a positive limit, in lock order."""
        return [
            (window, self.limits[window])
            for window in WINDOW_ORDER
            if self.limits.get(window, 0) > 0
        ]

    @property
    def primary_window(self) -> Window:
        for window in PRIMARY_WINDOW_PREFERENCE:
            if self.limits.get(window, 0) > 0:
                return window
        return Window.MINUTE

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "limits": {window.value: limit for window, limit in self.limits.items()},
            "cost": float(self.cost),
            "priority": self.priority.value,
        }


@dataclass
class UsageCounter:
    """Call count for one (provider, window) pair."""
    reset_time: datetime
    count: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.reset_time


@dataclass(frozen=True)
class UsageStats:
    """Snapshot of a single window's usage."""
    provider: str
    period: Window
    count: int
    reset_time: datetime
    remaining_calls: int
    estimated_cost: Decimal = Decimal("0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "period": self.period.value,
            "count": self.count,
            "reset_time": self.reset_time.isoformat(),
            "remaining_calls": self.remaining_calls,
            "estimated_cost": float(self.estimated_cost),
        }


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a quota check."""
    allowed: bool
    usage: UsageStats
    wait_time: Optional[int] = None  # milliseconds, only set on denial
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "wait_time": self.wait_time,
            "reason": self.reason,
            "usage": self.usage.to_dict(),
        }


class RateLimiter:
    """
    Multi-window quota tracker.

    Every accepted call consumes one slot from each configured window of
    its provider. A call is denied as soon as any window is exhausted, and
    the denial reports the exhausted window that resets first.

    Each (provider, window) counter has its own lock so unrelated
    providers never contend. Locks are always taken in ``WINDOW_ORDER``.

    Usage:
        limiter = RateLimiter()
        limiter.configure(RateLimitConfig("yahoo", {Window.MINUTE: 10}))

        result = await limiter.check_rate_limit("yahoo", "quote")
        if not result.allowed:
            await asyncio.sleep(result.wait_time / 1000)
    """

    def __init__(
        self,
        configs: Optional[Iterable[RateLimitConfig]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._configs: dict[str, RateLimitConfig] = {}
        self._usage: dict[tuple[str, Window], UsageCounter] = {}
        self._locks: dict[tuple[str, Window], asyncio.Lock] = defaultdict(asyncio.Lock)
        self._total_costs: dict[str, Decimal] = {}
        self._endpoint_calls: dict[str, dict[str, int]] = defaultdict(dict)
        self._unconfigured_reported: set[str] = set()
        self._clock = clock or datetime.now

        for config in configs or []:
            self.configure(config)

    # ==================== Configuration ====================

    def configure(self, config: RateLimitConfig) -> None:
        """Register or replace the quota configuration for a provider."""
        self._configs[config.provider] = config
        self._unconfigured_reported.discard(config.provider)
        limits = {window.value: limit for window, limit in config.limits.items()}
        logger.info(f"Rate limit configured for {config.provider}: {limits}")

    def set_rate_limit(self, provider: str, config: RateLimitConfig) -> None:
        """Register ``config`` under ``provider`` (the config's own name is overridden)."""
        if config.provider != provider:
            config = RateLimitConfig(
                provider=provider,
                limits=config.limits,
                cost=config.cost,
                priority=config.priority,
            )
        self.configure(config)

    def remove(self, provider: str) -> Optional[RateLimitConfig]:
        """Forget a provider: its configuration, counters and accumulated cost."""
        config = self._configs.pop(provider, None)
        self.reset_usage(provider)
        for key in [key for key, lock in self._locks.items() if key[0] == provider and not lock.locked()]:
            del self._locks[key]
        return config

    def get_config(self, provider: str) -> Optional[RateLimitConfig]:
        return self._configs.get(provider)

    def is_configured(self, provider: str) -> bool:
        return provider in self._configs

    @property
    def providers(self) -> list[str]:
        return list(self._configs.keys())

    # ==================== Quota Check ====================

    async def check_rate_limit(self, provider: str, endpoint: Optional[str] = None) -> RateLimitResult:
        """
        Check whether a call is allowed and, if so, record it.

        Args:
            provider: Provider name
            endpoint: Optional endpoint name, tracked for reporting only;
                the call counts against the provider's budget

        Returns:
            RateLimitResult describing the decision
        """
        config = self._configs.get(provider)
        if config is None:
            reason = f"No rate limit configuration found for provider: {provider}"
            if provider not in self._unconfigured_reported:
                self._unconfigured_reported.add(provider)
                logger.error(reason)
            return RateLimitResult(
                allowed=False,
                reason=reason,
                usage=self._empty_usage(provider),
            )

        limits = config.active_limits()

        async with AsyncExitStack() as stack:
            for window, _ in limits:
                await stack.enter_async_context(self._locks[(provider, window)])

            now = self._clock()
            counters = {
                window: self._refresh_counter(provider, window, now)
                for window, _ in limits
            }

            exhausted = [
                (window, limit)
                for window, limit in limits
                if counters[window].count >= limit
            ]
            if exhausted:
                window, limit = min(exhausted, key=lambda item: counters[item[0]].reset_time)
                counter = counters[window]
                wait_time = max(0, int((counter.reset_time - now).total_seconds() * 1000))

                logger.warning(
                    f"Rate limit exceeded for {provider} ({window.value}): {counter.count}/{limit}"
                )
                return RateLimitResult(
                    allowed=False,
                    wait_time=wait_time,
                    reason=f"Rate limit exceeded for {window.value}: {counter.count}/{limit}",
                    usage=self._build_stats(provider, window, counter.count, counter.reset_time, limit),
                )

            # All windows have capacity: consume from every one of them
            for counter in counters.values():
                counter.count += 1

            if config.cost > 0:
                self._total_costs[provider] = self._total_costs.get(provider, Decimal("0")) + config.cost

            if endpoint:
                calls = self._endpoint_calls[provider]
                calls[endpoint] = calls.get(endpoint, 0) + 1

            primary = config.primary_window
            primary_limit = config.limits.get(primary, 0)
            counter = counters.get(primary)
            if counter is None:
                counter = UsageCounter(reset_time=next_reset_time(primary, now))

            logger.debug(
                f"API call allowed for {provider}"
                f"{'/' + endpoint if endpoint else ''} "
                f"({counter.count}/{primary_limit or 'unlimited'})"
            )
            return RateLimitResult(
                allowed=True,
                usage=self._build_stats(provider, primary, counter.count, counter.reset_time, primary_limit),
            )

    def can_proceed(self, provider: str) -> bool:
        """Check, without consuming, whether a call would currently be allowed."""
        config = self._configs.get(provider)
        if config is None:
            return False

        now = self._clock()
        for window, limit in config.active_limits():
            counter = self._usage.get((provider, window))
            if counter and not counter.is_expired(now) and counter.count >= limit:
                return False
        return True

    def _refresh_counter(self, provider: str, window: Window, now: datetime) -> UsageCounter:
        """Get the live counter, resetting it when its window has elapsed. Caller holds the lock."""
        key = (provider, window)
        counter = self._usage.get(key)
        if counter is None or counter.is_expired(now):
            counter = UsageCounter(reset_time=next_reset_time(window, now))
            self._usage[key] = counter
        return counter

    # ==================== Reporting ====================

    def get_usage(self, provider: str, window: Window) -> UsageStats:
        """Read-only usage snapshot for one window."""
        window = Window(window)
        now = self._clock()
        config = self._configs.get(provider)
        limit = config.limits.get(window, 0) if config else 0

        counter = self._usage.get((provider, window))
        if counter is None or counter.is_expired(now):
            return self._build_stats(provider, window, 0, next_reset_time(window, now), limit)
        return self._build_stats(provider, window, counter.count, counter.reset_time, limit)

    def get_remaining(self, provider: str) -> dict[str, int]:
        """Remaining calls per configured window."""
        config = self._configs.get(provider)
        if not config:
            return {}
        return {
            window.value: self.get_usage(provider, window).remaining_calls
            for window, _ in config.active_limits()
        }

    def get_usage_report(self) -> list[dict[str, Any]]:
        """
        Snapshot of every configured provider's primary window.

        Does not create, reset or consume any counter.
        """
        report = []
        for provider, config in self._configs.items():
            report.append({
                "provider": provider,
                "usage": self.get_usage(provider, config.primary_window),
                "config": config,
            })
        return report

    def get_total_costs(self) -> dict[str, Any]:
        """Accumulated call costs per provider and in total."""
        providers = dict(self._total_costs)
        return {
            "total": sum(providers.values(), Decimal("0")),
            "providers": providers,
        }

    def get_endpoint_calls(self, provider: str) -> dict[str, int]:
        return dict(self._endpoint_calls.get(provider, {}))

    def get_stats(self, provider: str) -> dict:
        """Get rate limiter statistics for a provider."""
        config = self._configs.get(provider)
        if not config:
            return {"configured": False}

        return {
            "configured": True,
            "limits": {window.value: limit for window, limit in config.limits.items()},
            "remaining": self.get_remaining(provider),
            "can_proceed": self.can_proceed(provider),
            "estimated_cost": float(self._total_costs.get(provider, Decimal("0"))),
            "endpoints": self.get_endpoint_calls(provider),
            "priority": config.priority.value,
        }

    # ==================== Maintenance ====================

    def reset_usage(self, provider: str) -> None:
        """Drop all counters and accumulated cost for a provider."""
        for key in [key for key in self._usage if key[0] == provider]:
            del self._usage[key]
        self._total_costs.pop(provider, None)
        self._endpoint_calls.pop(provider, None)
        logger.info(f"Usage reset for {provider}")

    def sweep_expired(self) -> int:
        """
        Drop counters whose window has elapsed.

        Returns:
            Number of counters removed
        """
        now = self._clock()
        expired = [key for key, counter in self._usage.items() if counter.is_expired(now)]
        for key in expired:
            del self._usage[key]
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]

        if expired:
            logger.debug(f"Swept {len(expired)} expired usage counters")
        return len(expired)

    # ==================== Helpers ====================

    def _build_stats(
        self,
        provider: str,
        window: Window,
        count: int,
        reset_time: datetime,
        limit: int,
    ) -> UsageStats:
        return UsageStats(
            provider=provider,
            period=window,
            count=count,
            reset_time=reset_time,
            remaining_calls=max(0, limit - count),
            estimated_cost=self._total_costs.get(provider, Decimal("0")),
        )

    def _empty_usage(self, provider: str) -> UsageStats:
        return UsageStats(
            provider=provider,
            period=Window.MINUTE,
            count=0,
            reset_time=self._clock(),
            remaining_calls=0,
        )
