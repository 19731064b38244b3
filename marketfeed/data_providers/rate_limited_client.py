"""
Rate-Limited API Client

Runs any provider call under quota control with bounded retries and
degrades to cached or caller-supplied fallback data instead of raising.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar
from loguru import logger

from marketfeed.config import Settings
from marketfeed.data_providers.cache_manager import CacheManager
from marketfeed.data_providers.rate_limiter import (
    CallPriority,
    RateLimiter,
    RateLimitResult,
    UsageStats,
    Window,
)
from marketfeed.utils.exceptions import RateLimitError


T = TypeVar('T')


class _NoFallback:
    """Marker for "no fallback data supplied" so that None stays a valid fallback."""

    def __repr__(self) -> str:
        return "NO_FALLBACK"


NO_FALLBACK: Any = _NoFallback()


class _DeadlineExceeded(Exception):
    pass


@dataclass
class RetryConfig:
    """Backoff settings for failed provider calls."""
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30000
    provider_cooldown_ms: int = 60000  # Wait after the provider reports its own rate limit
    max_retries: int = 3  # Used when a call does not set its own

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryConfig":
        return cls(
            backoff_base_ms=settings.RETRY_BACKOFF_BASE_MS,
            backoff_max_ms=settings.RETRY_BACKOFF_MAX_MS,
            provider_cooldown_ms=settings.PROVIDER_COOLDOWN_MS,
            max_retries=settings.DEFAULT_MAX_RETRIES,
        )

    def backoff_ms(self, attempt: int) -> int:
        return min(self.backoff_base_ms * (2 ** attempt), self.backoff_max_ms)


@dataclass
class APICallOptions:
    """Options for a single rate-limited call."""
    provider: str
    endpoint: Optional[str] = None
    priority: CallPriority = CallPriority.MEDIUM
    max_retries: Optional[int] = None  # Client default when None
    fallback_to_cache: bool = True
    fallback_data: Any = NO_FALLBACK
    cache_ttl_ms: Optional[int] = None
    timeout: Optional[float] = None  # Overall deadline in seconds

    def __post_init__(self) -> None:
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self.priority = CallPriority(self.priority)

    @property
    def has_fallback_data(self) -> bool:
        return self.fallback_data is not NO_FALLBACK

    @property
    def target(self) -> str:
        return f"{self.provider}/{self.endpoint}" if self.endpoint else self.provider


@dataclass
class APICallResult(Generic[T]):
    """Tagged outcome of a rate-limited call. Never an exception."""
    success: bool
    rate_limit_info: RateLimitResult
    data: Optional[T] = None
    from_cache: bool = False
    error: Optional[str] = None
    retries_used: int = 0
    attempts: int = 0  # Times the operation itself was invoked


class RateLimitedAPIClient:
    """
    Wrapper that enforces rate limits on any API call.

    Each attempt first asks the rate limiter for a slot. A denial with a
    known wait time is retried after waiting; a denial without one goes
    straight to the fallback path. Failed calls back off exponentially,
    or for a fixed cooldown when the provider reports its own rate limit.

    When retries are exhausted the client returns, in order of
    preference: a fresh cached result, the caller's fallback data, or a
    failed result carrying the last reason.

    Usage:
        client = RateLimitedAPIClient(rate_limiter)
        result = await client.make_api_call(
            lambda: adapter.get_quote("AAPL"),
            APICallOptions(provider="yahoo", endpoint="quote", max_retries=2),
        )
        if result.success:
            quote = result.data
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        cache: Optional[CacheManager] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.rate_limiter = rate_limiter
        self.cache = cache or CacheManager()
        self.retry_config = retry_config or RetryConfig()

    async def make_api_call(
        self,
        operation: Callable[[], Awaitable[T]],
        options: Optional[APICallOptions] = None,
        **kwargs: Any,
    ) -> APICallResult[T]:
        """
        Make a rate-limited API call with automatic retries and fallbacks.

        Args:
            operation: Zero-argument coroutine function performing the call
            options: Call options; keyword arguments build one if omitted

        Returns:
            APICallResult (never raises for provider or quota failures)

        Raises:
            TypeError: If both ``options`` and keyword options are given
        """
        if options is None:
            options = APICallOptions(**kwargs)
        elif kwargs:
            raise TypeError(f"Pass either options or keyword options, not both (got {sorted(kwargs)})")
        max_retries = self.retry_config.max_retries if options.max_retries is None else options.max_retries

        loop = asyncio.get_running_loop()
        deadline = loop.time() + options.timeout if options.timeout is not None else None

        attempts = 0
        last_error: Optional[str] = None
        last_result: Optional[RateLimitResult] = None

        for attempt in range(max_retries + 1):
            rate_limit_result = await self.rate_limiter.check_rate_limit(
                options.provider, options.endpoint
            )
            last_result = rate_limit_result

            if not rate_limit_result.allowed:
                logger.warning(f"Rate limit hit for {options.provider}: {rate_limit_result.reason}")

                if rate_limit_result.wait_time is not None and attempt < max_retries:
                    logger.info(f"Waiting {rate_limit_result.wait_time}ms before retry...")
                    if not await self._sleep(rate_limit_result.wait_time, deadline):
                        return self._handle_fallback(
                            options, self._deadline_result(options, rate_limit_result), attempt, attempts
                        )
                    continue

                return self._handle_fallback(options, rate_limit_result, attempt, attempts)

            attempts += 1
            logger.debug(f"Making API call to {options.target} (priority: {options.priority.value})")

            try:
                start_time = loop.time()
                data = await self._run(operation, deadline)
                duration_ms = (loop.time() - start_time) * 1000
                logger.debug(f"API call to {options.target} completed in {duration_ms:.0f}ms")

            except _DeadlineExceeded:
                logger.warning(f"Deadline exceeded while calling {options.target}")
                return self._handle_fallback(
                    options, self._deadline_result(options, rate_limit_result), attempt, attempts
                )

            except Exception as e:
                last_error = str(e) or e.__class__.__name__
                logger.error(
                    f"API call failed (attempt {attempt + 1}/{max_retries + 1}): {last_error}"
                )

                if attempt >= max_retries:
                    break

                if self._is_provider_rate_limit(e):
                    delay_ms = self.retry_config.provider_cooldown_ms
                    logger.info(f"Provider rate limit detected, waiting {delay_ms}ms...")
                else:
                    delay_ms = self.retry_config.backoff_ms(attempt)
                    logger.info(f"Retrying in {delay_ms}ms...")

                if not await self._sleep(delay_ms, deadline):
                    return self._handle_fallback(
                        options, self._deadline_result(options, rate_limit_result), attempt, attempts
                    )
                continue

            # Every successful call writes through to the cache
            self.cache.set(options.provider, options.endpoint, data, options.cache_ttl_ms)

            return APICallResult(
                success=True,
                data=data,
                from_cache=False,
                rate_limit_info=rate_limit_result,
                retries_used=attempt,
                attempts=attempts,
            )

        logger.error(f"All retries exhausted for {options.provider}. Last error: {last_error}")

        exhausted_result = RateLimitResult(
            allowed=False,
            reason=f"All retries exhausted. Last error: {last_error}",
            usage=last_result.usage if last_result else self._empty_usage(options.provider),
        )
        return self._handle_fallback(options, exhausted_result, max_retries, attempts)

    def _handle_fallback(
        self,
        options: APICallOptions,
        rate_limit_result: RateLimitResult,
        retries_used: int,
        attempts: int,
    ) -> APICallResult:
        """Serve cached data, then caller fallback data, then a tagged failure."""
        if options.fallback_to_cache:
            cached = self.cache.get(options.provider, options.endpoint)
            if cached is not None:
                logger.info(f"Using cached data for {options.target}")
                return APICallResult(
                    success=True,
                    data=cached.data,
                    from_cache=True,
                    rate_limit_info=rate_limit_result,
                    retries_used=retries_used,
                    attempts=attempts,
                )

        if options.has_fallback_data:
            logger.info(f"Using fallback data for {options.target}")
            return APICallResult(
                success=True,
                data=options.fallback_data,
                from_cache=False,
                rate_limit_info=rate_limit_result,
                retries_used=retries_used,
                attempts=attempts,
            )

        return APICallResult(
            success=False,
            rate_limit_info=rate_limit_result,
            error=rate_limit_result.reason or "Rate limit exceeded and no fallback available",
            retries_used=retries_used,
            attempts=attempts,
        )

    @staticmethod
    def _is_provider_rate_limit(error: Exception) -> bool:
        """Whether the provider itself (not the local limiter) rejected the call."""
        if isinstance(error, RateLimitError):
            return True
        text = str(error).lower()
        return "rate limit" in text or "429" in text

    @staticmethod
    async def _sleep(delay_ms: float, deadline: Optional[float]) -> bool:
        """Sleep unless doing so would pass the deadline. Returns False when it would."""
        delay = max(0.0, delay_ms / 1000)
        if deadline is not None:
            remaining = deadline - asyncio.get_running_loop().time()
            if delay > remaining:
                return False
        await asyncio.sleep(delay)
        return True

    @staticmethod
    async def _run(operation: Callable[[], Awaitable[T]], deadline: Optional[float]) -> T:
        if deadline is None:
            return await operation()

        loop = asyncio.get_running_loop()
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise _DeadlineExceeded()
        try:
            return await asyncio.wait_for(operation(), timeout=remaining)
        except asyncio.TimeoutError:
            if loop.time() >= deadline:
                raise _DeadlineExceeded()
            raise

    @staticmethod
    def _deadline_result(options: APICallOptions, last_result: RateLimitResult) -> RateLimitResult:
        return RateLimitResult(
            allowed=False,
            reason=f"Deadline of {options.timeout}s exceeded for {options.target}",
            usage=last_result.usage,
        )

    def _empty_usage(self, provider: str) -> UsageStats:
        return self.rate_limiter.get_usage(provider, Window.MINUTE)

    # ==================== Cache ====================

    def get_cache_stats(self) -> dict[str, Any]:
        """Cache counters plus per-entry age and size."""
        return {
            **self.cache.get_stats(),
            "entries": self.cache.get_entries_info(),
        }

    def clear_cache(self) -> None:
        self.cache.clear_all()
        logger.info("API cache cleared")
