"""
marketfeed - Custom Exceptions
Error taxonomy for quota, provider and aggregation failures
"""
from typing import Optional, Any, Dict


class MarketFeedException(Exception):
    """Base exception for marketfeed."""

    def __init__(
        self,
        message: str = "An error occurred",
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


# =========================
# Quota Exceptions
# =========================

class QuotaExceededError(MarketFeedException):
    """A local call budget window is exhausted. Recoverable by waiting or failing over."""

    def __init__(
        self,
        provider: str,
        window: Optional[str] = None,
        wait_time_ms: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        self.provider = provider
        self.window = window
        self.wait_time_ms = wait_time_ms
        super().__init__(
            message=reason or f"Quota exceeded for {provider} ({window})",
            code="QUOTA_EXCEEDED",
            details={"provider": provider, "window": window, "wait_time_ms": wait_time_ms},
        )


class UnconfiguredProviderError(MarketFeedException):
    """A provider or source has no registered configuration."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(
            message=f"No rate limit configuration found for provider: {provider}",
            code="UNCONFIGURED_PROVIDER",
            details={"provider": provider},
        )


# =========================
# Provider Exceptions
# =========================

class ProviderError(MarketFeedException):
    """Base exception for errors raised by an upstream provider call."""

    def __init__(self, provider: str, message: str, recoverable: bool = True):
        self.provider = provider
        self.recoverable = recoverable
        super().__init__(
            message=f"[{provider}] {message}",
            code="PROVIDER_ERROR",
            details={"provider": provider, "recoverable": recoverable},
        )


class RateLimitError(ProviderError):
    """The provider itself reported that its rate limit was hit."""

    def __init__(self, provider: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(provider, f"Rate limit exceeded. Retry after: {retry_after}s", recoverable=True)


class AuthenticationError(ProviderError):
    """Authentication failed error."""

    def __init__(self, provider: str, message: str = "Authentication failed"):
        super().__init__(provider, message, recoverable=False)


class DataNotAvailableError(ProviderError):
    """Requested data not available."""

    def __init__(self, provider: str, symbol: str, data_type: str):
        self.symbol = symbol
        self.data_type = data_type
        super().__init__(provider, f"Data not available for {symbol} ({data_type})", recoverable=False)


class SourceNotImplementedError(ProviderError):
    """The source is registered but has no implementation."""

    def __init__(self, provider: str, operation: str):
        self.operation = operation
        super().__init__(provider, f"{operation} is not implemented for this source", recoverable=False)


# =========================
# Aggregation Exceptions
# =========================

class AllSourcesExhaustedError(MarketFeedException):
    """Every admissible source failed or was unavailable for a single-result operation."""

    def __init__(
        self,
        symbol: str,
        operation: str,
        attempted_sources: Optional[list[str]] = None,
        last_error: Optional[str] = None,
    ):
        self.symbol = symbol
        self.operation = operation
        self.attempted_sources = list(attempted_sources or [])
        self.last_error = last_error

        message = f"Failed to get {operation} for {symbol} from all sources"
        if self.attempted_sources:
            message += f" (attempted: {', '.join(self.attempted_sources)})"
        else:
            message += " (no source was available)"
        if last_error:
            message += f". Last error: {last_error}"

        super().__init__(
            message=message,
            code="ALL_SOURCES_EXHAUSTED",
            details={
                "symbol": symbol,
                "operation": operation,
                "attempted_sources": self.attempted_sources,
            },
        )
