"""
Custom exception hierarchy for the tick engine.

Hierarchy:

    TradingSystemError (base)
    ├── OperationalError      - transient/retryable (network, venue, provider)
    │   ├── APIError
    │   │   ├── AuthenticationError
    │   │   └── RateLimitError
    │   ├── DataAcquisitionError
    │   └── ProviderError     - reasoning-model provider failures
    │       ├── RetryableProviderError
    │       │   ├── RateLimitedError
    │       │   └── ProviderOverloadedError
    │       └── NonRetryableProviderError
    ├── DataError             - bad data or configuration, skip and continue
    │   ├── ValidationError
    │   ├── OrderExecutionError
    │   └── ConfigurationError
    ├── TickError             - fatal to one tick, nothing mutated past the tick stamp
    │   ├── SessionNotFoundError
    │   ├── SessionNotRunningError
    │   ├── MarketDataUnavailableError
    │   ├── TickInProgressError
    │   └── TickTooSoonError
    └── InvariantError        - ledger/accounting invariant violated

Rules:
    - OperationalError: retry where a retry policy exists, otherwise record and continue.
    - DataError: log, omit the feature or reject the entry, continue the tick.
    - TickError: abort the tick and surface a structured payload to the caller.
    - Broker failures never raise; they are returned as OrderResult(success=False).
"""
import traceback
from typing import Any, Dict, Optional


class TradingSystemError(Exception):
    """Base exception for all tick engine errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TradingSystemError):
    """Transient error: exchange API, network, timeouts."""
    pass


class APIError(OperationalError):
    """Exchange returned an error."""
    pass


class AuthenticationError(APIError):
    """Venue credentials missing or rejected."""
    pass


class RateLimitError(APIError):
    """Raised when an exchange rate limit is exceeded."""
    pass


class DataAcquisitionError(OperationalError):
    """Raised when market data cannot be fetched."""
    pass


class ProviderError(OperationalError):
    """Reasoning-model provider failure."""

    def __init__(self, message: str, *, provider: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status = status


class RetryableProviderError(ProviderError):
    """Provider is rate limited or overloaded; safe to retry with backoff."""

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, provider=provider, status=status)
        self.retry_after = retry_after


class RateLimitedError(RetryableProviderError):
    """HTTP 429 from the provider."""
    pass


class ProviderOverloadedError(RetryableProviderError):
    """HTTP 502/503/529 from the provider."""
    pass


class NonRetryableProviderError(ProviderError):
    """Bad request, auth failure, malformed output. Retrying will not help."""
    pass


# ============ DATA (bad input, skip) ============

class DataError(TradingSystemError):
    """Bad data: unknown market, malformed payload, invalid configuration."""
    pass


class ValidationError(DataError):
    """Raised when validation checks fail (bad input data)."""
    pass


class OrderExecutionError(DataError):
    """Order rejected for business reasons (min size, unknown symbol)."""
    pass


class ConfigurationError(DataError):
    """Strategy or application configuration is unusable."""
    pass


# ============ TICK (fatal to one tick) ============

class TickError(TradingSystemError):
    """A tick could not run. State is unchanged beyond the start-of-tick stamp."""

    code = "tick_failed"

    def __init__(self, message: str, *, session_id: Optional[str] = None):
        super().__init__(message)
        self.session_id = session_id

    def to_payload(self, include_trace: bool = False) -> Dict[str, Any]:
        """Structured error payload for the control surface and CLI."""
        payload: Dict[str, Any] = {
            "error": str(self),
            "code": self.code,
            "session_id": self.session_id,
        }
        if include_trace:
            payload["trace"] = "".join(
                traceback.format_exception(type(self), self, self.__traceback__)
            )
        return payload


class SessionNotFoundError(TickError):
    code = "session_not_found"


class SessionNotRunningError(TickError):
    code = "session_not_running"


class MarketDataUnavailableError(TickError):
    code = "market_data_unavailable"


class TickInProgressError(TickError):
    code = "tick_in_progress"


class TickTooSoonError(TickError):
    code = "tick_too_soon"


# ============ INVARIANT (ledger violation) ============

class InvariantError(TradingSystemError):
    """Ledger or accounting invariant violation.

    Raised by the simulated ledger when a mutation would break the
    no-flip or epsilon rules. Never caught and silently continued.
    """
    pass
