"""
Retry Policy for Stage Executors

Classifies executor failures as transient or permanent and computes bounded
exponential backoff with jitter. The policy is pure apart from the injected
sleep and random source; the coordinator drives its attempt loop through the
tenacity controller returned by ``retrying()``.
"""

import asyncio
import errno
import random
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from pipeline_coordinator.models import ErrorCategory, ErrorClassification, RetrySettings
from pipeline_coordinator.orchestration.errors import ExecutionError, StageCancelled


SleepFn = Callable[[float], Awaitable[Any]]
ErrorPredicate = Callable[[BaseException], bool]

DEFAULT_TRANSIENT_STATUS_CODES = (408, 429, 500, 502, 503, 504)

TRANSIENT_CATEGORIES = frozenset(
    {
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.TIMEOUT,
        ErrorCategory.SERVER_ERROR,
        ErrorCategory.NETWORK_ERROR,
    }
)

_NETWORK_ERRNOS = frozenset(
    {
        errno.ECONNRESET,
        errno.ECONNREFUSED,
        errno.ECONNABORTED,
        errno.EPIPE,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
    }
)
_NETWORK_CODES = frozenset(
    {"ECONNRESET", "ECONNREFUSED", "ECONNABORTED", "EPIPE", "EHOSTUNREACH", "EAI_AGAIN"}
)
_TIMEOUT_CODES = frozenset({"ETIMEDOUT", "ESOCKETTIMEDOUT"})

# Larger exponents only matter once the delay is already capped.
_MAX_EXPONENT = 62


def _status_code(error: BaseException) -> Optional[int]:
    """Extract an HTTP status from common exception shapes (requests, aiohttp, httpx)."""
    for attr in ("status", "status_code", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool) and 100 <= value < 600:
            return value
    response = getattr(error, "response", None)
    if response is not None:
        for attr in ("status_code", "status"):
            value = getattr(response, attr, None)
            if isinstance(value, int) and not isinstance(value, bool):
                return value
    return None


def categorize_error(error: BaseException) -> ErrorCategory:
    """
    Map an exception to a coarse error category.

    Order: explicit executor category, HTTP status, exception type, error
    code attribute, then message heuristics.
    """
    if isinstance(error, ExecutionError) and error.category != ErrorCategory.UNKNOWN:
        return error.category
    if isinstance(error, (StageCancelled, asyncio.CancelledError)):
        return ErrorCategory.CANCELLED

    status = _status_code(error)
    if status is not None:
        if status == 429:
            return ErrorCategory.RATE_LIMIT
        if status in (401, 403):
            return ErrorCategory.AUTH_ERROR
        if status == 408:
            return ErrorCategory.TIMEOUT
        if status >= 500:
            return ErrorCategory.SERVER_ERROR
        if status in (400, 422):
            return ErrorCategory.VALIDATION_ERROR

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorCategory.NETWORK_ERROR
    if isinstance(error, OSError) and error.errno in _NETWORK_ERRNOS:
        return ErrorCategory.NETWORK_ERROR

    code = getattr(error, "code", None)
    if isinstance(code, str):
        if code in _NETWORK_CODES:
            return ErrorCategory.NETWORK_ERROR
        if code in _TIMEOUT_CODES:
            return ErrorCategory.TIMEOUT

    message = str(error).lower()
    if "rate limit" in message or "too many requests" in message:
        return ErrorCategory.RATE_LIMIT
    if "timeout" in message or "timed out" in message:
        return ErrorCategory.TIMEOUT
    if "connection reset" in message or "econnreset" in message or "network" in message:
        return ErrorCategory.NETWORK_ERROR
    if "unauthorized" in message or "forbidden" in message or "invalid api key" in message:
        return ErrorCategory.AUTH_ERROR
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return ErrorCategory.VALIDATION_ERROR

    return ErrorCategory.UNKNOWN


class RetryPolicy:
    """Retry classification and backoff for stage execution."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter_ratio: float = 0.25,
        transient_status_codes: Iterable[int] = DEFAULT_TRANSIENT_STATUS_CODES,
        predicates: Optional[Iterable[ErrorPredicate]] = None,
        sleep: Optional[SleepFn] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize retry policy.

        Args:
            max_retries: Retries after the first attempt; attempts = max_retries + 1
            base_delay: Base delay in seconds
            max_delay: Upper bound on any single delay, in seconds
            jitter_ratio: Jitter drawn from [0, jitter_ratio * exponential delay]
            transient_status_codes: HTTP statuses treated as retryable
            predicates: Extra predicates marking an error transient
            sleep: Async sleep used between attempts (injected in tests)
            rng: Random source for jitter
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if base_delay <= 0 or max_delay <= 0:
            raise ValueError("delays must be positive")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self.transient_status_codes = frozenset(transient_status_codes)
        self._predicates: List[ErrorPredicate] = list(predicates or [])
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: RetrySettings, **overrides: Any) -> "RetryPolicy":
        kwargs: dict[str, Any] = {
            "max_retries": settings.max_retries,
            "base_delay": settings.base_delay,
            "max_delay": settings.max_delay,
            "jitter_ratio": settings.jitter_ratio,
            "transient_status_codes": settings.transient_status_codes,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    def add_transient_predicate(self, predicate: ErrorPredicate) -> "RetryPolicy":
        """Register a provider-specific transient signal. Returns self for chaining."""
        self._predicates.append(predicate)
        return self

    def categorize(self, error: BaseException) -> ErrorCategory:
        return categorize_error(error)

    def classify(self, error: BaseException) -> ErrorClassification:
        """Return transient or permanent for a failed attempt."""
        if isinstance(error, ExecutionError):
            return error.classification
        if isinstance(error, (StageCancelled, asyncio.CancelledError)):
            return ErrorClassification.PERMANENT
        if any(predicate(error) for predicate in self._predicates):
            return ErrorClassification.TRANSIENT
        status = _status_code(error)
        if status is not None:
            if status in self.transient_status_codes:
                return ErrorClassification.TRANSIENT
            return ErrorClassification.PERMANENT
        if self.categorize(error) in TRANSIENT_CATEGORIES:
            return ErrorClassification.TRANSIENT
        return ErrorClassification.PERMANENT

    def is_transient(self, error: BaseException) -> bool:
        return self.classify(error) == ErrorClassification.TRANSIENT

    def exponential_delay(self, attempt: int, base: Optional[float] = None) -> float:
        base = self.base_delay if base is None else base
        return base * (2 ** min(attempt, _MAX_EXPONENT))

    def next_delay(
        self,
        attempt: int,
        base: Optional[float] = None,
        max_delay: Optional[float] = None,
    ) -> float:
        """
        Delay before the retry that follows a failed ``attempt`` (zero-based).

        delay = min(base * 2**attempt + U[0, jitter_ratio * base * 2**attempt], max_delay)
        """
        if attempt < 0:
            raise ValueError("attempt is zero-based and must be >= 0")
        cap = self.max_delay if max_delay is None else max_delay
        exponential = self.exponential_delay(attempt, base)
        jitter = self._rng.uniform(0.0, self.jitter_ratio * exponential)
        return min(exponential + jitter, cap)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Whether a failed zero-based ``attempt`` may be retried."""
        return self.is_transient(error) and attempt < self.max_retries

    async def sleep(self, delay: float) -> None:
        await self._sleep(delay)

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.next_delay(retry_state.attempt_number - 1)

    def retrying(
        self,
        before_sleep: Optional[Callable[[RetryCallState], Any]] = None,
    ) -> AsyncRetrying:
        """
        Build a tenacity controller enforcing this policy.

        Args:
            before_sleep: Called (sync or async) after a retryable failure with the
                computed delay available as ``retry_state.next_action.sleep``

        Returns:
            AsyncRetrying that re-raises the last error once retries stop
        """
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(self.is_transient),
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
