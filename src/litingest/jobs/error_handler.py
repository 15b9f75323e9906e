"""Error classification, retry decisions and per-provider circuit breakers."""

import asyncio
import random
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from ..core.errors import ErrorKind, IngestError, ProviderError
from ..utils.logging import get_logger

logger = get_logger(__name__)

RETRYABLE_KINDS = frozenset({ErrorKind.PROVIDER, ErrorKind.NETWORK, ErrorKind.RATE_LIMIT})


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"          # Normal operation
    OPEN = "open"              # Failing, reject calls immediately
    HALF_OPEN = "half_open"    # Testing recovery


class CircuitBreaker:
    """
    Stop calling a provider that keeps failing.

    After ``failure_threshold`` consecutive failures the circuit opens and
    calls fail fast with ``ProviderError``. Once ``recovery_timeout`` has
    passed, calls are let through again; ``success_threshold`` successes
    close the circuit, one failure reopens it.

    Example:
        >>> breaker = CircuitBreaker("pubmed", failure_threshold=5, recovery_timeout=60.0)
        >>> result = await breaker.call(provider.search, query, limit)
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 2,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[datetime] = None
        self._lock = asyncio.Lock()

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    logger.info(f"Circuit breaker for {self.name} transitioning to HALF_OPEN")
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                else:
                    raise ProviderError(
                        f"{self.name} circuit is open after repeated failures; "
                        f"retry in {self._time_until_reset():.1f}s",
                        provider=self.name,
                    )

        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self._on_failure()
            raise
        await self._on_success()
        return result

    async def _on_success(self) -> None:
        async with self._lock:
            self.failure_count = 0
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    logger.info(f"Circuit breaker for {self.name} closing - service recovered")
                    self.state = CircuitState.CLOSED
                    self.success_count = 0

    async def _on_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            self.last_failure_time = datetime.now()
            if self.state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit breaker for {self.name} opening - recovery failed")
                self.state = CircuitState.OPEN
            elif self.failure_count >= self.failure_threshold:
                logger.warning(
                    f"Circuit breaker for {self.name} opening - {self.failure_count} consecutive failures"
                )
                self.state = CircuitState.OPEN

    def _should_attempt_reset(self) -> bool:
        if not self.last_failure_time:
            return True
        elapsed = (datetime.now() - self.last_failure_time).total_seconds()
        return elapsed >= self.recovery_timeout

    def _time_until_reset(self) -> float:
        if not self.last_failure_time:
            return 0.0
        elapsed = (datetime.now() - self.last_failure_time).total_seconds()
        return max(0.0, self.recovery_timeout - elapsed)

    def get_state(self) -> str:
        return self.state.value


class ErrorHandler:
    """
    Classify failures and decide whether a job attempt is retried.

    Only provider, network and rate-limit failures are retried. Validation,
    size, timeout and invariant failures go straight to ``failed``; a timed
    out job is resubmitted by the caller.

    Example:
        >>> handler = ErrorHandler(base_delay=2.0, max_delay=60.0)
        >>> kind = handler.classify_error(exc)
        >>> if handler.should_retry(kind, attempt=1, max_attempts=3):
        ...     await asyncio.sleep(handler.calculate_backoff(kind, attempt=1))
    """

    def __init__(self, base_delay: float = 2.0, max_delay: float = 60.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}

    def classify_error(self, error: BaseException) -> ErrorKind:
        if isinstance(error, ProviderError) and error.details.get("status_code") == 429:
            return ErrorKind.RATE_LIMIT
        if isinstance(error, IngestError):
            return error.kind
        if isinstance(error, httpx.HTTPStatusError):
            if error.response.status_code == 429:
                return ErrorKind.RATE_LIMIT
            return ErrorKind.PROVIDER
        if isinstance(error, httpx.TransportError):
            return ErrorKind.NETWORK
        if isinstance(error, asyncio.TimeoutError):
            return ErrorKind.TIMEOUT
        if isinstance(error, (ValidationError, ValueError)):
            return ErrorKind.VALIDATION
        return ErrorKind.UNKNOWN

    def should_retry(self, kind: ErrorKind, attempt: int, max_attempts: int) -> bool:
        """``attempt`` is 1-indexed; the last allowed attempt is never retried."""
        if attempt >= max_attempts:
            return False
        return kind in RETRYABLE_KINDS

    def calculate_backoff(self, kind: ErrorKind, attempt: int) -> float:
        """Exponential backoff with ±10% jitter; rate limits back off one step further."""
        exponent = attempt if kind is ErrorKind.RATE_LIMIT else attempt - 1
        delay = min(self.base_delay * (2 ** max(exponent, 0)), self.max_delay)
        jitter = delay * 0.1 * random.uniform(-1, 1)
        final_delay = max(0.0, delay + jitter)
        logger.debug(f"Calculated backoff: {final_delay:.2f}s (kind={kind.value}, attempt={attempt})")
        return final_delay

    def get_circuit_breaker(self, service: str) -> CircuitBreaker:
        if service not in self.circuit_breakers:
            self.circuit_breakers[service] = CircuitBreaker(service)
        return self.circuit_breakers[service]

    def get_circuit_states(self) -> Dict[str, str]:
        return {service: breaker.get_state() for service, breaker in self.circuit_breakers.items()}
