import asyncio

import httpx
import pytest

from litingest.core.errors import (
    ErrorKind,
    InvalidInputError,
    OperationTimeoutError,
    ProviderError,
    SizeLimitError,
)
from litingest.jobs.error_handler import CircuitBreaker, CircuitState, ErrorHandler


def status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.org")
    return httpx.HTTPStatusError("err", request=request, response=httpx.Response(status, request=request))


class TestClassifyError:
    def setup_method(self) -> None:
        self.handler = ErrorHandler()

    def test_package_errors_keep_their_kind(self) -> None:
        assert self.handler.classify_error(InvalidInputError("x")) is ErrorKind.VALIDATION
        assert self.handler.classify_error(OperationTimeoutError("x")) is ErrorKind.TIMEOUT
        assert self.handler.classify_error(SizeLimitError("x", code="ERR_FILE_TOO_LARGE")) is ErrorKind.SIZE_LIMIT
        assert self.handler.classify_error(ProviderError("x")) is ErrorKind.PROVIDER

    def test_rate_limited_provider(self) -> None:
        error = ProviderError("429", details={"status_code": 429})
        assert self.handler.classify_error(error) is ErrorKind.RATE_LIMIT

    def test_httpx_errors(self) -> None:
        assert self.handler.classify_error(status_error(429)) is ErrorKind.RATE_LIMIT
        assert self.handler.classify_error(status_error(502)) is ErrorKind.PROVIDER
        assert self.handler.classify_error(httpx.ReadTimeout("slow")) is ErrorKind.NETWORK

    def test_builtin_errors(self) -> None:
        assert self.handler.classify_error(asyncio.TimeoutError()) is ErrorKind.TIMEOUT
        assert self.handler.classify_error(ValueError("bad")) is ErrorKind.VALIDATION
        assert self.handler.classify_error(RuntimeError("?")) is ErrorKind.UNKNOWN


class TestRetryPolicy:
    def test_only_transient_kinds_retry(self) -> None:
        handler = ErrorHandler()
        for kind in (ErrorKind.PROVIDER, ErrorKind.NETWORK, ErrorKind.RATE_LIMIT):
            assert handler.should_retry(kind, attempt=1, max_attempts=3)
        for kind in (ErrorKind.VALIDATION, ErrorKind.TIMEOUT, ErrorKind.SIZE_LIMIT, ErrorKind.INVARIANT):
            assert not handler.should_retry(kind, attempt=1, max_attempts=3)

    def test_last_attempt_not_retried(self) -> None:
        assert not ErrorHandler().should_retry(ErrorKind.PROVIDER, attempt=3, max_attempts=3)

    def test_backoff_grows_and_caps(self) -> None:
        handler = ErrorHandler(base_delay=1.0, max_delay=5.0)
        first = handler.calculate_backoff(ErrorKind.PROVIDER, 1)
        third = handler.calculate_backoff(ErrorKind.PROVIDER, 3)
        capped = handler.calculate_backoff(ErrorKind.PROVIDER, 10)
        assert 0.9 <= first <= 1.1
        assert 3.6 <= third <= 4.4
        assert capped <= 5.5

    def test_rate_limit_backs_off_further(self) -> None:
        handler = ErrorHandler(base_delay=1.0, max_delay=60.0)
        assert handler.calculate_backoff(ErrorKind.RATE_LIMIT, 1) >= 1.8

    def test_zero_base_delay(self) -> None:
        assert ErrorHandler(base_delay=0.0).calculate_backoff(ErrorKind.NETWORK, 2) == 0.0


async def _boom():
    raise ProviderError("down")


async def _ok():
    return "ok"


@pytest.mark.asyncio
async def test_circuit_breaker_opens_and_recovers():
    breaker = CircuitBreaker("pubmed", failure_threshold=2, recovery_timeout=0.05, success_threshold=1)
    for _ in range(2):
        with pytest.raises(ProviderError, match="down"):
            await breaker.call(_boom)
    assert breaker.state is CircuitState.OPEN

    with pytest.raises(ProviderError, match="circuit is open"):
        await breaker.call(_ok)

    await asyncio.sleep(0.1)
    assert await breaker.call(_ok) == "ok"
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_failure_reopens():
    breaker = CircuitBreaker("openalex", failure_threshold=1, recovery_timeout=0.01)
    with pytest.raises(ProviderError):
        await breaker.call(_boom)
    await asyncio.sleep(0.05)
    with pytest.raises(ProviderError, match="down"):
        await breaker.call(_boom)
    assert breaker.get_state() == "open"


def test_breakers_are_per_service():
    handler = ErrorHandler()
    assert handler.get_circuit_breaker("pubmed") is handler.get_circuit_breaker("pubmed")
    assert handler.get_circuit_breaker("pubmed") is not handler.get_circuit_breaker("openalex")
    assert handler.get_circuit_states() == {"pubmed": "closed", "openalex": "closed"}
