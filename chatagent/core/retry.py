"""Retry policy for backend requests: error classification and backoff."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Type

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from chatagent.core.errors import ChatAgentError, NetworkFatalError, NetworkTransientError

# Timeouts, refused/unreachable hosts, dropped connections, proxy and
# content-decoding failures are worth another attempt.
_RETRYABLE: tuple = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.CloseError,
    httpx.RemoteProtocolError,
    httpx.ProxyError,
    httpx.DecodingError,
    httpx.NetworkError,
)


def is_retryable(exc: BaseException) -> bool:
    """Return True if ``exc`` is a transient network failure."""
    if isinstance(exc, NetworkTransientError):
        return True
    if isinstance(exc, ChatAgentError):
        return False
    return isinstance(exc, _RETRYABLE)


def classify_error(exc: BaseException) -> ChatAgentError:
    """Map an httpx (or already classified) exception onto the error taxonomy."""
    if isinstance(exc, ChatAgentError):
        return exc
    error_cls: Type[ChatAgentError] = NetworkTransientError if is_retryable(exc) else NetworkFatalError
    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, httpx.HTTPStatusError):
        message = f"HTTP {exc.response.status_code}: {exc.response.reason_phrase}"
    return error_cls(f"Network error: {message}")


@dataclass
class RetryPolicy:
    """
    Exponential backoff with a ceiling on the number of retries.

    Retry ``n`` (1-based) waits ``base_delay_ms * 2 ** (n - 1)`` milliseconds.
    """

    max_retries: int = 3
    base_delay_ms: int = 1000

    def delay_ms(self, attempt: int) -> int:
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        return self.base_delay_ms * (1 << (attempt - 1))

    def retrying(
        self,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        before_sleep: Optional[Callable[[RetryCallState], None]] = None,
    ) -> AsyncRetrying:
        """
        Build the attempt loop for one request.

        Only transient failures are retried; the last exception is re-raised
        once ``max_retries`` retries are used up or a fatal one occurs.
        """
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.base_delay_ms / 1000, exp_base=2),
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep,
            sleep=sleep,
        )
