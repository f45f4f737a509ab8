from __future__ import annotations

import asyncio
import random
import socket
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, TypeVar

import httpx

from timeline_ingest.core.errors import (
    CircuitOpenError,
    HttpRequestError,
    OperationCancelledError,
)
from timeline_ingest.core.logging import get_logger

logger = get_logger()

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})
_RETRYABLE_MESSAGE_HINTS = ("rate limit", "econnreset", "etimedout", "enotfound")


def _iter_causes(err: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def _status_code_of(err: BaseException) -> Optional[int]:
    if isinstance(err, HttpRequestError):
        return err.status_code
    if isinstance(err, httpx.HTTPStatusError):
        return err.response.status_code
    return None


def default_is_retryable(err: BaseException) -> bool:
    """
    Transient network failures, 429/502/503/504 and rate-limit messages are
    retryable, anywhere along the ``__cause__`` chain. Breaker fast-fails and
    cancellations never are.
    """
    causes = list(_iter_causes(err))
    if any(isinstance(e, (CircuitOpenError, OperationCancelledError)) for e in causes):
        return False
    for e in causes:
        if isinstance(
            e,
            (httpx.TimeoutException, httpx.NetworkError, ConnectionResetError, TimeoutError, socket.gaierror),
        ):
            return True
        if _status_code_of(e) in RETRYABLE_STATUS_CODES:
            return True
        message = str(e).lower()
        if any(hint in message for hint in _RETRYABLE_MESSAGE_HINTS):
            return True
    return False


def _retry_after_hint(err: BaseException) -> Optional[float]:
    for e in _iter_causes(err):
        if isinstance(e, HttpRequestError) and e.retry_after_s is not None:
            return e.retry_after_s
    return None


OnRetry = Callable[[int, BaseException, float], None]


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    # Seconds
    initial_delay: float = 1.0
    max_delay: float = 10.0
    factor: float = 2.0
    # Fraction of the delay; the applied jitter is +/- delay * jitter / 2.
    jitter: float = 0.2
    is_retryable: Callable[[BaseException], bool] = default_is_retryable
    on_retry: Optional[OnRetry] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be >= 0")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be within [0, 1]")

    def with_overrides(self, **changes) -> "RetryConfig":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def compute_delay(
    attempt: int,
    config: RetryConfig,
    *,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds before attempt ``attempt + 1`` (``attempt`` is 1-based)."""
    base = min(config.initial_delay * (config.factor ** (attempt - 1)), config.max_delay)
    jittered = base + base * config.jitter * (rand() - 0.5)
    return max(0.0, jittered)


def _log_retry(attempt: int, err: BaseException, delay: float) -> None:
    logger.warning(
        "retry_attempt_failed",
        attempt=attempt,
        delay_s=round(delay, 3),
        error_type=type(err).__name__,
        error=str(err),
    )


async def _cancellable_sleep(delay: float, cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return


async def retry(
    fn: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    *,
    cancel_event: Optional[asyncio.Event] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    operation: str = "operation",
) -> T:
    """
    Call ``fn`` until it succeeds, a non-retryable error occurs, or
    ``max_attempts`` is reached. The last error is re-raised unchanged.

    Setting ``cancel_event`` aborts the loop, including mid-backoff, with
    OperationCancelledError.
    """
    cfg = config or RetryConfig()
    on_retry = cfg.on_retry or _log_retry
    attempt = 0

    while True:
        attempt += 1
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(operation)
        try:
            return await fn()
        except Exception as exc:
            if attempt >= cfg.max_attempts or not cfg.is_retryable(exc):
                raise
            delay = compute_delay(attempt, cfg)
            hint = _retry_after_hint(exc)
            if hint is not None:
                delay = max(delay, min(hint, cfg.max_delay))
            on_retry(attempt, exc, delay)

        if sleep is not None:
            await sleep(delay)
        else:
            await _cancellable_sleep(delay, cancel_event)
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(operation)


async def with_retry(
    config: RetryConfig,
    fn: Callable[[], Awaitable[T]],
    *,
    cancel_event: Optional[asyncio.Event] = None,
    operation: str = "operation",
) -> T:
    return await retry(fn, config, cancel_event=cancel_event, operation=operation)


DEFAULT_POLICIES: Dict[str, RetryConfig] = {
    "fast": RetryConfig(max_attempts=3, initial_delay=0.1, max_delay=1.0, factor=2.0, jitter=0.1),
    "standard": RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=10.0, factor=2.0, jitter=0.2),
    "aggressive": RetryConfig(max_attempts=5, initial_delay=0.5, max_delay=30.0, factor=2.0, jitter=0.3),
    "rate_limited": RetryConfig(max_attempts=5, initial_delay=2.0, max_delay=60.0, factor=2.0, jitter=0.5),
    "none": RetryConfig(max_attempts=1),
}


class RetryPolicyRegistry:
    """Named retry policies, seeded with the defaults above."""

    def __init__(self, policies: Optional[Dict[str, RetryConfig]] = None) -> None:
        self._policies: Dict[str, RetryConfig] = dict(DEFAULT_POLICIES)
        if policies:
            self._policies.update(policies)

    def register(self, name: str, config: RetryConfig) -> None:
        self._policies[name] = config

    def get(self, name: str) -> RetryConfig:
        try:
            return self._policies[name]
        except KeyError:
            raise KeyError(f"Unknown retry policy: {name}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._policies

    def names(self) -> List[str]:
        return sorted(self._policies)
