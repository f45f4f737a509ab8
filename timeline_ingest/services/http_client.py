from __future__ import annotations

import asyncio
import time
from collections import deque
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

import httpx

from timeline_ingest.core.errors import HttpRequestError, OperationCancelledError
from timeline_ingest.core.logging import get_logger

logger = get_logger()

RATE_WINDOW_S = 60.0
BODY_PREVIEW_CHARS = 200


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """``Retry-After`` as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class RequestRateLimiter:
    """
    Sliding 60s window of request start times.

    One instance lives as long as its source does, so the budget holds across
    fetches, retry attempts and pages, not just within one client.
    """

    def __init__(
        self,
        rate_limit_qpm: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rate_limit_qpm < 1:
            raise ValueError("rate_limit_qpm must be >= 1")
        self.rate_limit_qpm = rate_limit_qpm
        self._clock = clock
        self._sleep = sleep
        self._request_times: Deque[float] = deque()

    def __len__(self) -> int:
        return len(self._request_times)

    async def acquire(self) -> None:
        while True:
            now = self._clock()
            while self._request_times and now - self._request_times[0] >= RATE_WINDOW_S:
                self._request_times.popleft()
            if len(self._request_times) < self.rate_limit_qpm:
                self._request_times.append(now)
                return
            wait_s = RATE_WINDOW_S - (now - self._request_times[0])
            logger.debug("http_rate_limit_wait", wait_s=round(wait_s, 3), qpm=self.rate_limit_qpm)
            await self._sleep(max(wait_s, 0.0))


class HttpFetcher:
    """
    Per-connector HTTP client.

    Wraps one httpx.AsyncClient with the connector's own timeout, a
    concurrency cap and an optional requests-per-minute limit. Pass a shared
    ``rate_limiter`` to keep the budget across clients. Retries are not done
    here: the orchestrator wraps the whole fetch in a retry policy.
    """

    def __init__(
        self,
        *,
        user_agent: str,
        timeout_s: float = 15.0,
        rate_limit_qpm: Optional[int] = None,
        rate_limiter: Optional[RequestRateLimiter] = None,
        max_concurrency: int = 4,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.user_agent = user_agent
        self.timeout_s = timeout_s
        if rate_limiter is None and rate_limit_qpm and rate_limit_qpm > 0:
            rate_limiter = RequestRateLimiter(rate_limit_qpm, clock=clock, sleep=sleep)
        self.rate_limiter = rate_limiter
        self.max_concurrency = max(1, max_concurrency)
        self._client: Optional[httpx.AsyncClient] = None
        self._sem = asyncio.Semaphore(self.max_concurrency)

    async def __aenter__(self) -> "HttpFetcher":
        self._client = httpx.AsyncClient(
            timeout=self.timeout_s,
            headers={"User-Agent": self.user_agent},
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get(
        self,
        url: str,
        params: Optional[Dict[str, Any]],
        cancel_event: Optional[asyncio.Event],
    ) -> httpx.Response:
        """GET that is abandoned as soon as ``cancel_event`` is set."""
        if cancel_event is None:
            return await self._client.get(url, params=params)

        request = asyncio.ensure_future(self._client.get(url, params=params))
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({request, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [task for task in (request, cancelled) if not task.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if request in done:
            return request.result()
        logger.info("http_request_cancelled", url=url)
        raise OperationCancelledError(f"GET {url}")

    async def fetch(
        self,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> httpx.Response:
        """
        GET ``url``. Raises HttpRequestError on a non-2xx status and
        OperationCancelledError when ``cancel_event`` is set before or during
        the request; transport errors (timeouts, connection failures)
        propagate as httpx exceptions.
        """
        if self._client is None:
            raise RuntimeError(f"{self.__class__.__name__} HTTP client not initialized")
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(f"GET {url}")

        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()
        async with self._sem:
            response = await self._get(url, params, cancel_event)

        if not response.is_success:
            raise HttpRequestError(
                str(response.request.url),
                response.status_code,
                reason=response.reason_phrase,
                retry_after_s=parse_retry_after(response.headers.get("Retry-After")),
                body_preview=response.text[:BODY_PREVIEW_CHARS],
            )
        return response

    async def fetch_text(self, url: str, **kwargs: Any) -> str:
        response = await self.fetch(url, **kwargs)
        return response.text

    async def fetch_json(self, url: str, **kwargs: Any) -> Any:
        response = await self.fetch(url, **kwargs)
        return response.json()
