# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/utils/retry_manager.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Resilient HTTP client.

Wraps :class:`httpx.AsyncClient` with a bounded retry policy: retryable
status codes (429 and 5xx gateway errors by default) and transport errors are
retried with exponential backoff plus random jitter, up to ``max_retries``
extra attempts. After that the last response is returned (or the last
transport error re-raised) so the caller fails closed instead of hanging.

Every request accepts an optional ``abort`` event. Setting it cancels the
in-flight request (and any backoff sleep) and raises
:class:`RequestAbortedError`, which lets a caller-side timeout cut off a slow
upstream without leaving orphaned work behind.

Examples:
    >>> client = ResilientHttpClient(max_retries=2, base_backoff=0.5, max_delay=4.0, jitter_max=0.0)
    >>> [client.backoff_delay(n) for n in range(5)]
    [0.5, 1.0, 2.0, 4.0, 4.0]
"""

# Standard
import asyncio
import contextlib
import random
from typing import Any, Dict, Iterable, Optional

# Third-Party
import httpx

# First-Party
from pmo_analytics.services import metrics
from pmo_analytics.services.logging_service import LoggingService

logging_service = LoggingService()
logger = logging_service.get_logger(__name__)

DEFAULT_RETRY_ON_STATUS = (429, 500, 502, 503, 504)


class RequestAbortedError(Exception):
    """Raised when a caller-supplied abort event cancels a request."""


class ResilientHttpClient:
    """httpx client with exponential backoff, jitter and abort propagation."""

    def __init__(
        self,
        max_retries: int = 3,
        base_backoff: float = 1.0,
        max_delay: float = 5.0,
        jitter_max: float = 0.25,
        retry_on_status: Optional[Iterable[int]] = None,
        client_args: Optional[Dict[str, Any]] = None,
    ):
        """Initialize the client.

        Args:
            max_retries: Extra attempts after the first request
            base_backoff: Delay before the first retry, in seconds
            max_delay: Upper bound for the exponential part of the delay
            jitter_max: Upper bound of the uniform random jitter added to each delay
            retry_on_status: HTTP status codes that trigger a retry
            client_args: Keyword arguments forwarded to :class:`httpx.AsyncClient`
        """
        self.max_retries = max(0, max_retries)
        self.base_backoff = base_backoff
        self.max_delay = max_delay
        self.jitter_max = jitter_max
        self.retry_on_status = frozenset(retry_on_status if retry_on_status is not None else DEFAULT_RETRY_ON_STATUS)
        self.client = httpx.AsyncClient(**(client_args or {}))

    async def __aenter__(self) -> "ResilientHttpClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying httpx client."""
        await self.client.aclose()

    def backoff_delay(self, attempt: int) -> float:
        """Compute the delay before retry number ``attempt`` (0-based).

        Args:
            attempt: Number of retries already performed

        Returns:
            float: Seconds to wait
        """
        delay = min(self.base_backoff * (2**attempt), self.max_delay)
        if self.jitter_max > 0:
            delay += random.uniform(0, self.jitter_max)  # nosec B311 - jitter, not crypto
        return delay

    async def request(self, method: str, url: str, abort: Optional[asyncio.Event] = None, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying on retryable statuses and transport errors.

        Args:
            method: HTTP method
            url: Absolute URL or path relative to the client's base URL
            abort: Optional event that cancels the request when set
            **kwargs: Forwarded to :meth:`httpx.AsyncClient.request`

        Returns:
            httpx.Response: The final response, which may still carry an error status

        Raises:
            RequestAbortedError: If ``abort`` was set before completion
            httpx.TransportError: If transport errors persist after all retries
        """
        attempt = 0
        while True:
            try:
                response = await self._send(method, url, abort, **kwargs)
            except httpx.TransportError as exc:
                if attempt >= self.max_retries:
                    logger.error(f"{method} {url} failed after {attempt + 1} attempts: {exc}")
                    raise
                reason = type(exc).__name__
                delay = self.backoff_delay(attempt)
            else:
                if response.status_code not in self.retry_on_status or attempt >= self.max_retries:
                    return response
                reason = str(response.status_code)
                delay = self._retry_after(response, self.backoff_delay(attempt))
                await response.aclose()

            logger.warning(f"Retrying {method} {url} in {delay:.2f}s (attempt {attempt + 1}/{self.max_retries}, reason={reason})")
            metrics.record_upstream_retry(reason)
            await self._sleep(delay, abort)
            attempt += 1

    async def get(self, url: str, abort: Optional[asyncio.Event] = None, **kwargs: Any) -> httpx.Response:
        """Send a GET request with retries.

        Args:
            url: Target URL
            abort: Optional abort event
            **kwargs: Forwarded to :meth:`request`

        Returns:
            httpx.Response: The final response
        """
        return await self.request("GET", url, abort=abort, **kwargs)

    async def post(self, url: str, abort: Optional[asyncio.Event] = None, **kwargs: Any) -> httpx.Response:
        """Send a POST request with retries.

        Args:
            url: Target URL
            abort: Optional abort event
            **kwargs: Forwarded to :meth:`request`

        Returns:
            httpx.Response: The final response
        """
        return await self.request("POST", url, abort=abort, **kwargs)

    async def _send(self, method: str, url: str, abort: Optional[asyncio.Event], **kwargs: Any) -> httpx.Response:
        if abort is None:
            return await self.client.request(method, url, **kwargs)
        if abort.is_set():
            raise RequestAbortedError(f"{method} {url} aborted before sending")

        request_task = asyncio.ensure_future(self.client.request(method, url, **kwargs))
        abort_task = asyncio.ensure_future(abort.wait())
        try:
            done, _ = await asyncio.wait({request_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (request_task, abort_task):
                if not task.done():
                    task.cancel()
        if request_task in done:
            return request_task.result()
        with contextlib.suppress(asyncio.CancelledError):
            await request_task
        raise RequestAbortedError(f"{method} {url} aborted in flight")

    async def _sleep(self, delay: float, abort: Optional[asyncio.Event]) -> None:
        if abort is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(abort.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise RequestAbortedError("Request aborted during retry backoff")

    def _retry_after(self, response: httpx.Response, default: float) -> float:
        header = response.headers.get("retry-after")
        if header is None:
            return default
        try:
            return min(max(float(header), default), self.max_delay + self.jitter_max)
        except ValueError:
            return default
