"""Async HTTP client base with timeouts, retries and rate-limit handling."""

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from doorman.errors import (
    AuthenticationError,
    NetworkError,
    ProviderApiError,
    RateLimitError,
    RequestTimeoutError,
)
from doorman.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RateLimitInfo:
    """Last rate-limit headers seen from the provider."""

    limit: int | None = None
    remaining: int | None = None
    reset: float | None = None


class BaseHttpClient:
    """Async HTTP client shared by all provider clients.

    Subclasses supply the provider name, base URL and authentication
    headers. This class owns request construction, per-request timeouts,
    the retry loop and rate-limit tracking.

    Failure handling:
    - Timeouts are surfaced immediately.
    - 429 responses wait for the rate-limit reset and do not use a retry.
    - Other 4xx responses are surfaced immediately.
    - 5xx responses and network errors are retried with exponential backoff.
    """

    PROVIDER_NAME = "HTTP"
    DEFAULT_TIMEOUT = 30.0
    DEFAULT_RETRIES = 3
    DEFAULT_RETRY_DELAY = 1.0
    RATE_LIMIT_WARNING_THRESHOLD = 10
    DEFAULT_RATE_LIMIT_WAIT = 5.0
    MIN_RATE_LIMIT_WAIT = 1.0
    MAX_RATE_LIMIT_WAITS = 10

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the HTTP client.

        Args:
            base_url: Base URL for requests.
            timeout: Per-request timeout in seconds.
            max_retries: Retries after the first attempt for retryable failures.
            retry_delay: Base delay for exponential backoff, in seconds.
            headers: Extra headers sent with every request.
            transport: Optional httpx transport, used by tests.
        """
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.default_headers = headers or {}
        self.rate_limit = RateLimitInfo()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._low_capacity_warned = False
        self._clock: Callable[[], float] = time.time

    async def __aenter__(self) -> "BaseHttpClient":
        """Enter async context."""
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        """Exit async context."""
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the underlying httpx client, creating it on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    def auth_headers(self) -> dict[str, str]:
        """Return provider authentication headers."""
        return {}

    def build_headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        """Merge default, auth and per-request headers.

        Later sources win: content type, then auth, then client defaults,
        then per-request headers.
        """
        headers = {"Content-Type": "application/json"}
        headers.update(self.auth_headers())
        headers.update(self.default_headers)
        if extra:
            headers.update(extra)
        return headers

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Make a request with retry logic and return the decoded JSON body.

        Args:
            method: HTTP method.
            path: Path relative to the base URL.
            json: Optional JSON body.
            params: Query parameters; None values are dropped.
            headers: Additional headers.

        Returns:
            Decoded JSON body, or None for an empty body.

        Raises:
            RequestTimeoutError: If a request times out.
            RateLimitError: If the provider keeps rate limiting.
            ProviderApiError: For non-retryable responses, or the last
                retryable failure once retries are exhausted.
        """
        query = {k: v for k, v in (params or {}).items() if v is not None}
        merged_headers = self.build_headers(headers)
        attempt = 0
        rate_limit_waits = 0

        while True:
            try:
                response = await self.client.request(
                    method,
                    path,
                    json=json,
                    params=query or None,
                    headers=merged_headers,
                )
            except httpx.TimeoutException as e:
                raise RequestTimeoutError(self.PROVIDER_NAME, self.timeout) from e
            except httpx.TransportError as e:
                error: ProviderApiError = NetworkError(self.PROVIDER_NAME, e)
            else:
                self._track_rate_limit(response)

                if response.status_code == 429:
                    rate_limit_waits += 1
                    wait_time = self._rate_limit_wait(response)
                    if rate_limit_waits > self.MAX_RATE_LIMIT_WAITS:
                        raise RateLimitError(self.PROVIDER_NAME, wait_time)
                    logger.warning(
                        "%s rate limited (429), waiting %.1f seconds",
                        self.PROVIDER_NAME,
                        wait_time,
                    )
                    await self._sleep(wait_time)
                    continue

                if response.is_success:
                    return self._decode(response)

                error = self._error_from_response(response)
                if not error.retryable:
                    raise error

            if attempt >= self.max_retries:
                raise error

            delay = self.retry_delay * (2**attempt)
            logger.warning(
                "%s %s %s failed, retrying in %.1f seconds (%d/%d): %s",
                self.PROVIDER_NAME,
                method,
                path,
                delay,
                attempt + 1,
                self.max_retries,
                error.message,
            )
            await self._sleep(delay)
            attempt += 1

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Make a GET request."""
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Any = None, params: dict[str, Any] | None = None) -> Any:
        """Make a POST request."""
        return await self.request("POST", path, json=json, params=params)

    async def put(self, path: str, json: Any = None, params: dict[str, Any] | None = None) -> Any:
        """Make a PUT request."""
        return await self.request("PUT", path, json=json, params=params)

    async def patch(self, path: str, json: Any = None, params: dict[str, Any] | None = None) -> Any:
        """Make a PATCH request."""
        return await self.request("PATCH", path, json=json, params=params)

    async def delete(self, path: str, json: Any = None, params: dict[str, Any] | None = None) -> Any:
        """Make a DELETE request."""
        return await self.request("DELETE", path, json=json, params=params)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _error_from_response(self, response: httpx.Response) -> ProviderApiError:
        message = self.error_message(response)
        status = response.status_code
        if status in (401, 403):
            return AuthenticationError(self.PROVIDER_NAME, message, status_code=status)
        return ProviderApiError(
            self.PROVIDER_NAME,
            message,
            status_code=status,
            retryable=status >= 500,
        )

    @staticmethod
    def error_message(response: httpx.Response) -> str:
        """Extract a human-readable error from a response body.

        Looks at ``error``, then ``message``, then ``errors[]``, falling
        back to the status line.
        """
        fallback = f"HTTP {response.status_code} {response.reason_phrase}".strip()
        try:
            body = response.json()
        except ValueError:
            return response.text.strip() or fallback

        if not isinstance(body, dict):
            return fallback

        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if body.get("message"):
            return str(body["message"])
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            parts = [
                str(item.get("message")) if isinstance(item, dict) else str(item)
                for item in errors
            ]
            return "; ".join(p for p in parts if p) or fallback
        return fallback

    def _track_rate_limit(self, response: httpx.Response) -> None:
        limit = _int_header(response, "X-RateLimit-Limit")
        remaining = _int_header(response, "X-RateLimit-Remaining")
        reset = _int_header(response, "X-RateLimit-Reset")

        if limit is not None:
            self.rate_limit.limit = limit
        if reset is not None:
            self.rate_limit.reset = float(reset)
        if remaining is None:
            return
        self.rate_limit.remaining = remaining

        if remaining < self.RATE_LIMIT_WARNING_THRESHOLD:
            if not self._low_capacity_warned:
                logger.warning(
                    "%s rate limit nearly exhausted: %d of %s requests remaining",
                    self.PROVIDER_NAME,
                    remaining,
                    self.rate_limit.limit if self.rate_limit.limit is not None else "?",
                )
                self._low_capacity_warned = True
        else:
            self._low_capacity_warned = False

    def _rate_limit_wait(self, response: httpx.Response) -> float:
        reset = _int_header(response, "X-RateLimit-Reset")
        if reset is None:
            return self.DEFAULT_RATE_LIMIT_WAIT
        # The reset header has whole-second precision.
        return float(max(reset - math.floor(self._clock()), self.MIN_RATE_LIMIT_WAIT))


def _int_header(response: httpx.Response, name: str) -> int | None:
    value = response.headers.get(name)
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None
