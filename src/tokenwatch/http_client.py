import asyncio
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Awaitable, Callable, Mapping, Sequence

import httpx
import structlog

from tokenwatch.errors import (
    DeadlineExceededError,
    InternalError,
    NetworkError,
    RetryExhaustedError,
    TokenwatchError,
    error_for_status,
)
from tokenwatch.ratelimit import RateLimiter

QueryParams = Mapping[str, "str | int | Sequence[str]"]

# listener signature: (attempt, backoff_seconds, reason)
RetryListener = Callable[[int, float, str], None]


@dataclass(frozen=True, slots=True)
class RetryConfig:
    # retries after the initial attempt
    max_retries: "int" = 3
    # seconds before the first retry
    initial_backoff: "float" = 1.0
    max_backoff: "float" = 30.0
    backoff_factor: "float" = 2.0

    def __post_init__(self) -> "None":
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")

    def backoff(self, attempt: "int") -> "float":
        """
        returns the delay before retrying after the given 0-based
        attempt, capped at max_backoff.
        """
        delay = self.initial_backoff * (self.backoff_factor**attempt)
        return min(delay, self.max_backoff)


def is_retryable_status(status_code: "int") -> "bool":
    """
    server errors and throttling are worth retrying, any other
    client error is not.
    """
    return status_code == 429 or status_code >= 500


def parse_retry_after(value: "str | None") -> "float | None":
    """
    parses a Retry-After header given either as delta seconds or as
    an HTTP date. Returns None when absent or unparsable.
    """
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


class ResilientHTTPClient:
    """
    ResilientHTTPClient wraps an httpx.AsyncClient with rate limiting
    and a retry loop with exponential backoff.

    Transport errors, 5xx and 429 responses are retried; any other
    response is handed back to the caller as is. When every attempt
    failed, RetryExhaustedError is raised chained to the last failure.
    """

    def __init__(
        self,
        rate_limiter: "RateLimiter",
        retry_config: "RetryConfig | None" = None,
        *,
        headers: "Mapping[str, str] | None" = None,
        timeout: "float" = 30.0,
        verbose: "bool" = False,
        client: "httpx.AsyncClient | None" = None,
        sleep: "Callable[[float], Awaitable[None]]" = asyncio.sleep,
        logger: "structlog.stdlib.BoundLogger | None" = None,
        on_retry: "RetryListener | None" = None,
    ) -> "None":
        self._rate_limiter = rate_limiter
        self._retry = retry_config or RetryConfig()
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(
            timeout=timeout,
            headers=dict(headers or {}),
        )
        self._verbose = verbose
        self._sleep = sleep
        self._logger = logger or structlog.get_logger()
        self._on_retry = on_retry

    @property
    def retry_config(self) -> "RetryConfig":
        return self._retry

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    async def get(
        self,
        url: "str",
        params: "QueryParams | None" = None,
        deadline: "float | None" = None,
    ) -> "httpx.Response":
        """
        sends a GET request with rate limiting and retries.
        `deadline` bounds the whole call in seconds, waits and
        retries included.
        """
        try:
            async with asyncio.timeout(deadline):
                return await self._get_with_retry(url, params, deadline)
        except TimeoutError as exc:
            raise DeadlineExceededError(
                f"request to {url} did not complete within {deadline}s"
            ) from exc

    async def _get_with_retry(
        self,
        url: "str",
        params: "QueryParams | None",
        deadline: "float | None",
    ) -> "httpx.Response":
        loop = asyncio.get_running_loop()
        deadline_at = None if deadline is None else loop.time() + deadline
        attempts = self._retry.max_retries + 1

        for attempt in range(attempts):
            remaining = (
                None if deadline_at is None else max(0.0, deadline_at - loop.time())
            )
            # RateLimiterWaitError is terminal for this call
            await self._rate_limiter.wait(timeout=remaining)

            retry_after: "float | None" = None
            status_code: "int | None" = None
            if self._verbose:
                self._logger.debug(
                    "http_request",
                    url=url,
                    params=_loggable_params(params),
                    attempt=attempt + 1,
                )

            try:
                # httpx builds a new request from url/params on every call
                response = await self._client.get(url, params=params)
            except httpx.TransportError as exc:
                error: "TokenwatchError" = NetworkError(
                    f"request to {url} failed: {exc}"
                )
                error.__cause__ = exc
            else:
                if self._verbose:
                    self._logger.debug(
                        "http_response",
                        url=url,
                        status=response.status_code,
                        body=response.text,
                    )
                if not is_retryable_status(response.status_code):
                    return response

                status_code = response.status_code
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                error = error_for_status(status_code, url, retry_after)

            if attempt == attempts - 1:
                raise RetryExhaustedError(attempts, error) from error

            backoff = self._retry.backoff(attempt)
            if retry_after is not None:
                backoff = min(max(backoff, retry_after), self._retry.max_backoff)

            self._logger.debug(
                "http_retry",
                url=url,
                attempt=attempt + 1,
                max_attempts=attempts,
                backoff=backoff,
                status=status_code,
                error=None if status_code is not None else str(error),
            )
            if self._on_retry is not None:
                reason = str(status_code) if status_code is not None else "network"
                self._on_retry(attempt + 1, backoff, reason)

            await self._sleep(backoff)

        # only reachable when max_retries was forced below zero
        raise InternalError(f"no attempt was made for {url}")


def _loggable_params(params: "QueryParams | None") -> "dict[str, object]":
    if not params:
        return {}
    return {
        k: list(v) if not isinstance(v, (str, int)) else v for k, v in params.items()
    }
