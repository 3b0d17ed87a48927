import asyncio
import functools
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import structlog

from tokenwatch.cache import DEFAULT_TTL_SECONDS, ResponseCache, make_cache_key
from tokenwatch.circuit_breaker import CircuitBreaker, CircuitState
from tokenwatch.errors import ApiError, ConfigurationError, error_for_status
from tokenwatch.http_client import (
    QueryParams,
    ResilientHTTPClient,
    RetryConfig,
    parse_retry_after,
)
from tokenwatch.metrics import MetricsUpdater
from tokenwatch.models import (
    ConsumptionSummary,
    CostRecord,
    PricingSummary,
    UsageRecord,
    extract_model_from_line_item,
    summarize_consumption,
    summarize_pricing,
)
from tokenwatch.provider.base import period_time_range
from tokenwatch.ratelimit import RateLimiter

OPENAI_BASE_URL = "https://api.openai.com/v1/organization"

USAGE_ENDPOINT = "usage"
COSTS_ENDPOINT = "costs"

# url path per logical endpoint
ENDPOINT_PATHS: "dict[str, str]" = {
    USAGE_ENDPOINT: "usage/completions",
    COSTS_ENDPOINT: "costs",
}

# safety limit against endless pagination
MAX_PAGES = 50

# every OpenAI API key starts with this
API_KEY_PREFIX = "sk-"

# bound for one page request, rate limiter waits and retries included
PAGE_DEADLINE_SECONDS = 120.0

Bucket = dict[str, Any]


class OpenAIProvider:
    """
    OpenAIProvider implements the UsageProvider protocol for OpenAI's
    organization usage and costs APIs.

    Every page request goes through a circuit breaker, a token bucket
    rate limiter and a retry loop. Accumulated pages are kept in a
    short-lived cache so that repeated queries for the same window
    don't hit the API again.
    """

    def __init__(
        self,
        api_key: "str",
        org_id: "str" = "",
        *,
        cache_ttl: "float" = DEFAULT_TTL_SECONDS,
        rate_limit: "float" = 1.0,
        rate_burst: "int" = 5,
        retry_config: "RetryConfig | None" = None,
        failure_threshold: "int" = 5,
        reset_timeout: "float" = 60.0,
        request_timeout: "float" = 30.0,
        page_deadline: "float" = PAGE_DEADLINE_SECONDS,
        max_pages: "int" = MAX_PAGES,
        verbose: "bool" = False,
        base_url: "str" = OPENAI_BASE_URL,
        metrics: "MetricsUpdater | None" = None,
        logger: "structlog.stdlib.BoundLogger | None" = None,
        sleep: "Callable[[float], Awaitable[None]]" = asyncio.sleep,
    ) -> "None":
        self._api_key = api_key
        self._org_id = org_id
        self._base_url = base_url.rstrip("/")
        self._page_deadline = page_deadline
        self._max_pages = max_pages
        self._verbose = verbose
        self._metrics = metrics
        self._logger = (logger or structlog.get_logger()).bind(platform=self.name)

        headers: "dict[str, str]" = {"Authorization": f"Bearer {api_key}"}
        if org_id:
            headers["OpenAI-Organization"] = org_id

        self._rate_limiter = RateLimiter(
            rate_limit, rate_burst, sleep=sleep, logger=self._logger
        )
        self._http = ResilientHTTPClient(
            self._rate_limiter,
            retry_config,
            headers=headers,
            timeout=request_timeout,
            verbose=verbose,
            sleep=sleep,
            logger=self._logger,
            on_retry=self._on_retry,
        )
        self._breaker = CircuitBreaker(
            failure_threshold,
            reset_timeout,
            name=self.name,
            logger=self._logger,
            on_transition=self._on_transition,
        )
        # one cache per response shape
        self._usage_cache: "ResponseCache[list[Bucket]]" = ResponseCache(cache_ttl)
        self._cost_cache: "ResponseCache[list[Bucket]]" = ResponseCache(cache_ttl)

    @property
    def name(self) -> "str":
        return "openai"

    @property
    def circuit_breaker(self) -> "CircuitBreaker":
        return self._breaker

    def is_available(self) -> "bool":
        return bool(self._api_key)

    def clear_cache(self) -> "None":
        self._usage_cache.clear()
        self._cost_cache.clear()

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._http.close()

    async def validate_key(self) -> "None":
        """
        checks the key format, then reads one day of usage to make sure
        the key is accepted and carries the usage scope. A rejected key
        raises AuthenticationError, a key without the scope
        AuthorizationError.
        """
        if not self._api_key.startswith(API_KEY_PREFIX):
            raise ConfigurationError(
                f"invalid API key format: OpenAI keys start with '{API_KEY_PREFIX}'"
            )

        end_time = datetime.now(timezone.utc)
        params: "dict[str, str | int | list[str]]" = {
            "start_time": _epoch(end_time - timedelta(days=1)),
            "end_time": _epoch(end_time),
            "limit": 1,
        }
        url = f"{self._base_url}/{ENDPOINT_PATHS[USAGE_ENDPOINT]}"
        await self._breaker.call(functools.partial(self._fetch_page, url, params))
        self._logger.info("api_key_validated")

    async def fetch_consumption(
        self,
        start_time: "datetime",
        end_time: "datetime",
        bypass_cache: "bool" = False,
    ) -> "list[UsageRecord]":
        """
        fetches daily completions usage grouped by model.
        """
        params: "dict[str, str | int | list[str]]" = {
            "start_time": _epoch(start_time),
            "end_time": _epoch(end_time),
            "bucket_width": "1d",
            "group_by": ["model"],
            "limit": 31,
        }
        buckets = await self._fetch_pages(
            USAGE_ENDPOINT, params, self._usage_cache, bypass_cache
        )

        records: "list[UsageRecord]" = []
        for bucket in buckets:
            bucket_start, bucket_end = _bucket_window(bucket)
            for result in bucket.get("results") or []:
                try:
                    records.append(
                        UsageRecord(
                            platform=self.name,
                            model=result.get("model") or "unknown",
                            input_tokens=int(result.get("input_tokens") or 0),
                            output_tokens=int(result.get("output_tokens") or 0),
                            request_count=int(result.get("num_model_requests") or 0),
                            start_time=bucket_start,
                            end_time=bucket_end,
                        )
                    )
                except (AttributeError, TypeError, ValueError) as exc:
                    raise ApiError(
                        f"malformed usage result: {exc}", status_code=200
                    ) from exc

        self._logger.debug("openai_consumption_done", record_count=len(records))
        return records

    async def fetch_pricing(
        self,
        start_time: "datetime",
        end_time: "datetime",
        bypass_cache: "bool" = False,
    ) -> "list[CostRecord]":
        """
        fetches daily costs grouped by line item. The costs API only
        supports daily buckets.
        """
        params: "dict[str, str | int | list[str]]" = {
            "start_time": _epoch(start_time),
            "end_time": _epoch(end_time),
            "bucket_width": "1d",
            "group_by": ["line_item"],
            "limit": 180,
        }
        buckets = await self._fetch_pages(
            COSTS_ENDPOINT, params, self._cost_cache, bypass_cache
        )

        records: "list[CostRecord]" = []
        for bucket in buckets:
            bucket_start, bucket_end = _bucket_window(bucket)
            for result in bucket.get("results") or []:
                try:
                    line_item = result.get("line_item") or "unknown"
                    amount = result.get("amount") or {}
                    records.append(
                        CostRecord(
                            platform=self.name,
                            model=extract_model_from_line_item(line_item),
                            line_item=line_item,
                            amount=float(amount.get("value") or 0.0),
                            currency=amount.get("currency") or "usd",
                            start_time=bucket_start,
                            end_time=bucket_end,
                        )
                    )
                except (AttributeError, TypeError, ValueError) as exc:
                    raise ApiError(
                        f"malformed cost result: {exc}", status_code=200
                    ) from exc

        self._logger.debug("openai_pricing_done", record_count=len(records))
        return records

    async def consumption_summary(
        self,
        period: "str",
        bypass_cache: "bool" = False,
    ) -> "ConsumptionSummary":
        start_time, end_time = period_time_range(period)
        records = await self.fetch_consumption(start_time, end_time, bypass_cache)
        return summarize_consumption(records, self.name, period, start_time, end_time)

    async def pricing_summary(
        self,
        period: "str",
        bypass_cache: "bool" = False,
    ) -> "PricingSummary":
        start_time, end_time = period_time_range(period)
        records = await self.fetch_pricing(start_time, end_time, bypass_cache)
        return summarize_pricing(records, self.name, period, start_time, end_time)

    async def _fetch_pages(
        self,
        endpoint: "str",
        params: "dict[str, str | int | list[str]]",
        cache: "ResponseCache[list[Bucket]]",
        bypass_cache: "bool",
    ) -> "list[Bucket]":
        """
        fetches every page of an endpoint and returns the concatenated
        buckets. A failing page aborts the whole fetch; a suspicious
        cursor only stops pagination early.
        """
        cache_key = make_cache_key(endpoint, params)

        # a bypassed fetch still refreshes the cache below
        if not bypass_cache:
            cached, found = cache.get(cache_key)
            if self._metrics is not None:
                self._metrics.record_cache_lookup(self.name, endpoint, found)
            if found and cached is not None:
                self._logger.debug("cache_hit", endpoint=endpoint, key=cache_key)
                return cached

        url = f"{self._base_url}/{ENDPOINT_PATHS[endpoint]}"
        buckets: "list[Bucket]" = []
        seen_cursors: "set[str]" = set()
        next_page = ""
        truncated: "str | None" = None
        page_count = 0

        # while structure to handle pagination until no more
        # pages are available
        while True:
            if page_count >= self._max_pages:
                truncated = "max_pages"
                break
            page_count += 1

            query: "dict[str, str | int | list[str]]" = dict(params)
            if next_page:
                query["page"] = next_page

            page = await self._breaker.call(
                functools.partial(self._fetch_page, url, query)
            )
            data = page.get("data") or []
            buckets.extend(data)
            self._logger.debug(
                "openai_page_fetched",
                endpoint=endpoint,
                page=page_count,
                has_more=bool(page.get("has_more")),
                bucket_count=len(data),
            )

            # break if there are no more pages to fetch
            if not page.get("has_more"):
                break

            cursor = page.get("next_page") or ""
            if not cursor:
                truncated = "missing_cursor"
                break
            if cursor in seen_cursors:
                truncated = "cursor_loop"
                break
            seen_cursors.add(cursor)
            next_page = cursor

        if truncated is not None:
            self._logger.warning(
                "pagination_truncated",
                endpoint=endpoint,
                reason=truncated,
                pages=page_count,
                bucket_count=len(buckets),
            )
            if self._metrics is not None:
                self._metrics.inc_pagination_truncated(self.name, endpoint, truncated)

        cache.put(cache_key, buckets)
        return buckets

    async def _fetch_page(self, url: "str", query: "QueryParams") -> "dict[str, Any]":
        response = await self._http.get(url, query, deadline=self._page_deadline)

        if not response.is_success:
            raise error_for_status(
                response.status_code,
                url,
                parse_retry_after(response.headers.get("Retry-After")),
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ApiError(
                f"failed to decode response from {url}", response.status_code
            ) from exc

        if not isinstance(data, dict):
            raise ApiError(
                f"unexpected response shape from {url}", response.status_code
            )
        return data

    def _on_retry(self, attempt: "int", backoff: "float", reason: "str") -> "None":
        if self._metrics is not None:
            self._metrics.inc_http_retry(self.name, reason)

    def _on_transition(
        self, old_state: "CircuitState", new_state: "CircuitState"
    ) -> "None":
        if self._metrics is not None:
            self._metrics.record_circuit_transition(self.name, new_state)


def _epoch(value: "datetime") -> "int":
    return int(value.timestamp())


def _bucket_window(bucket: "Bucket") -> "tuple[datetime, datetime]":
    try:
        start = datetime.fromtimestamp(int(bucket["start_time"]), tz=timezone.utc)
        end = datetime.fromtimestamp(int(bucket["end_time"]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError) as exc:
        raise ApiError(f"malformed bucket: {exc}", status_code=200) from exc
    return start, end
