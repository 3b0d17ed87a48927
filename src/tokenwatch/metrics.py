from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from tokenwatch.circuit_breaker import CircuitState


class MetricsUpdater:
    """
    records resilience and fetch activity as Prometheus metrics.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._http_retries: "Counter" = Counter(
            "tokenwatch_http_retries_total",
            "Total HTTP retries by platform and reason",
            ["platform", "reason"],
            registry=registry,
        )
        self._circuit_transitions: "Counter" = Counter(
            "tokenwatch_circuit_transitions_total",
            "Total circuit breaker state transitions",
            ["platform", "to_state"],
            registry=registry,
        )
        self._circuit_state: "Gauge" = Gauge(
            "tokenwatch_circuit_open",
            "1 when the platform circuit breaker is not closed",
            ["platform"],
            registry=registry,
        )
        self._cache_requests: "Counter" = Counter(
            "tokenwatch_cache_requests_total",
            "Response cache lookups by endpoint and result",
            ["platform", "endpoint", "result"],
            registry=registry,
        )
        self._pagination_truncated: "Counter" = Counter(
            "tokenwatch_pagination_truncated_total",
            "Paginated fetches stopped before the last page",
            ["platform", "endpoint", "reason"],
            registry=registry,
        )
        self._fetch_duration: "Histogram" = Histogram(
            "tokenwatch_fetch_duration_seconds",
            "Duration of platform report fetches",
            ["platform"],
            registry=registry,
        )
        self._fetch_errors: "Counter" = Counter(
            "tokenwatch_fetch_errors_total",
            "Total fetch errors by platform and stage",
            ["platform", "stage"],
            registry=registry,
        )
        self._last_fetch_success: "Gauge" = Gauge(
            "tokenwatch_last_fetch_success_timestamp_seconds",
            "Unix timestamp of last successful fetch per platform",
            ["platform"],
            registry=registry,
        )

    def inc_http_retry(self, platform: "str", reason: "str") -> "None":
        self._http_retries.labels(platform=platform, reason=reason).inc()

    def record_circuit_transition(
        self, platform: "str", new_state: "CircuitState"
    ) -> "None":
        self._circuit_transitions.labels(
            platform=platform, to_state=new_state.value
        ).inc()
        self._circuit_state.labels(platform=platform).set(
            0 if new_state is CircuitState.CLOSED else 1
        )

    def record_cache_lookup(
        self, platform: "str", endpoint: "str", hit: "bool"
    ) -> "None":
        self._cache_requests.labels(
            platform=platform,
            endpoint=endpoint,
            result="hit" if hit else "miss",
        ).inc()

    def inc_pagination_truncated(
        self, platform: "str", endpoint: "str", reason: "str"
    ) -> "None":
        self._pagination_truncated.labels(
            platform=platform, endpoint=endpoint, reason=reason
        ).inc()

    def observe_fetch_duration(
        self, platform: "str", duration_seconds: "float"
    ) -> "None":
        self._fetch_duration.labels(platform=platform).observe(duration_seconds)

    def inc_fetch_error(self, platform: "str", stage: "str") -> "None":
        self._fetch_errors.labels(platform=platform, stage=stage).inc()

    def set_last_fetch_success(self, platform: "str", timestamp: "float") -> "None":
        self._last_fetch_success.labels(platform=platform).set(timestamp)
