import os
from dataclasses import dataclass, fields

from tokenwatch.errors import ConfigurationError

_DEFAULT_CACHE_DURATION = 300


@dataclass
class Config:
    openai_api_key: "str" = ""
    openai_org_id: "str" = ""

    # response cache TTL in seconds
    cache_duration: "int" = _DEFAULT_CACHE_DURATION
    # per-attempt HTTP timeout in seconds
    request_timeout: "float" = 30.0
    # retries after the initial attempt
    retry_attempts: "int" = 3
    # token bucket refill rate (requests/second) and burst size
    rate_limit: "float" = 1.0
    rate_burst: "int" = 5
    # consecutive failures before the circuit opens, and how long
    # it stays open
    failure_threshold: "int" = 5
    reset_timeout: "float" = 60.0

    log_level: "str" = "info"
    # logs raw request/response bodies
    debug: "bool" = False

    period: "str" = "7d"
    watch: "bool" = False
    # watch mode refresh interval in seconds
    watch_interval: "int" = 30
    # watch mode fetches bypass the response cache
    watch_bypass_cache: "bool" = True
    # listen_address for the optional metrics endpoint, format
    # ":9185" or "0.0.0.0:9185"; empty disables it
    listen_address: "str" = ""

    @classmethod
    def from_env(cls) -> "Config":
        env = os.environ
        config = cls(
            openai_api_key=env.get("TOKENWATCH_OPENAI_API_KEY")
            or env.get("OPENAI_API_KEY", ""),
            openai_org_id=env.get("TOKENWATCH_OPENAI_ORG_ID")
            or env.get("OPENAI_ORG_ID", ""),
            cache_duration=_int_env("TOKENWATCH_CACHE_DURATION", cls.cache_duration),
            request_timeout=_float_env(
                "TOKENWATCH_REQUEST_TIMEOUT", cls.request_timeout
            ),
            retry_attempts=_int_env("TOKENWATCH_RETRY_ATTEMPTS", cls.retry_attempts),
            rate_limit=_float_env("TOKENWATCH_RATE_LIMIT", cls.rate_limit),
            rate_burst=_int_env("TOKENWATCH_RATE_BURST", cls.rate_burst),
            failure_threshold=_int_env(
                "TOKENWATCH_FAILURE_THRESHOLD", cls.failure_threshold
            ),
            reset_timeout=_float_env("TOKENWATCH_RESET_TIMEOUT", cls.reset_timeout),
            log_level=env.get("TOKENWATCH_LOG_LEVEL", cls.log_level).lower(),
            debug=_bool_env("TOKENWATCH_DEBUG", cls.debug),
            watch_interval=_int_env("TOKENWATCH_WATCH_INTERVAL", cls.watch_interval),
        )
        config.validate()
        return config

    def validate(self) -> "None":
        """
        rejects values the resilience components can't work with.
        A non-positive cache duration falls back to the default.
        """
        if self.cache_duration <= 0:
            self.cache_duration = _DEFAULT_CACHE_DURATION
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be positive")
        if self.retry_attempts < 0:
            raise ConfigurationError("retry_attempts must not be negative")
        if self.rate_limit <= 0:
            raise ConfigurationError("rate_limit must be positive")
        if self.rate_burst < 1:
            raise ConfigurationError("rate_burst must be at least 1")
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be at least 1")
        if self.watch_interval < 1:
            raise ConfigurationError("watch_interval must be at least 1 second")

    @property
    def openai_enabled(self) -> "bool":
        return bool(self.openai_api_key)

    def as_display_dict(self) -> "dict[str, object]":
        """
        returns the settings with secrets masked.
        """
        values: "dict[str, object]" = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "openai_api_key":
                value = mask_secret(value)
            values[f.name] = value
        return values


def mask_secret(value: "str") -> "str":
    if not value:
        return "(not set)"
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:3]}...{value[-4:]}"


def _int_env(name: "str", default: "int") -> "int":
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _float_env(name: "str", default: "float") -> "float":
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _bool_env(name: "str", default: "bool") -> "bool":
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")
