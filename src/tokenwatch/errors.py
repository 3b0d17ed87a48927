from enum import Enum


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    UPSTREAM_SERVER = "upstream_server"
    API = "api"
    INTERNAL = "internal"


_SETUP_HINT = "Set OPENAI_API_KEY to an Admin key with the api.usage.read scope"

# default user-facing hints per error kind, rendered by the CLI
DEFAULT_SUGGESTIONS: "dict[ErrorKind, tuple[str, ...]]" = {
    ErrorKind.CONFIGURATION: (
        _SETUP_HINT,
        "Run 'tokenwatch config' to inspect the effective configuration",
    ),
    ErrorKind.AUTHENTICATION: (
        "Verify your API key is correct and hasn't been revoked",
        _SETUP_HINT,
    ),
    ErrorKind.AUTHORIZATION: (
        "Ensure your API key has the required permissions",
        "OpenAI usage data needs an Admin key with the api.usage.read scope",
        "Contact your organization administrator for proper access",
    ),
    ErrorKind.RATE_LIMIT: (
        "You've hit the rate limit, wait a moment and try again",
        "Requests are retried automatically with backoff",
    ),
    ErrorKind.NETWORK: (
        "Check your internet connection",
        "Verify you can reach the API endpoint",
        "Check if you're behind a firewall or proxy",
    ),
    ErrorKind.UPSTREAM_SERVER: (
        "The API service is experiencing issues",
        "Wait a few moments and try again",
        "Check the platform's status page for outages",
    ),
    ErrorKind.API: (
        "Verify the API service is available",
        "Try again in a few moments",
    ),
    ErrorKind.INTERNAL: (),
}


class TokenwatchError(Exception):
    """
    TokenwatchError is the base of every error raised by tokenwatch.
    The kind drives how the CLI explains the failure to the user.
    """

    kind: "ErrorKind" = ErrorKind.INTERNAL

    def __init__(
        self,
        message: "str",
        *,
        kind: "ErrorKind | None" = None,
        suggestions: "tuple[str, ...] | None" = None,
    ) -> "None":
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.suggestions: "tuple[str, ...]" = (
            suggestions
            if suggestions is not None
            else DEFAULT_SUGGESTIONS.get(self.kind, ())
        )


class ConfigurationError(TokenwatchError):
    kind = ErrorKind.CONFIGURATION


class InternalError(TokenwatchError):
    kind = ErrorKind.INTERNAL


class NetworkError(TokenwatchError):
    kind = ErrorKind.NETWORK


class DeadlineExceededError(NetworkError):
    """
    raised when an outbound call does not finish within its deadline,
    retries included.
    """


class HTTPStatusError(TokenwatchError):
    """
    base for errors derived from a non-success HTTP status.
    """

    kind = ErrorKind.API

    def __init__(
        self,
        message: "str",
        status_code: "int",
        *,
        suggestions: "tuple[str, ...] | None" = None,
    ) -> "None":
        super().__init__(message, suggestions=suggestions)
        self.status_code = status_code


class ApiError(HTTPStatusError):
    kind = ErrorKind.API


class AuthenticationError(HTTPStatusError):
    kind = ErrorKind.AUTHENTICATION


class AuthorizationError(HTTPStatusError):
    kind = ErrorKind.AUTHORIZATION


class UpstreamServerError(HTTPStatusError):
    kind = ErrorKind.UPSTREAM_SERVER


class RateLimitError(HTTPStatusError):
    kind = ErrorKind.RATE_LIMIT

    def __init__(
        self,
        message: "str",
        status_code: "int" = 429,
        retry_after: "float | None" = None,
    ) -> "None":
        super().__init__(message, status_code)
        self.retry_after = retry_after


class CircuitOpenError(TokenwatchError):
    """
    raised by the circuit breaker when it rejects a call without
    invoking the wrapped operation.
    """

    kind = ErrorKind.UPSTREAM_SERVER

    def __init__(self, retry_after: "float" = 0.0) -> "None":
        super().__init__(
            f"circuit breaker is open, retry after {retry_after:.1f}s",
            suggestions=(
                "Recent requests kept failing, so calls are paused briefly",
                "Wait a minute and try again",
            ),
        )
        self.retry_after = retry_after


class RateLimiterWaitError(TokenwatchError):
    """
    raised by the rate limiter when a permit would not be available
    before the caller's deadline.
    """

    kind = ErrorKind.RATE_LIMIT

    def __init__(self, wait: "float", timeout: "float") -> "None":
        super().__init__(
            f"rate limiter wait of {wait:.2f}s would exceed deadline of {timeout:.2f}s"
        )
        self.wait = wait
        self.timeout = timeout


class RetryExhaustedError(TokenwatchError):
    """
    raised when every attempt of a request failed. Takes its kind and
    suggestions from the last underlying failure.
    """

    def __init__(self, attempts: "int", last_error: "TokenwatchError") -> "None":
        super().__init__(
            f"request failed after {attempts} attempts: {last_error.message}",
            kind=last_error.kind,
            suggestions=last_error.suggestions,
        )
        self.attempts = attempts
        self.last_error = last_error


def error_for_status(
    status_code: "int",
    url: "str" = "",
    retry_after: "float | None" = None,
) -> "HTTPStatusError":
    """
    maps a non-success HTTP status to the matching error type.
    """
    message = f"API request failed with status {status_code}"
    if url:
        message = f"{message} ({url})"

    if status_code == 401:
        return AuthenticationError(message, status_code)
    if status_code == 403:
        return AuthorizationError(message, status_code)
    if status_code == 429:
        return RateLimitError(message, status_code, retry_after=retry_after)
    if status_code >= 500:
        return UpstreamServerError(message, status_code)
    return ApiError(message, status_code)
