import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Mapping, Sequence, TypeVar

from tokenwatch.errors import InternalError

T = TypeVar("T")

DEFAULT_TTL_SECONDS = 300.0


def make_cache_key(
    endpoint: "str",
    params: "Mapping[str, str | int | Sequence[str]]",
) -> "str":
    """
    builds a deterministic key from the logical endpoint name and the
    query parameters. Parameter names are sorted so that insertion
    order never matters. A sequence is rendered as one name=value
    pair per item in its given order, the way it is sent.
    """
    if not endpoint:
        raise InternalError("cache key requires an endpoint name")

    parts = [endpoint]
    for name in sorted(params):
        if not name:
            raise InternalError(f"empty parameter name in cache key for {endpoint}")
        value = params[name]
        if isinstance(value, (str, int)):
            parts.append(f"{name}={value}")
        else:
            parts.append("&".join(f"{name}={v}" for v in value))
    return ":".join(parts)


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    payload: "T"
    # monotonic timestamp after which the entry is stale
    expires_at: "float"


class ResponseCache(Generic[T]):
    """
    ResponseCache: Is a thread-safe, TTL-keyed in-memory store of
    API responses.

    Expired entries are never returned and are purged lazily on
    lookup. One instance holds one response shape.
    """

    def __init__(
        self,
        ttl: "float" = DEFAULT_TTL_SECONDS,
        clock: "Callable[[], float]" = time.monotonic,
    ) -> "None":
        self._ttl = ttl
        self._clock = clock
        self._lock: "threading.Lock" = threading.Lock()
        self._entries: "dict[str, CacheEntry[T]]" = {}

    @property
    def ttl(self) -> "float":
        return self._ttl

    def get(self, key: "str") -> "tuple[T | None, bool]":
        """
        returns (payload, True) for a live entry, (None, False)
        otherwise. A stale entry is removed as a side effect.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None, False

            if self._clock() > entry.expires_at:
                del self._entries[key]
                return None, False

            return entry.payload, True

    def put(self, key: "str", payload: "T", ttl: "float | None" = None) -> "None":
        """
        stores payload under key, replacing any previous entry.
        """
        expires_at = self._clock() + (self._ttl if ttl is None else ttl)
        with self._lock:
            self._entries[key] = CacheEntry(payload=payload, expires_at=expires_at)

    def clear(self) -> "None":
        with self._lock:
            self._entries.clear()

    def __len__(self) -> "int":
        with self._lock:
            return len(self._entries)
