import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

import structlog

from tokenwatch.errors import CircuitOpenError

T = TypeVar("T")

# listener signature: (old_state, new_state)
TransitionListener = Callable[["CircuitState", "CircuitState"], None]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    CircuitBreaker isolates a failing upstream.

    While CLOSED, calls go through and consecutive failures are
    counted. Reaching `failure_threshold` opens the circuit and every
    call is rejected with CircuitOpenError without running the
    operation. Once `reset_timeout` seconds have passed since the last
    failure, the next call is let through as a single HALF_OPEN trial:
    success closes the circuit, failure opens it again. The transition
    out of OPEN is only evaluated when call() is invoked.
    """

    def __init__(
        self,
        failure_threshold: "int" = 5,
        reset_timeout: "float" = 60.0,
        *,
        name: "str" = "default",
        clock: "Callable[[], float]" = time.monotonic,
        logger: "structlog.stdlib.BoundLogger | None" = None,
        on_transition: "TransitionListener | None" = None,
    ) -> "None":
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")

        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._name = name
        self._clock = clock
        self._logger = logger or structlog.get_logger()
        self._on_transition = on_transition

        self._state: "CircuitState" = CircuitState.CLOSED
        self._failures: "int" = 0
        self._successes: "int" = 0
        self._last_failure: "float" = 0.0
        self._trial_in_flight: "bool" = False
        # bumped on every transition
        self._generation: "int" = 0
        self._lock: "asyncio.Lock" = asyncio.Lock()

    @property
    def state(self) -> "CircuitState":
        return self._state

    @property
    def failures(self) -> "int":
        return self._failures

    @property
    def successes(self) -> "int":
        return self._successes

    def reset(self) -> "None":
        """
        manually closes the circuit and clears the counters.
        """
        self._transition(CircuitState.CLOSED)
        self._trial_in_flight = False

    async def call(self, operation: "Callable[[], Awaitable[T]]") -> "T":
        """
        runs `operation` under circuit breaker protection and returns
        its result. The operation's own exception is re-raised
        unchanged after being recorded as a failure.

        An outcome only counts for the state the call was admitted
        under. Calls still running from before a transition are
        ignored once they finish, so only the HALF_OPEN trial decides
        whether the circuit closes again.
        """
        async with self._lock:
            admitted = self._admit()

        try:
            result = await operation()
        except asyncio.CancelledError:
            # cancellation says nothing about upstream health
            async with self._lock:
                if admitted.is_trial and admitted.generation == self._generation:
                    self._trial_in_flight = False
            raise
        except Exception:
            async with self._lock:
                self._record_failure(admitted)
            raise

        async with self._lock:
            self._record_success(admitted)
        return result

    def _admit(self) -> "_Admission":
        if self._state is CircuitState.OPEN:
            elapsed = self._clock() - self._last_failure
            if elapsed <= self._reset_timeout:
                raise CircuitOpenError(self._reset_timeout - elapsed)
            self._transition(CircuitState.HALF_OPEN)

        if self._state is CircuitState.HALF_OPEN:
            # only one trial call at a time while probing
            if self._trial_in_flight:
                raise CircuitOpenError(0.0)
            self._trial_in_flight = True
            return _Admission(self._generation, is_trial=True)

        return _Admission(self._generation, is_trial=False)

    def _record_failure(self, admitted: "_Admission") -> "None":
        if admitted.generation != self._generation:
            return

        self._failures += 1
        self._last_failure = self._clock()

        if admitted.is_trial:
            self._trial_in_flight = False
            self._transition(CircuitState.OPEN)
        elif self._failures >= self._failure_threshold:
            self._transition(CircuitState.OPEN)

    def _record_success(self, admitted: "_Admission") -> "None":
        if admitted.generation != self._generation:
            return

        self._successes += 1

        if admitted.is_trial:
            self._trial_in_flight = False
            self._transition(CircuitState.CLOSED)
        else:
            self._failures = 0

    def _transition(self, new_state: "CircuitState") -> "None":
        old_state = self._state
        self._state = new_state
        self._generation += 1

        if new_state in (CircuitState.CLOSED, CircuitState.HALF_OPEN):
            self._failures = 0
            self._successes = 0

        if old_state is new_state:
            return

        self._logger.info(
            "circuit_breaker_transition",
            circuit=self._name,
            old_state=old_state.value,
            new_state=new_state.value,
            failures=self._failures,
        )
        if self._on_transition is not None:
            self._on_transition(old_state, new_state)


@dataclass(frozen=True, slots=True)
class _Admission:
    # the breaker generation the call was let through in
    generation: "int"
    is_trial: "bool"
