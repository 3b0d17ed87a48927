import asyncio

import pytest

from tokenwatch.circuit_breaker import CircuitBreaker, CircuitState
from tokenwatch.errors import CircuitOpenError


class CountingOperation:
    """
    an operation that records how often it ran and either
    succeeds or raises the configured error.
    """

    def __init__(self, error: "Exception | None" = None) -> "None":
        self.calls = 0
        self.error = error

    async def __call__(self) -> "str":
        self.calls += 1
        if self.error is not None:
            raise self.error
        return "ok"


def _breaker(clock: "object", **kwargs: "object") -> "CircuitBreaker":
    kwargs.setdefault("failure_threshold", 3)
    kwargs.setdefault("reset_timeout", 60.0)
    return CircuitBreaker(clock=clock, **kwargs)  # type: ignore[arg-type]


async def _fail_times(
    breaker: "CircuitBreaker", op: "CountingOperation", n: "int"
) -> "None":
    for _ in range(n):
        with pytest.raises(RuntimeError):
            await breaker.call(op)


class TestCircuitBreakerTrip:
    @pytest.mark.asyncio
    async def test_opens_after_consecutive_failures(self, clock: "object") -> "None":
        breaker = _breaker(clock)
        failing = CountingOperation(RuntimeError("boom"))

        await _fail_times(breaker, failing, 3)

        assert breaker.state is CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.call(failing)
        # the fourth call never reached the operation
        assert failing.calls == 3

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, clock: "object") -> "None":
        breaker = _breaker(clock)
        failing = CountingOperation(RuntimeError("boom"))
        succeeding = CountingOperation()

        await _fail_times(breaker, failing, 2)
        assert await breaker.call(succeeding) == "ok"
        assert breaker.failures == 0
        await _fail_times(breaker, failing, 2)

        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_propagates_original_error(self, clock: "object") -> "None":
        breaker = _breaker(clock)
        error = ValueError("original")

        with pytest.raises(ValueError) as exc_info:
            await breaker.call(CountingOperation(error))

        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_returns_operation_result(self, clock: "object") -> "None":
        breaker = _breaker(clock)
        assert await breaker.call(CountingOperation()) == "ok"
        assert breaker.successes == 1


class TestCircuitBreakerRecovery:
    @pytest.mark.asyncio
    async def test_stays_open_until_timeout_elapsed(self, clock: "object") -> "None":
        breaker = _breaker(clock)
        await _fail_times(breaker, CountingOperation(RuntimeError("boom")), 3)

        clock.advance(60.0)
        succeeding = CountingOperation()
        with pytest.raises(CircuitOpenError):
            await breaker.call(succeeding)
        assert succeeding.calls == 0

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self, clock: "object") -> "None":
        breaker = _breaker(clock)
        await _fail_times(breaker, CountingOperation(RuntimeError("boom")), 3)

        clock.advance(61.0)
        succeeding = CountingOperation()
        assert await breaker.call(succeeding) == "ok"

        assert succeeding.calls == 1
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failures == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, clock: "object") -> "None":
        breaker = _breaker(clock)
        failing = CountingOperation(RuntimeError("boom"))
        await _fail_times(breaker, failing, 3)

        clock.advance(61.0)
        await _fail_times(breaker, failing, 1)

        assert breaker.state is CircuitState.OPEN
        assert failing.calls == 4
        with pytest.raises(CircuitOpenError):
            await breaker.call(failing)

    @pytest.mark.asyncio
    async def test_single_trial_call_while_half_open(self, clock: "object") -> "None":
        breaker = _breaker(clock)
        await _fail_times(breaker, CountingOperation(RuntimeError("boom")), 3)
        clock.advance(61.0)

        release = asyncio.Event()

        async def slow_trial() -> "str":
            await release.wait()
            return "trial"

        trial = asyncio.create_task(breaker.call(slow_trial))
        await asyncio.sleep(0)
        assert breaker.state is CircuitState.HALF_OPEN

        other = CountingOperation()
        with pytest.raises(CircuitOpenError):
            await breaker.call(other)
        assert other.calls == 0

        release.set()
        assert await trial == "trial"
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset_closes_circuit(self, clock: "object") -> "None":
        breaker = _breaker(clock)
        await _fail_times(breaker, CountingOperation(RuntimeError("boom")), 3)

        breaker.reset()

        assert breaker.state is CircuitState.CLOSED
        assert await breaker.call(CountingOperation()) == "ok"


class TestCircuitBreakerBookkeeping:
    @pytest.mark.asyncio
    async def test_cancellation_is_not_a_failure(self, clock: "object") -> "None":
        breaker = _breaker(clock, failure_threshold=1)

        with pytest.raises(asyncio.CancelledError):
            await breaker.call(CountingOperation(asyncio.CancelledError()))

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failures == 0

    @pytest.mark.asyncio
    async def test_reports_every_transition(self, clock: "object") -> "None":
        transitions: "list[tuple[CircuitState, CircuitState]]" = []
        breaker = _breaker(
            clock,
            failure_threshold=1,
            on_transition=lambda old, new: transitions.append((old, new)),
        )

        await _fail_times(breaker, CountingOperation(RuntimeError("boom")), 1)
        clock.advance(61.0)
        await breaker.call(CountingOperation())

        assert transitions == [
            (CircuitState.CLOSED, CircuitState.OPEN),
            (CircuitState.OPEN, CircuitState.HALF_OPEN),
            (CircuitState.HALF_OPEN, CircuitState.CLOSED),
        ]

    def test_rejects_invalid_threshold(self) -> "None":
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)


class BlockedOperation:
    """
    an operation that waits until released and then either returns
    "ok" or raises the given error.
    """

    def __init__(self) -> "None":
        self.release = asyncio.Event()
        self.error: "Exception | None" = None

    async def __call__(self) -> "str":
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return "ok"

    def finish(self, error: "Exception | None" = None) -> "None":
        self.error = error
        self.release.set()


class TestCircuitBreakerStaleOutcomes:
    @pytest.mark.asyncio
    async def test_stale_failure_does_not_decide_trial(self, clock: "object") -> "None":
        breaker = _breaker(clock, failure_threshold=2)
        slow = BlockedOperation()
        slow_task = asyncio.create_task(breaker.call(slow))
        await asyncio.sleep(0)

        await _fail_times(breaker, CountingOperation(RuntimeError("boom")), 2)
        assert breaker.state is CircuitState.OPEN

        clock.advance(61.0)
        trial = BlockedOperation()
        trial_task = asyncio.create_task(breaker.call(trial))
        await asyncio.sleep(0)
        assert breaker.state is CircuitState.HALF_OPEN

        slow.finish(RuntimeError("late"))
        with pytest.raises(RuntimeError):
            await slow_task
        assert breaker.state is CircuitState.HALF_OPEN

        trial.finish()
        assert await trial_task == "ok"
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_stale_success_does_not_close_during_trial(
        self, clock: "object"
    ) -> "None":
        breaker = _breaker(clock, failure_threshold=1)
        slow = BlockedOperation()
        slow_task = asyncio.create_task(breaker.call(slow))
        await asyncio.sleep(0)

        await _fail_times(breaker, CountingOperation(RuntimeError("boom")), 1)
        clock.advance(61.0)
        trial = BlockedOperation()
        trial_task = asyncio.create_task(breaker.call(trial))
        await asyncio.sleep(0)

        slow.finish()
        assert await slow_task == "ok"
        assert breaker.state is CircuitState.HALF_OPEN

        trial.finish(RuntimeError("still down"))
        with pytest.raises(RuntimeError):
            await trial_task
        assert breaker.state is CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_failures_after_opening_are_not_counted(
        self, clock: "object"
    ) -> "None":
        breaker = _breaker(clock, failure_threshold=1)
        slow = BlockedOperation()
        slow_task = asyncio.create_task(breaker.call(slow))
        await asyncio.sleep(0)

        await _fail_times(breaker, CountingOperation(RuntimeError("boom")), 1)
        failures = breaker.failures
        clock.advance(30.0)

        slow.finish(RuntimeError("late"))
        with pytest.raises(RuntimeError):
            await slow_task

        # the late failure neither counts nor restarts the open period
        assert breaker.failures == failures
        clock.advance(31.0)
        assert await breaker.call(CountingOperation()) == "ok"
        assert breaker.state is CircuitState.CLOSED
