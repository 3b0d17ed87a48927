import pytest
from prometheus_client import CollectorRegistry


class FakeClock:
    """
    a monotonic clock that only moves when told to. Its sleep()
    advances the clock instead of waiting and records each delay.
    """

    def __init__(self, start: "float" = 1000.0) -> "None":
        self.now = start
        self.sleeps: "list[float]" = []

    def __call__(self) -> "float":
        return self.now

    def advance(self, seconds: "float") -> "None":
        self.now += seconds

    async def sleep(self, seconds: "float") -> "None":
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def clock() -> "FakeClock":
    return FakeClock()
