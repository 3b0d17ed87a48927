from datetime import datetime, timedelta, timezone
from typing import Protocol, Sequence

from tokenwatch.models import (
    ConsumptionSummary,
    CostRecord,
    PricingSummary,
    UsageRecord,
)

PERIOD_DAYS: "dict[str, int]" = {
    "1d": 1,
    "7d": 7,
    "30d": 30,
    "90d": 90,
    "1y": 365,
    # five years is the practical upper bound of the usage API
    "all": 1825,
}

DEFAULT_PERIOD = "7d"

PERIOD_DESCRIPTIONS: "dict[str, str]" = {
    "1d": "Last 24 hours",
    "7d": "Last 7 days",
    "30d": "Last 30 days",
    "90d": "Last 90 days",
    "1y": "Last year",
    "all": "All time",
}


def period_time_range(
    period: "str",
    now: "datetime | None" = None,
) -> "tuple[datetime, datetime]":
    """
    returns the (start, end) window for a period label such as
    "7d". Unknown labels fall back to 7 days.

    The end is truncated to the minute so that repeated queries
    within a minute share the same response cache key.
    """
    end_time = (now or datetime.now(timezone.utc)).replace(second=0, microsecond=0)
    days = PERIOD_DAYS.get(period, PERIOD_DAYS[DEFAULT_PERIOD])
    return end_time - timedelta(days=days), end_time


class UsageProvider(Protocol):
    """
    UsageProvider stands as a common protocol that all
    platform providers must satisfy.

    Providers fetch consumption and pricing data for a time
    window and return platform-agnostic records.
    """

    @property
    def name(self) -> "str": ...

    def is_available(self) -> "bool": ...

    def clear_cache(self) -> "None": ...

    async def fetch_consumption(
        self,
        start_time: "datetime",
        end_time: "datetime",
        bypass_cache: "bool" = False,
    ) -> "Sequence[UsageRecord]": ...

    async def fetch_pricing(
        self,
        start_time: "datetime",
        end_time: "datetime",
        bypass_cache: "bool" = False,
    ) -> "Sequence[CostRecord]": ...

    async def consumption_summary(
        self,
        period: "str",
        bypass_cache: "bool" = False,
    ) -> "ConsumptionSummary": ...

    async def pricing_summary(
        self,
        period: "str",
        bypass_cache: "bool" = False,
    ) -> "PricingSummary": ...

    async def close(self) -> "None": ...
