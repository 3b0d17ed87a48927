import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Sequence

import structlog

from tokenwatch.errors import ConfigurationError
from tokenwatch.metrics import MetricsUpdater
from tokenwatch.models import ConsumptionSummary, PricingSummary
from tokenwatch.provider.base import UsageProvider

logger = structlog.get_logger()


@dataclass
class PlatformReport:
    """
    PlatformReport holds what one platform returned for a query.
    A report with an error is excluded from combined totals.
    """

    platform: "str"
    consumption: "ConsumptionSummary | None" = None
    pricing: "PricingSummary | None" = None
    error: "Exception | None" = None
    # pricing may be unavailable while consumption is fine
    pricing_error: "Exception | None" = None

    @property
    def ok(self) -> "bool":
        return self.error is None and self.consumption is not None


@dataclass(frozen=True, slots=True)
class OverviewTotals:
    input_tokens: "int" = 0
    output_tokens: "int" = 0
    request_count: "int" = 0
    cost: "float" = 0.0

    @property
    def total_tokens(self) -> "int":
        return self.input_tokens + self.output_tokens


def combine_reports(reports: "Sequence[PlatformReport]") -> "OverviewTotals":
    """
    sums the successful reports. Failed platforms are left out.
    """
    input_tokens = output_tokens = requests = 0
    cost = 0.0
    for report in reports:
        if not report.ok or report.consumption is None:
            continue
        input_tokens += report.consumption.input_tokens
        output_tokens += report.consumption.output_tokens
        requests += report.consumption.request_count
        if report.pricing is not None:
            cost += report.pricing.total_cost

    return OverviewTotals(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        request_count=requests,
        cost=cost,
    )


class Collector:
    """
    Collector fetches consumption and pricing from every provider
    concurrently and joins the results into one report per
    platform. In watch mode it repeats the collection on a fixed
    interval until stop() is called, reusing the same providers so
    circuit breaker and cache state carry over between refreshes.
    """

    def __init__(
        self,
        providers: "list[UsageProvider]",
        metrics_updater: "MetricsUpdater | None" = None,
        period: "str" = "7d",
        interval_seconds: "int" = 30,
        watch_bypass_cache: "bool" = True,
    ) -> "None":
        self._providers = providers
        self._metrics = metrics_updater
        self._period = period
        self._interval = interval_seconds
        self._watch_bypass_cache = watch_bypass_cache
        self._stop_event: "asyncio.Event" = asyncio.Event()

    def stop(self) -> "None":
        """
        signals the watch loop to stop after the current cycle.
        """
        self._stop_event.set()

    async def close(self) -> "None":
        """
        closes all provider sessions.
        """
        for p in self._providers:
            await p.close()

    async def collect_once(
        self,
        bypass_cache: "bool" = False,
    ) -> "list[PlatformReport]":
        """
        collects one report per provider. A failing provider never
        fails the others.
        """
        tasks = [
            self._collect_provider(provider, bypass_cache)
            for provider in self._providers
        ]
        return list(await asyncio.gather(*tasks))

    async def run(
        self,
        render: "Callable[[list[PlatformReport]], None]",
    ) -> "None":
        """
        runs the watch loop, rendering each cycle. Runs until stop()
        is called.
        """
        while not self._stop_event.is_set():
            logger.debug("watch_cycle_start", period=self._period)
            reports = await self.collect_once(bypass_cache=self._watch_bypass_cache)
            render(reports)
            logger.debug("watch_cycle_end")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass

    async def _collect_provider(
        self,
        provider: "UsageProvider",
        bypass_cache: "bool",
    ) -> "PlatformReport":
        report = PlatformReport(platform=provider.name)
        if not provider.is_available():
            report.error = ConfigurationError(f"{provider.name} is not configured")
            return report

        cycle_start = time.monotonic()
        # consumption and pricing hit different endpoints, so fetch
        # them side by side
        consumption, pricing = await asyncio.gather(
            provider.consumption_summary(self._period, bypass_cache),
            provider.pricing_summary(self._period, bypass_cache),
            return_exceptions=True,
        )
        for result in (consumption, pricing):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result

        if isinstance(consumption, Exception):
            logger.error(
                "consumption_fetch_error",
                platform=provider.name,
                error=str(consumption),
            )
            self._inc_error(provider.name, "consumption")
            report.error = consumption
        else:
            report.consumption = consumption

        if isinstance(pricing, Exception):
            logger.warning(
                "pricing_fetch_error",
                platform=provider.name,
                error=str(pricing),
            )
            self._inc_error(provider.name, "pricing")
            report.pricing_error = pricing
        else:
            report.pricing = pricing

        if self._metrics is not None:
            self._metrics.observe_fetch_duration(
                provider.name, time.monotonic() - cycle_start
            )
            if report.error is None and report.pricing_error is None:
                self._metrics.set_last_fetch_success(provider.name, time.time())

        return report

    def _inc_error(self, platform: "str", stage: "str") -> "None":
        if self._metrics is not None:
            self._metrics.inc_fetch_error(platform, stage)
