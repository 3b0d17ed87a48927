import asyncio
import signal
import sys
from datetime import datetime

import structlog
from prometheus_client import start_http_server
from rich.console import Console

from tokenwatch.cli import parse_args
from tokenwatch.collector import Collector, PlatformReport
from tokenwatch.config import Config
from tokenwatch.errors import ConfigurationError, TokenwatchError
from tokenwatch.http_client import RetryConfig
from tokenwatch.logging import setup_logging
from tokenwatch.metrics import MetricsUpdater
from tokenwatch.provider.base import UsageProvider
from tokenwatch.provider.openai import OpenAIProvider
from tokenwatch.report import render_error, render_overview, render_platform_report
from tokenwatch.version import __version__

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9185' or '0.0.0.0:9185'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def build_providers(
    config: "Config",
    metrics_updater: "MetricsUpdater | None" = None,
) -> "list[UsageProvider]":
    providers: "list[UsageProvider]" = []

    if config.openai_enabled:
        providers.append(
            OpenAIProvider(
                api_key=config.openai_api_key,
                org_id=config.openai_org_id,
                cache_ttl=float(config.cache_duration),
                rate_limit=config.rate_limit,
                rate_burst=config.rate_burst,
                retry_config=RetryConfig(max_retries=config.retry_attempts),
                failure_threshold=config.failure_threshold,
                reset_timeout=config.reset_timeout,
                request_timeout=config.request_timeout,
                verbose=config.debug,
                metrics=metrics_updater,
            )
        )
        logger.debug("provider_enabled", platform="openai")

    return providers


def _render(
    console: "Console",
    command: "str",
    config: "Config",
    reports: "list[PlatformReport]",
) -> "None":
    now = datetime.now().astimezone()
    if command == "all":
        render_overview(console, reports, config.period, now)
        return
    for report in reports:
        render_platform_report(console, report, now)


async def check_config(config: "Config", console: "Console") -> "int":
    """
    reports which platform keys are configured and verifies each one
    against its API. Returns the exit code; a rejected key raises.
    """
    console.print("[bold]CONFIGURATION STATUS[/bold]")
    console.print()
    console.print("API keys:")
    if not config.openai_enabled:
        console.print("  Openai: [red]not configured[/red]")
        console.print()
        console.print(
            "Set OPENAI_API_KEY to an Admin key with the api.usage.read scope"
        )
        return 1

    console.print("  Openai: [green]configured[/green]")
    provider = OpenAIProvider(
        api_key=config.openai_api_key,
        org_id=config.openai_org_id,
        retry_config=RetryConfig(max_retries=config.retry_attempts),
        request_timeout=config.request_timeout,
        verbose=config.debug,
    )
    try:
        await provider.validate_key()
    finally:
        await provider.close()

    console.print("  Openai: [green]key accepted with usage access[/green]")
    console.print()
    console.print("Configuration check complete")
    return 0


async def _run(command: "str", config: "Config", console: "Console") -> "int":
    metrics_updater = MetricsUpdater()
    providers = build_providers(config, metrics_updater)
    if not providers:
        raise ConfigurationError("No platforms configured")
    if command == "openai":
        providers = [p for p in providers if p.name == "openai"]

    collector = Collector(
        providers,
        metrics_updater,
        period=config.period,
        interval_seconds=config.watch_interval,
        watch_bypass_cache=config.watch_bypass_cache,
    )

    try:
        if not config.watch:
            reports = await collector.collect_once()
            _render(console, command, config, reports)
            return 0 if all(r.ok for r in reports) else 1

        if config.listen_address:
            host, port = _parse_listen_address(config.listen_address)
            start_http_server(port, addr=host)
            logger.info("metrics_server_started", host=host, port=port)

        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, signal the collector
        # to stop gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, collector.stop)

        def _render_cycle(reports: "list[PlatformReport]") -> "None":
            console.clear()
            _render(console, command, config, reports)
            console.print()
            console.print(
                f"Refreshing every {config.watch_interval} seconds... "
                "(Press Ctrl+C to stop)"
            )

        await collector.run(_render_cycle)
        return 0
    finally:
        await collector.close()


def main(argv: "list[str] | None" = None) -> "None":
    console = Console()
    try:
        command, config = parse_args(argv)
    except TokenwatchError as exc:
        render_error(console, exc)
        raise SystemExit(2) from exc

    if command == "version":
        console.print(f"tokenwatch {__version__}")
        return

    setup_logging(config.log_level, verbose=config.debug)

    if command == "config":
        for key, value in config.as_display_dict().items():
            console.print(f"{key}: {value}")
        return

    try:
        if command == "config check":
            exit_code = asyncio.run(check_config(config, console))
        else:
            exit_code = asyncio.run(_run(command, config, console))
    except TokenwatchError as exc:
        logger.debug("command_failed", error=str(exc))
        render_error(console, exc)
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
