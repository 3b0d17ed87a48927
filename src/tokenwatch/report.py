from datetime import datetime
from typing import Sequence

from rich.console import Console
from rich.table import Table

from tokenwatch.collector import PlatformReport, combine_reports
from tokenwatch.errors import TokenwatchError
from tokenwatch.models import ModelStats, model_breakdown
from tokenwatch.provider.base import PERIOD_DESCRIPTIONS


def _days(report_start: "datetime", report_end: "datetime") -> "int":
    return max(1, int((report_end - report_start).total_seconds() // 86400))


def _model_table(
    title: "str",
    rows: "Sequence[ModelStats]",
    show_platform: "bool",
) -> "Table":
    table = Table(title=title, title_justify="left")
    if show_platform:
        table.add_column("Platform", style="cyan")
    table.add_column("Model", style="yellow")
    table.add_column("Input Tokens", justify="right", style="green")
    table.add_column("Output Tokens", justify="right", style="blue")
    table.add_column("Total Tokens", justify="right")
    table.add_column("Requests", justify="right", style="magenta")
    table.add_column("Cost", justify="right", style="cyan")
    table.add_column("$/1K Tokens", justify="right", style="bright_black")

    for m in rows:
        cells = [
            m.model,
            f"{m.input_tokens:,}",
            f"{m.output_tokens:,}",
            f"{m.total_tokens:,}",
            f"{m.request_count:,}",
            f"${m.cost:.4f}",
            f"${m.cost_per_1k_tokens:.4f}",
        ]
        if show_platform:
            cells.insert(0, m.platform.title())
        table.add_row(*cells)

    total = ModelStats(
        platform="",
        model="TOTAL",
        input_tokens=sum(m.input_tokens for m in rows),
        output_tokens=sum(m.output_tokens for m in rows),
        request_count=sum(m.request_count for m in rows),
        cost=sum(m.cost for m in rows),
    )
    table.add_section()
    cells = [
        "[bold]TOTAL[/bold]",
        f"[bold]{total.input_tokens:,}[/bold]",
        f"[bold]{total.output_tokens:,}[/bold]",
        f"[bold]{total.total_tokens:,}[/bold]",
        f"[bold]{total.request_count:,}[/bold]",
        f"[bold]${total.cost:.4f}[/bold]",
        f"[bold]${total.cost_per_1k_tokens:.4f}[/bold]",
    ]
    if show_platform:
        cells.insert(0, "")
    table.add_row(*cells)
    return table


def render_error(console: "Console", error: "BaseException") -> "None":
    """
    prints an error and, for tokenwatch errors, what the user can
    do about it.
    """
    if isinstance(error, TokenwatchError):
        console.print(f"[red]Error ({error.kind.value}):[/red] {error.message}")
        for i, suggestion in enumerate(error.suggestions, start=1):
            console.print(f"  {i}. {suggestion}")
        return
    console.print(f"[red]Error:[/red] {error}")


def render_platform_report(
    console: "Console",
    report: "PlatformReport",
    generated_at: "datetime",
) -> "None":
    """
    prints the per-model breakdown of a single platform.
    """
    console.print(f"[bold]{report.platform.upper()} USAGE[/bold]")
    console.print(f"Generated: {generated_at:%Y-%m-%d %H:%M:%S}")
    console.print()

    if not report.ok or report.consumption is None:
        if report.error is not None:
            render_error(console, report.error)
        return

    if report.pricing_error is not None:
        console.print(
            f"[yellow]Warning:[/yellow] could not fetch pricing data: "
            f"{report.pricing_error}"
        )
        console.print(
            "  This is normal for longer periods or when costs are not yet available."
        )
        console.print()

    consumption = report.consumption
    rows = model_breakdown(consumption, report.pricing)
    if not rows:
        console.print("No consumption or cost data found for the specified period.")
        console.print("  No API calls may have been made during this period,")
        console.print("  or the data is not yet available.")
        return

    days = _days(consumption.start_time, consumption.end_time)
    total_cost = sum(m.cost for m in rows)
    console.print("[bold]SUMMARY[/bold]")
    console.print(
        f"Period: {consumption.start_time:%Y-%m-%d} to "
        f"{consumption.end_time:%Y-%m-%d} ({days} days)"
    )
    console.print(
        f"Daily averages: [cyan]{consumption.total_tokens / days:.1f}[/cyan] tokens, "
        f"[cyan]{consumption.request_count / days:.1f}[/cyan] requests"
    )
    if total_cost > 0:
        console.print(f"Daily cost average: [yellow]${total_cost / days:.4f}[/yellow]")
    else:
        console.print("Cost data: [yellow]not available for this period[/yellow]")
    console.print()
    console.print(_model_table("MODEL BREAKDOWN", rows, show_platform=False))


def render_overview(
    console: "Console",
    reports: "Sequence[PlatformReport]",
    period: "str",
    generated_at: "datetime",
) -> "None":
    """
    prints the combined dashboard across platforms followed by a
    (platform, model) table. Failed platforms are listed but not
    counted.
    """
    description = PERIOD_DESCRIPTIONS.get(period, period)
    console.print(f"[bold]TOKENWATCH ALL PLATFORMS[/bold] - {description}")
    console.print(f"Generated: {generated_at:%Y-%m-%d %H:%M:%S}")
    console.print()

    for report in reports:
        if report.error is not None:
            console.print(f"[yellow]{report.platform.title()}:[/yellow] {report.error}")
        elif report.pricing_error is not None:
            console.print(
                f"[yellow]Warning:[/yellow] could not fetch {report.platform.title()} "
                f"pricing data: {report.pricing_error}"
            )

    pairs = [
        (r.consumption, r.pricing)
        for r in reports
        if r.ok and r.consumption is not None
    ]
    if not pairs:
        console.print("No data found for the specified period.")
        return

    totals = combine_reports(reports)
    first, _ = pairs[0]
    days = _days(first.start_time, first.end_time)

    console.print("[bold]COMBINED DASHBOARD METRICS[/bold]")
    console.print(f"Total tokens: [green]{totals.total_tokens:,}[/green]")
    console.print(f"Total requests: [blue]{totals.request_count:,}[/blue]")
    if totals.request_count > 0:
        console.print(
            "Average per request: "
            f"[yellow]{totals.total_tokens / totals.request_count:.1f}[/yellow]"
        )
    console.print(
        f"Daily average: [cyan]{totals.total_tokens / days:.1f}[/cyan] tokens"
    )
    console.print(f"Total cost: [green]${totals.cost:.4f}[/green]")
    console.print(f"Daily cost average: [yellow]${totals.cost / days:.4f}[/yellow]")
    if totals.total_tokens > 0 and totals.cost > 0:
        console.print(
            f"Cost per token: [cyan]${totals.cost / totals.total_tokens:.6f}[/cyan]"
        )
    console.print()

    rows: "list[ModelStats]" = []
    for consumption, pricing in pairs:
        rows.extend(model_breakdown(consumption, pricing))
    console.print(
        _model_table("ALL PLATFORMS MODEL BREAKDOWN", rows, show_platform=True)
    )
