"""
CLI interface for ccost.

Runs deduplicated usage reports and prints them as JSON for downstream
formatters.
"""

import asyncio
import os
import sys
from dataclasses import replace
from datetime import date
from typing import List, Optional, Tuple

import typer
from rich.console import Console

from ccost.config.loader import Settings, load_config
from ccost.config.logger import setup_logging
from ccost.core.aggregator import UsageSummary
from ccost.core.conversations import ConversationSortBy, sort_conversations
from ccost.core.currency import EcbRateSource, ExchangeRateCache, convert_summary
from ccost.core.errors import CcostError, ConfigError, RateUnavailableError
from ccost.core.pipeline import UsageFilter, run_usage_report
from ccost.core.pricing import BASE_CURRENCY, CostMode
from ccost.core.projects import ProjectSortBy, analyze_projects, project_statistics
from ccost.core.timezone import DateBucketer, Timeframe
from ccost.storage.repository import ExchangeRateStore, LedgerStore, initialize_schema

app = typer.Typer()
console = Console()
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_ENV_VAR = "CCOST_CONFIG"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
):
    """ccost - deduplicated usage and cost reports."""
    setup_logging(log_level)
    if ctx.invoked_subcommand is None:
        console.print("ccost - Use --help to see available commands")


def _load_settings(config_path: Optional[str]) -> Settings:
    return load_config(config_path or os.getenv(CONFIG_ENV_VAR))


def _parse_date(value: Optional[str], option: str) -> Optional[date]:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ConfigError(f"{option} must be a date in YYYY-MM-DD format, got: {value!r}")


def _fail(error: CcostError) -> None:
    err_console.print(f"[red]Error ({error.kind}):[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def init(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """Initialize the ccost database."""
    try:
        settings = _load_settings(config)
        initialize_schema(settings.database_path)
    except CcostError as e:
        _fail(e)
    console.print("[green]✓[/] Database initialized successfully")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """Show ledger size and cached exchange rates."""
    try:
        settings = _load_settings(config)
    except CcostError as e:
        _fail(e)

    with LedgerStore(settings.database_path) as store:
        key_count = store.count()
    rates = ExchangeRateStore(settings.database_path).all()

    console.print(f"Ledger keys: {key_count:,}")
    for (base, target), row in sorted(rates.items()):
        console.print(f"{base}->{target}: {row.rate} (fetched {row.fetched_at.isoformat()})")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    paths: Optional[List[str]] = typer.Argument(None, help="JSONL files or directories"),
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Only this project"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Only this model"),
    since: Optional[str] = typer.Option(None, "--since", help="First date (YYYY-MM-DD)"),
    until: Optional[str] = typer.Option(None, "--until", help="Last date (YYYY-MM-DD)"),
    period: Optional[str] = typer.Option(
        None, "--period", help="today, yesterday, this-week or this-month"
    ),
    currency: Optional[str] = typer.Option(None, "--currency", help="Report currency"),
    timezone: Optional[str] = typer.Option(None, "--timezone", help="IANA timezone for dates"),
    cutoff_hour: Optional[int] = typer.Option(None, "--cutoff-hour", help="Hour a new day starts"),
    mode: Optional[str] = typer.Option(None, "--mode", help="auto, calculate or display"),
    project_sort: Optional[str] = typer.Option(
        None, "--project-sort", help="Add a project ranking sorted by name, cost or tokens"
    ),
    conversations: bool = typer.Option(
        False, "--conversations", help="Add per-session conversation totals"
    ),
    conversation_sort: str = typer.Option(
        "cost", "--conversation-sort", help="cost, tokens, messages, duration or start-time"
    ),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """
    Report deduplicated token usage and cost.

    Output is the full summary as JSON: buckets, per-project, per-date and
    per-model totals, a grand total, and dedup/parse statistics. Project
    rankings and conversations are added on request.
    """
    try:
        settings = _apply_overrides(
            _load_settings(config),
            currency=currency,
            timezone=timezone,
            cutoff_hour=cutoff_hour,
            mode=mode,
        )
        usage_filter = _build_filter(settings, project, model, since, until, period)
        project_order = _parse_choice(project_sort, ProjectSortBy, "--project-sort")
        conversation_order = _parse_choice(conversation_sort, ConversationSortBy, "--conversation-sort")

        summary = run_usage_report(paths or [], settings, usage_filter)
        reported, extra = summary, {}
        if settings.currency != BASE_CURRENCY:
            reported, extra = asyncio.run(_convert(summary, settings))

        report = reported.to_dict()
        report.update(extra)
        if project_order is not None:
            report["projects"] = [p.to_dict() for p in analyze_projects(reported, project_order)]
            report["project_statistics"] = project_statistics(reported).to_dict()
        if conversations:
            report["conversations"] = [
                c.to_dict()
                for c in sort_conversations(reported.conversations.values(), conversation_order)
            ]
    except ValueError as e:
        _fail(e if isinstance(e, CcostError) else ConfigError(str(e)))
    except CcostError as e:
        _fail(e)

    if summary.is_empty:
        err_console.print("[yellow]No usage data found[/]")
    console.print_json(data=report)
    sys.exit(EXIT_CODE_PASS)


def _build_filter(
    settings: Settings,
    project: Optional[str],
    model: Optional[str],
    since: Optional[str],
    until: Optional[str],
    period: Optional[str],
) -> UsageFilter:
    if period is None:
        return UsageFilter(
            project=project,
            model=model,
            since=_parse_date(since, "--since"),
            until=_parse_date(until, "--until"),
        )
    if since or until:
        raise ConfigError("--period cannot be combined with --since or --until")
    timeframe = _parse_choice(period, Timeframe, "--period")
    bucketer = DateBucketer(settings.timezone, settings.daily_cutoff_hour)
    return UsageFilter.for_timeframe(timeframe, bucketer, project=project, model=model)


def _parse_choice(value: Optional[str], choices, option: str):
    if value is None:
        return None
    try:
        return choices(value.lower())
    except ValueError:
        valid = [c.value for c in choices]
        raise ConfigError(f"{option} must be one of: {valid}")


async def _convert(summary: UsageSummary, settings: Settings) -> Tuple[UsageSummary, dict]:
    cache = ExchangeRateCache(
        EcbRateSource(settings.exchange_rates.source_url),
        store=ExchangeRateStore(settings.database_path),
        ttl=settings.exchange_rates.ttl,
        timeout=settings.exchange_rates.timeout_seconds,
    )
    try:
        converted = await convert_summary(summary, settings.currency, cache)
    except RateUnavailableError as e:
        # The base-currency report is still valid; annotate it instead of failing
        return summary, {"conversion_error": str(e)}
    if converted.warning:
        err_console.print(f"[yellow]Warning:[/] {converted.warning}")
    return converted.summary, {"exchange_rate": converted.rate_info()}


def _apply_overrides(settings: Settings, **overrides) -> Settings:
    values = {}
    if overrides["currency"]:
        values["currency"] = overrides["currency"].upper()
    if overrides["timezone"]:
        values["timezone"] = overrides["timezone"]
    if overrides["cutoff_hour"] is not None:
        values["daily_cutoff_hour"] = overrides["cutoff_hour"]
    if overrides["mode"]:
        values["cost_mode"] = _parse_choice(overrides["mode"], CostMode, "--mode")
    return replace(settings, **values) if values else settings


if __name__ == "__main__":
    app()
