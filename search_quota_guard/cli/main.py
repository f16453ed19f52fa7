"""
CLI interface for Search Quota Guard.

Provides command-line access to governed event searches and usage status.
"""

import asyncio
import logging
import sys
from datetime import datetime
from typing import Any, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from search_quota_guard.config.loader import Settings, load_settings
from search_quota_guard.core.errors import (
    ConfirmationRequired,
    ConnectivityFailure,
    QuotaBlocked,
    UpstreamFailure,
)
from search_quota_guard.core.governor import RateGovernor, UsageLevel
from search_quota_guard.core.ledger import UsageLedger
from search_quota_guard.core.orchestrator import build_orchestrator
from search_quota_guard.sdk.discovery_client import DiscoveryClient
from search_quota_guard.sdk.guarded_client import GuardedSearchClient, date_range
from search_quota_guard.storage.repository import LedgerRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_LEVEL_STYLES = {
    UsageLevel.NORMAL: "green",
    UsageLevel.WARNING: "yellow",
    UsageLevel.HIGH: "dark_orange",
    UsageLevel.CRITICAL: "red",
}

ConfigOption = typer.Option(None, "--config", "-c", help="Path to YAML configuration file")


def _setup_logging(verbose: bool) -> None:
    """Setup logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _load(config: Optional[str]) -> Settings:
    try:
        return load_settings(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Search Quota Guard CLI."""
    _setup_logging(verbose)
    if ctx.invoked_subcommand is None:
        console.print("Search Quota Guard - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = ConfigOption):
    """Initialize the usage ledger database."""
    settings = _load(config)
    try:
        initialize_schema(settings.storage.db_path)
        console.print("[green]✓[/] Usage ledger initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(config: Optional[str] = ConfigOption):
    """Show API usage for the current session and day."""
    settings = _load(config)
    now = datetime.now()
    ledger = UsageLedger.load(
        LedgerRepository(settings.storage.db_path), now.date(), settings.policy.max_recent_calls
    )
    ledger.rollover_if_new_day(now)
    governor = RateGovernor(ledger, settings.policy)
    _display_usage(governor, now)
    if ledger.persistence_degraded:
        console.print("[yellow]Usage ledger storage is unavailable; figures are in-memory only.[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command("reset-session")
def reset_session(config: Optional[str] = ConfigOption):
    """Reset the session call counter, call history and lockout."""
    settings = _load(config)
    now = datetime.now()
    ledger = UsageLedger.load(
        LedgerRepository(settings.storage.db_path), now.date(), settings.policy.max_recent_calls
    )
    ledger.reset_session()
    console.print("[green]✓[/] Session usage reset")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def search(
    postal_code: Optional[str] = typer.Option(None, "--postal-code", "-p", help="Search around a postal code"),
    latitude: Optional[float] = typer.Option(None, "--lat", help="Latitude to search around"),
    longitude: Optional[float] = typer.Option(None, "--lon", help="Longitude to search around"),
    radius: int = typer.Option(25, "--radius", "-r", help="Search radius in miles"),
    period: str = typer.Option("week", "--period", help="tonight, week or month"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm high usage without prompting"),
    config: Optional[str] = ConfigOption,
):
    """
    Search for blues events near a location.

    Every call is checked against the usage ledger before it is made.
    Repeated identical searches within five minutes are answered from cache.
    """
    if postal_code is None and (latitude is None or longitude is None):
        console.print("[red]Error:[/] provide --postal-code or both --lat and --lon")
        sys.exit(EXIT_CODE_FAIL)

    settings = _load(config)
    if not settings.api_key:
        console.print(f"[red]Error:[/] set the {settings.api.api_key_env} environment variable")
        sys.exit(EXIT_CODE_FAIL)

    try:
        payload = asyncio.run(_run_search(settings, postal_code, latitude, longitude, radius, period, yes))
    except QuotaBlocked as e:
        console.print(f"\n[bold red]Request blocked[/] ({e.rule.value}): {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except ConfirmationRequired as e:
        console.print(f"\n[yellow]Confirmation was not accepted:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except ConnectivityFailure:
        console.print("\n[red]Could not reach the event service.[/] Check your connection and try again.")
        sys.exit(EXIT_CODE_FAIL)
    except UpstreamFailure as e:
        console.print(f"\n[red]The event service returned an error[/] (HTTP {e.status}).")
        sys.exit(EXIT_CODE_FAIL)

    if payload is None:
        console.print("Search cancelled.")
        sys.exit(EXIT_CODE_PASS)

    _display_events(payload)
    sys.exit(EXIT_CODE_PASS)


async def _run_search(
    settings: Settings,
    postal_code: Optional[str],
    latitude: Optional[float],
    longitude: Optional[float],
    radius: int,
    period: str,
    assume_yes: bool,
) -> Any:
    start, end = date_range(period)
    async with DiscoveryClient(
        api_key=settings.api_key,
        base_url=settings.api.base_url,
        allowed_upstream_prefix=settings.api.allowed_upstream_prefix,
        timeout=settings.api.timeout_seconds,
    ) as client:
        orchestrator = build_orchestrator(settings, client.fetch)
        guarded = GuardedSearchClient(orchestrator)
        confirmation = None
        while True:
            try:
                if postal_code is not None:
                    return await guarded.search_events_by_location(
                        postal_code, radius, start, end, confirmation=confirmation
                    )
                return await guarded.search_events_by_coordinates(
                    latitude, longitude, radius, start, end, confirmation=confirmation
                )
            except ConfirmationRequired as e:
                if confirmation is not None:
                    raise
                console.print(f"[yellow]{str(e)}[/]")
                if not assume_yes and not typer.confirm("Continue with this search?", default=False):
                    return None
                confirmation = e.confirmation


def _display_usage(governor: RateGovernor, now: datetime) -> None:
    """Display usage figures and the advisory usage level."""
    snapshot = governor.snapshot()
    level = governor.usage_level()
    policy = governor.policy

    table = Table(title="API Usage")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Session calls", f"{snapshot.session_count} / {policy.session_hard_limit}")
    table.add_row("Daily calls", f"{snapshot.daily_count} / {snapshot.daily_limit}")
    table.add_row("Warning at", str(snapshot.warning_threshold))
    table.add_row("Confirmation at", str(snapshot.confirmation_threshold))
    style = _LEVEL_STYLES[level]
    table.add_row("Usage level", f"[{style}]{level.value}[/]")
    if governor.ledger.is_blocked(now):
        table.add_row("Blocked until", governor.ledger.blocked_until.strftime("%H:%M:%S"))
    console.print(table)


def _display_events(payload: Any) -> None:
    """Display events from a discovery response."""
    events = (payload.get("_embedded") or {}).get("events", []) if isinstance(payload, dict) else []
    if not events:
        console.print("\n[dim]No events found.[/]")
        return

    table = Table(title=f"{len(events)} events")
    table.add_column("Date")
    table.add_column("Event")
    table.add_column("Venue")
    for event in events:
        start = (event.get("dates") or {}).get("start") or {}
        venues = (event.get("_embedded") or {}).get("venues") or [{}]
        table.add_row(
            start.get("localDate", ""),
            event.get("name", ""),
            venues[0].get("name", ""),
        )
    console.print(table)


if __name__ == "__main__":
    app()
