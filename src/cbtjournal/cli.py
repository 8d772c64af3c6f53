"""CLI for the cbtjournal calendar connection."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from collections.abc import AsyncIterator
from datetime import date, datetime
from pathlib import Path

import asyncpg
import click
import httpx

from cbtjournal.calendar.client import CalendarApiClient
from cbtjournal.calendar.google_auth import GoogleAuthProvider, GoogleOAuthCredentials
from cbtjournal.calendar.models import DisplayEvent, Notification
from cbtjournal.calendar.orchestrator import ConnectionOrchestrator
from cbtjournal.calendar.store import (
    ConnectionStore,
    InMemoryConnectionStore,
    StateTableConnectionStore,
)
from cbtjournal.config import AppConfig, ConfigError, GoogleAppCredentials, load_config
from cbtjournal.core.logging import configure_logging

logger = logging.getLogger(__name__)

_DATE_FORMATS = ["%Y-%m-%d"]


def _oauth_credentials(google: GoogleAppCredentials) -> GoogleOAuthCredentials | None:
    if not google.is_complete:
        return None
    return GoogleOAuthCredentials(
        client_id=google.client_id,
        client_secret=google.client_secret,
        refresh_token=google.refresh_token,
        scope=google.scope,
    )


def _echo_notification(notification: Notification) -> None:
    click.echo(f"[{notification.level.value}] {notification.message}", err=True)


def _format_event(event: DisplayEvent) -> str:
    if event.is_all_day:
        when = "all day"
    elif event.end_time:
        when = f"{event.start_time}-{event.end_time}"
    else:
        when = event.start_time or ""
    suffix = f" ({event.multi_day_label})" if event.multi_day_label else ""
    return f"{event.day.isoformat()}  {when:<11}  {event.title}{suffix}"


@contextlib.asynccontextmanager
async def _open_orchestrator(config: AppConfig) -> AsyncIterator[ConnectionOrchestrator]:
    pool: asyncpg.Pool | None = None
    store: ConnectionStore
    if config.store.dsn:
        pool = await asyncpg.create_pool(config.store.dsn, min_size=1, max_size=2)
        table_store = StateTableConnectionStore(pool)
        await table_store.ensure_table()
        store = table_store
    else:
        store = InMemoryConnectionStore()

    try:
        async with httpx.AsyncClient(
            timeout=config.calendar.request_timeout_seconds
        ) as http_client:
            auth = GoogleAuthProvider(_oauth_credentials(config.google), http_client)
            client = CalendarApiClient(http_client, page_size=config.calendar.page_size)
            yield ConnectionOrchestrator(
                auth,
                store,
                client,
                config.calendar,
                notifier=_echo_notification,
            )
    finally:
        if pool is not None:
            await pool.close()


async def _ensure_connected(orchestrator: ConnectionOrchestrator) -> bool:
    if await orchestrator.restore_session():
        return True
    return await orchestrator.connect()


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to cbtjournal.toml (defaults to ./cbtjournal.toml when present)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """cbtjournal: Google Calendar connection for the CBT journal."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)

    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        session_name="cli",
    )
    ctx.obj = config


@cli.command()
@click.pass_obj
def calendars(config: AppConfig) -> None:
    """List the calendars of the connected account."""

    async def _run() -> int:
        async with _open_orchestrator(config) as orchestrator:
            if not await _ensure_connected(orchestrator):
                click.echo(orchestrator.last_error or "Not connected")
                return 1
            selected_id = orchestrator.state.selected_calendar_id
            for calendar in orchestrator.available_calendars:
                marker = "*" if calendar.id == selected_id else " "
                primary = " (primary)" if calendar.primary else ""
                click.echo(
                    f"{marker} {calendar.id:<40} {calendar.access_role.value:<15} "
                    f"{calendar.summary}{primary}"
                )
            return 0

    sys.exit(asyncio.run(_run()))


@cli.command()
@click.option(
    "--start",
    "start",
    type=click.DateTime(formats=_DATE_FORMATS),
    default=None,
    help="First day (YYYY-MM-DD); defaults to today",
)
@click.option(
    "--end",
    "end",
    type=click.DateTime(formats=_DATE_FORMATS),
    default=None,
    help="Last day, inclusive (YYYY-MM-DD); defaults to --start",
)
@click.option("--calendar", "calendar_id", default=None, help="Calendar id to read from")
@click.pass_obj
def events(
    config: AppConfig,
    start: datetime | None,
    end: datetime | None,
    calendar_id: str | None,
) -> None:
    """Print normalized events for a date range."""
    start_day: date = start.date() if start is not None else date.today()
    end_day: date = end.date() if end is not None else start_day
    if end_day < start_day:
        raise click.BadParameter("--end must not be before --start", param_hint="--end")

    async def _run() -> int:
        async with _open_orchestrator(config) as orchestrator:
            if not await _ensure_connected(orchestrator):
                click.echo(orchestrator.last_error or "Not connected")
                return 1

            if calendar_id is not None:
                match = next(
                    (c for c in orchestrator.available_calendars if c.id == calendar_id), None
                )
                if match is None:
                    click.echo(f"Calendar not found: {calendar_id}")
                    return 1
                await orchestrator.select_calendar(match)

            display_events = await orchestrator.fetch_events(start_day, end_day)
            if orchestrator.last_error:
                click.echo(orchestrator.last_error)
                return 1
            if not display_events:
                click.echo("No events")
            for event in display_events:
                click.echo(_format_event(event))
            return 0

    sys.exit(asyncio.run(_run()))


@cli.command()
@click.pass_obj
def status(config: AppConfig) -> None:
    """Show the stored connection and whether it is still usable."""

    async def _run() -> int:
        async with _open_orchestrator(config) as orchestrator:
            if not orchestrator.is_configured():
                click.echo("Google Calendar is not configured")
                return 1
            restored = await orchestrator.restore_session()
            state = orchestrator.state
            click.echo(f"Phase:      {state.phase.value}")
            click.echo(f"Calendar:   {state.selected_calendar_name or '-'}")
            connected_at = state.connected_at.isoformat() if state.connected_at else "-"
            last_sync_at = state.last_sync_at.isoformat() if state.last_sync_at else "-"
            click.echo(f"Connected:  {connected_at}")
            click.echo(f"Last sync:  {last_sync_at}")
            if state.last_error:
                click.echo(f"Last error: {state.last_error}")
            return 0 if restored else 1

    sys.exit(asyncio.run(_run()))


@cli.command()
@click.pass_obj
def disconnect(config: AppConfig) -> None:
    """Forget the stored calendar connection."""

    async def _run() -> None:
        async with _open_orchestrator(config) as orchestrator:
            await orchestrator.disconnect()

    asyncio.run(_run())
    click.echo("Disconnected from Google Calendar")


def main() -> None:
    cli()
