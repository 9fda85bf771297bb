"""CLI for LightTime: connect calendars, inspect the cache, run the poller."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import click

from lighttime.calendar.errors import CalendarError
from lighttime.calendar.models import CalendarEvent, ProviderType
from lighttime.calendar.service import CalendarService
from lighttime.config import ConfigError, LightTimeConfig, load_config
from lighttime.core.event_bus import EVENTS_UPDATE_TOPIC, EventBus
from lighttime.core.logging import configure_logging
from lighttime.core.metrics import init_metrics
from lighttime.core.settings import SettingsStore
from lighttime.core.telemetry import init_telemetry
from lighttime.db import Database

logger = logging.getLogger(__name__)

PROVIDER_CHOICE = click.Choice([ptype.value for ptype in ProviderType], case_sensitive=False)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to lighttime.toml (default: $LIGHTTIME_CONFIG or ./lighttime.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """LightTime: multi-provider calendar sync."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(level=config.logging.level, fmt=config.logging.format, log_root=log_root)
    ctx.obj = config


@asynccontextmanager
async def _open_service(config: LightTimeConfig) -> AsyncIterator[CalendarService]:
    db = Database(config.db_path)
    await db.provision()
    await SettingsStore(db).seed_defaults()
    service = CalendarService(config, db, EventBus())
    try:
        yield service
    finally:
        await service.close()
        await db.close()


def _format_event(event: CalendarEvent) -> str:
    if event.is_all_day:
        when = f"{event.start_time:%Y-%m-%d} (all day)  "
    else:
        when = f"{event.start_time:%Y-%m-%d %H:%M}-{event.end_time:%H:%M} UTC"
    return f"{when}  {event.title}  [{event.provider_id}]"


def _echo_events(events: list[CalendarEvent]) -> None:
    if not events:
        click.echo("No events.")
        return
    for event in events:
        click.echo(_format_event(event))


# ---------------------------------------------------------------------------
# Provider commands
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("provider", type=PROVIDER_CHOICE)
@click.pass_obj
def connect(config: LightTimeConfig, provider: str) -> None:
    """Authorize a calendar account (opens the browser for Google/Microsoft)."""

    async def _connect() -> str:
        async with _open_service(config) as service:
            await service.restore_providers()
            return await service.connect(ProviderType(provider.lower()))

    try:
        account_name = asyncio.run(_connect())
    except CalendarError as exc:
        click.echo(f"Connect failed: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Connected {provider.lower()}: {account_name}")


@cli.command()
@click.argument("provider", type=PROVIDER_CHOICE)
@click.option("--account", default=None, help="Disconnect only this account (e.g. an email)")
@click.pass_obj
def disconnect(config: LightTimeConfig, provider: str, account: str | None) -> None:
    """Disconnect a provider and delete its stored tokens."""

    async def _disconnect() -> None:
        async with _open_service(config) as service:
            await service.disconnect(ProviderType(provider.lower()), account)

    try:
        asyncio.run(_disconnect())
    except CalendarError as exc:
        click.echo(f"Disconnect failed: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Disconnected {provider.lower()}" + (f": {account}" if account else ""))


@cli.command()
@click.pass_obj
def status(config: LightTimeConfig) -> None:
    """Show connection status per provider type."""

    async def _status():
        async with _open_service(config) as service:
            await service.restore_providers()
            return await service.get_statuses()

    statuses = asyncio.run(_status())
    click.echo(f"{'Provider':<12} {'Status':<16} {'Account'}")
    click.echo("-" * 60)
    for item in statuses:
        if item.connected:
            state = "connected"
        elif item.error:
            state = item.error
        else:
            state = "not connected"
        click.echo(f"{item.provider_type.value:<12} {state:<16} {item.account_name or ''}")


# ---------------------------------------------------------------------------
# Sync commands
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_obj
def sync(config: LightTimeConfig) -> None:
    """Run one sync cycle now and print the merged events."""

    async def _sync() -> list[CalendarEvent]:
        async with _open_service(config) as service:
            await service.restore_providers()
            outcome = await service.force_sync()
            logger.debug("Forced sync finished: %s", outcome)
            return await service.cache.load_events()

    _echo_events(asyncio.run(_sync()))


@cli.command()
@click.pass_obj
def events(config: LightTimeConfig) -> None:
    """Print the cached events without touching the network."""

    async def _events() -> list[CalendarEvent]:
        async with _open_service(config) as service:
            return await service.cache.load_events()

    _echo_events(asyncio.run(_events()))


@cli.command()
@click.pass_obj
def run(config: LightTimeConfig) -> None:
    """Restore providers and poll until interrupted."""
    init_telemetry()
    init_metrics()
    click.echo("Starting calendar poller (Ctrl+C to stop)")
    asyncio.run(_run_poller(config))


async def _run_poller(config: LightTimeConfig) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    db = Database(config.db_path)
    await db.provision()
    await SettingsStore(db).seed_defaults()
    bus = EventBus()
    updates = bus.subscribe(EVENTS_UPDATE_TOPIC)
    service = CalendarService(config, db, bus)

    async def _log_updates() -> None:
        while True:
            payload = await updates.get()
            logger.info("Published %d calendar events", len(payload))

    reporter = asyncio.create_task(_log_updates(), name="calendar-update-reporter")
    try:
        await service.start()
        await shutdown_event.wait()
    finally:
        reporter.cancel()
        await service.close()
        await db.close()


# ---------------------------------------------------------------------------
# Settings commands
# ---------------------------------------------------------------------------


@cli.group()
def settings() -> None:
    """Read and change stored settings."""


@settings.command("get")
@click.argument("key")
@click.pass_obj
def settings_get(config: LightTimeConfig, key: str) -> None:
    async def _get() -> str | None:
        async with _open_service(config) as service:
            return await service.settings.get(key)

    value = asyncio.run(_get())
    if value is None:
        click.echo(f"Setting not found: {key}", err=True)
        sys.exit(1)
    click.echo(value)


@settings.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def settings_set(config: LightTimeConfig, key: str, value: str) -> None:
    async def _set() -> None:
        async with _open_service(config) as service:
            await service.settings.set(key, value)

    asyncio.run(_set())
    click.echo(f"{key} = {value}")


@settings.command("list")
@click.pass_obj
def settings_list(config: LightTimeConfig) -> None:
    async def _list() -> dict[str, str]:
        async with _open_service(config) as service:
            return await service.settings.all()

    for key, value in asyncio.run(_list()).items():
        click.echo(f"{key:<24} {value}")
