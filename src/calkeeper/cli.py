"""CLI for calkeeper: key generation, authorization and calendar access."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import click
import httpx

from calkeeper import __version__
from calkeeper.api.middleware import translate_error
from calkeeper.calendar import CalendarSession
from calkeeper.config import (
    DEFAULT_CONFIG_FILENAME,
    ENCRYPTION_KEY_ENV,
    CalendarConfig,
    load_config,
)
from calkeeper.core.logging import configure_logging
from calkeeper.errors import CalkeeperError
from calkeeper.security.cipher import encode_key, generate_key

logger = logging.getLogger(__name__)


@dataclass
class CliState:
    config_path: Path
    debug: bool = False
    transport: httpx.AsyncBaseTransport | None = None
    _config: CalendarConfig | None = None

    def config(self) -> CalendarConfig:
        if self._config is None:
            self._config = load_config(self.config_path)
            configure_logging(
                level="DEBUG" if self.debug else self._config.logging.level,
                fmt=self._config.logging.format,
                log_path=self._config.logging.path,
                application_root=self._config.storage.application_root,
            )
        return self._config


pass_state = click.make_pass_decorator(CliState)


def _fail(exc: CalkeeperError, debug: bool) -> None:
    message = str(exc) if debug else translate_error(exc).message
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _run(state: CliState, func: Callable[[CalendarSession], Awaitable[Any]]) -> Any:
    """Run *func* against a CalendarSession, reporting calkeeper errors."""

    async def _main() -> Any:
        config = state.config()
        async with httpx.AsyncClient(
            transport=state.transport,
            timeout=config.calendar.http_timeout_seconds,
        ) as client:
            session = CalendarSession(config, http_client=client)
            return await func(session)

    try:
        return asyncio.run(_main())
    except CalkeeperError as exc:
        logger.debug("Command failed", exc_info=True)
        _fail(exc, state.debug)


def _parse_when(value: str | None, default: datetime) -> datetime:
    if value is None:
        return default
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise click.BadParameter(f"not an ISO 8601 date/time: {value!r}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=Path(DEFAULT_CONFIG_FILENAME),
    envvar="CALKEEPER_CONFIG",
    show_default=True,
    help="Path to calkeeper.toml (or its directory)",
)
@click.option("--debug", is_flag=True, help="Verbose logging and full error details")
@click.pass_context
def cli(ctx: click.Context, config_path: Path, debug: bool) -> None:
    """calkeeper: Google Calendar access with encrypted OAuth credentials."""
    configure_logging(level="DEBUG" if debug else "WARNING")
    if isinstance(ctx.obj, CliState):
        ctx.obj.config_path = config_path
        ctx.obj.debug = debug
    else:
        ctx.obj = CliState(config_path=config_path, debug=debug)


@cli.command("generate-key")
@click.option("--quiet", "-q", is_flag=True, help="Print only the key")
def generate_key_cmd(quiet: bool) -> None:
    """Generate a random 256-bit encryption key for stored tokens."""
    key = encode_key(generate_key())
    if quiet:
        click.echo(key)
        return

    click.echo("Generated encryption key:")
    click.echo("")
    click.echo(f"  {key}")
    click.echo("")
    click.echo("Add it to your environment:")
    click.echo(f"  export {ENCRYPTION_KEY_ENV}={key}")
    click.echo("")
    click.echo("or to calkeeper.toml:")
    click.echo("  [storage]")
    click.echo(f'  encryption_key = "{key}"')
    click.echo("")
    click.echo("Keep this key secret. Losing it makes stored tokens unreadable;")
    click.echo("you will have to authorize again.")


@cli.command()
@click.option("--code", default=None, help="Authorization code (prompted for when omitted)")
@pass_state
def authorize(state: CliState, code: str | None) -> None:
    """Run the authorization-code flow and store the credential."""

    async def _authorize(session: CalendarSession) -> None:
        nonlocal code
        if code is None:
            click.echo("Open this URL in a browser and grant access:")
            click.echo("")
            click.echo(f"  {session.authorization_url()}")
            click.echo("")
            code = click.prompt("Authorization code").strip()
        await session.complete_authorization(code)
        click.echo("Authorization complete. Credential stored.")

    _run(state, _authorize)


@cli.command()
@pass_state
def status(state: CliState) -> None:
    """Show whether a usable credential is stored."""

    async def _status(session: CalendarSession) -> None:
        authenticated = await session.is_authenticated()
        store = session.credential_store
        click.echo(f"State:         {session.state}")
        click.echo(f"Authenticated: {'yes' if authenticated else 'no'}")
        click.echo(f"Token file:    {store.path}")
        click.echo(f"Encrypted:     {'yes' if store.encrypted else 'NO (plaintext)'}")
        if session.credential is not None:
            click.echo(f"Expires at:    {session.credential.expires_at.isoformat()}")

    _run(state, _status)


@cli.command()
@pass_state
def calendars(state: CliState) -> None:
    """List calendars visible to the authorized account."""

    async def _calendars(session: CalendarSession) -> None:
        items = await session.get_calendars()
        if not items:
            click.echo("No calendars found.")
            return
        click.echo(f"{'ID':<50} {'Summary'}")
        click.echo("-" * 80)
        for item in items:
            marker = " (primary)" if item.get("primary") else ""
            click.echo(f"{item['id']:<50} {item.get('summary') or ''}{marker}")

    _run(state, _calendars)


@cli.command()
@click.option("--calendar", "calendar_id", default=None, help="Calendar ID (default from config)")
@click.option("--start", default=None, help="Start (ISO 8601, default: now)")
@click.option("--end", default=None, help="End (ISO 8601, default: start + 7 days)")
@pass_state
def events(
    state: CliState,
    calendar_id: str | None,
    start: str | None,
    end: str | None,
) -> None:
    """List events in a time range."""
    start_at = _parse_when(start, datetime.now(UTC))
    end_at = _parse_when(end, start_at + timedelta(days=7))

    async def _events(session: CalendarSession) -> None:
        if calendar_id is not None:
            session.set_calendar(calendar_id)
        records = await session.list_events(start_at, end_at)
        if not records:
            click.echo("No events found.")
            return
        for record in records:
            when = record.start.get("dateTime") or record.start.get("date") or "?"
            click.echo(f"{when:<27} {record.summary or '(no title)'}  [{record.id}]")

    _run(state, _events)


@cli.command()
@click.option("--revoke", is_flag=True, help="Also revoke the token at Google")
@pass_state
def logout(state: CliState, revoke: bool) -> None:
    """Delete the stored credential."""

    async def _logout(session: CalendarSession) -> None:
        await session.logout(revoke=revoke)
        click.echo("Stored credential removed.")

    _run(state, _logout)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port")
@pass_state
def serve(state: CliState, host: str, port: int) -> None:
    """Run the web API with uvicorn."""
    import uvicorn

    from calkeeper.api.app import create_app

    try:
        app = create_app(state.config(), log_sink_active=True)
    except CalkeeperError as exc:
        _fail(exc, state.debug)
        return

    click.echo(f"Serving calkeeper on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_config=None)
