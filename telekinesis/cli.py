"""Typer CLI entrypoint."""

from __future__ import annotations

import math
import time
from pathlib import Path

import typer

from telekinesis.api import Client
from telekinesis.core.errors import TelekinesisError
from telekinesis.core.patterns import PatternLibrary, default_pattern_dir
from telekinesis.core.settings import SettingsStore
from telekinesis.logging_utils import setup_logging

app = typer.Typer(help="Control haptic devices through a Buttplug server or Bluetooth LE")
settings_app = typer.Typer(help="Inspect and edit per-device settings")
app.add_typer(settings_app, name="settings")

POLL_INTERVAL_S = 0.1


@app.callback()
def main(
    ctx: typer.Context,
    settings: Path | None = typer.Option(None, "--settings", help="Settings file path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output"),
    log_file: Path | None = typer.Option(None, "--log-file", help="Rotating log file path"),
) -> None:
    ctx.obj = {"settings": settings}
    if verbose or log_file:
        setup_logging(level="DEBUG" if verbose else "INFO", log_file=log_file)


def _settings_path(ctx: typer.Context) -> Path | None:
    return (ctx.obj or {}).get("settings")


def _build_client(ctx: typer.Context) -> Client:
    client = Client(settings_path=_settings_path(ctx))
    for warning in getattr(client, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return client


def _load_settings(ctx: typer.Context) -> SettingsStore:
    store = SettingsStore.load(_settings_path(ctx))
    for warning in store.warnings:
        typer.echo(f"Warning: {warning}", err=True)
    return store


def _connect(client: Client, timeout: float) -> None:
    if not client.connect(timeout=timeout):
        raise TelekinesisError(f"Could not connect ({client.get_connection_status()})")


def _pump(client: Client, seconds: float) -> None:
    """Print events as they arrive for ``seconds``."""
    deadline = time.monotonic() + seconds
    while True:
        for event in client.poll_events():
            typer.echo(event)
        if time.monotonic() >= deadline:
            return
        time.sleep(POLL_INTERVAL_S)


def _scan(client: Client, seconds: float) -> None:
    if not client.scan_for_devices():
        raise TelekinesisError("Could not start scan")
    _pump(client, seconds)
    client.stop_scan()


@app.command("devices")
def list_devices(
    ctx: typer.Context,
    scan_seconds: float = typer.Option(5.0, "--scan-seconds", help="How long to scan"),
    connect_timeout: float = typer.Option(5.0, "--connect-timeout"),
) -> None:
    """Scan for devices and list what was found."""
    client = _build_client(ctx)
    try:
        _connect(client, connect_timeout)
        _scan(client, scan_seconds)
        names = client.get_devices()
        if not names:
            typer.echo("No devices found")
            return
        for name in names:
            state = "connected" if client.get_device_connected(name) else "not connected"
            enabled = "enabled" if client.settings_get_enabled(name) else "disabled"
            caps = ", ".join(client.get_device_capabilities(name)) or "-"
            typer.echo(f"{name}: {state}, {enabled}, capabilities: {caps}")
    except TelekinesisError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    finally:
        client.close()


@app.command("vibrate")
def vibrate(
    ctx: typer.Context,
    speed: float = typer.Option(0.5, "--speed", help="0.0 to 1.0, values outside are clamped"),
    duration: float = typer.Option(2.0, "--duration", help="Seconds before the device stops"),
    event: list[str] | None = typer.Option(None, "--event", help="Only devices subscribed to this event"),
    pattern: str | None = typer.Option(None, "--pattern", help="Play a pattern instead of a constant speed"),
    scan_seconds: float = typer.Option(5.0, "--scan-seconds", help="How long to scan first"),
    connect_timeout: float = typer.Option(5.0, "--connect-timeout"),
) -> None:
    """Scan, then vibrate all (or event-subscribed) devices."""
    client = _build_client(ctx)
    try:
        if not math.isfinite(duration):
            raise TelekinesisError("--duration must be a finite number of seconds")
        _connect(client, connect_timeout)
        _scan(client, scan_seconds)
        if pattern:
            sent = (
                client.vibrate_events_pattern(pattern, duration, event)
                if event
                else client.vibrate_pattern(pattern, duration)
            )
        else:
            sent = client.vibrate_events(speed, duration, event) if event else client.vibrate(speed, duration)
        if not sent:
            raise TelekinesisError("Vibrate command was not accepted")
        _pump(client, max(duration, 0.0) + 0.5)
        client.stop_all()
        _pump(client, 0.2)
    except TelekinesisError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    finally:
        client.close()


@app.command("events")
def stream_events(
    ctx: typer.Context,
    seconds: float = typer.Option(10.0, "--seconds", help="How long to listen"),
    connect_timeout: float = typer.Option(5.0, "--connect-timeout"),
) -> None:
    """Scan and print every event as it arrives."""
    client = _build_client(ctx)
    try:
        _connect(client, connect_timeout)
        _scan(client, seconds)
        _pump(client, 0.2)
    except TelekinesisError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    finally:
        client.close()


@app.command("patterns")
def list_patterns(ctx: typer.Context) -> None:
    """List the patterns found in the pattern directory."""
    store = _load_settings(ctx)
    names = PatternLibrary(store.pattern_path).names()
    if not names:
        typer.echo("No patterns found")
        return
    for name in names:
        typer.echo(name)


@settings_app.command("show")
def settings_show(ctx: typer.Context) -> None:
    """Print stored device preferences."""
    store = _load_settings(ctx)
    typer.echo(f"Settings: {store.path}")
    typer.echo(f"Connection: {store.connection.type} {store.connection.endpoint}")
    typer.echo(f"Default enabled: {store.default_enabled}")
    typer.echo(f"Patterns: {store.pattern_path or default_pattern_dir()}")
    for entry in store.device_settings():
        events = ", ".join(entry.events) or "-"
        typer.echo(f"  {entry.name}: {'enabled' if entry.enabled else 'disabled'}, events: {events}")


def _store(store: SettingsStore) -> None:
    try:
        store.store()
    except TelekinesisError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@settings_app.command("enable")
def settings_enable(ctx: typer.Context, name: str) -> None:
    """Enable a device."""
    store = _load_settings(ctx)
    store.set_enabled(name, True)
    _store(store)
    typer.echo(f"Enabled {name}")


@settings_app.command("disable")
def settings_disable(ctx: typer.Context, name: str) -> None:
    """Disable a device; it will not receive commands."""
    store = _load_settings(ctx)
    store.set_enabled(name, False)
    _store(store)
    typer.echo(f"Disabled {name}")


@settings_app.command("events")
def settings_events(
    ctx: typer.Context,
    name: str,
    events: list[str] | None = typer.Argument(None, help="Event tags; omit to clear"),
) -> None:
    """Set the event tags a device reacts to."""
    store = _load_settings(ctx)
    store.set_events(name, events or [])
    _store(store)
    tags = ", ".join(store.get_events(name)) or "-"
    typer.echo(f"{name} events: {tags}")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
