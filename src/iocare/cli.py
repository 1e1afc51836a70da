"""Thin CLI wrapper over :class:`iocare.Client` and :class:`iocare.platform.Platform`."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from datetime import datetime
from enum import IntEnum
from typing import Any

import typer

from iocare._constants import ACCESSORY_CACHE_FILE, DEFAULT_POLL_INTERVAL
from iocare.accessory import Accessory, accessory_type
from iocare.client import Client
from iocare.errors import AuthError, CommandRejected, ProtocolError, TransientNetworkError
from iocare.host import HostedAccessory, LocalHost, accessory_uuid
from iocare.platform import Platform, PlatformConfig

app = typer.Typer(help="Control Coway IoCare air purifiers.", invoke_without_command=True)

_BOOL_VALUES = {"on": True, "off": False, "true": True, "false": False, "1": True, "0": False}
_BOOL_INTENTS = ("power", "light", "auto")
_PERCENT_INTENTS = ("fan", "brightness")


@app.callback()
def main(ctx: typer.Context) -> None:
    """Control Coway IoCare air purifiers."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


def _print_json(obj: object) -> None:
    """Print JSON, syntax-highlighted when stdout is a TTY, compact otherwise."""
    if sys.stdout.isatty():
        from rich.console import Console
        from rich.syntax import Syntax

        Console().print(Syntax(json.dumps(obj, indent=2), "json"))
    else:
        typer.echo(json.dumps(obj))


def _ensure_client() -> Client:
    """Load saved tokens or exit with an error."""
    try:
        return Client.from_saved()
    except FileNotFoundError:
        typer.echo("No saved tokens. Run `iocare login` first.", err=True)
        raise typer.Exit(1) from None


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "on" if value else "off"
    if isinstance(value, IntEnum):
        return value.name.lower().replace("_", " ")
    if isinstance(value, float):
        return f"{value:g}" if value.is_integer() else f"{value:.1f}"
    if value is None:
        return "n/a"
    return str(value)


def _parse_intent_value(intent: str, raw: str) -> bool | float:
    if intent in _BOOL_INTENTS:
        try:
            return _BOOL_VALUES[raw.lower()]
        except KeyError:
            raise ValueError(f"'{intent}' expects on | off, got '{raw}'") from None
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"'{intent}' expects a percentage (0-100), got '{raw}'") from None


async def _load_accessories(
    client: Client, host: LocalHost, barcode: str | None
) -> list[Accessory]:
    """Poll the selected devices once, outside of any persistent host."""
    devices = await client.list_devices()
    if devices is None:
        raise ValueError("IoCare returned no device list.")
    await client.refresh_connectivity(devices)

    accessories = []
    for device in devices:
        if barcode is not None and device.barcode != barcode:
            continue
        cls = accessory_type(device.device_type)
        if cls is None:
            if barcode is not None:
                raise ValueError(f"Device {barcode} has unsupported type '{device.device_type}'.")
            continue
        hosted = HostedAccessory(accessory_uuid(device.barcode), device.name)
        accessories.append(cls(client, host, device, hosted))
    if barcode is not None and not accessories:
        raise ValueError(f"No device with barcode '{barcode}'.")
    await asyncio.gather(*(a.configure() for a in accessories))
    return accessories


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def login(
    username: str = typer.Option(..., prompt=True, help="IoCare account username"),
    password: str = typer.Option(
        ..., prompt=True, hide_input=True, help="IoCare account password"
    ),
) -> None:
    """Sign in to IoCare and save the token pair locally."""
    typer.echo(f"Logging in as {username}...")
    try:
        client = asyncio.run(Client.login(username, password))
    except (AuthError, ProtocolError, TransientNetworkError) as e:
        typer.echo(f"Login failed: {e}", err=True)
        raise typer.Exit(1) from None
    client.save_tokens()
    typer.echo("Logged in. Tokens saved.")


@app.command()
def devices() -> None:
    """List the account's devices and their connectivity."""
    client = _ensure_client()

    async def _fetch() -> list:
        found = await client.list_devices()
        if found:
            await client.refresh_connectivity(found)
        return found or []

    try:
        found = asyncio.run(_fetch())
    except TransientNetworkError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    if not found:
        typer.echo("No devices found.", err=True)
        raise typer.Exit(1)

    for device in found:
        supported = "" if accessory_type(device.device_type) else " (unsupported)"
        online = "online" if device.is_connected else "offline"
        typer.echo(f"  {device.name} [{device.device_type}]{supported}, {online}")
        typer.echo(f"        Barcode: {device.barcode}")


@app.command("status", context_settings={"help_option_names": ["-h", "--help"]})
def status(
    barcode: str | None = typer.Argument(None, help="Device barcode (default: all)"),
    as_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Poll devices once and show their state."""
    client = _ensure_client()
    host = LocalHost()
    try:
        accessories = asyncio.run(_load_accessories(client, host, barcode))
    except (ValueError, TransientNetworkError) as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None

    if as_json:
        _print_json(
            {a.device.barcode: host.attributes.get(a.hosted.uuid, {}) for a in accessories}
        )
        return

    is_tty = sys.stdout.isatty()
    for accessory in accessories:
        title = accessory.name if accessory.device.is_connected else f"{accessory.name} (offline)"
        typer.echo(typer.style(title, bold=True) if is_tty else title)
        for key, value in host.attributes.get(accessory.hosted.uuid, {}).items():
            if key == "filters":
                for f in value:
                    typer.echo(f"    filter {f['name']}: {f['percent_remaining']}%")
                continue
            label = key.replace("_", " ")
            if is_tty:
                label = typer.style(label, fg="cyan")
            typer.echo(f"    {label}: {_format_value(value)}")


@app.command("set", context_settings={"help_option_names": ["-h", "--help"]})
def set_intent(
    barcode: str = typer.Argument(..., help="Device barcode"),
    intent: str = typer.Argument(..., help="power | fan | light | brightness | auto"),
    value: str = typer.Argument(..., help="on | off, or a percentage for fan and brightness"),
) -> None:
    """Change a device setting.

    \b
    power, light, auto      on | off
    fan, brightness         0-100 (percent)
    """
    if intent not in _BOOL_INTENTS + _PERCENT_INTENTS:
        names = ", ".join(_BOOL_INTENTS + _PERCENT_INTENTS)
        typer.echo(f"Unknown setting '{intent}'. Available: {names}", err=True)
        raise typer.Exit(1)
    try:
        parsed = _parse_intent_value(intent, value)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None

    client = _ensure_client()

    async def _apply() -> tuple[Accessory, list]:
        (accessory,) = await _load_accessories(client, LocalHost(), barcode)
        return accessory, await accessory.apply_command(intent, parsed)

    try:
        accessory, commands = asyncio.run(_apply())
    except (ValueError, TransientNetworkError) as e:
        # CommandRejected is a ValueError
        prefix = "Rejected: " if isinstance(e, CommandRejected) else ""
        typer.echo(f"{prefix}{e}", err=True)
        raise typer.Exit(1) from None

    if not commands:
        typer.echo(f"{accessory.name} is already in that state.")
    else:
        sent = ", ".join(f"{c.key.name}={c.value}" for c in commands)
        typer.echo(f"Sent to {accessory.name}: {sent}")


@app.command()
def run(
    interval: float = typer.Option(
        DEFAULT_POLL_INTERVAL, "--interval", "-i", help="Seconds between polls"
    ),
    username: str | None = typer.Option(
        None, "--username", "-u", envvar="IOCARE_USERNAME", help="Sign in instead of using saved tokens"
    ),
    password: str | None = typer.Option(None, "--password", "-p", envvar="IOCARE_PASSWORD"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log vendor traffic"),
) -> None:
    """Keep every device synchronized and print attribute updates.

    \b
    Uses saved tokens unless --username and --password are given.
    Press Ctrl+C to stop.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = PlatformConfig.from_mapping(
        {"username": username, "password": password, "poll_interval": interval}
    )
    client = _ensure_client() if config is None else None

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_run_async(config, client, interval))


async def _run_async(config: PlatformConfig | None, client: Client | None, interval: float) -> None:
    """Async implementation of the run command."""
    is_tty = sys.stdout.isatty()
    host = LocalHost(ACCESSORY_CACHE_FILE)

    def on_update(hosted: HostedAccessory, attributes: dict[str, Any]) -> None:
        ts = datetime.now().strftime("%H:%M:%S")
        summary = ", ".join(
            f"{k}={_format_value(v)}" for k, v in attributes.items() if k != "filters"
        )
        name = typer.style(hosted.display_name, bold=True) if is_tty else hosted.display_name
        typer.echo(f"[{ts}] {name} {summary}")

    host.subscribe(on_update)
    platform = Platform(host, config, client=client, poll_interval=interval)
    typer.echo("Synchronizing devices... (Ctrl+C to stop)")
    try:
        await host.launch()
        if platform.schedule is None:
            typer.echo("No devices are being polled. See the log for details.", err=True)
            return
        await platform.schedule.wait()
    finally:
        await host.close()
