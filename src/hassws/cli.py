"""Typer CLI entrypoint for hassws.

Commands:
  setup     — store the gateway URL and access token
  ping      — authenticate and measure a ping round trip
  config    — show the gateway configuration
  states    — list entity states
  services  — list the service catalog
  panels    — list registered panels
  areas / devices / entities — dump the registries
  call      — call a service
  watch     — print events as they arrive
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from typing import Any, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from . import log_setup
from .client import HassClient, open_client
from .config import LOG_DIR, Config, load_config, save_config
from .errors import HassError
from .messages import WSEvent
from .transport import build_url

T = TypeVar("T")

app = typer.Typer(
    name="hassws",
    help="Talk to a home-automation gateway over its WebSocket API.",
    add_completion=False,
)
console = Console()


def _table(title: str, *columns: str) -> Table:
    table = Table(title=title, box=None, padding=(0, 2), header_style="bold")
    for column in columns:
        table.add_column(column)
    return table


def _run(ctx: typer.Context, action: Callable[[HassClient], Awaitable[T]]) -> T:
    """Connect, authenticate, run *action*, close. Errors exit with status 1."""
    config: Config = ctx.obj
    if not config.token:
        console.print(
            "[red]No access token. Run [bold]hassws setup[/bold] or set HASS_TOKEN.[/red]"
        )
        raise typer.Exit(1)

    async def _main() -> T:
        async with open_client(
            config.url,
            config.token,
            queue_size=config.queue_size,
            max_size=config.max_frame_size,
        ) as client:
            return await action(client)

    try:
        return asyncio.run(_main())
    except HassError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# global options
# ---------------------------------------------------------------------------

@app.callback()
def main(
    ctx: typer.Context,
    url: Optional[str] = typer.Option(
        None, "--url", "-u", help="Gateway address (e.g. ws://homeassistant.local:8123)"
    ),
    token: Optional[str] = typer.Option(
        None, "--token", "-t", help="Long-lived access token (default: HASS_TOKEN or config)"
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", "-l", help="Log level"),
) -> None:
    config = load_config()
    updates: dict[str, Any] = {}
    if url:
        updates["url"] = build_url(url)
    if token:
        updates["token"] = token
    if log_level:
        updates["log_level"] = log_level
    config = config.model_copy(update=updates)
    log_setup.init(
        config.log_level,
        log_file=LOG_DIR / "hassws.log" if config.log_file else None,
        log_levels=config.log_levels or None,
    )
    ctx.obj = config


# ---------------------------------------------------------------------------
# setup
# ---------------------------------------------------------------------------

@app.command()
def setup(
    ctx: typer.Context,
    log_file: bool = typer.Option(False, "--log-file", help="Also write logs under ~/.hassws/logs"),
) -> None:
    """Store the gateway URL and access token."""
    console.print("[bold cyan]hassws setup[/bold cyan]")
    current: Config = ctx.obj

    url = typer.prompt("Gateway address", default=current.url)
    token = typer.prompt(
        "Access token",
        default=current.token or "",
        hide_input=True,
        show_default=False,
    )
    config = current.model_copy(
        update={"url": build_url(url), "token": token or None, "log_file": log_file}
    )
    path = save_config(config)
    console.print(f"[green]Config saved to[/green] {path}")
    console.print(f"  url  : [bold]{config.url}[/bold]")
    console.print(f"  token: [bold]{'set' if config.token else 'not set'}[/bold]")


# ---------------------------------------------------------------------------
# queries
# ---------------------------------------------------------------------------

@app.command()
def ping(ctx: typer.Context) -> None:
    """Authenticate and time a ping/pong round trip."""

    async def _ping(client: HassClient) -> float:
        started = time.perf_counter()
        await client.ping()
        return (time.perf_counter() - started) * 1000

    elapsed = _run(ctx, _ping)
    console.print(f"[green]pong[/green] in {elapsed:.1f} ms")


@app.command("config")
def show_config(ctx: typer.Context) -> None:
    """Show the gateway configuration."""
    cfg = _run(ctx, lambda client: client.get_config())

    table = _table("gateway config", "Key", "Value")
    table.add_row("Location", cfg.location_name)
    table.add_row("Version", cfg.version)
    table.add_row("Coordinates", f"{cfg.latitude}, {cfg.longitude} ({cfg.elevation} m)")
    table.add_row("Time zone", cfg.time_zone)
    if cfg.unit_system is not None:
        table.add_row("Units", f"{cfg.unit_system.temperature}, {cfg.unit_system.length}")
    table.add_row("Components", str(len(cfg.components)))
    table.add_row("External URL", cfg.external_url or "—")
    table.add_row("Internal URL", cfg.internal_url or "—")
    console.print(table)


@app.command()
def states(
    ctx: typer.Context,
    domain: Optional[str] = typer.Option(None, "--domain", "-d", help="Only this domain (e.g. light)"),
) -> None:
    """List entity states."""
    entities = _run(ctx, lambda client: client.get_states())
    if domain:
        entities = [e for e in entities if e.domain == domain]

    table = _table("states", "Entity", "State", "Last changed")
    for entity in sorted(entities, key=lambda e: e.entity_id):
        table.add_row(entity.entity_id, entity.state, entity.last_changed or "—")
    console.print(table)


@app.command()
def services(
    ctx: typer.Context,
    domain: Optional[str] = typer.Argument(None, help="Only this domain"),
) -> None:
    """List the service catalog."""
    catalog = _run(ctx, lambda client: client.get_services())
    domains = [domain] if domain else catalog.domains()

    table = _table("services", "Service", "Description")
    for name in domains:
        for service, info in sorted(catalog.get(name).items()):
            table.add_row(f"{name}.{service}", info.description or info.name or "")
    console.print(table)


@app.command()
def panels(ctx: typer.Context) -> None:
    """List registered panels."""
    result = _run(ctx, lambda client: client.get_panels())

    table = _table("panels", "URL path", "Component", "Title")
    for path, panel in sorted(result.root.items()):
        table.add_row(path, panel.component_name, panel.title or "—")
    console.print(table)


@app.command()
def areas(ctx: typer.Context) -> None:
    """Dump the area registry."""
    result = _run(ctx, lambda client: client.get_area_registry())

    table = _table("areas", "Area", "Name", "Aliases")
    for area in result:
        table.add_row(area.id, area.name, ", ".join(area.aliases))
    console.print(table)


@app.command()
def devices(ctx: typer.Context) -> None:
    """Dump the device registry."""
    result = _run(ctx, lambda client: client.get_device_registry())

    table = _table("devices", "Device", "Name", "Manufacturer", "Model", "Area")
    for device in result:
        table.add_row(
            device.id,
            device.name_by_user or device.name or "—",
            device.manufacturer or "—",
            device.model or "—",
            device.area_id or "—",
        )
    console.print(table)


@app.command()
def entities(ctx: typer.Context) -> None:
    """Dump the entity registry."""
    result = _run(ctx, lambda client: client.get_entity_registry())

    table = _table("entities", "Entity", "Platform", "Device", "Disabled")
    for entity in sorted(result, key=lambda e: e.entity_id):
        table.add_row(
            entity.entity_id,
            entity.platform,
            entity.device_id or "—",
            entity.disabled_by or "",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# call
# ---------------------------------------------------------------------------

@app.command()
def call(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Service domain, e.g. light"),
    service: str = typer.Argument(..., help="Service name, e.g. turn_on"),
    data: Optional[str] = typer.Option(
        None, "--data", "-D", help='Service data as JSON, e.g. \'{"entity_id": "light.kitchen"}\''
    ),
) -> None:
    """Call a service."""
    service_data: dict[str, Any] | None = None
    if data:
        try:
            service_data = json.loads(data)
        except json.JSONDecodeError as exc:
            raise typer.BadParameter(f"invalid JSON: {exc}", param_hint="--data")
        if not isinstance(service_data, dict):
            raise typer.BadParameter("must be a JSON object", param_hint="--data")

    result = _run(ctx, lambda client: client.call_service(domain, service, service_data))
    console.print(f"[green]{domain}.{service} executed[/green]")
    if result:
        console.print_json(data=result)


# ---------------------------------------------------------------------------
# watch
# ---------------------------------------------------------------------------

def _print_event(event: WSEvent) -> None:
    if event.event.get("event_type") == "state_changed":
        console.print(str(event.as_hass_event()))
    else:
        console.print_json(data=event.event)


@app.command()
def watch(
    ctx: typer.Context,
    event_type: Optional[str] = typer.Argument(None, help="Event type (default: all events)"),
    count: int = typer.Option(0, "--count", "-n", help="Stop after N events (0 = forever)"),
) -> None:
    """Subscribe and print events until interrupted."""

    async def _watch(client: HassClient) -> int:
        sub_id = await client.subscribe(event_type)
        console.print(f"[dim]Subscribed to {event_type or 'all events'} (id={sub_id})[/dim]")
        seen = 0
        async for event in client.events(sub_id):
            _print_event(event)
            seen += 1
            if count and seen >= count:
                await client.unsubscribe(sub_id)
                break
        return seen

    try:
        seen = _run(ctx, _watch)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
        return
    console.print(f"[dim]{seen} event(s) received.[/dim]")


if __name__ == "__main__":
    app()
