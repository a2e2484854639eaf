"""
unitbridge CLI - run and inspect the bridge.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .bridge import Bridge, ROOT_IDENTITY
from .config import DEFAULT_DATA_DIR, DELIMITERS, BridgeConfig
from .devices.builder import build_from_description, iter_device_descriptions, parse_bridge_info
from .devices.description import ROOT_QUERY
from .exceptions import TransportError
from .registry.identity import IdentityRegistry
from .registry.slots import SlotStatus
from .registry.store import JsonStore
from .upstream.standalone import BlockingSession

console = Console()

STATUS_STYLES = {
    SlotStatus.FREE: "[dim]free[/dim]",
    SlotStatus.UNCONFIRMED: "[yellow]unconfirmed[/yellow]",
    SlotStatus.CONFIRMED: "[green]confirmed[/green]",
}


def setup_logging(verbose: bool = False, level: str = "INFO"):
    """Set up logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[logging.StreamHandler()]
    )


def load_config(data_dir: Optional[str]) -> BridgeConfig:
    return BridgeConfig.load(Path(data_dir) if data_dir else DEFAULT_DATA_DIR)


def open_registry(config: BridgeConfig) -> IdentityRegistry:
    store = JsonStore(config.store_path, config.registry.namespace)
    registry = IdentityRegistry(store, config.registry.capacity)
    registry.load()
    return registry


def apply_api_options(config: BridgeConfig, host: Optional[str], port: Optional[int], delimiter: Optional[str]):
    if host:
        config.api.host = host
    if port:
        config.api.port = port
    if delimiter:
        config.api.delimiter = delimiter


api_options = [
    click.option('--host', help='Upstream API host'),
    click.option('--port', '-p', type=int, help='Upstream API port'),
    click.option('--delimiter', type=click.Choice(sorted(DELIMITERS)), help='Message terminator'),
]


def with_api_options(func):
    for option in reversed(api_options):
        func = option(func)
    return func


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--data-dir', type=click.Path(), help='Data directory (default ~/.unitbridge)')
@click.pass_context
def main(ctx, verbose, data_dir):
    """unitbridge - expose upstream devices as downstream units"""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['config'] = load_config(data_dir)
    setup_logging(verbose, ctx.obj['config'].log_level)


@main.command()
@with_api_options
@click.pass_context
def run(ctx, host: Optional[str], port: Optional[int], delimiter: Optional[str]):
    """Run the bridge until the upstream system requests termination."""
    config: BridgeConfig = ctx.obj['config']
    apply_api_options(config, host, port, delimiter)
    config.ensure_data_dir()

    console.print("\n[bold blue]unitbridge[/bold blue]")
    console.print(f"   Upstream: {config.api.host}:{config.api.port} ({config.api.delimiter})")
    console.print(f"   Slots:    {config.store_path} (capacity {config.registry.capacity})")
    console.print("   Press Ctrl+C to stop\n")

    bridge = Bridge(config)
    try:
        exit_code = asyncio.run(bridge.run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        exit_code = 0

    ctx.exit(exit_code)


@main.command()
@with_api_options
@click.pass_context
def probe(ctx, host: Optional[str], port: Optional[int], delimiter: Optional[str]):
    """Query the upstream system once and show how its devices would be mapped."""
    config: BridgeConfig = ctx.obj['config']
    apply_api_options(config, host, port, delimiter)

    try:
        with BlockingSession(config.api) as session:
            call = session.call("getProperty", {"dSUID": ROOT_IDENTITY, "query": ROOT_QUERY})
    except TransportError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if not call.ok:
        console.print(f"[red]Query failed: {call.error}[/red]")
        sys.exit(1)
    if not isinstance(call.result, dict):
        console.print("[red]Query returned no result[/red]")
        sys.exit(1)

    info = parse_bridge_info(call.result)
    console.print(f"\n[bold]{info.name or 'Upstream system'}[/bold] [dim]{info.model or ''} {info.dsuid or ''}[/dim]\n")

    table = Table(title="Devices")
    table.add_column("dSUID", style="cyan")
    table.add_column("Name")
    table.add_column("Bridgeable")
    table.add_column("Mapped as")

    for desc, _ in iter_device_descriptions(call.result):
        node = build_from_description(desc)
        if node is None:
            mapping = "[dim]-[/dim]"
        elif node.children:
            mapping = "composed: " + ", ".join(child.unit_type for child in node.children)
        else:
            mapping = node.unit_type
        table.add_row(
            desc.dsuid,
            desc.name or "",
            "[green]yes[/green]" if desc.bridgeable else "[dim]no[/dim]",
            mapping,
        )

    console.print(table)


@main.command()
@click.pass_context
def slots(ctx):
    """Show the persisted slot map and identity bindings."""
    config: BridgeConfig = ctx.obj['config']
    registry = open_registry(config)
    slot_map = registry.slot_map

    console.print(f"\n[bold]Slot map[/bold] ({len(slot_map)} of {slot_map.capacity} slots)")
    console.print(f"   [dim]{config.store_path}[/dim]\n")

    owners = {}
    for identity, slot in registry.bindings().items():
        owners.setdefault(slot, []).append(identity)

    table = Table()
    table.add_column("Slot", justify="right")
    table.add_column("Status")
    table.add_column("Identity", style="cyan")

    for slot, status in enumerate(slot_map):
        table.add_row(str(slot), STATUS_STYLES[status], ", ".join(sorted(owners.pop(slot, []))))

    for slot, identities in sorted(owners.items()):
        table.add_row(str(slot), "[red]out of range[/red]", ", ".join(sorted(identities)))

    console.print(table)


@main.command()
@click.argument('identity')
@click.pass_context
def forget(ctx, identity: str):
    """Release the slot bound to IDENTITY (run while the bridge is stopped)."""
    config: BridgeConfig = ctx.obj['config']
    registry = open_registry(config)

    slot = registry.slot_of(identity)
    if not registry.forget(identity):
        console.print(f"[yellow]No binding for {identity}[/yellow]")
        sys.exit(1)

    console.print(f"[green]✓[/green] Forgot {identity} (slot {slot})")


if __name__ == "__main__":
    main()
