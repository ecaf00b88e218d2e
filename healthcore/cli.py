"""
HealthCore CLI - run and inspect transport bridges.
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .config import BRIDGES, DEFAULT_DATA_DIR, Config, set_config
from .core.errors import TransportError

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler()]
    )


def load_config(data_dir: Optional[str]) -> Config:
    config = Config.load(Path(data_dir) if data_dir else DEFAULT_DATA_DIR)
    set_config(config)
    return config


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.pass_context
def main(ctx, verbose):
    """HealthCore - smart-building transport bridges"""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    setup_logging(verbose)


@main.command()
@click.argument('bridge', type=click.Choice(BRIDGES))
@click.option('--data-dir', type=click.Path(), help='Data directory')
@click.option('--broker', '-b', help='MQTT broker host (overrides config)')
@click.option('--port', '-p', type=int, help='MQTT broker port (overrides config)')
def run(bridge: str, data_dir: Optional[str], broker: Optional[str], port: Optional[int]):
    """Run one bridge until interrupted."""
    config = load_config(data_dir)
    if broker:
        config.broker.host = broker
    if port:
        config.broker.port = port

    console.print(f"\n[bold blue]Starting {bridge} bridge[/bold blue]")
    console.print(f"   Broker: {config.broker.host}:{config.broker.port}")
    console.print(f"   Press Ctrl+C to stop\n")

    try:
        asyncio.run(_run_bridge(bridge, config))
    except TransportError as e:
        console.print(f"[red]{e.message}[/red]")
        sys.exit(1)


async def _run_bridge(name: str, config: Config) -> None:
    from .bridges import create_bridge

    bridge = create_bridge(name, config)
    loop = asyncio.get_running_loop()
    runner = asyncio.create_task(bridge.run())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.cancel)
        except NotImplementedError:
            # Windows event loops
            pass

    try:
        await runner
    except asyncio.CancelledError:
        logger.info("Shutdown requested")
    finally:
        await bridge.stop()


@main.command()
@click.argument('bridge', required=False, type=click.Choice(BRIDGES))
def converters(bridge: Optional[str]):
    """List supported products and their properties."""
    from .bridges import load_converters

    table = Table(title="Supported products")
    table.add_column("Bridge", style="cyan")
    table.add_column("Product")
    table.add_column("Vendor", style="dim")
    table.add_column("Power")
    table.add_column("Properties")

    for name in ([bridge] if bridge else BRIDGES):
        registry = load_converters(name)
        for product_name in registry.product_names:
            converter = registry.lookup(product_name)
            props = ", ".join(
                p.name + ("[dim] (rw)[/dim]" if p.write else "")
                for p in converter.properties
            )
            table.add_row(name, product_name, converter.vendor_name, converter.power_type.value, props)

    console.print(table)


@main.command()
@click.option('--data-dir', type=click.Path(), help='Data directory')
@click.option('--save', is_flag=True, help='Write the effective configuration to config.json')
def config(data_dir: Optional[str], save: bool):
    """Show the effective configuration."""
    cfg = load_config(data_dir)

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Data Directory", str(cfg.data_dir))
    for key, value in cfg.to_dict().items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                if sub_key in ("password", "api_key") and sub_value:
                    sub_value = "********"
                table.add_row(f"{key}.{sub_key}", str(sub_value))
        else:
            table.add_row(key, str(value))

    console.print(table)

    if save:
        cfg.save()
        console.print(f"\n[green]✓ Saved to {cfg.config_path}[/green]")


if __name__ == '__main__':
    main()
