"""portfwd command line: discover gateways and manage port mappings."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, TypeVar

import click
from rich.console import Console
from rich.table import Table

from portfwd import __version__
from portfwd.config import init_config
from portfwd.exceptions import ConfigurationError, PortForwardError
from portfwd.logging_config import setup_logging
from portfwd.models import LogLevel
from portfwd.nat.discoverer import NatDiscoverer
from portfwd.nat.exceptions import NatDeviceNotFoundError
from portfwd.nat.mapping import NO_ADDRESS, Lease, LeaseType, Mapping, Protocol
from portfwd.nat.searcher import PortMapper

if TYPE_CHECKING:  # pragma: no cover
    from portfwd.models import Config
    from portfwd.nat.device import NatDevice

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_FOUND_MSG = (
    "No NAT device found. Common reasons:\n"
    "  * No device is present or,\n"
    "  * UPnP is disabled in the router or\n"
    "  * Antivirus software is filtering SSDP (discovery protocol)."
)

PROTOCOL_CHOICE = click.Choice(["upnp", "pmp", "all"], case_sensitive=False)
TRANSPORT_CHOICE = click.Choice(["tcp", "udp"], case_sensitive=False)
PORT_RANGE = click.IntRange(0, 65535)

DEMO_TEMPORARY_PORTS = (1600, 1700)


def _log_level(verbose: int, configured: LogLevel) -> LogLevel:
    if verbose >= 2:
        return LogLevel.DEBUG
    if verbose == 1:
        return LogLevel.INFO
    return configured


def _run(factory: Callable[[], Awaitable[T]]) -> T:
    """Run a coroutine, turning library failures into click errors."""
    try:
        return asyncio.run(factory())
    except NatDeviceNotFoundError as e:
        raise click.ClickException(NOT_FOUND_MSG) from e
    except PortForwardError as e:
        raise click.ClickException(str(e)) from e


def _port_mapper(ctx: click.Context, protocol: str | None) -> PortMapper:
    if protocol:
        return PortMapper.parse(protocol)
    config: Config = ctx.obj["config"]
    try:
        return config.discovery.port_mapper()
    except ValueError as e:
        raise click.UsageError(str(e)) from e


def _parse_lease(_ctx: click.Context, _param: click.Parameter, value: str) -> Lease:
    if value.lower() == "permanent":
        return Lease.PERMANENT
    try:
        return Lease.from_duration(float(value))
    except ValueError as e:
        msg = f"expected 'permanent' or a number of seconds, got {value!r} ({e})"
        raise click.BadParameter(msg) from e


def format_expiration(mapping: Mapping) -> str:
    """Human readable expiration of ``mapping``."""
    if mapping.lease_type is LeaseType.PERMANENT or mapping.forced_session:
        return "never"
    return datetime.fromtimestamp(mapping.expiration).strftime("%Y-%m-%d %H:%M:%S")


def mappings_table(mappings: list[Mapping], title: str | None = None) -> Table:
    """Build a rich table of port mappings."""
    table = Table(title=title)
    table.add_column("Protocol", style="cyan")
    table.add_column("Public", style="yellow")
    table.add_column("Private", style="magenta")
    table.add_column("Description", style="green")
    table.add_column("Lease")
    table.add_column("Expires", style="blue")
    for mapping in mappings:
        public = (
            str(mapping.public_port)
            if mapping.public_ip == NO_ADDRESS
            else f"{mapping.public_ip}:{mapping.public_port}"
        )
        table.add_row(
            mapping.protocol.value,
            public,
            f"{mapping.private_ip}:{mapping.private_port}",
            mapping.description,
            str(mapping.lease),
            format_expiration(mapping),
        )
    return table


@click.group()
@click.version_option(__version__, prog_name="portfwd")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v: info, -vv: debug)",
)
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: int) -> None:
    """Portfwd - open ports on your NAT gateway with UPnP IGD or NAT-PMP."""
    ctx.ensure_object(dict)
    try:
        config_manager = init_config(config)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    cfg = config_manager.config
    observability = cfg.observability.model_copy(
        update={"log_level": _log_level(verbose, cfg.observability.log_level)}
    )
    setup_logging(observability)

    ctx.obj["config"] = cfg
    ctx.obj["verbosity"] = verbose


@cli.command()
@click.option("--protocol", "-p", type=PROTOCOL_CHOICE, help="Protocols to search for")
@click.option("--timeout", "-t", type=click.FloatRange(min=0.1), help="Discovery deadline in seconds")
@click.option("--all", "find_all", is_flag=True, help="Report every gateway, not just the first")
@click.pass_context
def discover(ctx: click.Context, protocol: str | None, timeout: float | None, find_all: bool) -> None:
    """Discover NAT gateways on the local network."""
    console = Console()
    port_mapper = _port_mapper(ctx, protocol)

    async def _discover() -> list[tuple[NatDevice, str]]:
        async with NatDiscoverer() as discoverer:
            if find_all:
                devices = await discoverer.discover_devices(port_mapper, timeout=timeout)
            else:
                devices = [await discoverer.discover_device(port_mapper, timeout=timeout)]
            rows = []
            for device in devices:
                try:
                    external_ip = str(await device.get_external_ip())
                except PortForwardError as e:
                    logger.debug("External address of %s unavailable: %s", device, e)
                    external_ip = "unavailable"
                rows.append((device, external_ip))
            return rows

    rows = _run(_discover)
    if not rows:
        raise click.ClickException(NOT_FOUND_MSG)

    table = Table(title="NAT devices")
    table.add_column("Device", style="cyan")
    table.add_column("Protocol", style="magenta")
    table.add_column("Local address", style="yellow")
    table.add_column("External IP", style="green")
    for device, external_ip in rows:
        table.add_row(
            str(device),
            device.protocol_name,
            str(device.local_address or "-"),
            external_ip,
        )
    console.print(table)


@cli.command("external-ip")
@click.option("--protocol", "-p", type=PROTOCOL_CHOICE, help="Protocols to search for")
@click.pass_context
def external_ip(ctx: click.Context, protocol: str | None) -> None:
    """Print the gateway's external IP address."""
    port_mapper = _port_mapper(ctx, protocol)

    async def _external_ip() -> str:
        async with NatDiscoverer() as discoverer:
            device = await discoverer.discover_device(port_mapper)
            return str(await device.get_external_ip())

    click.echo(_run(_external_ip))


@cli.command("list")
@click.option("--protocol", "-p", type=PROTOCOL_CHOICE, help="Protocols to search for")
@click.pass_context
def list_mappings(ctx: click.Context, protocol: str | None) -> None:
    """List the port mappings on the gateway."""
    console = Console()
    port_mapper = _port_mapper(ctx, protocol)

    async def _list() -> list[Mapping]:
        async with NatDiscoverer() as discoverer:
            device = await discoverer.discover_device(port_mapper)
            return await device.get_all_mappings()

    mappings = _run(_list)
    if not mappings:
        console.print("[yellow]No port mappings[/yellow]")
        return
    console.print(mappings_table(mappings, title="Port mappings"))


@cli.command("map")
@click.argument("private_port", type=PORT_RANGE)
@click.argument("public_port", type=PORT_RANGE)
@click.option("--protocol", "-P", "transport", type=TRANSPORT_CHOICE, default="tcp", show_default=True)
@click.option(
    "--lease",
    "-l",
    default="permanent",
    show_default=True,
    callback=_parse_lease,
    help="'permanent' or a lifetime in seconds",
)
@click.option("--description", "-d", help="Description shown by the router")
@click.option("--gateway", "-p", type=PROTOCOL_CHOICE, help="Protocols to search for")
@click.pass_context
def map_port(
    ctx: click.Context,
    private_port: int,
    public_port: int,
    transport: str,
    lease: Lease,
    description: str | None,
    gateway: str | None,
) -> None:
    """Forward PUBLIC_PORT on the gateway to PRIVATE_PORT on this host."""
    config: Config = ctx.obj["config"]
    port_mapper = _port_mapper(ctx, gateway)
    mapping = Mapping(
        Protocol.parse(transport),
        private_port,
        public_port,
        lease=lease,
        description=description or config.discovery.mapping_description,
    )

    async def _map() -> Mapping:
        async with NatDiscoverer() as discoverer:
            device = await discoverer.discover_device(port_mapper)
            await device.create_port_map(mapping)
            return mapping

    created = _run(_map)
    click.echo(f"Created {created}")


@cli.command("unmap")
@click.argument("public_port", type=PORT_RANGE)
@click.option("--protocol", "-P", "transport", type=TRANSPORT_CHOICE, default="tcp", show_default=True)
@click.option("--gateway", "-p", type=PROTOCOL_CHOICE, help="Protocols to search for")
@click.pass_context
def unmap_port(ctx: click.Context, public_port: int, transport: str, gateway: str | None) -> None:
    """Remove the mapping for PUBLIC_PORT from the gateway."""
    port_mapper = _port_mapper(ctx, gateway)
    protocol = Protocol.parse(transport)

    async def _unmap() -> bool:
        async with NatDiscoverer() as discoverer:
            device = await discoverer.discover_device(port_mapper)
            return await device.delete_port_map(protocol, public_port)

    if _run(_unmap):
        click.echo(f"Removed {protocol.value} mapping for port {public_port}")
    else:
        click.echo(f"No {protocol.value} mapping for port {public_port}")


@cli.command()
@click.option("--protocol", "-p", type=PROTOCOL_CHOICE, help="Protocols to search for")
@click.option("--timeout", "-t", type=click.FloatRange(min=0.1), default=5.0, show_default=True)
@click.option(
    "--hold",
    type=click.FloatRange(min=0.0),
    default=0.0,
    show_default=True,
    help="Seconds to keep the session mapping alive before exiting",
)
@click.pass_context
def demo(ctx: click.Context, protocol: str | None, timeout: float, hold: float) -> None:
    """Open sample mappings of every lease kind, show them and clean up."""
    console = Console()
    port_mapper = _port_mapper(ctx, protocol)
    temporary_private, temporary_public = DEMO_TEMPORARY_PORTS

    async def _demo() -> None:
        async with NatDiscoverer() as discoverer:
            device = await discoverer.discover_device(port_mapper, timeout=timeout)
            ip = await device.get_external_ip()

            existing = await device.get_all_mappings()
            if existing:
                console.print(mappings_table(existing, title="Existing port mappings"))

            console.print(f"Your IP: [green]{ip}[/green]")
            samples: list[tuple[int, int, Lease, str]] = [
                (temporary_private, temporary_public, Lease.PERMANENT, "portfwd (temporary)"),
                (1601, 1701, Lease.SESSION, "portfwd (Session lifetime)"),
                (1602, 1702, Lease.PERMANENT, "portfwd (Permanent lifetime)"),
                (1603, 1703, Lease.from_duration(20), "portfwd (Manual lifetime)"),
            ]
            for private_port, public_port, lease, description in samples:
                await device.create_port_map(
                    Mapping(Protocol.TCP, private_port, public_port, lease, description)
                )
            console.print(
                f"Added mapping: {ip}:{temporary_public} -> "
                f"{device.local_address or '127.0.0.1'}:{temporary_private}"
            )
            console.print(mappings_table(await device.get_all_mappings(), title="Port mappings"))

            click.echo(
                f"[Removing TCP mapping] {ip}:{temporary_public} -> "
                f"{device.local_address or '127.0.0.1'}:{temporary_private}"
            )
            await device.delete_port_map(Protocol.TCP, temporary_public)

            if hold:
                console.print(f"Keeping the session mapping alive for {hold:.0f}s...")
                await asyncio.sleep(hold)
            click.echo("[Done]")

    _run(_demo)


def main() -> None:
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
