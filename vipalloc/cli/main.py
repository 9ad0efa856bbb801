"""vipalloc command-line interface.

Commands:
    vipalloc run                              Run the controller.
    vipalloc version                          Print version and exit.
    vipalloc candidates CIDR [--exclude IP]   Preview free addresses of a segment.
    vipalloc health [--api-url URL]           Query the controller's readiness endpoint.
"""

from __future__ import annotations

import asyncio
import itertools

import click
import httpx

from vipalloc import __version__
from vipalloc.allocator.errors import InvalidSegmentError
from vipalloc.allocator.pool import candidate_addresses

_DEFAULT_API_URL = "http://localhost:8081"


@click.group()
def cli() -> None:
    """vipalloc: virtual IP allocator for keepalived-exposed services."""


@cli.command("version")
def cmd_version() -> None:
    """Print the vipalloc version and exit."""
    click.echo(f"vipalloc {__version__}")


@cli.command("run")
def cmd_run() -> None:
    """Run the VirtualIP controller until SIGINT/SIGTERM.

    Configuration is read from VIPALLOC_* environment variables.
    """
    from vipalloc.app import main
    from vipalloc.config import load_config

    try:
        config = load_config()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    asyncio.run(main(config))


@cli.command("candidates")
@click.argument("cidr")
@click.option("--exclude", "excluded", multiple=True, help="Address to leave out (repeatable).")
@click.option(
    "--skip-network-broadcast",
    is_flag=True,
    default=False,
    help="Leave out the network and broadcast addresses.",
)
@click.option("--limit", type=click.IntRange(min=0), default=20, show_default=True, help="0 prints every address.")
def cmd_candidates(cidr: str, excluded: tuple[str, ...], skip_network_broadcast: bool, limit: int) -> None:
    """Print the addresses of CIDR that would be offered for allocation."""
    try:
        addresses = candidate_addresses(
            cidr,
            excluded=excluded,
            include_network_and_broadcast=not skip_network_broadcast,
        )
    except InvalidSegmentError as exc:
        raise click.ClickException(str(exc)) from exc

    if limit:
        addresses = itertools.islice(addresses, limit)
    for address in addresses:
        click.echo(address)


@cli.command("health")
@click.option(
    "--api-url",
    default=_DEFAULT_API_URL,
    envvar="VIPALLOC_API_URL",
    show_default=True,
    help="vipalloc health API base URL.",
)
def cmd_health(api_url: str) -> None:
    """Report whether the controller is ready."""
    url = api_url.rstrip("/") + "/readyz"
    try:
        with httpx.Client(timeout=10.0) as client:
            response = client.get(url)
    except httpx.ConnectError as err:
        raise click.ClickException(f"Cannot connect to vipalloc at {api_url}. Is the controller running?") from err

    try:
        data: dict[str, object] = response.json()
    except ValueError:
        data = {}

    ready = bool(data.get("ready")) and response.status_code == 200
    label = click.style("ready", fg="green", bold=True) if ready else click.style("not ready", fg="red", bold=True)
    click.echo(f"vipalloc: {label}")
    for field in ("queue_running", "watcher_running", "queue_depth"):
        if field in data:
            click.echo(f"  {field}: {data[field]}")
    if not ready:
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
