"""List the builds available on the CDN for a region."""

from __future__ import annotations

import asyncio
import json

import click
from rich.console import Console
from rich.table import Table

from casc_source.core.config import AppConfig
from casc_source.core.remote import CASCRemote
from casc_source.core.types import PRODUCTS, BuildInfo


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool]:
    """Extract context objects from Click context."""
    config = ctx.obj["config"]
    console = ctx.obj["console"]
    verbose = ctx.obj.get("verbose", False)
    return config, console, verbose


async def discover_builds(region: str, config: AppConfig) -> list[BuildInfo]:
    """Run remote discovery for a region and close the client."""
    client = CASCRemote(region, settings=config.cdn)
    try:
        return await client.init()
    finally:
        await client.close()


@click.command("builds", short_help="List remote builds for a region.")
@click.option("--region", "-r", type=str, default=None, help="Region code (default from config)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def builds(ctx: click.Context, region: str | None, as_json: bool) -> None:
    """List the build each known product currently serves in a region.

    The index in the first column is the value to pass to
    `fetch --build`.
    """
    config, console, verbose = _get_context_objects(ctx)
    region = region or config.region

    with console.status(f"Querying {region} patch server..."):
        found = asyncio.run(discover_builds(region, config))

    if as_json:
        print(json.dumps([build.model_dump() for build in found], indent=2, default=str))
        return

    if not found:
        console.print(f"[yellow]No builds found for region {region}[/yellow]")
        return

    table = Table(title=f"Builds ({region})")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Product", style="magenta")
    table.add_column("Version", style="green")
    table.add_column("Build Config")
    if verbose:
        table.add_column("CDN Config")

    for index, build in enumerate(found):
        row = [str(index), PRODUCTS.get(build.product, build.product), build.version_name or "", build.build_config]
        if verbose:
            row.append(build.cdn_config)
        table.add_row(*row)

    console.print(table)
