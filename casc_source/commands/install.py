"""List the install manifest of a remote build."""

from __future__ import annotations

import asyncio
import json

import click
import structlog
from rich.console import Console
from rich.table import Table

from casc_source.core.cache import DiskCache
from casc_source.core.config import AppConfig
from casc_source.core.errors import CASCError
from casc_source.core.remote import CASCRemote
from casc_source.core.utils import format_size
from casc_source.formats.install import InstallManifest

logger = structlog.get_logger()


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool]:
    """Extract context objects from Click context."""
    config = ctx.obj["config"]
    console = ctx.obj["console"]
    verbose = ctx.obj.get("verbose", False)
    return config, console, verbose


async def _remote_install_manifest(config: AppConfig, region: str, build_index: int) -> InstallManifest:
    client = CASCRemote(
        region,
        settings=config.cdn,
        cache=DiskCache(config.cache.cache_dir) if config.cache.enabled else None,
    )
    try:
        await client.init()
        await client.load(build_index)
        return await client.get_install_manifest()
    finally:
        await client.close()
        client.cleanup()


@click.command("install", short_help="List the install manifest of a build.")
@click.option("--region", "-r", type=str, default=None, help="Region code (default from config)")
@click.option("--build", "-b", "build_index", type=int, default=0, help="Build index (see `builds`)")
@click.option("--tag", "-t", "tags", multiple=True, help="Only files carrying this tag (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def install(ctx: click.Context, region: str | None, build_index: int, tags: tuple[str, ...], as_json: bool) -> None:
    """List the files the launcher installs for a build.

    Tags such as Windows, x86_64 or enUS narrow the list to one platform
    and locale.
    """
    config, console, verbose = _get_context_objects(ctx)
    region = region or config.region

    try:
        with console.status(f"Loading {region} build {build_index}..."):
            manifest = asyncio.run(_remote_install_manifest(config, region, build_index))
    except (CASCError, ValueError) as e:
        logger.debug("install_manifest_failed", region=region, error=str(e))
        raise click.ClickException(str(e)) from e

    files = manifest.files_with_tags(*tags)

    if as_json:
        print(json.dumps([entry.model_dump() for entry in files], indent=2))
        return

    table = Table(title=f"Install manifest ({len(files)} of {len(manifest.files)} files)")
    table.add_column("Name", style="cyan")
    table.add_column("Size", style="green", justify="right")
    table.add_column("Content Key")
    if verbose:
        table.add_column("Tags", style="magenta")

    for entry in files:
        row = [entry.name, format_size(entry.size), entry.content_key]
        if verbose:
            row.append(", ".join(entry.tags))
        table.add_row(*row)

    console.print(table)
