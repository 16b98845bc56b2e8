"""Fetch files by FileDataID or name from the CDN or a local installation."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click
import httpx
import structlog
from rich.console import Console
from rich.table import Table

from casc_source.core.cache import DiskCache
from casc_source.core.casc import CASC
from casc_source.core.config import AppConfig
from casc_source.core.errors import CASCError
from casc_source.core.local import CASCLocal
from casc_source.core.remote import CASCRemote
from casc_source.core.types import LocaleFlags, ResolvedFile
from casc_source.core.utils import format_size
from casc_source.database.listfile import CSVListfile
from casc_source.database.tact_keys import TACTKeyRegistry
from casc_source.formats.root import describe_locale

logger = structlog.get_logger()

LOCALE_NAMES = [flag.name for flag in LocaleFlags if flag.name and not flag.name.startswith("UNK")]


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool]:
    """Extract context objects from Click context."""
    config = ctx.obj["config"]
    console = ctx.obj["console"]
    verbose = ctx.obj.get("verbose", False)
    return config, console, verbose


def _save_file(data: bytes, output_path: Path, console: Console, verbose: bool) -> None:
    """Save data to file and report success."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(data)

    if verbose:
        console.print(f"[green]Saved {format_size(len(data))} to {output_path}[/green]")


def _build_key_store(config: AppConfig, keys_file: Path | None, fetch_keys: bool) -> TACTKeyRegistry:
    """Collect TACT keys from a local list and, optionally, the configured URL."""
    registry = TACTKeyRegistry()
    if keys_file is not None:
        registry.load_text(keys_file.read_text(encoding="utf-8"))
    if fetch_keys:
        try:
            registry.fetch(config.tact_keys_url, timeout=config.cdn.timeout)
        except httpx.HTTPError as e:
            raise click.ClickException(f"Failed to fetch TACT keys: {e}") from e
    return registry


def _resolve_locale(config: AppConfig, locale: str | None) -> int:
    if locale is None:
        return config.locale
    return int(LocaleFlags[locale])


async def _fetch_target(client: CASC, target: str, partial_decrypt: bool) -> tuple[bytes, ResolvedFile | None]:
    if target.isdigit():
        file_data_id = int(target)
        info = client.get_file_info(file_data_id)
        return await client.get_file(file_data_id, partial_decrypt=partial_decrypt), info
    return await client.get_file_by_name(target, partial_decrypt=partial_decrypt), None


def _show_info(console: Console, target: str, info: ResolvedFile | None, size: int, locale: int) -> None:
    table = Table(title=f"File {target}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="magenta")
    if info is not None:
        table.add_row("FileDataID", str(info.file_data_id))
        table.add_row("Content Key", info.content_key)
        table.add_row("Encoding Key", info.encoding_key)
    table.add_row("Locale", describe_locale(locale))
    table.add_row("Size", format_size(size))
    console.print(table)


def _default_output(target: str) -> Path:
    return Path(Path(target.replace("\\", "/")).name if not target.isdigit() else f"{target}.bin")


async def _remote_fetch(
    config: AppConfig,
    region: str,
    build_index: int,
    target: str,
    locale: int,
    key_store: TACTKeyRegistry,
    use_listfile: bool,
    partial_decrypt: bool,
) -> tuple[bytes, ResolvedFile | None]:
    client = CASCRemote(
        region,
        settings=config.cdn,
        locale=locale,
        key_store=key_store,
        listfile=CSVListfile(config.listfile_url) if use_listfile else None,
        cache=DiskCache(config.cache.cache_dir) if config.cache.enabled else None,
    )
    try:
        await client.init()
        await client.load(build_index)
        return await _fetch_target(client, target, partial_decrypt)
    finally:
        await client.close()
        client.cleanup()


async def _local_fetch(
    config: AppConfig,
    install_dir: Path,
    build_index: int,
    target: str,
    locale: int,
    key_store: TACTKeyRegistry,
    use_listfile: bool,
    partial_decrypt: bool,
    remote_fallback: bool = False,
) -> tuple[bytes, ResolvedFile | None]:
    client = CASCLocal(
        install_dir,
        locale=locale,
        key_store=key_store,
        listfile=CSVListfile(config.listfile_url) if use_listfile else None,
        cache=DiskCache(config.cache.cache_dir) if config.cache.enabled else None,
        remote_fallback=remote_fallback,
        settings=config.cdn,
    )
    try:
        await client.init()
        await client.load(build_index)
        return await _fetch_target(client, target, partial_decrypt)
    finally:
        await client.close()
        client.cleanup()


_common_options = [
    click.option("--build", "-b", "build_index", type=int, default=0, help="Build index (see `builds`)"),
    click.option("--output", "-o", type=click.Path(path_type=Path), help="Output file path"),
    click.option(
        "--locale",
        "-l",
        type=click.Choice(LOCALE_NAMES, case_sensitive=False),
        help="Locale (default from config)",
    ),
    click.option(
        "--keys",
        "keys_file",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="TACT key list for encrypted files",
    ),
    click.option("--fetch-keys", is_flag=True, help="Download the TACT key list from the configured URL"),
    click.option("--partial-decrypt", is_flag=True, help="Zero-fill blocks whose key is unknown"),
]


def common_options(func):
    for option in reversed(_common_options):
        func = option(func)
    return func


@click.command("fetch", short_help="Fetch a file from the CDN.")
@click.argument("target", type=str)
@click.option("--region", "-r", type=str, default=None, help="Region code (default from config)")
@common_options
@click.pass_context
def fetch(
    ctx: click.Context,
    target: str,
    region: str | None,
    build_index: int,
    output: Path | None,
    locale: str | None,
    keys_file: Path | None,
    fetch_keys: bool,
    partial_decrypt: bool,
) -> None:
    """Fetch a file from the CDN.

    TARGET is a FileDataID, or a game path resolved through the listfile.
    """
    config, console, verbose = _get_context_objects(ctx)
    region = region or config.region

    try:
        with console.status(f"Loading {region} build {build_index}..."):
            data, info = asyncio.run(_remote_fetch(
                config,
                region,
                build_index,
                target,
                _resolve_locale(config, locale),
                _build_key_store(config, keys_file, fetch_keys),
                use_listfile=not target.isdigit(),
                partial_decrypt=partial_decrypt,
            ))
    except (CASCError, ValueError) as e:
        logger.debug("fetch_failed", target=target, error=str(e))
        raise click.ClickException(str(e)) from e

    if verbose:
        _show_info(console, target, info, len(data), _resolve_locale(config, locale))
    _save_file(data, output or _default_output(target), console, verbose=True)


@click.command("local", short_help="Fetch a file from a local installation.")
@click.argument("install_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("target", type=str)
@common_options
@click.option("--remote-fallback", is_flag=True, help="Download blobs missing locally from the build's CDN hosts")
@click.pass_context
def local(
    ctx: click.Context,
    install_dir: Path,
    target: str,
    build_index: int,
    output: Path | None,
    locale: str | None,
    keys_file: Path | None,
    fetch_keys: bool,
    partial_decrypt: bool,
    remote_fallback: bool,
) -> None:
    """Fetch a file from a local installation.

    INSTALL_DIR is the game directory holding .build.info; TARGET is a
    FileDataID or a game path resolved through the listfile.
    """
    config, console, verbose = _get_context_objects(ctx)

    try:
        data, info = asyncio.run(_local_fetch(
            config,
            install_dir,
            build_index,
            target,
            _resolve_locale(config, locale),
            _build_key_store(config, keys_file, fetch_keys),
            use_listfile=not target.isdigit(),
            partial_decrypt=partial_decrypt,
            remote_fallback=remote_fallback,
        ))
    except (CASCError, ValueError) as e:
        logger.debug("local_fetch_failed", target=target, error=str(e))
        raise click.ClickException(str(e)) from e

    if verbose:
        _show_info(console, target, info, len(data), _resolve_locale(config, locale))
    _save_file(data, output or _default_output(target), console, verbose=True)
