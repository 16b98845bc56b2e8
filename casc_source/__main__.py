"""Main entry point for casc-source CLI."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
import structlog
from rich.console import Console

from casc_source import __version__
from casc_source.commands.builds import builds
from casc_source.commands.fetch import fetch, local
from casc_source.commands.install import install
from casc_source.core.config import AppConfig

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@click.group()
@click.version_option(version=__version__, prog_name="casc-source")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Configuration file path",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--debug", "-d", is_flag=True, help="Enable debug output")
@click.pass_context
def main(ctx: click.Context, config: Path | None, verbose: bool, debug: bool) -> None:
    """Read game files from CASC storage, locally or over the CDN."""
    ctx.ensure_object(dict)

    # Load configuration
    try:
        app_config = AppConfig.load(config)
    except Exception as e:
        logger.error("config_load_failed", error=str(e))
        sys.exit(1)

    # Override config with CLI options
    if verbose or debug:
        app_config.log_level = "DEBUG" if debug else "INFO"

    logging.basicConfig(level=getattr(logging, app_config.log_level), format="%(message)s")

    # Store config and console in context for subcommands
    ctx.obj["config"] = app_config
    ctx.obj["console"] = Console()
    ctx.obj["verbose"] = verbose or debug
    ctx.obj["debug"] = debug

    logger.debug("cli_initialized", config=app_config.model_dump(mode="json"))


main.add_command(builds)
main.add_command(fetch)
main.add_command(local)
main.add_command(install)


if __name__ == "__main__":
    main()
