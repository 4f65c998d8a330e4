"""CLI entry point for gitspark.

Commands:
  collect  fetch Azure DevOps pull requests and link them to local commits
  cache    inspect and maintain the pull request cache
  init     write a .gitspark.yml skeleton for the current repository
"""

from __future__ import annotations

import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from gitspark_cli.commands.cache import cache_cmd
from gitspark_cli.commands.collect import collect_cmd
from gitspark_cli.commands.init import init_cmd

console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=verbose, show_path=verbose)],
        force=True,
    )
    logging.getLogger("urllib3").setLevel(logging.INFO if verbose else logging.WARNING)


@click.group()
@click.version_option(package_name="gitspark", prog_name="gitspark")
@click.option(
    "--config",
    "config_path",
    default=None,
    help="Config file relative to the repository (default: .gitspark.yml).",
    envvar="GITSPARK_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """Git history analytics with Azure DevOps pull request integration."""
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


main.add_command(collect_cmd)
main.add_command(cache_cmd)
main.add_command(init_cmd)
