"""cache command group: inspect and maintain the Azure DevOps cache."""

from __future__ import annotations

from dataclasses import replace

import click
from rich.console import Console
from rich.table import Table

console = Console()

_repo_path_option = click.option(
    "--repo-path",
    default=".",
    show_default=True,
    type=click.Path(exists=True, file_okay=False),
    help="Repository whose cache to operate on.",
)


@click.group("cache")
def cache_cmd():
    """Inspect and maintain the Azure DevOps response cache."""


def _open_manager(ctx, repo_path: str):
    from gitspark_core.config import resolve_cache_config
    from gitspark_core.errors import ConfigurationError
    from gitspark_store.manager import CacheManager

    config_path = ctx.obj.get("config_path") if ctx.obj else None
    try:
        config = resolve_cache_config(repo_path, config_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    # Maintenance commands run in the foreground.
    return CacheManager(replace(config, background_cleanup=False), repo_path)


@cache_cmd.command("stats")
@_repo_path_option
@click.pass_context
def stats_cmd(ctx, repo_path: str):
    """Show what the cache holds on disk and in memory."""
    manager = _open_manager(ctx, repo_path)
    try:
        report = manager.get_stats()
    finally:
        manager.close()

    file_stats = report.file
    table = Table(title="Azure DevOps cache", show_header=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Enabled", "yes" if report.enabled else "no")
    table.add_row("Directory", str(manager.file.directory))
    table.add_row("Files", str(file_stats.total_files))
    table.add_row("Expired or unreadable", str(file_stats.expired_files))
    table.add_row("Size", f"{file_stats.total_size_mb} / {file_stats.max_size_mb} MB")
    table.add_row("Accesses", str(file_stats.total_access_count))
    if file_stats.active_files:
        table.add_row("Oldest entry", f"{file_stats.oldest_file_age / 3600:.1f} h")
    console.print(table)


@cache_cmd.command("cleanup")
@_repo_path_option
@click.pass_context
def cleanup_cmd(ctx, repo_path: str):
    """Remove expired entries and enforce the size limit."""
    manager = _open_manager(ctx, repo_path)
    try:
        result = manager.cleanup()
    finally:
        manager.close()

    file_result = result.file_cleanup
    console.print(
        f"[green]Removed {file_result.expired_files_deleted} expired and "
        f"{file_result.size_constraint_files_deleted} oversize files "
        f"({file_result.bytes_freed} bytes freed).[/green]"
    )


@cache_cmd.command("clear")
@_repo_path_option
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def clear_cmd(ctx, repo_path: str, yes: bool):
    """Delete every cached entry."""
    if not yes:
        click.confirm("Delete all cached Azure DevOps data?", abort=True)
    manager = _open_manager(ctx, repo_path)
    try:
        manager.clear()
    finally:
        manager.close()
    console.print("[green]Cache cleared.[/green]")
