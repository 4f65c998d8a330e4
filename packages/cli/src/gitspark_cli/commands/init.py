"""init command: write the azure_devops section of .gitspark.yml.

Organization, project and repository are detected from the origin remote
when it points at Azure Repos; anything missing is prompted for. Tokens are
never written to the file, they belong in AZURE_DEVOPS_PAT or the Azure CLI
session.
"""

from __future__ import annotations

from pathlib import Path

import click
import yaml
from rich.console import Console

from gitspark_core.config import CONFIG_FILENAME, CONFIG_SECTION, detect_remote_layer

console = Console()


@click.command("init")
@click.option(
    "--repo-path",
    default=".",
    show_default=True,
    type=click.Path(exists=True, file_okay=False),
    help="Repository to configure.",
)
@click.option("--enable-cache/--disable-cache", default=True, show_default=True, help="Cache API responses.")
def init_cmd(repo_path: str, enable_cache: bool):
    """Set up Azure DevOps pull request collection for this repository."""
    console.print("\n[bold cyan]gitspark init[/bold cyan]: Azure DevOps setup\n")

    detected = detect_remote_layer(repo_path)
    if detected:
        console.print(
            f"[dim]Detected {detected.organization}/{detected.project}/{detected.repository} from git remote[/dim]"
        )
        organization, project, repository = detected.organization, detected.project, detected.repository
    else:
        organization = click.prompt("Azure DevOps organization (name or URL)")
        project = click.prompt("Project")
        repository = click.prompt("Repository (blank for the project default)", default="", show_default=False)

    section: dict = {"organization": organization, "project": project}
    if repository:
        section["repository"] = repository
    if detected and detected.base_url and detected.base_url != "https://dev.azure.com":
        section["api"] = {"base_url": detected.base_url}
    section["cache"] = {"enabled": enable_cache}

    path = Path(repo_path) / CONFIG_FILENAME
    _write_config(path, section)
    console.print(f"[green]Wrote {CONFIG_SECTION} settings to {path}[/green]")
    console.print(
        "\n[yellow]Authenticate with [bold]AZURE_DEVOPS_PAT[/bold] (Code: Read scope) "
        "or sign in with [bold]az login[/bold].[/yellow]"
    )
    console.print("Collect with: [bold]gitspark collect[/bold]")


def _write_config(path: Path, section: dict) -> None:
    """Write or update the azure_devops section, preserving every other key."""
    existing: dict = {}
    if path.exists():
        existing = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    current = existing.get(CONFIG_SECTION) or {}
    current.update(section)
    if current.pop("personal_access_token", None) is not None:
        console.print(
            f"[yellow]Removed personal_access_token from {path}. "
            "Set it in the AZURE_DEVOPS_PAT environment variable instead.[/yellow]"
        )
    existing[CONFIG_SECTION] = current
    path.write_text(yaml.dump(existing, default_flow_style=False, sort_keys=False), encoding="utf-8")
