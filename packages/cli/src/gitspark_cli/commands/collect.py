"""collect command: fetch pull requests and link them to local commits."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

console = Console()

_DATE = click.DateTime(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"])


@click.command("collect")
@click.option(
    "--repo-path",
    default=".",
    show_default=True,
    type=click.Path(exists=True, file_okay=False),
    help="Local git repository.",
)
@click.option("--org", "organization", default=None, help="Azure DevOps organization (name or URL).")
@click.option("--project", default=None, help="Azure DevOps project.")
@click.option("--repository", default=None, help="Azure Repos repository name.")
@click.option("--pat", default=None, help="Personal access token (prefer AZURE_DEVOPS_PAT).")
@click.option("--since", type=_DATE, default=None, help="Only PRs created on or after this date.")
@click.option("--until", type=_DATE, default=None, help="Only PRs created before this date.")
@click.option("--days", type=click.IntRange(min=1), default=None, help="Look back this many days.")
@click.option("--no-cache", is_flag=True, help="Ignore cached results and fetch fresh data.")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help="Write results as JSON.")
@click.pass_context
def collect_cmd(
    ctx,
    repo_path: str,
    organization: str | None,
    project: str | None,
    repository: str | None,
    pat: str | None,
    since: datetime | None,
    until: datetime | None,
    days: int | None,
    no_cache: bool,
    output: str | None,
):
    """Fetch Azure DevOps pull requests and associate them with commits.

    \b
    Organization, project and repository are read from (lowest first):
      the origin remote, .gitspark.yml, AZURE_DEVOPS_* variables, flags.
    Without a PAT the Azure CLI session (`az login`) is used.
    """
    from gitspark_core.collector import CollectorOptions, PullRequestCollector
    from gitspark_core.config import ConfigLayer, resolve_config
    from gitspark_core.errors import CacheError, ClientError, ConfigurationError, ConnectivityError, GitLogError
    from gitspark_core.git.log import read_commits
    from gitspark_core.utils.dates import parse_timestamp

    from gitspark_cli.auth import with_fallback_credentials

    config_path = ctx.obj.get("config_path") if ctx.obj else None
    since = parse_timestamp(since)
    until = parse_timestamp(until)

    cli_layer = ConfigLayer(
        source="cli",
        organization=organization,
        project=project,
        repository=repository,
        personal_access_token=pat,
    )
    try:
        config = resolve_config(repo_path, cli_layer=cli_layer, config_path=config_path)
    except ConfigurationError as e:
        details = "\n".join(f"  - {err}" for err in e.errors)
        raise click.ClickException(f"{e}\n{details}" if details else str(e)) from e
    config = with_fallback_credentials(config)

    try:
        commits = read_commits(repo_path)
    except GitLogError as e:
        raise click.ClickException(str(e)) from e

    options = CollectorOptions(since=since, until=until, days=days, no_cache=no_cache, config_path=config_path)
    target = f"{config.organization}/{config.project}/{config.repository_or_default}"

    with console.status(f"Collecting pull requests for {target}...") as status:

        def progress(phase: str, current: int, total: int) -> None:
            suffix = f" ({current}/{total})" if total > 0 else ""
            status.update(f"{phase}{suffix}")

        collector = PullRequestCollector(repo_path, commits, options, progress=progress, config=config)
        try:
            collector.initialize()
            result = collector.collect_pull_request_data()
            report = collector.get_cache_stats()
        except (ConnectivityError, CacheError) as e:
            raise click.ClickException(str(e)) from e
        except ClientError as e:
            cause = f" (cause: {e.cause})" if e.cause else ""
            raise click.ClickException(
                f"Fetching pull requests for {target} failed at {e.url or '-'}: {e}{cause}"
            ) from e
        finally:
            collector.close()

    _print_records(result.records, from_cache=result.from_cache)
    if result.failures:
        console.print(f"[yellow]{len(result.failures)} pull request(s) could not be processed.[/yellow]")
        for failure in result.failures:
            console.print(f"  [dim]{failure}[/dim]")
    if report is not None:
        _print_cache_summary(report)

    if output:
        document = {
            "pullRequests": [r.to_dict() for r in result.records],
            "cache": report.to_dict() if report is not None else None,
            "failures": [{"prId": f.pr_id, "title": f.title, "error": str(f.cause)} for f in result.failures],
        }
        Path(output).write_text(json.dumps(document, indent=2), encoding="utf-8")
        console.print(f"[green]Wrote {len(result.records)} pull requests to {output}[/green]")


def _print_records(records, from_cache: bool) -> None:
    source = " (from cache)" if from_cache else ""
    if not records:
        console.print(f"[yellow]No pull requests found{source}.[/yellow]")
        return

    table = Table(title=f"Pull requests{source}", show_header=True)
    table.add_column("PR", justify="right", style="bold")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Commits", justify="right")
    table.add_column("Method")
    table.add_column("Confidence", justify="right")

    for record in sorted(records, key=lambda r: r.pull_request.id):
        pr = record.pull_request
        best = record.best_association
        table.add_row(
            str(pr.id),
            pr.title,
            pr.status.value,
            str(len(record.associations)),
            best.method.value if best else "-",
            f"{best.confidence:.2f}" if best else "-",
        )
    console.print(table)


def _print_cache_summary(report) -> None:
    stats = report.manager
    console.print(
        f"Cache: {'enabled' if report.enabled else 'disabled'}, "
        f"hit rate {stats.hit_rate() * 100:.0f}% over {stats.total_requests} lookups, "
        f"{report.file.total_files} files ({report.file.total_size_mb} MB)"
    )
