"""state command — show what prsentry remembers about a pull request."""

from __future__ import annotations

import asyncio

import click
from github import GithubException
from rich.console import Console

from prsentry_cli.commands.review import github_error
from rich.table import Table

console = Console()


@click.command("state")
@click.option("--repo", required=True, help="GitHub repository (owner/name).")
@click.option("--pr", "pr_number", type=int, required=True, help="Pull request number.")
@click.pass_context
def state_cmd(ctx, repo: str, pr_number: int):
    """Show the persisted review state of a pull request."""
    from prsentry_core.errors import StateFormatError
    from prsentry_core.gh.pull_request import host_id
    from prsentry_core.state import StateStore

    key = host_id(repo, pr_number)
    try:
        state = asyncio.run(StateStore(ctx.obj["store"], key).load())
    except StateFormatError as e:
        raise click.ClickException(str(e))
    except GithubException as e:
        raise github_error(e, "reading the review state")

    if state.revision_marker is None:
        console.print(f"[yellow]No review state stored for {key}.[/yellow]")
        return

    console.print(f"\n[bold]Review state for [cyan]{key}[/cyan][/bold]")
    console.print(f"  Last reviewed revision: {(state.last_revision or '-')[:12]}")
    console.print(f"  Record revision:        {state.revision_marker}")
    if state.skip_paths:
        console.print(f"  Skipped paths:          {', '.join(sorted(state.skip_paths))}")
    if state.overall_summary:
        console.print(f"\n{state.overall_summary}")

    if not state.files:
        return
    table = Table(title="Reviewed Files", show_header=True)
    table.add_column("File")
    table.add_column("Fingerprint", style="dim")
    table.add_column("Partial", justify="center")
    table.add_column("Summary")
    for path, entry in sorted(state.files.items()):
        table.add_row(
            path,
            entry.fingerprint.split(":", 1)[-1][:12],
            "[yellow]yes[/yellow]" if entry.partial else "",
            entry.summary,
        )
    console.print(table)
