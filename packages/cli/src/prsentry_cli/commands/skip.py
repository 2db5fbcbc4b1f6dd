"""skip command — keep paths out of future reviews of a pull request."""

from __future__ import annotations

import asyncio

import click
from github import GithubException
from rich.console import Console

from prsentry_cli.commands.review import github_error

console = Console()


async def _update_skip_paths(state_store, paths: tuple[str, ...], undo: bool):
    state = await state_store.load()
    if undo:
        state.skip_paths.difference_update(paths)
    else:
        state.skip_paths.update(paths)
    return await state_store.save(state)


@click.command("skip")
@click.option("--repo", required=True, help="GitHub repository (owner/name).")
@click.option("--pr", "pr_number", type=int, required=True, help="Pull request number.")
@click.option("--undo", is_flag=True, help="Remove the paths from the skip list instead.")
@click.argument("paths", nargs=-1, required=True)
@click.pass_context
def skip_cmd(ctx, repo: str, pr_number: int, undo: bool, paths: tuple[str, ...]):
    """Add PATHS to (or remove them from) the pull request's skip list.

    Skipped paths are never reviewed again on this pull request, whatever
    changes are pushed to them.
    """
    from prsentry_core.errors import PersistConflictError, StateFormatError
    from prsentry_core.gh.pull_request import host_id
    from prsentry_core.state import StateStore

    state_store = StateStore(ctx.obj["store"], host_id(repo, pr_number))
    try:
        state = asyncio.run(_update_skip_paths(state_store, paths, undo))
    except StateFormatError as e:
        raise click.ClickException(str(e))
    except PersistConflictError as e:
        raise click.ClickException(f"{e} Try again.")
    except GithubException as e:
        raise github_error(e, "updating the review state")

    verb = "Removed from" if undo else "Added to"
    console.print(f"[green]{verb} the skip list of {repo}#{pr_number}:[/green] {', '.join(paths)}")
    if state.skip_paths:
        console.print(f"[dim]Now skipped: {', '.join(sorted(state.skip_paths))}[/dim]")
