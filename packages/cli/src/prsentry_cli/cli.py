"""CLI entry point for prsentry.

Commands:
  review  — review the changes pushed to a pull request since the last run
  reply   — answer the latest message in a review thread
  skip    — add or remove paths from a pull request's do-not-re-review list
  state   — show the persisted review state of a pull request
"""

from __future__ import annotations

import importlib.metadata

import click
from rich.console import Console

from prsentry_cli.commands.reply import reply_cmd
from prsentry_cli.commands.review import review_cmd
from prsentry_cli.commands.skip import skip_cmd
from prsentry_cli.commands.state import state_cmd

console = Console()


def _build_store(config: dict):
    """Instantiate the configured marker store from .prsentry.yml settings.

    Store selection hierarchy:
      store: comment → PullRequestCommentStore (default; needs github_token)
                  store_author names the account that writes the state comment
      store: sqlite  → SQLiteStore (uses store_path or .prsentry.db)
      store: gist    → GistStore   (requires gist_id and github_token)
      store: memory  → MemoryStore (nothing persists between runs)

    This factory lives in cli.py so neither prsentry_core nor prsentry_store
    know about the CLI config format.
    """
    from prsentry_store.memory import MemoryStore

    store_type = config.get("store", "comment")
    token = config.get("github_token")

    if store_type == "comment":
        from prsentry_store.comment import PullRequestCommentStore

        if not token:
            console.print("[yellow]The comment store needs a GitHub token. Falling back to memory store.[/yellow]")
            return MemoryStore()
        return PullRequestCommentStore(token=token, author=config.get("store_author"))

    if store_type == "gist":
        from prsentry_store.gist import GistStore

        gist_id = config.get("gist_id")
        if not gist_id or not token:
            console.print("[yellow]GistStore requires gist_id and a GitHub token. Falling back to memory store.[/yellow]")
            return MemoryStore()
        return GistStore(gist_id=gist_id, token=token)

    if store_type == "sqlite":
        from prsentry_store.sqlite import SQLiteStore

        return SQLiteStore(db_path=config.get("store_path", ".prsentry.db"))

    if store_type != "memory":
        raise click.UsageError(f"Unknown store {store_type!r}. Choose comment, sqlite, gist or memory.")
    return MemoryStore()


@click.group()
@click.version_option(
    version=importlib.metadata.version("prsentry"),
    prog_name="prsentry",
)
@click.option(
    "--config",
    "config_path",
    default=".prsentry.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="PRSENTRY_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Log engine diagnostics to stderr.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """Incremental, token-budgeted AI review of GitHub pull requests."""
    import logging

    from prsentry_cli.auth import resolve_github_token
    from prsentry_core.config import load_config

    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    ctx.ensure_object(dict)

    config = load_config(config_path)

    # Resolve token early so all subcommands share the same resolution.
    token = resolve_github_token()
    if token:
        config["github_token"] = token

    store = _build_store(config)
    ctx.obj["store"] = store
    ctx.obj["config"] = config
    ctx.call_on_close(store.close)


main.add_command(review_cmd)
main.add_command(reply_cmd)
main.add_command(skip_cmd)
main.add_command(state_cmd)
