"""review command — run an incremental AI review on a pull request."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import click
from github import GithubException
from rich.console import Console

from prsentry_core.gh.pull_request import (
    GitHubCommentSink,
    fetch_change_set,
    get_pull,
    get_pull_requests,
    get_repo,
    host_id,
)
from prsentry_core.sink import ConsoleSink, determine_event
from prsentry_store.memory import MemoryStore

console = Console()


def require_credentials(config: dict) -> str:
    """Return the GitHub token, or raise UsageError for any missing credential."""
    token = config.get("github_token")
    if not token:
        raise click.UsageError(
            "No GitHub token found. Set GITHUB_TOKEN (or PRSENTRY_GITHUB_TOKEN) or run `gh auth login` first.\n"
            "Create a token at https://github.com/settings/tokens"
        )
    if config["provider"] == "anthropic" and not config.get("anthropic_api_key"):
        raise click.UsageError("ANTHROPIC_API_KEY environment variable is not set.")
    if config["provider"] == "openai" and not config.get("openai_api_key"):
        raise click.UsageError("OPENAI_API_KEY environment variable is not set.")
    return token


def build_review_config(config: dict):
    from prsentry_core.config import ReviewConfig

    try:
        return ReviewConfig.from_dict(config)
    except ValueError as e:
        raise click.UsageError(f"Invalid configuration: {e}")


def open_pull(repo: str, pr_number: int | None, token: str):
    this_repo = get_repo(repo, token=token)

    if pr_number is None:
        prs = list(get_pull_requests(this_repo))
        if not prs:
            console.print("[yellow]No open pull requests found.[/yellow]")
            return None
        console.print("\nOpen pull requests:")
        for pr in prs:
            console.print(f"  [bold]#{pr.number}[/bold]  {pr.title}")
        pr_number = click.prompt("\nEnter the pull request number", type=int)

    try:
        return get_pull(this_repo, pr_number)
    except GithubException:
        raise click.ClickException(f"PR #{pr_number} not found in {repo}.")


def github_error(e: GithubException, action: str) -> click.ClickException:
    message = e.data.get("message") if isinstance(e.data, dict) else e.data
    return click.ClickException(f"GitHub API error while {action} ({e.status}): {message or e}")


def seeded_memory_store(store, key: str) -> MemoryStore:
    """Copy the current record of `key` into a throwaway in-process store."""
    record = store.read_marker_record(key)
    return MemoryStore({key: record} if record else None)


@click.command("review")
@click.option("--repo", required=True, help="GitHub repository in owner/name format.")
@click.option(
    "--pr",
    "pr_number",
    type=int,
    default=None,
    help="Pull request number. Omit to list open PRs interactively.",
)
@click.option(
    "--guidelines",
    "guidelines_path",
    default=None,
    help="Path to a Markdown guidelines file. Overrides config file.",
)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompts.")
@click.option(
    "--shadow",
    "-s",
    is_flag=True,
    help="Dry-run mode: print review comments without posting or saving anything.",
)
@click.option(
    "--full-review",
    "full_review",
    is_flag=True,
    help="Review all changed files even if they were reviewed before.",
)
@click.pass_context
def review_cmd(
    ctx,
    repo: str,
    pr_number: int | None,
    guidelines_path: str | None,
    yes: bool,
    shadow: bool,
    full_review: bool,
):
    """Review the files of a pull request that changed since the last review.

    Each changed file is summarised by the light model and reviewed line by
    line by the heavy model. Files whose patch is unchanged since the last
    successful review are not sent again.

    \b
    Required environment variables:
      GITHUB_TOKEN         GitHub personal access token (or use gh CLI)
      ANTHROPIC_API_KEY    Required when provider is anthropic
      OPENAI_API_KEY       Required when provider is openai
    """
    from prsentry_core.config import load_guidelines
    from prsentry_core.errors import PersistConflictError, PromptBudgetError, StateFormatError, UnknownModelError
    from prsentry_core.orchestrator import ReviewOrchestrator, get_provider
    from prsentry_core.state import StateStore

    config = dict(ctx.obj["config"])
    store = ctx.obj["store"]
    if guidelines_path:
        config["guidelines"] = guidelines_path

    token = require_credentials(config)
    review_config = build_review_config(config)

    pr = open_pull(repo, pr_number, token)
    if pr is None:
        return
    if pr.draft and not review_config.review_draft_prs:
        console.print("[yellow]Skipping draft PR. Set review_draft_prs: true in .prsentry.yml to review drafts.[/yellow]")
        return

    key = host_id(repo, pr.number)
    try:
        change_set = fetch_change_set(pr)
    except GithubException as e:
        raise github_error(e, "fetching the pull request diff")

    # Anything that may end without posting runs against a copy of the state,
    # so declining (or a dry run) never marks files as reviewed.
    staged = shadow or not yes
    try:
        backend = seeded_memory_store(store, key) if staged else store
    except GithubException as e:
        raise github_error(e, "reading the review state")
    seeded = backend.read_marker_record(key) if staged else None
    loaded_marker = seeded.revision if seeded else None

    try:
        orchestrator = ReviewOrchestrator.build(
            review_config, get_provider(config), StateStore(backend, key), load_guidelines(config)
        )
        outcome = asyncio.run(orchestrator.run(change_set, description=pr.body or "", force_full=full_review))
    except (UnknownModelError, PromptBudgetError, StateFormatError, FileNotFoundError) as e:
        raise click.ClickException(str(e))
    except PersistConflictError as e:
        raise click.ClickException(f"{e} Nothing was posted.")
    except GithubException as e:
        raise github_error(e, "loading or saving the review state")

    for line in outcome.diagnostics:
        console.print(f"[dim]{line}[/dim]")

    if not outcome.files:
        console.print(f"[yellow]No new changes since the last review of {key}. Nothing to do.[/yellow]")
        return

    findings = len(outcome.findings)
    if shadow:
        ConsoleSink(console).deliver(outcome.operations)
        console.print(f"[bold]Shadow review complete. {findings} comment(s) would be posted.[/bold]")
        return

    if not yes:
        event = determine_event(outcome.operations)
        if not click.confirm(f"Post {findings} comment(s) as {event}?", default=False):
            return
        if outcome.saved:
            try:
                asyncio.run(StateStore(store, key).save(replace(outcome.state, revision_marker=loaded_marker)))
            except PersistConflictError as e:
                raise click.ClickException(f"{e} Nothing was posted.")
            except GithubException as e:
                raise github_error(e, "saving the review state")

    try:
        GitHubCommentSink(pr, change_set, batch_limit=config["batch_limit"]).deliver(outcome.operations)
    except GithubException as e:
        raise github_error(e, "posting the review")

    console.print(
        f"\n[green]Review posted: {len(outcome.reviewed_files)} file(s) reviewed, {findings} comment(s).[/green]"
    )
    if outcome.failed_files:
        console.print(
            f"[yellow]{len(outcome.failed_files)} file(s) could not be reviewed and will be retried on the next run: "
            f"{', '.join(outcome.failed_files)}[/yellow]"
        )
