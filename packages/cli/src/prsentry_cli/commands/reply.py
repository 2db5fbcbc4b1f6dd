"""reply command — answer the latest message in a review thread."""

from __future__ import annotations

import asyncio

import click
from github import GithubException
from rich.console import Console

from prsentry_cli.commands.review import build_review_config, github_error, open_pull, require_credentials
from prsentry_core.gh.pull_request import GitHubCommentSink, fetch_change_set, fetch_thread, host_id
from prsentry_core.sink import ConsoleSink

console = Console()


@click.command("reply")
@click.option("--repo", required=True, help="GitHub repository in owner/name format.")
@click.option("--pr", "pr_number", type=int, required=True, help="Pull request number.")
@click.option("--comment-id", type=int, required=True, help="Id of any review comment in the thread.")
@click.option("--shadow", "-s", is_flag=True, help="Print the reply instead of posting it.")
@click.pass_context
def reply_cmd(ctx, repo: str, pr_number: int, comment_id: int, shadow: bool):
    """Continue a review thread with the heavy model.

    The whole thread is replayed as the conversation, together with the diff
    hunk the thread is anchored to. Nothing is posted when the newest message
    in the thread is already a prsentry reply.
    """
    from prsentry_core.config import load_guidelines
    from prsentry_core.errors import PromptBudgetError, UnknownModelError
    from prsentry_core.orchestrator import ReviewOrchestrator, get_provider
    from prsentry_core.state import StateStore

    config = ctx.obj["config"]
    token = require_credentials(config)
    review_config = build_review_config(config)

    pr = open_pull(repo, pr_number, token)
    try:
        transcript = fetch_thread(pr, comment_id)
    except ValueError as e:
        raise click.ClickException(str(e))
    except GithubException as e:
        raise github_error(e, "reading the review thread")
    if not transcript.awaiting_reply:
        console.print("[yellow]The last message in this thread is already a reply. Nothing to do.[/yellow]")
        return

    try:
        change_set = fetch_change_set(pr)
    except GithubException as e:
        raise github_error(e, "fetching the pull request diff")
    orchestrator = ReviewOrchestrator.build(
        review_config, get_provider(config), StateStore(ctx.obj["store"], host_id(repo, pr_number)), load_guidelines(config)
    )
    try:
        outcome = asyncio.run(orchestrator.reply(transcript, change_set))
    except (UnknownModelError, PromptBudgetError) as e:
        raise click.ClickException(str(e))

    if outcome.operation is None:
        error = outcome.result.error if outcome.result else "no reply produced"
        raise click.ClickException(f"Could not generate a reply: {error}")

    sink = ConsoleSink(console) if shadow else GitHubCommentSink(pr, change_set)
    try:
        sink.deliver([outcome.operation])
    except GithubException as e:
        raise github_error(e, "posting the reply")
    if not shadow:
        console.print(f"[green]Reply posted to thread #{transcript.thread_id}.[/green]")
