"""GitHub credential lookup for the prsentry CLI."""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger(__name__)

TOKEN_ENV_VARS = ("PRSENTRY_GITHUB_TOKEN", "GITHUB_TOKEN")


def _gh_cli_token() -> str | None:
    try:
        result = subprocess.run(["gh", "auth", "token"], capture_output=True, text=True, timeout=5)
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        logger.debug("gh auth token exited with %d.", result.returncode)
        return None
    return result.stdout.strip() or None


def resolve_github_token() -> str | None:
    """Return the first GitHub token found, or None.

    Environment variables win over an authenticated ``gh`` CLI session.
    """
    for name in TOKEN_ENV_VARS:
        if os.environ.get(name):
            return os.environ[name]
    token = _gh_cli_token()
    if token:
        logger.debug("Using the GitHub token from the gh CLI session.")
    return token
