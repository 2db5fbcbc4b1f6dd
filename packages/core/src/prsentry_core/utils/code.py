"""Path filters applied to a change set before any model is invoked."""

from __future__ import annotations

import fnmatch
import posixpath
from typing import Iterable

# Assets and generated artefacts that carry no reviewable source.
_ASSET_SUFFIXES = (
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico", ".webp", ".bmp",
    ".pdf",
    ".woff", ".woff2", ".ttf", ".eot", ".otf",
    ".mp4", ".mp3", ".wav", ".ogg",
    ".zip", ".tar", ".gz", ".rar", ".7z",
    ".lock",
)


def is_code_file(path: str) -> bool:
    return not path.lower().endswith(_ASSET_SUFFIXES)


def _matches(path: str, pattern: str) -> bool:
    if fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(posixpath.basename(path), pattern):
        return True
    # A bare directory name excludes the whole tree beneath it, at any depth.
    directory = pattern.rstrip("/")
    parents = path.split("/")[:-1]
    if "/" in directory:
        return path.startswith(directory + "/")
    return directory in parents


def is_excluded(path: str, patterns: Iterable[str]) -> bool:
    """Return True if *path* matches any exclude pattern.

    Patterns are fnmatch globs tried against the full path and the basename
    (``src/generated/*.py``, ``*.min.js``), or directory names
    (``migrations``, ``docs/api/``) that exclude every file under them.
    """
    return any(_matches(path, pattern) for pattern in patterns)


def reviewable(path: str, patterns: Iterable[str]) -> bool:
    return is_code_file(path) and not is_excluded(path, patterns)
