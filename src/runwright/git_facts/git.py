# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero.
        FileNotFoundError: git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def is_repo_root(path: str | Path) -> bool:
    """True if `path` is the top level of a git working tree (not merely inside one)."""
    try:
        return repo_root(cwd=path).resolve() == Path(path).resolve()
    except (subprocess.CalledProcessError, FileNotFoundError, NotADirectoryError):
        return False


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """
    Return the absolute path to the root of the Git repository containing `cwd`.

    This uses git itself as the source of truth rather than guessing based
    on filesystem layout.
    """
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Return the full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """Return the current branch name, or the HEAD SHA when detached."""
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if ref == "HEAD":
        return head_sha(cwd=cwd)
    return ref


def clone(source: str | Path, dest: str | Path, ref: Optional[str] = None) -> Path:
    """
    Clone `source` (a URL or a local repository) into `dest` and check out `ref`.

    `dest` may already exist as long as it is empty.
    """
    dest = Path(dest)
    _git(["clone", "--quiet", str(source), str(dest)])
    if ref:
        _git(["checkout", "--quiet", ref], cwd=dest)
    return dest
