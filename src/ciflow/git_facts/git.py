# git.py
# Thin wrapper around the Git CLI, used to describe the local checkout as an
# Event when the CLI is not given explicit event flags.

from __future__ import annotations

import subprocess
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Every other function in this module goes through here so git is always
    invoked the same way and returns text.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero (e.g. not a repo)
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of the HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """
    Name of the checked-out branch.

    Returns None on a detached HEAD, where `--abbrev-ref` prints "HEAD".
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def head_message(cwd: Optional[str] = None) -> str:
    """Subject line of the HEAD commit."""
    return _git(["log", "-1", "--format=%s"], cwd=cwd)


def head_author(cwd: Optional[str] = None) -> str:
    """Author name of the HEAD commit; used as the event actor."""
    return _git(["log", "-1", "--format=%an"], cwd=cwd)


def tags_at_head(cwd: Optional[str] = None) -> List[str]:
    """
    Tags pointing at HEAD, sorted by name.

    `git tag --points-at` prints one tag per line and nothing when the
    commit is untagged.
    """
    out = _git(["tag", "--points-at", "HEAD"], cwd=cwd)
    if not out:
        return []
    return sorted(out.splitlines())


def is_dirty(cwd: Optional[str] = None) -> bool:
    """True if the working tree has uncommitted (or untracked) changes."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""
