# git.py
# Small, focused wrapper around the Git CLI.
# Workspace provisioning goes through here so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Optional


class GitError(RuntimeError):
    """Raised when a git command fails or git is not installed."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Every call runs with an explicit cwd; the process working directory is
    never changed. Prompts are disabled so an unreachable or private remote
    fails instead of blocking on credentials.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        GitError: on a non-zero exit or when git is missing
    """
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=str(cwd) if cwd is not None else None,
            env=env,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError:
        raise GitError("git command not found. Please install Git.")

    if proc.returncode != 0:
        raise GitError(
            f"git {args[0]} failed (exit={proc.returncode}): {proc.stderr.strip()}",
            stderr=proc.stderr,
        )
    return proc.stdout.strip()


def clone(url: str, dest: str | Path, ref: Optional[str] = None) -> Path:
    """
    Clone `url` into `dest` and optionally check out `ref`.

    `dest` may already exist but must be empty.

    Args:
        url: Repository URL (https, ssh, scp-like or file)
        dest: Target directory
        ref: Optional branch, tag or commit SHA

    Returns:
        Path to the checkout
    """
    if ref and ref.startswith("-"):
        raise GitError(f"refusing ref that looks like an option: {ref!r}")
    dest = Path(dest)
    _git(["clone", "--quiet", "--", url, str(dest)])
    if ref:
        # trailing "--" keeps ref from being read as a path
        _git(["checkout", "--quiet", ref, "--"], cwd=dest)
    return dest
