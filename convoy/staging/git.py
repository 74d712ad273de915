"""
Git command boundary.

Every git invocation in Convoy goes through run_git so failures surface as
GitCommandError regardless of whether git exited non-zero, timed out or
could not be started at all.
"""

import logging
import subprocess
from pathlib import Path

from convoy.exceptions import GitCommandError

logger = logging.getLogger(__name__)

FALLBACK_BRANCH = "main"
ORIGIN_HEAD_PREFIX = "refs/remotes/origin/"


def run_git(
    args: list[str],
    cwd: Path | str,
    timeout: int = 60,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """
    Run a git command in a working directory.

    Args:
        args: Arguments after ``git``
        cwd: Working directory
        timeout: Seconds before the command is abandoned
        check: Raise on non-zero exit

    Raises:
        GitCommandError: If git is missing, times out, or (with check) fails
    """
    cmd = ["git"] + args

    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (FileNotFoundError, NotADirectoryError) as e:
        # Missing git binary or missing working directory
        raise GitCommandError(f"Could not run git in {cwd}: {e}", command=cmd)
    except subprocess.TimeoutExpired:
        raise GitCommandError(f"git command timed out after {timeout}s", command=cmd)

    if check and result.returncode != 0:
        raise GitCommandError(
            f"git {args[0] if args else ''} failed",
            command=cmd,
            exit_code=result.returncode,
            stderr=result.stderr.strip(),
        )

    return result


def default_branch(repo_path: Path | str, timeout: int = 60) -> str:
    """
    Discover the default branch of a checkout.

    Tries the remote HEAD, then the current branch, then falls back to main.
    """
    try:
        result = run_git(["symbolic-ref", ORIGIN_HEAD_PREFIX + "HEAD"], repo_path, timeout)
        ref = result.stdout.strip()
        if ref:
            return ref.removeprefix(ORIGIN_HEAD_PREFIX)
    except GitCommandError:
        pass

    try:
        result = run_git(["rev-parse", "--abbrev-ref", "HEAD"], repo_path, timeout)
        branch = result.stdout.strip()
        if branch and branch != "HEAD":
            return branch
    except GitCommandError:
        pass

    logger.debug(f"No branch discovered for {repo_path}, using {FALLBACK_BRANCH}")
    return FALLBACK_BRANCH
