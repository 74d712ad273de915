"""
Diff capture for project directories.

After each exchange the changes a conversation made relative to the
default branch are stored in ``.git/project.diff`` inside the project, so
they can be shown without running git again.
"""

import logging
from pathlib import Path

from convoy.exceptions import GitCommandError
from convoy.staging.git import default_branch, run_git

logger = logging.getLogger(__name__)

DIFF_FILENAME = "project.diff"


def diff_path(project_path: Path | str) -> Path:
    return Path(project_path) / ".git" / DIFF_FILENAME


def capture_diff(project_path: Path | str, timeout: int = 60) -> Path | None:
    """
    Write the project's diff against origin/<default branch>.

    Never raises: capture is best effort.

    Returns:
        Path of the written diff, or None if nothing was written
    """
    project = Path(project_path)
    if not (project / ".git").is_dir():
        logger.debug(f"No git directory in {project}, skipping diff")
        return None

    target = diff_path(project)
    try:
        branch = default_branch(project, timeout)
        result = run_git(
            ["diff", "--no-ext-diff", "--no-color", f"origin/{branch}...HEAD"],
            project,
            timeout,
        )
        target.write_text(result.stdout)
        if not result.stdout.strip():
            target.unlink(missing_ok=True)
            return None
    except (GitCommandError, OSError) as e:
        logger.warning(f"Failed to capture diff for {project}: {e}")
        return None

    logger.debug(f"Captured diff for {project} ({len(result.stdout)} chars)")
    return target


def read_diff(project_path: Path | str) -> str:
    """Return the stored diff, or an empty string if there is none."""
    target = diff_path(project_path)
    if not target.exists():
        return ""
    return target.read_text()
