"""
Directory Stager - keeps a pre-warmed copy of each repository ready.

Layout under the repositories root:

    base/<name>              long-lived checkout, refreshed from origin
    hot/<name>               disposable copy, moved into a project on use
    hot/<name>_temp_<id>     copy in progress, never visible as hot/<name>

The hot directory only appears through an atomic rename, so a concurrent
reader either sees nothing or a complete copy. Two warmers racing on the
same repository both copy, and the loser discards its temp directory.
"""

import logging
import os
import shutil
import time
import uuid
from pathlib import Path

from convoy.config import ConvoyConfig
from convoy.exceptions import GitCommandError, ResourceMissingError, StageFailureError
from convoy.logging import StageLogEntry, now_iso, stage_logger
from convoy.persistence.repository import ConvoyRepository
from convoy.staging.git import default_branch, run_git

logger = logging.getLogger(__name__)

BLANK_USER_NAME = "Convoy"
BLANK_USER_EMAIL = "convoy@localhost"


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class DirectoryStager:
    """
    Stages repository copies for conversations.

    Args:
        config: Convoy configuration (paths and git timeout)
        repository: Catalog used to look up and prune repository records
    """

    def __init__(self, config: ConvoyConfig, repository: ConvoyRepository):
        self.config = config
        self.repository = repository

    def _log(self, event: str, name: str, start: float | None = None, **fields) -> None:
        entry = StageLogEntry(
            timestamp=now_iso(),
            event=event,
            repository=name,
            duration_ms=_elapsed_ms(start) if start is not None else 0,
            **fields,
        )
        if fields.get("error"):
            stage_logger.warning(entry.to_json())
        else:
            stage_logger.info(entry.to_json())

    def ensure_hot(self, name: str) -> Path:
        """
        Make sure hot/<name> exists, copying it from the base checkout if not.

        Returns:
            Path of the hot directory

        Raises:
            ResourceMissingError: If the base checkout is gone (the catalog
                record is deleted as a side effect)
            StageFailureError: If the copy or the final rename fails
        """
        base = self.config.base_path(name)
        hot = self.config.hot_path(name)

        if hot.exists():
            logger.debug(f"Hot directory already present for {name}")
            return hot

        start = time.monotonic()
        self._log("start", name, base_path=str(base), hot_path=str(hot))

        if not base.is_dir():
            self.repository.delete_repository(name)
            self._log("missing_base", name, start, base_path=str(base), error="base directory missing")
            raise ResourceMissingError(
                f"Repository '{name}' not found",
                {"base_path": str(base)},
            )

        self.refresh_base(name, base)

        hot.parent.mkdir(parents=True, exist_ok=True)
        temp = hot.parent / f"{name}_temp_{uuid.uuid4().hex[:13]}"

        try:
            shutil.copytree(base, temp, symlinks=True)
        except (OSError, shutil.Error) as e:
            shutil.rmtree(temp, ignore_errors=True)
            self._log("copy_failed", name, start, temp_path=str(temp), error=str(e))
            raise StageFailureError(
                f"Failed to copy {name} into hot cache",
                {"base_path": str(base), "temp_path": str(temp), "error": str(e)},
            )
        self._log("copied", name, start, base_path=str(base), temp_path=str(temp))

        if hot.exists():
            self._discard_loser(name, temp, start)
            return hot

        try:
            os.rename(temp, hot)
        except OSError as e:
            if hot.exists():
                self._discard_loser(name, temp, start)
                return hot
            shutil.rmtree(temp, ignore_errors=True)
            self._log("rename_failed", name, start, temp_path=str(temp), hot_path=str(hot), error=str(e))
            raise StageFailureError(
                f"Failed to move {name} into hot cache",
                {"temp_path": str(temp), "hot_path": str(hot), "error": str(e)},
            )

        self._log("renamed", name, start, temp_path=str(temp), hot_path=str(hot))
        logger.info(f"Warmed hot cache for {name}")
        return hot

    def _discard_loser(self, name: str, temp: Path, start: float) -> None:
        shutil.rmtree(temp, ignore_errors=True)
        self._log("race_lost", name, start, temp_path=str(temp))
        logger.info(f"Hot directory for {name} appeared concurrently, discarded {temp.name}")

    def refresh_base(self, name: str, base: Path) -> str | None:
        """
        Best-effort sync of the base checkout with origin.

        Returns:
            The branch that was synced, or None if the refresh failed
        """
        start = time.monotonic()
        timeout = self.config.git_timeout

        # Without its own .git, commands would act on the enclosing blank repository
        if not (base / ".git").exists():
            logger.warning(f"Base of {name} is not a git checkout, copying as is")
            self._log("refresh_failed", name, start, base_path=str(base), error="not a git checkout")
            return None

        record = self.repository.get_repository(name)
        branch = (record.branch if record else None) or default_branch(base, timeout)

        try:
            run_git(["reset", "--hard"], base, timeout)
            run_git(["checkout", branch], base, timeout)
            run_git(["fetch"], base, timeout)
            run_git(["reset", "--hard", f"origin/{branch}"], base, timeout)
        except GitCommandError as e:
            logger.warning(f"Could not refresh base checkout of {name}: {e}")
            self._log("refresh_failed", name, start, base_path=str(base), branch=branch, error=str(e))
            return None

        self.repository.mark_repository_pulled(name)
        self._log("refreshed", name, start, base_path=str(base), branch=branch)
        return branch

    def bootstrap_blank_base(self) -> Path:
        """
        Create the shared working directory for blank conversations.

        Only runs when the directory does not exist yet: git init, a local
        identity, a .gitkeep and an initial commit.
        """
        root = self.config.blank_root
        if root.exists():
            return root

        timeout = self.config.git_timeout
        root.mkdir(parents=True, exist_ok=True)
        run_git(["init"], root, timeout)
        run_git(["config", "user.name", BLANK_USER_NAME], root, timeout)
        run_git(["config", "user.email", BLANK_USER_EMAIL], root, timeout)
        (root / ".gitkeep").write_text("")
        run_git(["add", ".gitkeep"], root, timeout)
        run_git(["commit", "-m", "Initial commit"], root, timeout)

        self._log("bootstrapped", "", base_path=str(root))
        logger.info(f"Bootstrapped blank repository at {root}")
        return root

    def remove_hot(self, name: str) -> bool:
        """Delete hot/<name>. Returns True if it existed."""
        hot = self.config.hot_path(name)
        if not hot.exists():
            return False
        shutil.rmtree(hot)
        self._log("removed", name, hot_path=str(hot))
        return True
