"""Cleanup job: deletes the project directory of an archived conversation."""

import asyncio
import logging
import shutil
from typing import Any

from convoy.jobs.base import Job, JobContext, register
from convoy.persistence.models import JobKind, ResourceDependencies

logger = logging.getLogger(__name__)


@register
class DeleteProjectDirectoryJob(Job):
    """Remove a conversation's private working copy."""

    kind = JobKind.DELETE_PROJECT_DIRECTORY

    def __init__(
        self,
        conversation_id: int,
        project_directory: str | None,
        repository: str | None,
    ):
        self.conversation_id = conversation_id
        self.project_directory = project_directory
        self.repository = repository

    def payload(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "project_directory": self.project_directory,
            "repository": self.repository,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "DeleteProjectDirectoryJob":
        return cls(
            conversation_id=payload["conversation_id"],
            project_directory=payload.get("project_directory"),
            repository=payload.get("repository"),
        )

    def dependencies(self) -> ResourceDependencies:
        return ResourceDependencies(
            repository=self.repository,
            conversation_id=self.conversation_id,
            project_directory=self.project_directory,
        )

    async def handle(self, ctx: JobContext) -> None:
        if not self.repository:
            logger.info(f"Conversation {self.conversation_id} uses the blank repository, nothing to delete")
            return

        if not self.project_directory:
            logger.warning(f"Project directory is empty for conversation {self.conversation_id}")
            return

        target = ctx.config.resolve_path(self.project_directory).resolve()
        protected = {
            ctx.config.blank_root.resolve(),
            ctx.config.base_root.resolve(),
            ctx.config.hot_root.resolve(),
            ctx.config.repositories_root.resolve(),
            ctx.config.storage_root.resolve(),
        }
        if target in protected:
            logger.error(f"Refusing to delete shared directory {target}")
            return

        if not target.exists():
            logger.info(f"Project directory does not exist: {target}")
            return

        try:
            await asyncio.to_thread(shutil.rmtree, target)
        except OSError as e:
            logger.error(f"Failed to delete project directory {target}: {e}")
            raise
        logger.info(f"Deleted project directory {target}")
