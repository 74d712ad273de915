"""Hot-cache warm job: prepares hot/<name> for the next conversation."""

import asyncio
import logging
from typing import Any

from convoy.jobs.base import Job, JobContext, register
from convoy.persistence.models import JobKind, ResourceDependencies

logger = logging.getLogger(__name__)


@register
class WarmHotCacheJob(Job):
    """Copy a repository's base checkout into the hot cache."""

    kind = JobKind.WARM_HOT_CACHE
    tries = 3
    backoff = [60, 120, 300]

    def __init__(self, repository: str | None):
        self.repository = repository

    def payload(self) -> dict[str, Any]:
        return {"repository": self.repository}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "WarmHotCacheJob":
        return cls(payload["repository"])

    def dependencies(self) -> ResourceDependencies:
        return ResourceDependencies(repository=self.repository)

    async def handle(self, ctx: JobContext) -> None:
        if not self.repository:
            logger.debug("Blank repository has no hot cache, skipping warm")
            return
        await asyncio.to_thread(ctx.stager.ensure_hot, self.repository)
