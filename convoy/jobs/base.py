"""
Job base class, shared context and the job registry.

A job is a small serializable unit of work: its payload (plain JSON) is
enough to rebuild it, and its dependency descriptor names the resources it
needs so a dead-lettered job can be judged without being reconstructed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar

from convoy.claude.supervisor import ProcessSupervisor, ProcessTable
from convoy.config import ConvoyConfig
from convoy.exceptions import ConvoyError
from convoy.persistence.cache import CacheStore
from convoy.persistence.models import JobKind, ResourceDependencies
from convoy.persistence.repository import ConvoyRepository
from convoy.sessions.storage import LocalStorage
from convoy.sessions.store import SessionStore
from convoy.staging.stager import DirectoryStager

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """Collaborators a job needs while it runs."""

    config: ConvoyConfig
    repository: ConvoyRepository
    storage: LocalStorage
    sessions: SessionStore
    stager: DirectoryStager
    supervisor: ProcessSupervisor

    @classmethod
    def create(cls, config: ConvoyConfig) -> JobContext:
        """Wire up the default collaborators for a configuration."""
        repository = ConvoyRepository(config.db_path)
        repository.initialize()
        storage = LocalStorage(config.storage_root)
        sessions = SessionStore(
            storage,
            directory=config.sessions_directory,
            lock_timeout=config.session_lock_timeout,
        )
        processes = ProcessTable(CacheStore(config.db_path), ttl=config.process_ttl)
        return cls(
            config=config,
            repository=repository,
            storage=storage,
            sessions=sessions,
            stager=DirectoryStager(config, repository),
            supervisor=ProcessSupervisor(config, sessions, processes),
        )

    def close(self) -> None:
        self.repository.close()
        self.supervisor.processes.cache.close()


class Job:
    """
    Base class for queued work.

    Subclasses set ``kind``, may override ``tries`` and ``backoff``
    (seconds to wait before attempt 2, 3, ...; the last value repeats) and
    implement ``handle``.
    """

    kind: ClassVar[JobKind]
    tries: ClassVar[int] = 1
    backoff: ClassVar[list[float]] = []

    @property
    def display_name(self) -> str:
        return type(self).__name__

    def payload(self) -> dict[str, Any]:
        raise NotImplementedError

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Job:
        raise NotImplementedError

    def dependencies(self) -> ResourceDependencies:
        return ResourceDependencies()

    def backoff_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        if not self.backoff:
            return 0.0
        index = min(attempt - 1, len(self.backoff) - 1)
        return float(self.backoff[index])

    async def handle(self, ctx: JobContext) -> None:
        raise NotImplementedError

    async def failed(self, ctx: JobContext, exc: BaseException) -> None:
        """Called once when the job gives up for good."""

    def __repr__(self) -> str:
        return f"{self.display_name}({self.payload()})"


JOB_TYPES: dict[JobKind, type[Job]] = {}


def register(job_class: type[Job]) -> type[Job]:
    """Class decorator adding a job type to the registry."""
    JOB_TYPES[job_class.kind] = job_class
    return job_class


def build_job(kind: JobKind | str, payload: dict[str, Any]) -> Job:
    """
    Rebuild a job from its stored kind and payload.

    Raises:
        ConvoyError: If the kind is unknown or the payload is incomplete
    """
    try:
        job_kind = JobKind(kind)
    except ValueError:
        raise ConvoyError(f"Unknown job kind: {kind}")

    job_class = JOB_TYPES.get(job_kind)
    if job_class is None:
        raise ConvoyError(f"No job registered for kind: {job_kind.value}")

    try:
        return job_class.from_payload(payload)
    except (KeyError, TypeError) as e:
        raise ConvoyError(
            f"Invalid payload for {job_class.__name__}",
            {"payload": payload, "error": str(e)},
        )
