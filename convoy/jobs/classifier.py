"""
Failure Classifier - decides whether a dead-lettered job can run again.

A job is retriable when the resources it depends on still exist. The
decision reads only the dependency descriptor stored alongside the job,
never the job itself, so it works even when the payload no longer builds.

Jobs of unknown kind fall back to scanning the exception text for
phrases that mean the failure will repeat.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from convoy.config import ConvoyConfig
from convoy.exceptions import ConvoyError
from convoy.jobs.base import build_job
from convoy.jobs.initialize import InitializeSessionJob
from convoy.jobs.queue import JobQueue
from convoy.jobs.send import SendMessageJob
from convoy.persistence.models import FailedJob, JobKind
from convoy.persistence.repository import ConvoyRepository

logger = logging.getLogger(__name__)

PERMANENT_FAILURE_PHRASES = (
    "does not exist",
    "not found",
    "permission denied",
    "access denied",
    "invalid credentials",
)


@dataclass
class Verdict:
    """Classification of one failed job."""

    retriable: bool
    reason: str = ""


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return "Unknown error"


class FailureClassifier:
    """
    Classifies failed jobs by job kind.

    Args:
        config: Path layout used to check for base and project directories
        repository: Catalog used to check that conversations still exist
    """

    def __init__(self, config: ConvoyConfig, repository: ConvoyRepository):
        self.config = config
        self.repository = repository
        self._rules: dict[JobKind, Callable[[FailedJob], Verdict]] = {
            JobKind.WARM_HOT_CACHE: self._classify_warm,
            JobKind.INITIALIZE_SESSION: self._classify_initialize,
            JobKind.SEND_MESSAGE: self._classify_send,
        }

    def classify(self, job: FailedJob) -> Verdict:
        rule = self._rules.get(job.kind) if job.kind else None
        if rule is None:
            return self._classify_by_exception(job)
        return rule(job)

    def _base_exists(self, name: str) -> bool:
        return self.config.base_path(name).exists()

    def _missing_repository(self, name: str) -> Verdict:
        return Verdict(False, f"Repository '{name}' not found in filesystem")

    def _classify_warm(self, job: FailedJob) -> Verdict:
        name = job.dependencies.repository
        if not name:
            return Verdict(False, "Job has no repository to warm")
        if not self._base_exists(name):
            return self._missing_repository(name)
        return Verdict(True)

    def _classify_initialize(self, job: FailedJob) -> Verdict:
        name = job.dependencies.repository
        if not name or self._base_exists(name):
            return Verdict(True)
        return self._missing_repository(name)

    def _classify_send(self, job: FailedJob) -> Verdict:
        deps = job.dependencies
        if deps.conversation_id is None or not self.repository.conversation_exists(deps.conversation_id):
            return Verdict(False, f"Conversation {deps.conversation_id} no longer exists")

        if deps.project_directory:
            if not self.config.resolve_path(deps.project_directory).exists():
                return Verdict(False, f"Project directory not found: {deps.project_directory}")
        return Verdict(True)

    def _classify_by_exception(self, job: FailedJob) -> Verdict:
        text = job.exception.lower()
        for phrase in PERMANENT_FAILURE_PHRASES:
            if phrase in text:
                return Verdict(False, _first_line(job.exception))
        return Verdict(True)


@dataclass
class ReviewReport:
    """What a review pass found and did."""

    dry_run: bool = False
    retriable: list[tuple[FailedJob, Verdict]] = field(default_factory=list)
    unretriable: list[tuple[FailedJob, Verdict]] = field(default_factory=list)
    retried: list[int] = field(default_factory=list)
    removed: list[int] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.retriable) + len(self.unretriable)


class FailedJobReview:
    """
    Operator flow over the dead-letter table.

    Retriable jobs are rebuilt from their kind and payload and dispatched
    again; with ``clean`` the unretriable ones are deleted. ``confirm`` is
    asked before each bulk action and defaults to yes.
    """

    def __init__(
        self,
        classifier: FailureClassifier,
        repository: ConvoyRepository,
        queue: JobQueue,
    ):
        self.classifier = classifier
        self.repository = repository
        self.queue = queue

    def review(
        self,
        dry_run: bool = False,
        clean: bool = False,
        confirm: Callable[[str, bool], bool] | None = None,
    ) -> ReviewReport:
        """
        Classify every failed job and act on the result.

        Must be called from a running event loop unless ``dry_run`` is set,
        since retried jobs are dispatched to the queue.
        """
        ask = confirm or (lambda _question, _default: True)
        report = ReviewReport(dry_run=dry_run)

        for job in self.repository.list_failed_jobs():
            verdict = self.classifier.classify(job)
            if verdict.retriable:
                report.retriable.append((job, verdict))
            else:
                report.unretriable.append((job, verdict))
                logger.info(f"Cannot retry {job.display_name} ({job.id}): {verdict.reason}")

        if dry_run:
            return report

        if report.retriable and ask(f"Retry {len(report.retriable)} job(s)?", True):
            for job, _ in report.retriable:
                self._retry(job, report)

        if clean and report.unretriable and ask(
            f"Remove {len(report.unretriable)} unretriable job(s)?", False
        ):
            for job, _ in report.unretriable:
                self.repository.delete_failed_job(job.id)  # type: ignore[arg-type]
                report.removed.append(job.id)  # type: ignore[arg-type]

        return report

    def _retry(self, failed: FailedJob, report: ReviewReport) -> None:
        try:
            job = build_job(failed.kind or failed.display_name, failed.payload)
        except ConvoyError as e:
            report.errors[failed.id] = e.message  # type: ignore[index]
            logger.warning(f"Could not rebuild failed job {failed.id}: {e}")
            return

        self.repository.delete_failed_job(failed.id)  # type: ignore[arg-type]

        if isinstance(job, (InitializeSessionJob, SendMessageJob)):
            # The failure handler cleared the flag, so the send step would skip
            self.repository.update_conversation(
                job.conversation_id, is_processing=True, error_message=None
            )

        if isinstance(job, InitializeSessionJob):
            self.queue.dispatch_chain(
                [
                    job,
                    SendMessageJob(
                        job.conversation_id, job.message, job.repository, job.project_directory
                    ),
                ]
            )
        else:
            self.queue.dispatch(job)
        report.retried.append(failed.id)  # type: ignore[arg-type]
        logger.info(f"Retried {failed.display_name} ({failed.id})")
