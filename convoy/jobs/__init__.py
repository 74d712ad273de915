"""
Convoy jobs: the in-process queue and the job kinds it runs.

Importing this package registers every job kind with the registry used to
rebuild dead-lettered jobs.
"""

from convoy.jobs.base import JOB_TYPES, Job, JobContext, build_job, register
from convoy.jobs.classifier import FailedJobReview, FailureClassifier, ReviewReport, Verdict
from convoy.jobs.cleanup import DeleteProjectDirectoryJob
from convoy.jobs.initialize import InitializeSessionJob
from convoy.jobs.queue import JobQueue
from convoy.jobs.send import SendMessageJob
from convoy.jobs.warm import WarmHotCacheJob

__all__ = [
    # Infrastructure
    "Job",
    "JobContext",
    "JobQueue",
    "JOB_TYPES",
    "build_job",
    "register",
    # Job kinds
    "WarmHotCacheJob",
    "InitializeSessionJob",
    "SendMessageJob",
    "DeleteProjectDirectoryJob",
    # Classification
    "FailureClassifier",
    "FailedJobReview",
    "ReviewReport",
    "Verdict",
]
