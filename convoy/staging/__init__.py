"""Repository staging: git boundary, hot-cache stager and diff capture."""

from convoy.staging.diff import capture_diff, read_diff
from convoy.staging.git import default_branch, run_git
from convoy.staging.stager import DirectoryStager

__all__ = [
    "DirectoryStager",
    "capture_diff",
    "read_diff",
    "default_branch",
    "run_git",
]
