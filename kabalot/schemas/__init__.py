"""Public schema exports."""

from .expense import ExpenseRecord
from .jobs import (
    DownloadLink,
    FileProgress,
    FileRecord,
    FileStatus,
    Job,
    JobKind,
    JobResults,
    JobStatus,
    JobSubmissionResponse,
    ProgressSnapshot,
)

__all__ = [
    "DownloadLink",
    "ExpenseRecord",
    "FileProgress",
    "FileRecord",
    "FileStatus",
    "Job",
    "JobKind",
    "JobResults",
    "JobStatus",
    "JobSubmissionResponse",
    "ProgressSnapshot",
]
