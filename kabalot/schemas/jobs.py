"""
Job, file and progress models shared by the scheduler, pipeline and API.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from .expense import ExpenseRecord


class JobKind(str, enum.Enum):
    UPLOAD = "upload"
    GMAIL = "gmail"


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_EMPTY = "completed_empty"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.COMPLETED_EMPTY, JobStatus.FAILED)


class FileStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED_DUPLICATE = "skipped_duplicate"

    @property
    def is_terminal(self) -> bool:
        return self not in (FileStatus.PENDING, FileStatus.PROCESSING)


@dataclass(slots=True)
class Job:
    """A unit of receipt-processing work submitted by one client session."""

    job_id: str
    kind: JobKind
    workspace: Path
    files: List[Path] = field(default_factory=list)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    mailbox: Any = None
    unlock_code: Optional[str] = None
    notify_email: Optional[str] = None
    display_name: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    download_links: List["DownloadLink"] = field(default_factory=list)


@dataclass(slots=True)
class FileRecord:
    """Progress and result tracking for one input document of a job."""

    path: Path
    display_name: str
    status: FileStatus = FileStatus.PENDING
    expense: Optional[ExpenseRecord] = None
    error: Optional[str] = None

    @classmethod
    def for_path(cls, path: Path) -> "FileRecord":
        return cls(path=path, display_name=path.name)

    def to_progress(self) -> "FileProgress":
        progress = {
            FileStatus.PENDING: 0,
            FileStatus.PROCESSING: 25,
        }.get(self.status, 100)
        summary = FileProgress(
            file_name=self.display_name,
            status=self.status,
            progress=progress,
        )
        if self.expense is not None:
            summary.business_name = self.expense.business_name or "N/A"
            summary.date = self.expense.date or "N/A"
            summary.total_price = (
                f"{self.expense.total_price:.2f}" if self.expense.total_price else "N/A"
            )
        return summary


class FileProgress(BaseModel):
    """Per-file line of a progress snapshot."""

    file_name: str
    status: FileStatus
    progress: int = Field(0, ge=0, le=100)
    business_name: Optional[str] = None
    date: Optional[str] = None
    total_price: Optional[str] = None


class DownloadLink(BaseModel):
    """Reference to a generated artifact."""

    label: str
    url: str


class ProgressSnapshot(BaseModel):
    """Full-replace status payload streamed to a subscribed client."""

    job_id: str
    state: JobStatus = JobStatus.RUNNING
    files: list[FileProgress] = Field(default_factory=list)
    status: Optional[str] = None
    progress: int = Field(0, ge=0, le=100)
    queue_position: Optional[int] = None
    download_links: list[DownloadLink] = Field(default_factory=list)


class JobSubmissionResponse(BaseModel):
    """Response returned when a job is accepted."""

    job_id: str
    queue_position: int = Field(
        0, description="Zero when the job started immediately, otherwise its place in line."
    )


class JobResults(BaseModel):
    """Download references of a finished job."""

    job_id: str
    state: JobStatus
    download_links: list[DownloadLink] = Field(default_factory=list)
    finished_at: Optional[datetime] = None


__all__ = [
    "DownloadLink",
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
