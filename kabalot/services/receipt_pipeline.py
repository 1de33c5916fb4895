"""
End-to-end processing of one receipt job.

The pipeline gathers the job's input files (downloading Gmail attachments when
needed), runs them through the concurrent processor, builds the spreadsheet
and archive and publishes every step on the progress bus.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence, Set
from urllib.parse import quote

from kabalot.schemas import (
    DownloadLink,
    ExpenseRecord,
    FileRecord,
    FileStatus,
    Job,
    JobKind,
    JobStatus,
    ProgressSnapshot,
)
from kabalot.services.artifact_builder import ArtifactBuilder, BuiltArtifacts
from kabalot.services.attachment_classifier import AttachmentClassifier
from kabalot.services.dedup_cache import DedupCache
from kabalot.services.document_normalizer import DocumentNormalizer
from kabalot.services.file_processor import (
    Annotator,
    ConcurrentFileProcessor,
    EncryptionProbe,
    PdfUnlocker,
    ReceiptFileHandler,
    build_file_records,
)
from kabalot.services.pdf_security import is_pdf_encrypted
from kabalot.services.progress_bus import ProgressBus

logger = logging.getLogger(__name__)

SPREADSHEET_LABEL = "הורד קובץ אקסל"
ARCHIVE_LABEL = "הורד קבצים מעובדים (ZIP)"
COMPLETE_MESSAGE = (
    "Processing complete. Download the files below. Files will be available for 1 hour."
)
EMAIL_SUBJECT = "Your Processed Expense Files"


class Mailer(Protocol):
    @property
    def is_configured(self) -> bool:
        ...

    async def send(self, to: str, subject: str, html: str, attachments: Sequence[Path] = ()) -> None:
        ...


def download_url(base_url: str, job_id: str, filename: str) -> str:
    return f"{base_url.rstrip('/')}/api/jobs/{quote(job_id)}/download/{quote(filename)}"


def render_notification(spreadsheet_url: str, archive_url: str) -> str:
    return (
        "<p>שלום,</p>"
        "<p>קבציך עובדו בהצלחה. ניתן להוריד את הקבצים מהקישורים הבאים:</p>"
        f'<p><a href="{spreadsheet_url}">הורדת אקסל</a></p>'
        f'<p><a href="{archive_url}">הורדת קובצי ZIP</a></p>'
        "<p>הקישורים יהיו זמינים למשך שעה.</p>"
        "<p>תודה,<br>השירות שלך</p>"
    )


def merge_inputs(primary: Sequence[Path], extra: Sequence[Path]) -> List[Path]:
    """Concatenate two file lists, dropping paths already present."""
    merged: List[Path] = []
    for path in [*primary, *extra]:
        if path not in merged:
            merged.append(path)
    return merged


class ReceiptPipeline:
    """Run a job from raw inputs to downloadable artifacts."""

    def __init__(
        self,
        *,
        bus: ProgressBus,
        annotator: Annotator,
        unlocker: PdfUnlocker,
        normalizer: DocumentNormalizer,
        cache: DedupCache,
        artifacts: ArtifactBuilder,
        classifier: AttachmentClassifier,
        base_url: str,
        fallback_password: str,
        workers: int = 3,
        mailer: Optional[Mailer] = None,
        is_encrypted: EncryptionProbe = is_pdf_encrypted,
        preflight: Optional[Callable[[], None]] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._bus = bus
        self._annotator = annotator
        self._unlocker = unlocker
        self._normalizer = normalizer
        self._cache = cache
        self._artifacts = artifacts
        self._classifier = classifier
        self._base_url = base_url
        self._fallback_password = fallback_password
        self._processor = ConcurrentFileProcessor(workers)
        self._mailer = mailer
        self._is_encrypted = is_encrypted
        self._preflight = preflight
        self._today = today
        self._notifications: Set[asyncio.Task] = set()

    def _publish(self, job: Job, **fields) -> None:
        self._bus.publish(ProgressSnapshot(job_id=job.job_id, **fields))

    async def run(self, job: Job) -> JobStatus:
        self._publish(job, status="Processing started.", progress=0)
        if self._preflight is not None:
            self._preflight()

        files = await self._collect_inputs(job)
        if not files:
            message = "No files uploaded." if job.kind is JobKind.UPLOAD else "No files found to process."
            self._publish(job, state=JobStatus.COMPLETED_EMPTY, status=message, progress=100)
            return JobStatus.COMPLETED_EMPTY

        logger.info("Processing %d file(s)", len(files), extra={"job_id": job.job_id})
        records = build_file_records(files)
        await self._process(job, records)

        expenses = [
            record.expense
            for record in records
            if record.status is FileStatus.COMPLETED and record.expense is not None
        ]
        if not expenses:
            self._publish(
                job,
                state=JobStatus.COMPLETED_EMPTY,
                files=[record.to_progress() for record in records],
                status="No expenses extracted.",
                progress=100,
            )
            return JobStatus.COMPLETED_EMPTY

        self._publish(
            job,
            files=[record.to_progress() for record in records],
            status="Creating Excel file...",
            progress=80,
        )
        built = await self._build(job, expenses, files)
        links = [
            DownloadLink(
                label=SPREADSHEET_LABEL,
                url=download_url(self._base_url, job.job_id, built.spreadsheet_path.name),
            ),
            DownloadLink(
                label=ARCHIVE_LABEL,
                url=download_url(self._base_url, job.job_id, built.archive_path.name),
            ),
        ]
        job.download_links = links
        self._publish(
            job,
            state=JobStatus.COMPLETED,
            files=[record.to_progress() for record in records],
            status=COMPLETE_MESSAGE,
            progress=100,
            download_links=links,
        )
        self._notify(job, links)
        return JobStatus.COMPLETED

    async def _collect_inputs(self, job: Job) -> List[Path]:
        if job.kind is JobKind.UPLOAD:
            return list(job.files)

        self._publish(job, status="Downloading Gmail attachments...", progress=10)
        downloaded: List[Path] = []
        if job.mailbox is not None and job.start_date and job.end_date:
            downloaded = await self._classifier.classify(
                job.mailbox, job.start_date, job.end_date, job.workspace / "gmail"
            )
        logger.info(
            "Downloaded %d Gmail attachment(s)", len(downloaded), extra={"job_id": job.job_id}
        )
        return merge_inputs(downloaded, job.files)

    async def _process(self, job: Job, records: List[FileRecord]) -> None:
        def publish_files() -> None:
            done = sum(1 for record in records if record.status.is_terminal)
            self._publish(
                job,
                files=[record.to_progress() for record in records],
                progress=int(done * 100 / len(records)),
            )

        handler = ReceiptFileHandler(
            annotator=self._annotator,
            unlocker=self._unlocker,
            normalizer=self._normalizer,
            cache=self._cache,
            is_encrypted=self._is_encrypted,
            fallback_password=self._fallback_password,
            unlock_code=job.unlock_code,
            on_change=publish_files,
        )
        publish_files()
        await self._processor.process(
            records,
            handler,
            on_error=lambda index, exc: handler.fail(records[index], exc),
        )

    async def _build(
        self, job: Job, expenses: List[ExpenseRecord], files: Sequence[Path]
    ) -> BuiltArtifacts:
        if job.kind is JobKind.GMAIL and job.start_date and job.end_date:
            period_start, period_end = job.start_date, job.end_date
            name = None
        else:
            period_start = period_end = self._today()
            name = job.display_name
        return await self._artifacts.build(
            expenses, files, job.workspace, period_start, period_end, name
        )

    def _notify(self, job: Job, links: Sequence[DownloadLink]) -> None:
        if not job.notify_email or self._mailer is None:
            return
        if not self._mailer.is_configured:
            logger.warning(
                "Skipping notification e-mail, SMTP is not configured",
                extra={"job_id": job.job_id},
            )
            return
        html = render_notification(links[0].url, links[1].url)
        task = asyncio.get_running_loop().create_task(
            self._mailer.send(job.notify_email, EMAIL_SUBJECT, html)
        )
        self._notifications.add(task)
        task.add_done_callback(lambda finished: self._notification_done(job, finished))

    def _notification_done(self, job: Job, task: asyncio.Task) -> None:
        self._notifications.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Error sending email: %s", exc, extra={"job_id": job.job_id}
            )

    async def drain_notifications(self) -> None:
        """Wait for in-flight notification e-mails."""
        if self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)


__all__ = [
    "ARCHIVE_LABEL",
    "COMPLETE_MESSAGE",
    "ReceiptPipeline",
    "SPREADSHEET_LABEL",
    "download_url",
    "merge_inputs",
    "render_notification",
]
