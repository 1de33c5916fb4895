try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import asyncio
import zipfile
from datetime import date
from pathlib import Path

import pytest
from openpyxl import load_workbook

from kabalot.core.config import ClassifierSettings, MissingConfigurationError
from kabalot.schemas import FileStatus, Job, JobKind, JobStatus
from kabalot.services.artifact_builder import ArtifactBuilder
from kabalot.services.attachment_classifier import AttachmentClassifier, ClassifierPolicy
from kabalot.services.dedup_cache import DedupCache
from kabalot.services.document_normalizer import DocumentNormalizer, ExchangeRateCache
from kabalot.services.progress_bus import ProgressBus
from kabalot.services.receipt_pipeline import (
    ARCHIVE_LABEL,
    COMPLETE_MESSAGE,
    SPREADSHEET_LABEL,
    ReceiptPipeline,
    download_url,
    merge_inputs,
)

TODAY = date(2024, 6, 9)


class FixedRateProvider:
    async def get_rate(self, on: str) -> float:
        return 3.6


class StubAnnotator:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def annotate(self, path: Path) -> list[dict]:
        self.calls.append(path.name)
        return [
            {"type": "Business-Name", "mentionText": f"Vendor {path.stem}"},
            {"type": "Date", "mentionText": "2024-06-01"},
            {"type": "Total-Price", "mentionText": "₪10.00"},
        ]


class FailingUnlocker:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def unlock(self, path: Path, password: str) -> bytes:
        self.calls.append((path.name, password))
        raise RuntimeError("PDFCO_API_KEY not set")


class RecordingMailer:
    is_configured = True

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, to: str, subject: str, html: str, attachments=()) -> None:
        self.sent.append((to, subject, html))


class FakeMailbox:
    def __init__(self, attachments: dict[str, bytes]) -> None:
        self.attachments = attachments

    async def list_message_ids(self, query: str, *, page_size: int = 500) -> list[str]:
        return ["m1"] if self.attachments else []

    async def get_message(self, message_id: str) -> dict:
        parts = [
            {"filename": name, "mimeType": "application/pdf", "body": {"attachmentId": name}}
            for name in self.attachments
        ]
        return {
            "payload": {
                "headers": [
                    {"name": "From", "value": "Shop <shop@example.com>"},
                    {"name": "Subject", "value": "Your receipt"},
                ],
                "parts": parts,
            }
        }

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        return self.attachments[attachment_id]


def _pipeline(bus: ProgressBus, **overrides) -> ReceiptPipeline:
    options = dict(
        bus=bus,
        annotator=StubAnnotator(),
        unlocker=FailingUnlocker(),
        normalizer=DocumentNormalizer(
            ExchangeRateCache(FixedRateProvider()), today=lambda: TODAY
        ),
        cache=DedupCache(32),
        artifacts=ArtifactBuilder(),
        classifier=AttachmentClassifier(ClassifierPolicy.from_settings(ClassifierSettings())),
        base_url="http://testserver",
        fallback_password="fallback",
        workers=3,
        mailer=RecordingMailer(),
        is_encrypted=lambda path: path.name == "locked.pdf",
        today=lambda: TODAY,
    )
    options.update(overrides)
    return ReceiptPipeline(**options)


def _collect(bus: ProgressBus, job_id: str):
    bus.open(job_id)
    return bus.subscribe(job_id)


def _drain(subscription) -> list:
    snapshots = []
    while not subscription._queue.empty():
        item = subscription._queue.get_nowait()
        if hasattr(item, "job_id"):
            snapshots.append(item)
    return snapshots


def test_download_url_quotes_file_name() -> None:
    url = download_url("http://host/", "abc", "סיכום הוצאות-01-06-24.xlsx")
    assert url.startswith("http://host/api/jobs/abc/download/")
    assert " " not in url


def test_merge_inputs_drops_repeated_paths(tmp_path) -> None:
    a, b = tmp_path / "a.pdf", tmp_path / "b.pdf"
    assert merge_inputs([a, b], [b, a, tmp_path / "c.pdf"]) == [a, b, tmp_path / "c.pdf"]


@pytest.mark.asyncio
async def test_upload_job_with_one_failing_unlock(tmp_path) -> None:
    bus = ProgressBus()
    mailer = RecordingMailer()
    pipeline = _pipeline(bus, mailer=mailer)
    files = []
    for name in ("first.pdf", "locked.pdf", "third.jpg"):
        path = tmp_path / name
        path.write_bytes(f"content of {name}".encode("utf-8"))
        files.append(path)
    job = Job(
        job_id="job-1",
        kind=JobKind.UPLOAD,
        workspace=tmp_path,
        files=files,
        unlock_code="040404040",
        notify_email="user@example.com",
        display_name="Dana Levi",
    )
    subscription = _collect(bus, job.job_id)

    status = await pipeline.run(job)
    await pipeline.drain_notifications()

    assert status is JobStatus.COMPLETED
    snapshots = _drain(subscription)
    assert snapshots[0].status == "Processing started."
    final = snapshots[-1]
    assert final.state is JobStatus.COMPLETED
    assert final.status == COMPLETE_MESSAGE
    assert [file.status for file in final.files] == [
        FileStatus.COMPLETED,
        FileStatus.FAILED,
        FileStatus.COMPLETED,
    ]
    assert final.files[0].total_price == "10.00"
    assert [link.label for link in final.download_links] == [SPREADSHEET_LABEL, ARCHIVE_LABEL]
    assert job.download_links == final.download_links
    assert pipeline._unlocker.calls == [("locked.pdf", "040404040")]

    spreadsheets = list(tmp_path.glob("*.xlsx"))
    assert [path.name for path in spreadsheets] == [
        "סיכום הוצאות-09-06-24-to-09-06-24-Dana_Levi.xlsx"
    ]
    sheet = load_workbook(spreadsheets[0]).active
    assert [sheet.cell(row=row, column=1).value for row in (2, 3, 4)] == [
        "first.pdf",
        "third.jpg",
        "Total",
    ]
    archive = next(tmp_path.glob("processed_files_*.zip"))
    with zipfile.ZipFile(archive) as bundle:
        assert sorted(bundle.namelist()) == ["first.pdf", "locked.pdf", "third.jpg"]

    assert mailer.sent[0][0] == "user@example.com"
    assert final.download_links[0].url in mailer.sent[0][2]


@pytest.mark.asyncio
async def test_upload_job_without_files_completes_empty(tmp_path) -> None:
    bus = ProgressBus()
    job = Job(job_id="empty", kind=JobKind.UPLOAD, workspace=tmp_path)
    subscription = _collect(bus, job.job_id)

    status = await _pipeline(bus).run(job)

    assert status is JobStatus.COMPLETED_EMPTY
    final = _drain(subscription)[-1]
    assert final.status == "No files uploaded."
    assert final.state is JobStatus.COMPLETED_EMPTY
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_no_extracted_expenses_skips_artifacts(tmp_path) -> None:
    bus = ProgressBus()
    locked = tmp_path / "locked.pdf"
    locked.write_bytes(b"%PDF locked")
    job = Job(job_id="nothing", kind=JobKind.UPLOAD, workspace=tmp_path, files=[locked])
    subscription = _collect(bus, job.job_id)

    status = await _pipeline(bus).run(job)

    assert status is JobStatus.COMPLETED_EMPTY
    final = _drain(subscription)[-1]
    assert final.status == "No expenses extracted."
    assert final.state is JobStatus.COMPLETED_EMPTY
    assert final.files[0].status is FileStatus.FAILED
    assert not list(tmp_path.glob("*.xlsx"))


@pytest.mark.asyncio
async def test_gmail_job_merges_attachments_with_extra_files(tmp_path) -> None:
    bus = ProgressBus()
    extra = tmp_path / "extra.png"
    extra.write_bytes(b"png bytes")
    job = Job(
        job_id="gmail-1",
        kind=JobKind.GMAIL,
        workspace=tmp_path,
        files=[extra],
        start_date=date(2024, 5, 1),
        end_date=date(2024, 5, 31),
        mailbox=FakeMailbox({"receipt-may.pdf": b"%PDF may"}),
    )
    subscription = _collect(bus, job.job_id)
    pipeline = _pipeline(bus, mailer=None)

    status = await pipeline.run(job)

    assert status is JobStatus.COMPLETED
    snapshots = _drain(subscription)
    assert "Downloading Gmail attachments..." in [snapshot.status for snapshot in snapshots]
    assert [file.file_name for file in snapshots[-1].files] == ["receipt-may.pdf", "extra.png"]
    assert (tmp_path / "gmail" / "receipt-may.pdf").read_bytes() == b"%PDF may"
    assert (tmp_path / "סיכום הוצאות-01-05-24-to-31-05-24.xlsx").exists()


@pytest.mark.asyncio
async def test_gmail_job_without_matches_completes_empty(tmp_path) -> None:
    bus = ProgressBus()
    job = Job(
        job_id="gmail-empty",
        kind=JobKind.GMAIL,
        workspace=tmp_path,
        start_date=date(2024, 5, 1),
        end_date=date(2024, 5, 31),
        mailbox=FakeMailbox({}),
    )
    subscription = _collect(bus, job.job_id)

    status = await _pipeline(bus).run(job)

    assert status is JobStatus.COMPLETED_EMPTY
    assert _drain(subscription)[-1].status == "No files found to process."


@pytest.mark.asyncio
async def test_missing_annotator_configuration_is_fatal(tmp_path) -> None:
    def preflight() -> None:
        raise MissingConfigurationError("SERVICE_ACCOUNT_BASE64 is not set.")

    bus = ProgressBus()
    path = tmp_path / "a.pdf"
    path.write_bytes(b"%PDF")
    job = Job(job_id="misconfigured", kind=JobKind.UPLOAD, workspace=tmp_path, files=[path])
    pipeline = _pipeline(bus, preflight=preflight)

    with pytest.raises(MissingConfigurationError):
        await pipeline.run(job)
    assert pipeline._annotator.calls == []


@pytest.mark.asyncio
async def test_notification_failure_is_logged_not_raised(tmp_path, caplog) -> None:
    class BrokenMailer(RecordingMailer):
        async def send(self, to, subject, html, attachments=()) -> None:
            raise OSError("smtp down")

    bus = ProgressBus()
    path = tmp_path / "a.pdf"
    path.write_bytes(b"%PDF a")
    job = Job(
        job_id="mail-fails",
        kind=JobKind.UPLOAD,
        workspace=tmp_path,
        files=[path],
        notify_email="user@example.com",
    )
    pipeline = _pipeline(bus, mailer=BrokenMailer())

    assert await pipeline.run(job) is JobStatus.COMPLETED
    await pipeline.drain_notifications()
    await asyncio.sleep(0)
    assert "Error sending email" in caplog.text
