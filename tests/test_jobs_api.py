try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import asyncio
import json
from datetime import date
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx
import pytest

from kabalot.core.config import ClassifierSettings
from kabalot.main import app
from kabalot.schemas import Job, JobKind, JobStatus, ProgressSnapshot
from kabalot.services import (
    ArtifactBuilder,
    AttachmentClassifier,
    ClassifierPolicy,
    DedupCache,
    DocumentNormalizer,
    ExchangeRateCache,
    JobScheduler,
    JobWorkspace,
    ProgressBus,
    ReceiptPipeline,
    RetentionScheduler,
)


class FixedRateProvider:
    async def get_rate(self, on: str) -> float:
        return 3.5


class StubAnnotator:
    async def annotate(self, path: Path) -> list[dict]:
        return [
            {"type": "Business-Name", "mentionText": "Corner Shop"},
            {"type": "Date", "mentionText": "2024-07-01"},
            {"type": "Total-Price", "mentionText": "₪25.00"},
        ]


class StubUnlocker:
    async def unlock(self, path: Path, password: str) -> bytes:
        return path.read_bytes()


class RecordingMailboxFactory:
    def __init__(self) -> None:
        self.tokens: list[str] = []

    def __call__(self, access_token: str):
        self.tokens.append(access_token)
        return EmptyMailbox()


class EmptyMailbox:
    async def list_message_ids(self, query: str, *, page_size: int = 500) -> list[str]:
        return []

    async def get_message(self, message_id: str) -> dict:  # pragma: no cover - never listed
        raise AssertionError("no messages expected")

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:  # pragma: no cover
        raise AssertionError("no attachments expected")


pytestmark = pytest.mark.anyio("asyncio")


@pytest.fixture()
def services(tmp_path):
    from kabalot import dependencies

    bus = ProgressBus()
    workspace = JobWorkspace(tmp_path / "input_files")
    pipeline = ReceiptPipeline(
        bus=bus,
        annotator=StubAnnotator(),
        unlocker=StubUnlocker(),
        normalizer=DocumentNormalizer(ExchangeRateCache(FixedRateProvider())),
        cache=DedupCache(16),
        artifacts=ArtifactBuilder(),
        classifier=AttachmentClassifier(ClassifierPolicy.from_settings(ClassifierSettings())),
        base_url="http://testserver",
        fallback_password="fallback",
        is_encrypted=lambda path: False,
    )
    scheduler = JobScheduler(pipeline.run, bus, RetentionScheduler(delay_seconds=3600))
    mailboxes = RecordingMailboxFactory()

    app.dependency_overrides.clear()
    app.dependency_overrides.update(
        {
            dependencies.get_progress_bus: lambda: bus,
            dependencies.get_job_scheduler: lambda: scheduler,
            dependencies.get_job_workspace: lambda: workspace,
            dependencies.get_mailbox_factory: lambda: mailboxes,
        }
    )

    yield bus, scheduler, workspace, mailboxes

    app.dependency_overrides.clear()


@pytest.fixture()
async def client(services):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as test_client:
        yield test_client
    _, scheduler, _, _ = services
    await scheduler.shutdown()


async def _wait_until_finished(scheduler: JobScheduler, job_id: str) -> None:
    for _ in range(200):
        job = scheduler.get_job(job_id)
        if job is not None and job.status.is_terminal:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish")


async def test_healthcheck(client):
    response = await client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["environment"]


async def test_upload_job_produces_downloadable_artifacts(services, client):
    _, scheduler, workspace, _ = services

    response = await client.post(
        "/api/jobs/upload",
        files=[
            ("files[]", ("receipt.pdf", b"%PDF receipt", "application/pdf")),
            ("files[]", ("photo.jpg", b"jpeg bytes", "image/jpeg")),
        ],
        data={"name": "Dana", "id_number": "", "email": ""},
    )

    assert response.status_code == 202
    body = response.json()
    assert body["queue_position"] == 0
    job_id = body["job_id"]
    await _wait_until_finished(scheduler, job_id)

    results = await client.get(f"/api/jobs/{job_id}/results")
    assert results.status_code == 200
    payload = results.json()
    assert payload["state"] == JobStatus.COMPLETED.value
    assert len(payload["download_links"]) == 2

    spreadsheet_url = payload["download_links"][0]["url"]
    path = urlparse(spreadsheet_url).path
    assert unquote(path).endswith("-Dana.xlsx")
    download = await client.get(path)
    assert download.status_code == 200
    assert download.content[:2] == b"PK"

    job_dir = workspace.path_for(job_id)
    assert sorted(p.name for p in job_dir.iterdir() if p.suffix in {".pdf", ".jpg"}) == [
        "photo.jpg",
        "receipt.pdf",
    ]


async def test_upload_rejects_unsupported_file_type(services, client):
    _, _, workspace, _ = services

    response = await client.post(
        "/api/jobs/upload",
        files=[("files[]", ("notes.txt", b"hello", "text/plain"))],
    )

    assert response.status_code == 400
    assert "Unsupported file type" in response.json()["detail"]
    assert list(workspace.root.iterdir()) == []


async def test_upload_without_files_completes_empty(services, client):
    _, scheduler, _, _ = services

    response = await client.post("/api/jobs/upload", data={"name": "Dana"})

    assert response.status_code == 202
    job_id = response.json()["job_id"]
    await _wait_until_finished(scheduler, job_id)
    results = await client.get(f"/api/jobs/{job_id}/results")
    assert results.json()["state"] == JobStatus.COMPLETED_EMPTY.value
    assert results.json()["download_links"] == []


async def test_gmail_job_requires_token_and_dates(client):
    missing_token = await client.post(
        "/api/jobs/gmail", data={"start_date": "2024-01-01", "end_date": "2024-01-31"}
    )
    assert missing_token.status_code == 400

    missing_dates = await client.post("/api/jobs/gmail", data={"access_token": "token"})
    assert missing_dates.status_code == 400

    reversed_range = await client.post(
        "/api/jobs/gmail",
        data={"access_token": "token", "start_date": "2024-02-01", "end_date": "2024-01-01"},
    )
    assert reversed_range.status_code == 400


async def test_gmail_job_is_accepted(services, client):
    _, scheduler, _, mailboxes = services

    response = await client.post(
        "/api/jobs/gmail",
        data={
            "access_token": "ya29.token",
            "start_date": "2024-01-01",
            "end_date": "2024-01-31",
        },
    )

    assert response.status_code == 202
    job_id = response.json()["job_id"]
    assert mailboxes.tokens == ["ya29.token"]
    job = scheduler.get_job(job_id)
    assert job.start_date == date(2024, 1, 1)
    await _wait_until_finished(scheduler, job_id)
    assert scheduler.get_job(job_id).status is JobStatus.COMPLETED_EMPTY


async def test_progress_for_unknown_job_is_404(client):
    response = await client.get("/api/jobs/does-not-exist/progress")
    assert response.status_code == 404


async def test_progress_streams_server_sent_events(services, client):
    bus, _, _, _ = services
    bus.open("streamed")

    request = asyncio.create_task(client.get("/api/jobs/streamed/progress"))
    for _ in range(200):
        if bus.subscriber_count("streamed"):
            break
        await asyncio.sleep(0.01)
    bus.publish(ProgressSnapshot(job_id="streamed", status="Processing started."))
    bus.publish(
        ProgressSnapshot(job_id="streamed", state=JobStatus.COMPLETED, progress=100)
    )
    bus.close("streamed")
    response = await request

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = [
        json.loads(chunk[len("data: "):])
        for chunk in response.text.split("\n\n")
        if chunk.startswith("data: ")
    ]
    assert [event["status"] for event in events] == ["Processing started.", None]
    assert events[-1]["state"] == "completed"


async def test_queued_job_stream_opens_with_its_position(services, client, tmp_path):
    bus, _, _, _ = services
    gate = asyncio.Event()

    async def blocking_runner(job: Job) -> JobStatus:
        await gate.wait()
        return JobStatus.COMPLETED

    scheduler = JobScheduler(blocking_runner, bus, RetentionScheduler(delay_seconds=3600))
    assert scheduler.submit(Job(job_id="first", kind=JobKind.UPLOAD, workspace=tmp_path)) == 0
    assert scheduler.submit(Job(job_id="second", kind=JobKind.UPLOAD, workspace=tmp_path)) == 1

    request = asyncio.create_task(client.get("/api/jobs/second/progress"))
    for _ in range(200):
        if bus.subscriber_count("second"):
            break
        await asyncio.sleep(0.01)
    gate.set()
    response = await request
    await scheduler.shutdown()

    events = [
        json.loads(chunk[len("data: "):])
        for chunk in response.text.split("\n\n")
        if chunk.startswith("data: ")
    ]
    assert events[0]["state"] == "queued"
    assert events[0]["queue_position"] == 1
    assert "position 1" in events[0]["status"]


async def test_download_rejects_unknown_and_traversal(services, client):
    _, _, workspace, _ = services
    workspace.create("job-9")

    missing = await client.get("/api/jobs/job-9/download/report.xlsx")
    assert missing.status_code == 404
    traversal = await client.get("/api/jobs/job-9/download/..%2F..%2Fsecret.txt")
    assert traversal.status_code == 404


async def test_results_for_unknown_job_is_404(client):
    response = await client.get("/api/jobs/nope/results")
    assert response.status_code == 404
