"""
FastAPI routes for the receipt ingestion service.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from datetime import date
from http import HTTPStatus
from pathlib import Path
from typing import Annotated, Any, AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse, StreamingResponse

from kabalot.core.config import AppSettings
from kabalot.dependencies import (
    SettingsDependency,
    get_job_scheduler,
    get_job_workspace,
    get_mailbox_factory,
    get_progress_bus,
)
from kabalot.schemas import (
    Job,
    JobKind,
    JobResults,
    JobSubmissionResponse,
    ProgressSnapshot,
)
from kabalot.services.progress_bus import Subscription
from kabalot.services.workspace import (
    InputValidationError,
    check_batch_size,
    save_upload,
)

router = APIRouter()
logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 30.0


@router.get("/health", status_code=HTTPStatus.OK)
async def healthcheck(settings: AppSettings = SettingsDependency) -> dict:
    """Simple health endpoint for monitoring."""
    return {"status": "ok", "environment": settings.environment}


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _parse_date(raw: Optional[str], field: str) -> date:
    if not raw or not raw.strip():
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST,
            detail="Start date and end date are required.",
        )
    try:
        return date.fromisoformat(raw.strip())
    except ValueError as exc:
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST,
            detail=f"Invalid {field}; expected YYYY-MM-DD.",
        ) from exc


async def _store_uploads(directory: Path, uploads: List[UploadFile]) -> List[Path]:
    stored: List[Path] = []
    for upload in uploads:
        try:
            if not upload.filename:
                continue
            path = await asyncio.to_thread(save_upload, directory, upload.filename, upload.file)
            stored.append(path)
        finally:
            await upload.close()
    return stored


async def _create_job(
    *,
    kind: JobKind,
    workspace: Any,
    uploads: List[UploadFile],
    **fields: Any,
) -> Job:
    """Allocate a workspace and persist uploads, rejecting invalid input with 400."""
    job_id = uuid.uuid4().hex
    directory = workspace.create(job_id)
    try:
        check_batch_size(len(uploads))
        files = await _store_uploads(directory, uploads)
    except InputValidationError as exc:
        await asyncio.to_thread(shutil.rmtree, directory, True)
        raise HTTPException(status_code=HTTPStatus.BAD_REQUEST, detail=str(exc)) from exc
    return Job(job_id=job_id, kind=kind, workspace=directory, files=files, **fields)


@router.post(
    "/jobs/upload",
    response_model=JobSubmissionResponse,
    status_code=HTTPStatus.ACCEPTED,
)
async def submit_upload_job(
    scheduler: Annotated[Any, Depends(get_job_scheduler)],
    workspace: Annotated[Any, Depends(get_job_workspace)],
    files: Annotated[Optional[List[UploadFile]], File(alias="files[]")] = None,
    name: Annotated[Optional[str], Form()] = None,
    id_number: Annotated[Optional[str], Form()] = None,
    email: Annotated[Optional[str], Form()] = None,
) -> JobSubmissionResponse:
    """Accept receipt files for processing."""
    job = await _create_job(
        kind=JobKind.UPLOAD,
        workspace=workspace,
        uploads=files or [],
        display_name=_blank_to_none(name),
        unlock_code=_blank_to_none(id_number),
        notify_email=_blank_to_none(email),
    )
    position = scheduler.submit(job)
    logger.info(
        "Accepted upload job with %d file(s)", len(job.files), extra={"job_id": job.job_id}
    )
    return JobSubmissionResponse(job_id=job.job_id, queue_position=position)


@router.post(
    "/jobs/gmail",
    response_model=JobSubmissionResponse,
    status_code=HTTPStatus.ACCEPTED,
)
async def submit_gmail_job(
    scheduler: Annotated[Any, Depends(get_job_scheduler)],
    workspace: Annotated[Any, Depends(get_job_workspace)],
    mailbox_factory: Annotated[Any, Depends(get_mailbox_factory)],
    access_token: Annotated[Optional[str], Form()] = None,
    start_date: Annotated[Optional[str], Form()] = None,
    end_date: Annotated[Optional[str], Form()] = None,
    additional_files: Annotated[
        Optional[List[UploadFile]], File(alias="additional_files[]")
    ] = None,
    id_number: Annotated[Optional[str], Form()] = None,
    email: Annotated[Optional[str], Form()] = None,
) -> JobSubmissionResponse:
    """Accept a Gmail date range (plus optional extra files) for processing."""
    token = _blank_to_none(access_token)
    if token is None:
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST,
            detail="A Gmail access token is required.",
        )
    start = _parse_date(start_date, "start date")
    end = _parse_date(end_date, "end date")
    if start > end:
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST,
            detail="Start date must not be after end date.",
        )

    job = await _create_job(
        kind=JobKind.GMAIL,
        workspace=workspace,
        uploads=additional_files or [],
        start_date=start,
        end_date=end,
        mailbox=mailbox_factory(token),
        unlock_code=_blank_to_none(id_number),
        notify_email=_blank_to_none(email),
    )
    position = scheduler.submit(job)
    logger.info(
        "Accepted Gmail job for %s..%s", start, end, extra={"job_id": job.job_id}
    )
    return JobSubmissionResponse(job_id=job.job_id, queue_position=position)


async def _event_stream(
    subscription: Subscription,
    heartbeat_seconds: float,
    current: Optional[ProgressSnapshot] = None,
) -> AsyncIterator[str]:
    async with subscription:
        if current is not None:
            yield f"data: {current.model_dump_json()}\n\n"
        while True:
            try:
                snapshot = await subscription.next(timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield ":\n\n"
                continue
            if snapshot is None:
                return
            yield f"data: {snapshot.model_dump_json()}\n\n"


@router.get("/jobs/{job_id}/progress")
async def stream_progress(
    job_id: str,
    bus: Annotated[Any, Depends(get_progress_bus)],
) -> StreamingResponse:
    """Stream progress snapshots as server-sent events until the job finishes."""
    subscription = bus.subscribe(job_id)
    # no await between subscribe and latest
    current = bus.latest(job_id)
    if subscription is None:
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND,
            detail="No progress available for this job.",
        )
    return StreamingResponse(
        _event_stream(subscription, HEARTBEAT_SECONDS, current),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/jobs/{job_id}/download/{filename}")
async def download_artifact(
    job_id: str,
    filename: str,
    workspace: Annotated[Any, Depends(get_job_workspace)],
) -> FileResponse:
    """Serve a generated spreadsheet or archive while the job is retained."""
    try:
        path = workspace.find_artifact(job_id, filename)
    except ValueError:
        path = None
    if path is None:
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail="File not found.")
    return FileResponse(path, filename=path.name)


@router.get("/jobs/{job_id}/results", response_model=JobResults)
async def job_results(
    job_id: str,
    scheduler: Annotated[Any, Depends(get_job_scheduler)],
) -> JobResults:
    """Return the download links of a job's last run."""
    job = scheduler.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail="Unknown job.")
    return JobResults(
        job_id=job.job_id,
        state=job.status,
        download_links=job.download_links,
        finished_at=job.finished_at,
    )
