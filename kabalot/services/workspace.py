"""
Per-job working directories and their timed removal.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from pathlib import Path
from typing import BinaryIO, Dict, Optional

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = frozenset({".pdf", ".jpg", ".jpeg", ".png", ".tiff", ".tif"})
MAX_FILE_BYTES = 50 * 1024 * 1024  # 50 MB
MAX_FILES_PER_JOB = 100

_ILLEGAL_CHARS = re.compile(r'[/\\?%*:|"<>\x00-\x1f\x80-\x9f]')
_RESERVED_NAMES = re.compile(r"^(con|prn|aux|nul|com[0-9]|lpt[0-9])(\..*)?$", re.IGNORECASE)
_FALLBACK_NAME = "unnamed_attachment"
_CHUNK_BYTES = 1024 * 1024


class InputValidationError(ValueError):
    """Raised when submitted input is rejected before a job is created."""


def sanitize_filename(name: str, *, fallback: str = _FALLBACK_NAME) -> str:
    """Strip characters that are unsafe in file names on common filesystems."""
    cleaned = _ILLEGAL_CHARS.sub("", name or "")
    cleaned = cleaned.rstrip(". ")
    if cleaned in {"", ".", ".."} or _RESERVED_NAMES.match(cleaned):
        return fallback
    encoded = cleaned.encode("utf-8")
    if len(encoded) > 255:
        cleaned = encoded[:255].decode("utf-8", errors="ignore")
    return cleaned


def is_allowed_upload(filename: str) -> bool:
    return Path(filename).suffix.lower() in ALLOWED_EXTENSIONS


def check_batch_size(count: int) -> None:
    if count > MAX_FILES_PER_JOB:
        raise InputValidationError(
            f"Too many files: {count} submitted, at most {MAX_FILES_PER_JOB} allowed."
        )


def save_upload(
    directory: Path,
    filename: str,
    source: BinaryIO,
    *,
    max_bytes: int = MAX_FILE_BYTES,
) -> Path:
    """Copy an uploaded stream into ``directory`` enforcing type and size limits."""
    if not is_allowed_upload(filename):
        raise InputValidationError(f"Unsupported file type: {filename}")
    name = sanitize_filename(Path(filename).name)
    stem, suffix = Path(name).stem, Path(name).suffix
    target = directory / name
    counter = 1
    while target.exists():
        target = directory / f"{stem} ({counter}){suffix}"
        counter += 1

    written = 0
    with target.open("wb") as out:
        while True:
            chunk = source.read(_CHUNK_BYTES)
            if not chunk:
                break
            written += len(chunk)
            if written > max_bytes:
                break
            out.write(chunk)
    if written > max_bytes:
        target.unlink(missing_ok=True)
        limit_mb = max_bytes // (1024 * 1024)
        raise InputValidationError(f"File {filename} exceeds the {limit_mb} MB limit.")
    return target


class JobWorkspace:
    """Allocate directories that are exclusively owned by a single job."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def create(self, job_id: str) -> Path:
        path = self.path_for(job_id)
        path.mkdir(parents=True, exist_ok=False)
        return path

    def path_for(self, job_id: str) -> Path:
        safe_id = sanitize_filename(job_id, fallback="")
        if not safe_id:
            raise ValueError(f"Invalid job id {job_id!r}")
        return self._root / safe_id

    def find_artifact(self, job_id: str, filename: str) -> Optional[Path]:
        """Locate a file by name anywhere inside the job's directory."""
        base = self.path_for(job_id)
        if not base.is_dir() or Path(filename).name != filename:
            return None
        resolved_base = base.resolve()
        for candidate in base.rglob(filename):
            if candidate.is_file() and resolved_base in candidate.resolve().parents:
                return candidate
        return None


class RetentionScheduler:
    """Delete job directories once their retention window has elapsed."""

    def __init__(self, delay_seconds: float = 3600) -> None:
        self._delay = delay_seconds
        self._pending: Dict[Path, asyncio.Task] = {}

    @property
    def pending(self) -> int:
        return len(self._pending)

    def schedule(self, path: Path, delay_seconds: Optional[float] = None) -> asyncio.Task:
        existing = self._pending.get(path)
        if existing is not None and not existing.done():
            return existing
        delay = self._delay if delay_seconds is None else delay_seconds
        task = asyncio.get_running_loop().create_task(self._remove_later(path, delay))
        self._pending[path] = task
        return task

    async def _remove_later(self, path: Path, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await asyncio.to_thread(shutil.rmtree, path)
            logger.info("Deleted folder: %s", path)
        except FileNotFoundError:
            logger.debug("Folder already removed: %s", path)
        except OSError:
            logger.exception("Error deleting folder %s", path)
        finally:
            self._pending.pop(path, None)

    async def shutdown(self) -> None:
        tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()


__all__ = [
    "ALLOWED_EXTENSIONS",
    "InputValidationError",
    "JobWorkspace",
    "MAX_FILES_PER_JOB",
    "MAX_FILE_BYTES",
    "RetentionScheduler",
    "check_batch_size",
    "is_allowed_upload",
    "save_upload",
    "sanitize_filename",
]
