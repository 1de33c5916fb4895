"""
Bounded-concurrency processing of the files belonging to one job.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from kabalot.schemas import ExpenseRecord, FileRecord, FileStatus
from kabalot.services.dedup_cache import DedupCache, content_hash
from kabalot.services.document_normalizer import DocumentNormalizer

logger = logging.getLogger(__name__)

FileHandler = Callable[[FileRecord, int], Awaitable[None]]
ErrorCallback = Callable[[int, BaseException], None]


class ConcurrentFileProcessor:
    """Run a per-file handler over a batch with at most ``workers`` in flight.

    Workers pull indices from a shared cursor, so every file is handled exactly
    once regardless of how the worker count relates to the batch size. A
    failing handler never aborts its siblings.
    """

    def __init__(self, workers: int = 3) -> None:
        if workers < 1:
            raise ValueError("At least one worker is required.")
        self._workers = workers

    @property
    def workers(self) -> int:
        return self._workers

    async def process(
        self,
        files: Sequence[FileRecord],
        handler: FileHandler,
        *,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        if not files:
            return
        cursor = itertools.count()

        async def _worker(worker_id: int) -> None:
            while True:
                index = next(cursor)
                if index >= len(files):
                    return
                try:
                    await handler(files[index], index)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.exception(
                        "Worker %d failed on %s", worker_id, files[index].display_name
                    )
                    if on_error is not None:
                        on_error(index, exc)

        worker_count = min(self._workers, len(files))
        await asyncio.gather(*(_worker(worker_id) for worker_id in range(worker_count)))


class Annotator(Protocol):
    async def annotate(self, path: Path) -> list[dict]:
        ...


class PdfUnlocker(Protocol):
    async def unlock(self, path: Path, password: str) -> bytes:
        ...


class EncryptionProbe(Protocol):
    def __call__(self, path: Path) -> bool:
        ...


class ReceiptFileHandler:
    """Unlock, extract, normalize and cache one receipt file.

    Safe to invoke concurrently for different files of the same batch. Each
    status transition is followed by a call to ``on_change`` so the caller can
    publish a fresh snapshot.
    """

    def __init__(
        self,
        *,
        annotator: Annotator,
        unlocker: PdfUnlocker,
        normalizer: DocumentNormalizer,
        cache: DedupCache,
        is_encrypted: EncryptionProbe,
        fallback_password: str,
        unlock_code: Optional[str] = None,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self._annotator = annotator
        self._unlocker = unlocker
        self._normalizer = normalizer
        self._cache = cache
        self._is_encrypted = is_encrypted
        self._password = unlock_code or fallback_password
        self._on_change = on_change or (lambda: None)
        self._seen_hashes: set[str] = set()

    def _transition(self, record: FileRecord, status: FileStatus) -> None:
        record.status = status
        self._on_change()

    def fail(self, record: FileRecord, error: BaseException | str) -> None:
        record.error = str(error)
        self._transition(record, FileStatus.FAILED)

    async def __call__(self, record: FileRecord, index: int) -> None:
        self._transition(record, FileStatus.PROCESSING)
        try:
            expense, duplicate = await self._extract(record)
        except Exception as exc:
            logger.warning("Processing %s failed: %s", record.display_name, exc)
            self.fail(record, exc)
            return
        record.expense = expense
        self._transition(
            record, FileStatus.SKIPPED_DUPLICATE if duplicate else FileStatus.COMPLETED
        )

    async def _extract(self, record: FileRecord) -> tuple[ExpenseRecord, bool]:
        path = record.path
        if path.suffix.lower() == ".pdf":
            encrypted = await asyncio.to_thread(self._is_encrypted, path)
            if encrypted:
                logger.info("PDF is encrypted, attempting to unlock %s", path.name)
                unlocked = await self._unlocker.unlock(path, self._password)
                await asyncio.to_thread(path.write_bytes, unlocked)
                logger.info("PDF unlocked and overwritten: %s", path.name)

        payload = await asyncio.to_thread(path.read_bytes)
        key = content_hash(payload)
        duplicate = key in self._seen_hashes
        self._seen_hashes.add(key)

        cached = self._cache.get(key)
        if cached is not None:
            logger.info("Dedup cache hit for %s", path.name)
            return cached, duplicate

        entities = await self._annotator.annotate(path)
        expense = await self._normalizer.normalize(record.display_name, entities)
        self._cache.put(key, expense)
        return expense, duplicate


def build_file_records(paths: Sequence[Path]) -> List[FileRecord]:
    return [FileRecord.for_path(path) for path in paths]


__all__ = [
    "Annotator",
    "ConcurrentFileProcessor",
    "EncryptionProbe",
    "PdfUnlocker",
    "ReceiptFileHandler",
    "build_file_records",
]
