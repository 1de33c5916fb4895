"""PDF.co client for removing passwords from protected PDFs."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import httpx

from kabalot.core.config import PdfUnlockSettings

logger = logging.getLogger(__name__)


class PdfUnlockError(RuntimeError):
    """Raised when a protected PDF could not be unlocked."""


class PdfUnlockClient:
    """Upload a protected PDF, strip its password and download the result."""

    def __init__(
        self,
        settings: PdfUnlockSettings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._http = http_client

    @property
    def fallback_password(self) -> str:
        return self._settings.fallback_password

    async def unlock(self, path: Path, password: str) -> bytes:
        """Return the decrypted bytes of ``path``."""
        if not self._settings.api_key:
            raise PdfUnlockError("PDFCO_API_KEY not set")

        if self._http is not None:
            return await self._unlock(self._http, path, password)
        async with httpx.AsyncClient(timeout=60.0) as client:
            return await self._unlock(client, path, password)

    async def _unlock(self, client: httpx.AsyncClient, path: Path, password: str) -> bytes:
        headers = {"x-api-key": self._settings.api_key or ""}
        base_url = self._settings.base_url.rstrip("/")
        content = await asyncio.to_thread(path.read_bytes)

        try:
            upload = await client.post(
                f"{base_url}/file/upload",
                headers=headers,
                files={"file": (path.name, content, "application/pdf")},
            )
            upload.raise_for_status()
            uploaded_url = upload.json().get("url")
            if not uploaded_url:
                raise PdfUnlockError(f"Error uploading PDF: {upload.text}")

            unlocked_name = f"{path.stem}_unlocked{path.suffix}"
            removal = await client.post(
                f"{base_url}/pdf/security/remove",
                headers=headers,
                json={"url": uploaded_url, "password": password, "name": unlocked_name},
            )
            removal.raise_for_status()
            body = removal.json()
            if body.get("error") or not body.get("url"):
                raise PdfUnlockError(f"Error unlocking PDF: {body.get('message') or body}")

            download = await client.get(body["url"])
            download.raise_for_status()
        except httpx.HTTPError as exc:
            raise PdfUnlockError(f"Unlock request failed for {path.name}: {exc}") from exc

        logger.info("PDF unlocked successfully: %s", path.name)
        return download.content


__all__ = ["PdfUnlockClient", "PdfUnlockError"]
