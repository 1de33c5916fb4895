"""Google Document AI client used as the receipt annotator."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from kabalot.core.config import DocumentAISettings, MissingConfigurationError
from kabalot.utils.http import RetryConfig, request_with_retry

logger = logging.getLogger(__name__)

SCOPES = ("https://www.googleapis.com/auth/cloud-platform",)

_MIME_TYPES = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".tiff": "image/tiff",
    ".tif": "image/tiff",
}


class AnnotatorError(RuntimeError):
    """Raised when Document AI cannot process a document."""


def mime_type_for(path: Path) -> str:
    return _MIME_TYPES.get(path.suffix.lower(), "application/pdf")


def load_service_account_credentials(
    encoded: Optional[str],
) -> service_account.Credentials:
    """Decode a base64 service account JSON into scoped credentials."""
    if not encoded:
        raise MissingConfigurationError("SERVICE_ACCOUNT_BASE64 is not set.")
    try:
        info = json.loads(base64.b64decode(encoded).decode("utf-8"))
    except (ValueError, binascii.Error) as exc:
        raise MissingConfigurationError(
            "SERVICE_ACCOUNT_BASE64 is not valid base64 encoded JSON."
        ) from exc
    return service_account.Credentials.from_service_account_info(info, scopes=list(SCOPES))


class DocumentAIClient:
    """Send raw documents to a Document AI processor and return typed entities."""

    def __init__(
        self,
        settings: DocumentAISettings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self._settings = settings
        self._http = http_client
        self._retry = retry_config or RetryConfig(attempts=2, backoff_seconds=1.0)
        self._credentials: Optional[service_account.Credentials] = None
        self._lock = asyncio.Lock()

    @property
    def endpoint(self) -> str:
        location = self._settings.location
        return (
            f"https://{location}-documentai.googleapis.com/v1/projects/"
            f"{self._settings.project_id}/locations/{location}/processors/"
            f"{self._settings.processor_id}:process"
        )

    def ensure_configured(self) -> None:
        if not self._settings.is_configured:
            raise MissingConfigurationError(
                "Document AI is not configured; set DOCUMENT_AI_PROJECT_ID, "
                "DOCUMENT_AI_PROCESSOR_ID and SERVICE_ACCOUNT_BASE64."
            )

    async def _access_token(self) -> str:
        async with self._lock:
            if self._credentials is None:
                self._credentials = load_service_account_credentials(
                    self._settings.service_account_base64
                )
            credentials = self._credentials
            if not credentials.valid:
                try:
                    await asyncio.to_thread(credentials.refresh, Request())
                except GoogleAuthError as exc:
                    raise AnnotatorError(f"Failed to authorize service account: {exc}") from exc
            return credentials.token

    def build_payload(self, content: bytes, mime_type: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "rawDocument": {
                "content": base64.b64encode(content).decode("ascii"),
                "mimeType": mime_type,
            }
        }
        if self._settings.language_hints:
            payload["processOptions"] = {
                "ocrConfig": {"hints": {"languageHints": list(self._settings.language_hints)}}
            }
        return payload

    async def annotate(self, path: Path) -> List[Dict[str, Any]]:
        """Process a file and return the entity list of the parsed document."""
        self.ensure_configured()
        content = await asyncio.to_thread(path.read_bytes)
        payload = self.build_payload(content, mime_type_for(path))
        token = await self._access_token()
        headers = {"Authorization": f"Bearer {token}"}

        try:
            if self._http is not None:
                response = await request_with_retry(
                    self._http.post,
                    self.endpoint,
                    json=payload,
                    headers=headers,
                    retry_config=self._retry,
                )
            else:
                async with httpx.AsyncClient(timeout=120.0) as client:
                    response = await request_with_retry(
                        client.post,
                        self.endpoint,
                        json=payload,
                        headers=headers,
                        retry_config=self._retry,
                    )
        except httpx.HTTPError as exc:
            raise AnnotatorError(f"Document AI request failed for {path.name}: {exc}") from exc

        document = response.json().get("document") or {}
        entities = document.get("entities") or []
        logger.info("Document AI returned %d entities for %s", len(entities), path.name)
        return entities


__all__ = [
    "AnnotatorError",
    "DocumentAIClient",
    "load_service_account_credentials",
    "mime_type_for",
]
