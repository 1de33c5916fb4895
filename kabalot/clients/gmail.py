"""Gmail client wrapper used to read receipt attachments."""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, List, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

GMAIL_READONLY_SCOPE = "https://www.googleapis.com/auth/gmail.readonly"


class MailboxError(RuntimeError):
    """Raised when the Gmail API rejects a request."""


class GmailMailboxClient:
    """Read-only access to one user's mailbox through an OAuth access token."""

    def __init__(self, access_token: str, *, user_id: str = "me") -> None:
        if not access_token:
            raise ValueError("An access token is required to read the mailbox.")
        self._credentials = Credentials(token=access_token, scopes=[GMAIL_READONLY_SCOPE])
        self._user_id = user_id
        self._service: Optional[Any] = None

    def _messages(self):
        if self._service is None:
            self._service = build(
                "gmail", "v1", credentials=self._credentials, cache_discovery=False
            )
        return self._service.users().messages()

    async def list_message_ids(self, query: str, *, page_size: int = 500) -> List[str]:
        """Return every message id matching ``query``, following page tokens."""

        def _execute_list() -> List[str]:
            message_ids: List[str] = []
            page_token: Optional[str] = None
            while True:
                response = (
                    self._messages()
                    .list(
                        userId=self._user_id,
                        q=query,
                        pageToken=page_token,
                        maxResults=page_size,
                    )
                    .execute()
                )
                message_ids.extend(item["id"] for item in response.get("messages", []))
                page_token = response.get("nextPageToken")
                if not page_token:
                    return message_ids

        try:
            return await asyncio.to_thread(_execute_list)
        except HttpError as exc:
            raise MailboxError(f"Failed to list Gmail messages: {exc}") from exc

    async def get_message(self, message_id: str) -> Dict[str, Any]:
        """Fetch a message with its headers and full MIME tree."""

        def _execute_get() -> Dict[str, Any]:
            return (
                self._messages()
                .get(userId=self._user_id, id=message_id, format="full")
                .execute()
            )

        try:
            return await asyncio.to_thread(_execute_get)
        except HttpError as exc:
            raise MailboxError(f"Failed to fetch Gmail message {message_id}: {exc}") from exc

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """Download and decode one attachment body."""

        def _execute_download() -> bytes:
            attachment = (
                self._messages()
                .attachments()
                .get(userId=self._user_id, messageId=message_id, id=attachment_id)
                .execute()
            )
            data = attachment.get("data", "")
            return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))

        try:
            return await asyncio.to_thread(_execute_download)
        except HttpError as exc:
            raise MailboxError(
                f"Failed to download attachment {attachment_id} of {message_id}: {exc}"
            ) from exc


__all__ = ["GMAIL_READONLY_SCOPE", "GmailMailboxClient", "MailboxError"]
