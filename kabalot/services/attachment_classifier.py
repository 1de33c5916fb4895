"""
Gmail attachment classification.

Decides which attachments in a mailbox date range are genuine receipts and
saves them into a job's workspace. The policy prefers precision over recall:
missing a receipt is better than pulling in utility bills from excluded
senders.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Protocol, Sequence

from kabalot.clients.gmail import MailboxError
from kabalot.core.config import ClassifierSettings
from kabalot.services.workspace import sanitize_filename

logger = logging.getLogger(__name__)

_PDF_CONTENT_TYPES = frozenset(
    {
        "application/pdf",
        "application/x-pdf",
        "application/acrobat",
        "applications/vnd.pdf",
        "text/pdf",
        "text/x-pdf",
    }
)
_SENDER_EMAIL = re.compile(r"<(.+?)>")


class MailboxClient(Protocol):
    async def list_message_ids(self, query: str, *, page_size: int = 500) -> List[str]:
        ...

    async def get_message(self, message_id: str) -> Dict[str, Any]:
        ...

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        ...


class AttachmentDecision(str, enum.Enum):
    SAVE = "save"
    SKIP_NOT_PDF = "skip_not_pdf"
    SKIP_NO_ATTACHMENT_ID = "skip_no_attachment_id"
    SKIP_NON_RECEIPT_IN_RECEIPT_THREAD = "skip_non_receipt_in_receipt_thread"
    SKIP_NO_KEYWORD = "skip_no_keyword"


@dataclass(frozen=True)
class ClassifierPolicy:
    """Keyword sets driving the inclusion and exclusion rules."""

    positive_subject_keywords: tuple[str, ...]
    excluded_senders: tuple[str, ...]
    sender_exception_keywords: tuple[str, ...]
    attachment_keywords: tuple[str, ...]
    page_size: int = 500

    @classmethod
    def from_settings(cls, settings: ClassifierSettings) -> "ClassifierPolicy":
        return cls(
            positive_subject_keywords=tuple(settings.positive_subject_keywords),
            excluded_senders=tuple(settings.excluded_senders),
            sender_exception_keywords=tuple(settings.sender_exception_keywords),
            attachment_keywords=tuple(settings.attachment_keywords),
            page_size=min(settings.page_size, 500),
        )


@dataclass(frozen=True)
class Sender:
    name: str
    email: str


@dataclass
class MessageSummary:
    message_id: str
    sender: Sender
    subject: str
    parts: List[Dict[str, Any]] = field(default_factory=list)


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(keyword.lower() in lowered for keyword in keywords)


def build_query(start: date, end: date) -> str:
    """Gmail search over the inclusive range, padded a day for time-zone truncation."""
    query_end = end + timedelta(days=1)
    return (
        f"after:{start.strftime('%Y/%m/%d')} "
        f"before:{query_end.strftime('%Y/%m/%d')} has:attachment"
    )


def parse_sender(header_value: str) -> Sender:
    match = _SENDER_EMAIL.search(header_value)
    email = match.group(1) if match else header_value
    name = header_value.split("<")[0].strip()
    return Sender(name=name, email=email)


def header_value(headers: Sequence[Dict[str, str]], name: str) -> str:
    wanted = name.lower()
    for header in headers:
        if str(header.get("name", "")).lower() == wanted:
            return str(header.get("value", ""))
    return ""


def flatten_parts(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Collect the leaf MIME parts of a message payload in document order."""
    if not payload.get("parts"):
        return [payload]
    leaves: List[Dict[str, Any]] = []
    stack: List[Dict[str, Any]] = list(reversed(payload["parts"]))
    while stack:
        part = stack.pop()
        children = part.get("parts")
        if children:
            stack.extend(reversed(children))
        else:
            leaves.append(part)
    return leaves


def is_pdf_attachment(content_type: str, filename: str) -> bool:
    normalized_type = (content_type or "").lower()
    if normalized_type in _PDF_CONTENT_TYPES or "pdf" in normalized_type:
        return True
    return (filename or "").lower().endswith(".pdf")


def should_skip_message(policy: ClassifierPolicy, sender: Sender, subject: str) -> bool:
    """Excluded senders are skipped unless the subject names a receipt."""
    excluded = any(
        blocked in sender.name or blocked in sender.email
        for blocked in policy.excluded_senders
    )
    if not excluded:
        return False
    return not _contains_any(subject, policy.sender_exception_keywords)


def subject_is_positive(policy: ClassifierPolicy, subject: str) -> bool:
    return _contains_any(subject, policy.positive_subject_keywords)


def filename_has_keyword(policy: ClassifierPolicy, filename: str) -> bool:
    return _contains_any(filename, policy.attachment_keywords)


def receipt_found_in_thread(policy: ClassifierPolicy, parts: Sequence[Dict[str, Any]]) -> bool:
    return any(
        part.get("filename") and filename_has_keyword(policy, part["filename"])
        for part in parts
    )


def decide_attachment(
    policy: ClassifierPolicy,
    part: Dict[str, Any],
    *,
    subject_positive: bool,
    thread_has_receipt: bool,
) -> AttachmentDecision:
    """Apply the per-attachment decision table."""
    filename = part.get("filename") or ""
    attachment_id = (part.get("body") or {}).get("attachmentId")
    if not attachment_id:
        return AttachmentDecision.SKIP_NO_ATTACHMENT_ID
    if not is_pdf_attachment(part.get("mimeType") or "", filename):
        return AttachmentDecision.SKIP_NOT_PDF

    named_receipt = filename_has_keyword(policy, filename)
    if subject_positive:
        if not thread_has_receipt or named_receipt:
            return AttachmentDecision.SAVE
        return AttachmentDecision.SKIP_NON_RECEIPT_IN_RECEIPT_THREAD
    if named_receipt:
        return AttachmentDecision.SAVE
    return AttachmentDecision.SKIP_NO_KEYWORD


class AttachmentClassifier:
    """Materialize receipt attachments from a mailbox into a directory."""

    def __init__(self, policy: ClassifierPolicy) -> None:
        self._policy = policy

    def summarize(self, message_id: str, message: Dict[str, Any]) -> MessageSummary:
        payload = message.get("payload") or {}
        headers = payload.get("headers") or []
        return MessageSummary(
            message_id=message_id,
            sender=parse_sender(header_value(headers, "From")),
            subject=header_value(headers, "Subject"),
            parts=flatten_parts(payload) if payload else [],
        )

    def select_attachments(self, summary: MessageSummary) -> List[Dict[str, Any]]:
        """Return the parts of a message that should be downloaded."""
        policy = self._policy
        if should_skip_message(policy, summary.sender, summary.subject):
            logger.info(
                "Skipping message from excluded sender without exception keyword: %s",
                summary.subject,
            )
            return []

        subject_positive = subject_is_positive(policy, summary.subject)
        thread_has_receipt = receipt_found_in_thread(policy, summary.parts)
        selected: List[Dict[str, Any]] = []
        for part in summary.parts:
            if not part.get("filename"):
                continue
            decision = decide_attachment(
                policy,
                part,
                subject_positive=subject_positive,
                thread_has_receipt=thread_has_receipt,
            )
            if decision is AttachmentDecision.SAVE:
                selected.append(part)
            else:
                logger.debug("Skipping attachment %s (%s)", part["filename"], decision.value)
        return selected

    async def classify(
        self,
        mailbox: MailboxClient,
        start: date,
        end: date,
        destination: Path,
    ) -> List[Path]:
        """Download qualifying attachments and return the saved paths."""
        query = build_query(start, end)
        logger.info("Gmail query: %s", query)
        message_ids = await mailbox.list_message_ids(query, page_size=self._policy.page_size)
        logger.info("Total messages found: %d", len(message_ids))

        destination.mkdir(parents=True, exist_ok=True)
        saved: List[Path] = []
        for message_id in message_ids:
            try:
                message = await mailbox.get_message(message_id)
            except MailboxError as exc:
                logger.warning("Skipping message %s: %s", message_id, exc)
                continue
            summary = self.summarize(message_id, message)
            for part in self.select_attachments(summary):
                try:
                    data = await mailbox.get_attachment(
                        message_id, part["body"]["attachmentId"]
                    )
                except MailboxError as exc:
                    logger.warning("Skipping attachment %s: %s", part["filename"], exc)
                    continue
                target = destination / sanitize_filename(part["filename"])
                target.write_bytes(data)
                logger.info("Saved PDF attachment: %s", target.name)
                if target not in saved:
                    saved.append(target)
        return saved


__all__ = [
    "AttachmentClassifier",
    "AttachmentDecision",
    "ClassifierPolicy",
    "MailboxClient",
    "MessageSummary",
    "Sender",
    "build_query",
    "decide_attachment",
    "flatten_parts",
    "is_pdf_attachment",
    "parse_sender",
    "should_skip_message",
]
