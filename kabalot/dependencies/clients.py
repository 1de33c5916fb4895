"""
Factory functions to provide shared clients and services as FastAPI dependencies.
"""

from functools import lru_cache

from fastapi import Depends

from kabalot.clients import (
    DocumentAIClient,
    ExchangeRateClient,
    GmailMailboxClient,
    PdfUnlockClient,
    SmtpMailer,
)
from kabalot.core.config import AppSettings, get_settings
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


@lru_cache()
def get_app_settings() -> AppSettings:
    """Settings shared by every factory below and injected into routes."""
    return get_settings()


SettingsDependency = Depends(get_app_settings)


@lru_cache()
def get_document_ai_client() -> DocumentAIClient:
    """Provide the Document AI annotator."""
    return DocumentAIClient(get_app_settings().document_ai)


@lru_cache()
def get_pdf_unlock_client() -> PdfUnlockClient:
    """Provide the PDF password removal client."""
    return PdfUnlockClient(get_app_settings().pdf_unlock)


@lru_cache()
def get_mailer() -> SmtpMailer:
    """Provide the SMTP notification mailer."""
    return SmtpMailer(get_app_settings().mail)


def get_mailbox_factory():
    """Provide the callable that opens a mailbox from an access token."""
    return GmailMailboxClient


@lru_cache()
def get_exchange_rates() -> ExchangeRateCache:
    """Provide the per-day exchange rate cache."""
    settings = get_app_settings().exchange_rate
    return ExchangeRateCache(ExchangeRateClient(settings), capacity=settings.cache_size)


@lru_cache()
def get_dedup_cache() -> DedupCache:
    """Provide the process-wide content hash cache."""
    return DedupCache(get_app_settings().dedup_cache_size)


@lru_cache()
def get_progress_bus() -> ProgressBus:
    """Provide the shared progress bus."""
    return ProgressBus()


@lru_cache()
def get_job_workspace() -> JobWorkspace:
    """Provide the per-job directory allocator."""
    return JobWorkspace(get_app_settings().input_folder)


@lru_cache()
def get_receipt_pipeline() -> ReceiptPipeline:
    """Build the receipt pipeline from configured collaborators."""
    settings = get_app_settings()
    annotator = get_document_ai_client()
    unlocker = get_pdf_unlock_client()
    return ReceiptPipeline(
        bus=get_progress_bus(),
        annotator=annotator,
        unlocker=unlocker,
        normalizer=DocumentNormalizer(
            get_exchange_rates(),
            foreign_currency=settings.exchange_rate.foreign_currency,
            ledger_currency=settings.exchange_rate.ledger_currency,
        ),
        cache=get_dedup_cache(),
        artifacts=ArtifactBuilder(settings.result_prefix),
        classifier=AttachmentClassifier(ClassifierPolicy.from_settings(settings.classifier)),
        base_url=settings.base_url,
        fallback_password=unlocker.fallback_password,
        workers=settings.processor_workers,
        mailer=get_mailer(),
        preflight=annotator.ensure_configured,
    )


@lru_cache()
def get_job_scheduler() -> JobScheduler:
    """Provide the process-wide job scheduler."""
    settings = get_app_settings()
    return JobScheduler(
        get_receipt_pipeline().run,
        get_progress_bus(),
        RetentionScheduler(settings.retention_seconds),
    )


__all__ = [
    "SettingsDependency",
    "get_app_settings",
    "get_dedup_cache",
    "get_document_ai_client",
    "get_exchange_rates",
    "get_job_scheduler",
    "get_job_workspace",
    "get_mailbox_factory",
    "get_mailer",
    "get_pdf_unlock_client",
    "get_progress_bus",
    "get_receipt_pipeline",
]
