"""Expose dependency helpers for FastAPI routers."""

from .clients import (
    SettingsDependency,
    get_app_settings,
    get_dedup_cache,
    get_document_ai_client,
    get_exchange_rates,
    get_job_scheduler,
    get_job_workspace,
    get_mailbox_factory,
    get_mailer,
    get_pdf_unlock_client,
    get_progress_bus,
    get_receipt_pipeline,
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
