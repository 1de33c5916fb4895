"""
Application configuration models and helpers.

Centralizes settings management so the FastAPI app, the job scheduler and the
receipt pipeline collaborators share a consistent configuration surface.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Optional

import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _load_env_file(path: str = ".env") -> None:
    """Best-effort load key=value pairs from a .env file without extra deps."""
    env_path = Path(path)
    if not env_path.exists():
        return
    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()


class MissingConfigurationError(RuntimeError):
    """Raised when a required credential or setting is absent at job time."""


def _split_csv(value: str | tuple[str, ...] | list[str]) -> tuple[str, ...]:
    """Support providing keyword lists as a comma-separated string."""
    if isinstance(value, tuple):
        return value
    if isinstance(value, list):
        return tuple(value)
    return tuple(item.strip() for item in value.split(",") if item.strip())


KeywordList = Annotated[tuple[str, ...], NoDecode]


class DocumentAISettings(BaseSettings):
    """Configuration required for calling the Document AI receipt processor."""

    model_config = SettingsConfigDict(extra="ignore")

    project_id: Optional[str] = Field(None, alias="DOCUMENT_AI_PROJECT_ID")
    location: str = Field("us", alias="DOCUMENT_AI_LOCATION")
    processor_id: Optional[str] = Field(None, alias="DOCUMENT_AI_PROCESSOR_ID")
    service_account_base64: Optional[str] = Field(
        None,
        alias="SERVICE_ACCOUNT_BASE64",
        description="Base64 encoded service account JSON used to mint access tokens.",
    )
    language_hints: KeywordList = Field(("he", "en"), alias="DOCUMENT_AI_LANGUAGE_HINTS")

    @field_validator("language_hints", mode="before")
    @classmethod
    def _split_hints(cls, value):
        return _split_csv(value)

    @property
    def is_configured(self) -> bool:
        return bool(self.project_id and self.processor_id and self.service_account_base64)


class PdfUnlockSettings(BaseSettings):
    """Settings for the remote PDF password removal service."""

    model_config = SettingsConfigDict(extra="ignore")

    api_key: Optional[str] = Field(None, alias="PDFCO_API_KEY")
    base_url: str = Field("https://api.pdf.co/v1", alias="PDFCO_BASE_URL")
    fallback_password: str = Field(
        "your-default-password",
        alias="PASSWORD_PROTECTED_PDF_PASSWORD",
        description="Password tried when the submitter did not supply an unlock code.",
    )


class MailSettings(BaseSettings):
    """SMTP delivery configuration for result notifications."""

    model_config = SettingsConfigDict(extra="ignore")

    host: str = Field("smtp.gmail.com", alias="SMTP_HOST")
    port: int = Field(587, alias="SMTP_PORT")
    username: Optional[str] = Field(None, alias="EMAIL_USER")
    password: Optional[str] = Field(None, alias="EMAIL_PASS")
    starttls: bool = Field(True, alias="SMTP_STARTTLS")

    @property
    def is_configured(self) -> bool:
        return bool(self.username and self.password)


class ExchangeRateSettings(BaseSettings):
    """Configuration for converting foreign receipts into the ledger currency."""

    model_config = SettingsConfigDict(extra="ignore")

    endpoint_url: Optional[str] = Field(
        None,
        alias="EXCHANGE_RATE_URL",
        description="Optional endpoint returning {'rate': float} for ?date=YYYY-MM-DD.",
    )
    fallback_rate: float = Field(3.5, alias="EXCHANGE_RATE_FALLBACK")
    cache_size: int = Field(366, alias="EXCHANGE_RATE_CACHE_SIZE")
    foreign_currency: str = Field("USD", alias="FOREIGN_CURRENCY")
    ledger_currency: str = Field("ILS", alias="LEDGER_CURRENCY")


class ClassifierSettings(BaseSettings):
    """Keyword policy used to decide which Gmail attachments are receipts."""

    model_config = SettingsConfigDict(extra="ignore")

    positive_subject_keywords: KeywordList = Field(
        (
            "קבלה",
            "חשבונית",
            "חשבונית מס",
            "הקבלה",
            "החשבונית",
            "החשבונית החודשית",
            "אישור תשלום",
            "receipt",
            "invoice",
            "חשבון חודשי",
        ),
        alias="GMAIL_POSITIVE_SUBJECT_KEYWORDS",
    )
    excluded_senders: KeywordList = Field(
        (
            "חברת חשמל לישראל",
            "עיריית תל אביב-יפו",
            "ארנונה - עיריית תל-אביב-יפו",
        ),
        alias="GMAIL_EXCLUDED_SENDERS",
    )
    sender_exception_keywords: KeywordList = Field(
        ("קבלה", "חשבונית", "חשבונית מס", "הקבלה"),
        alias="GMAIL_SENDER_EXCEPTION_KEYWORDS",
    )
    attachment_keywords: KeywordList = Field(
        ("receipt", "חשבונית"),
        alias="GMAIL_ATTACHMENT_KEYWORDS",
    )
    page_size: int = Field(500, alias="GMAIL_PAGE_SIZE")

    @field_validator(
        "positive_subject_keywords",
        "excluded_senders",
        "sender_exception_keywords",
        "attachment_keywords",
        mode="before",
    )
    @classmethod
    def _split_keywords(cls, value):
        return _split_csv(value)


class AppSettings(BaseSettings):
    """Root settings object for the FastAPI application."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="APP_LOG_LEVEL")
    base_url: str = Field(
        "http://localhost:8080",
        alias="BASE_URL",
        description="Public URL used when building download links.",
    )
    input_folder: Path = Field(Path("input_files"), alias="INPUT_FOLDER")
    retention_seconds: float = Field(3600, alias="RETENTION_SECONDS")
    processor_workers: int = Field(3, alias="PROCESSOR_WORKERS", ge=1)
    dedup_cache_size: int = Field(512, alias="DEDUP_CACHE_SIZE", ge=1)
    result_prefix: str = Field("סיכום הוצאות", alias="RESULT_PREFIX")
    document_ai: DocumentAISettings = Field(default_factory=DocumentAISettings)
    pdf_unlock: PdfUnlockSettings = Field(default_factory=PdfUnlockSettings)
    mail: MailSettings = Field(default_factory=MailSettings)
    exchange_rate: ExchangeRateSettings = Field(default_factory=ExchangeRateSettings)
    classifier: ClassifierSettings = Field(default_factory=ClassifierSettings)


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()  # type: ignore[call-arg]


__all__ = [
    "AppSettings",
    "ClassifierSettings",
    "DocumentAISettings",
    "ExchangeRateSettings",
    "MailSettings",
    "MissingConfigurationError",
    "PdfUnlockSettings",
    "get_settings",
]
