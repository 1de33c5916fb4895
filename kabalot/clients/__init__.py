"""Expose constructed client wrappers."""

from .document_ai import AnnotatorError, DocumentAIClient
from .exchange_rates import ExchangeRateClient
from .gmail import GmailMailboxClient, MailboxError
from .mailer import SmtpMailer
from .pdf_unlock import PdfUnlockClient, PdfUnlockError

__all__ = [
    "AnnotatorError",
    "DocumentAIClient",
    "ExchangeRateClient",
    "GmailMailboxClient",
    "MailboxError",
    "PdfUnlockClient",
    "PdfUnlockError",
    "SmtpMailer",
]
