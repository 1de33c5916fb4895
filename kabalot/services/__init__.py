"""Service layer exports."""

from .artifact_builder import ArtifactBuildError, ArtifactBuilder, BuiltArtifacts
from .attachment_classifier import AttachmentClassifier, ClassifierPolicy
from .dedup_cache import DedupCache
from .document_normalizer import DocumentNormalizer, ExchangeRateCache
from .file_processor import ConcurrentFileProcessor, ReceiptFileHandler
from .job_scheduler import JobScheduler
from .progress_bus import ProgressBus, Subscription
from .receipt_pipeline import ReceiptPipeline
from .workspace import JobWorkspace, RetentionScheduler

__all__ = [
    "ArtifactBuildError",
    "ArtifactBuilder",
    "AttachmentClassifier",
    "BuiltArtifacts",
    "ClassifierPolicy",
    "ConcurrentFileProcessor",
    "DedupCache",
    "DocumentNormalizer",
    "ExchangeRateCache",
    "JobScheduler",
    "JobWorkspace",
    "ProgressBus",
    "ReceiptFileHandler",
    "ReceiptPipeline",
    "RetentionScheduler",
    "Subscription",
]
