"""Local PDF encryption probe."""

from __future__ import annotations

import logging
from pathlib import Path

from pypdf import PdfReader
from pypdf.errors import PdfReadError

logger = logging.getLogger(__name__)


def is_pdf_encrypted(path: Path) -> bool:
    """Return True when the PDF needs unlocking before it can be annotated.

    Unreadable documents are reported as encrypted so they are routed through
    the unlock service rather than sent to the annotator as-is.
    """
    try:
        reader = PdfReader(str(path))
        if reader.is_encrypted:
            return True
        reader.pages[0]
    except (PdfReadError, OSError, ValueError, KeyError, IndexError) as exc:
        logger.warning("Error checking PDF encryption for %s: %s", path.name, exc)
        return True
    return False


__all__ = ["is_pdf_encrypted"]
