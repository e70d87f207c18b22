from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from pdfchat_api.services.rag.types import ExtractedDocument, Page

logger = logging.getLogger(__name__)


class DocumentExtractionError(RuntimeError):
    pass


class TextExtractor(Protocol):
    def extract(self, path: Path) -> ExtractedDocument: ...


class PdfTextExtractor:
    def extract(self, path: Path) -> ExtractedDocument:
        if not path.exists():
            raise DocumentExtractionError(f"PDF file not found: {path}")

        try:
            reader = PdfReader(path)
            pages = [
                Page(page_number=index + 1, text=page.extract_text() or "")
                for index, page in enumerate(reader.pages)
            ]
        except (PyPdfError, OSError, ValueError) as exc:
            raise DocumentExtractionError(f"Failed to extract text from PDF: {exc}") from exc

        logger.info("Extracted text from %d pages of %s", len(pages), path.name)
        return ExtractedDocument(page_count=len(pages), pages=pages)
