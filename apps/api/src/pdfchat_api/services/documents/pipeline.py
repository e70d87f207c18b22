"""Ingestion state machine for a single uploaded document.

A document enters the pipeline as PROCESSING and leaves it as READY or
FAILED. Both outcomes are terminal; a failed document has to be uploaded again.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from pdfchat_api.errors import DocumentNotFoundError
from pdfchat_api.models import DocumentStatus
from pdfchat_api.repository import DocumentRepository
from pdfchat_api.services.rag.chunker import chunk_pages
from pdfchat_api.services.rag.extractor import TextExtractor
from pdfchat_api.services.rag.index_gateway import EmbeddingIndexGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessingOutcome:
    document_id: str
    status: str
    page_count: int | None
    chunk_count: int | None
    error_message: str | None


class DocumentPipeline:
    def __init__(
        self,
        *,
        engine: Engine,
        extractor: TextExtractor,
        index_gateway: EmbeddingIndexGateway,
        chunk_size: int,
        chunk_overlap: int,
    ) -> None:
        self._engine = engine
        self._extractor = extractor
        self._index_gateway = index_gateway
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap

    def process(self, document_id: str) -> ProcessingOutcome:
        with Session(self._engine) as session:
            repository = DocumentRepository(session)
            document = repository.get(document_id)
            if document is None:
                raise DocumentNotFoundError(document_id)

            try:
                logger.info("Starting processing for document %s", document_id)

                extracted = self._extractor.extract(Path(document.file_path))
                document.page_count = extracted.page_count

                chunks = chunk_pages(
                    extracted.pages,
                    document_id=document_id,
                    chunk_size=self._chunk_size,
                    chunk_overlap=self._chunk_overlap,
                )
                document.chunk_count = len(chunks)

                self._index_gateway.index(document_id, chunks)

                document.status = DocumentStatus.READY.value
                document.error_message = None
                logger.info(
                    "Processed document %s with %d pages and %d chunks",
                    document_id,
                    extracted.page_count,
                    len(chunks),
                )
            except Exception as exc:
                logger.exception("Failed to process document %s", document_id)
                document.status = DocumentStatus.FAILED.value
                document.error_message = f"Processing failed: {exc}"
            finally:
                repository.save(document)
                session.commit()

            return ProcessingOutcome(
                document_id=document.id,
                status=document.status,
                page_count=document.page_count,
                chunk_count=document.chunk_count,
                error_message=document.error_message,
            )
