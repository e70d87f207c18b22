from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import uuid

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pdfchat_api.errors import (
    DocumentNotFoundError,
    DocumentNotReadyError,
    InvalidInputError,
    StorageError,
)
from pdfchat_api.models import (
    DOCUMENT_PROCESS_JOB_TYPE,
    ChatMessageRecord,
    DocumentRecord,
    DocumentStatus,
    JobRecord,
)
from pdfchat_api.repository import DocumentRepository
from pdfchat_api.services.rag.index_gateway import EmbeddingIndexGateway
from pdfchat_api.storage import FileStorage

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    DocumentStatus.UPLOADING.value: "Document is being uploaded",
    DocumentStatus.PROCESSING.value: "Document is being processed",
    DocumentStatus.READY.value: "Document is ready for querying",
    DocumentStatus.FAILED.value: "Document processing failed",
}


@dataclass(frozen=True)
class UploadResult:
    document_id: str
    filename: str
    status: str
    message: str
    upload_date: datetime
    job_id: str


@dataclass(frozen=True)
class DocumentStatusView:
    document_id: str
    filename: str
    status: str
    page_count: int | None
    chunk_count: int | None
    file_size: int
    upload_date: datetime
    message: str
    error_message: str | None


def _status_view(document: DocumentRecord) -> DocumentStatusView:
    return DocumentStatusView(
        document_id=document.id,
        filename=document.filename,
        status=document.status,
        page_count=document.page_count,
        chunk_count=document.chunk_count,
        file_size=document.file_size,
        upload_date=document.upload_date,
        message=STATUS_MESSAGES.get(document.status, document.status),
        error_message=document.error_message,
    )


class DocumentService:
    def __init__(
        self,
        *,
        engine: Engine,
        storage: FileStorage,
        index_gateway: EmbeddingIndexGateway,
        max_upload_bytes: int,
    ) -> None:
        self._engine = engine
        self._storage = storage
        self._index_gateway = index_gateway
        self._max_upload_bytes = max_upload_bytes

    def _validate_upload(self, filename: str | None, content: bytes) -> str:
        if not content:
            raise InvalidInputError("File is empty")
        if filename is None or not filename.strip():
            raise InvalidInputError("Invalid filename")
        if not filename.strip().lower().endswith(".pdf"):
            raise InvalidInputError("Only PDF files are allowed")
        if len(content) > self._max_upload_bytes:
            limit_mb = self._max_upload_bytes // (1024 * 1024)
            raise InvalidInputError(f"File size exceeds maximum limit of {limit_mb}MB")
        return filename.strip()

    def upload_and_process(self, *, filename: str | None, content: bytes) -> UploadResult:
        """Store the file and queue it for processing.

        The document row and its processing job are committed together, so the
        worker can never claim a job whose document is not yet visible.
        """
        original_filename = self._validate_upload(filename, content)
        stored = self._storage.store(original_filename, content)
        now = datetime.now(timezone.utc)
        job_id = uuid.uuid4().hex

        try:
            with Session(self._engine) as session:
                document = DocumentRecord(
                    id=stored.document_id,
                    filename=stored.filename,
                    original_filename=original_filename,
                    file_path=stored.file_path,
                    file_size=stored.file_size,
                    upload_date=now,
                    status=DocumentStatus.PROCESSING.value,
                )
                DocumentRepository(session).save(document)
                session.add(
                    JobRecord(
                        id=job_id,
                        type=DOCUMENT_PROCESS_JOB_TYPE,
                        status="queued",
                        payload_json={"document_id": stored.document_id},
                        attempts=0,
                        max_attempts=1,
                        updated_at=now,
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            self._storage.delete(stored.document_id)
            raise StorageError(f"Failed to record document {stored.document_id}") from exc

        logger.info("Queued document %s for processing (job %s)", stored.document_id, job_id)
        return UploadResult(
            document_id=stored.document_id,
            filename=stored.filename,
            status=DocumentStatus.PROCESSING.value,
            message="Document uploaded successfully and is being processed",
            upload_date=now,
            job_id=job_id,
        )

    def get_status(self, document_id: str) -> DocumentStatusView:
        with Session(self._engine) as session:
            document = DocumentRepository(session).get(document_id)
            if document is None:
                raise DocumentNotFoundError(document_id)
            return _status_view(document)

    def list_documents(self) -> list[DocumentStatusView]:
        with Session(self._engine) as session:
            documents = DocumentRepository(session).list_by_upload_date_desc()
            return [_status_view(document) for document in documents]

    def delete_document(self, document_id: str) -> None:
        """Remove vectors, then the stored file, then the metadata rows.

        A vector-store failure aborts before anything else is touched. A
        document still being processed cannot be deleted, since the worker
        would keep writing vectors for it.
        """
        with Session(self._engine) as session:
            repository = DocumentRepository(session)
            document = repository.get(document_id)
            if document is None:
                raise DocumentNotFoundError(document_id)
            if document.status == DocumentStatus.PROCESSING.value:
                raise DocumentNotReadyError(
                    document_id,
                    document.status,
                    "Document cannot be deleted while it is being processed",
                )

            self._index_gateway.delete_all(document_id)
            try:
                self._storage.delete(document_id)
            except StorageError as exc:
                # vectors are gone, so the row must not stay READY
                document.status = DocumentStatus.FAILED.value
                document.error_message = f"Deletion incomplete: {exc}"
                repository.save(document)
                session.commit()
                raise

            session.execute(
                delete(ChatMessageRecord).where(ChatMessageRecord.document_id == document_id)
            )
            repository.delete(document)
            session.commit()

        logger.info("Deleted document %s", document_id)
