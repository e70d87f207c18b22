"""Error taxonomy shared by the document pipeline, the answering engine and the API."""

from __future__ import annotations


class PdfChatError(RuntimeError):
    pass


class DocumentNotFoundError(PdfChatError):
    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class InvalidInputError(PdfChatError):
    pass


class DocumentNotReadyError(PdfChatError):
    def __init__(self, document_id: str, status: str, message: str | None = None) -> None:
        super().__init__(message or f"Document is not ready for querying. Status: {status}")
        self.document_id = document_id
        self.status = status


class DocumentProcessingError(PdfChatError):
    pass


class IndexingError(DocumentProcessingError):
    pass


class ModelUnavailableError(PdfChatError):
    pass


class StorageError(PdfChatError):
    pass


class VectorStoreError(StorageError):
    pass
