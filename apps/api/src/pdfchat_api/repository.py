from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from pdfchat_api.models import DocumentRecord


class DocumentRepository:
    """Document persistence bound to a caller-owned session.

    The caller decides when to commit, so a document and its processing job
    can land in the same transaction.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, document_id: str) -> DocumentRecord | None:
        return self._session.get(DocumentRecord, document_id)

    def save(self, document: DocumentRecord) -> DocumentRecord:
        document.updated_at = datetime.now(timezone.utc)
        self._session.add(document)
        self._session.flush()
        return document

    def delete(self, document: DocumentRecord) -> None:
        self._session.delete(document)
        self._session.flush()

    def list_by_upload_date_desc(self) -> Sequence[DocumentRecord]:
        return self._session.scalars(
            select(DocumentRecord).order_by(
                DocumentRecord.upload_date.desc(), DocumentRecord.id.asc()
            )
        ).all()
