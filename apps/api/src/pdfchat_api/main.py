from datetime import datetime
from functools import lru_cache
import json
import logging
from pathlib import Path
from typing import Annotated, Any, Iterator

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from pdfchat_api.config import Settings, get_settings
from pdfchat_api.db import get_engine
from pdfchat_api.errors import (
    DocumentNotFoundError,
    DocumentNotReadyError,
    DocumentProcessingError,
    InvalidInputError,
    ModelUnavailableError,
    PdfChatError,
    StorageError,
)
from pdfchat_api.llm import MultiProviderChatGateway, build_chat_gateway
from pdfchat_api.models import JobRecord, ResponseFormat
from pdfchat_api.services.chat_history import get_history, record_exchange
from pdfchat_api.services.documents.service import DocumentService, DocumentStatusView
from pdfchat_api.services.rag.answering import AnsweringEngine
from pdfchat_api.services.rag.embedding_client import EmbeddingClient, build_embedding_client
from pdfchat_api.services.rag.index_gateway import EmbeddingIndexGateway
from pdfchat_api.services.rag.vector_store import SqliteVectorStore
from pdfchat_api.storage import FileStorage

logger = logging.getLogger(__name__)

app = FastAPI(title="PDF Chat API", version="0.1.0")


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document_id: str = Field(min_length=1)
    question: str = Field(min_length=1, max_length=2000)
    response_format: ResponseFormat = ResponseFormat.TEXT


@app.on_event("startup")
def startup() -> None:
    get_engine()
    get_chat_gateway()


@lru_cache
def _chat_gateway_for(settings: Settings) -> MultiProviderChatGateway:
    return build_chat_gateway(settings)


def get_chat_gateway() -> MultiProviderChatGateway:
    return _chat_gateway_for(get_settings())


def get_embedding_client() -> EmbeddingClient:
    return build_embedding_client(get_settings())


def get_vector_store() -> SqliteVectorStore:
    return SqliteVectorStore(Path(get_settings().rag_db_path))


def get_file_storage() -> FileStorage:
    return FileStorage(Path(get_settings().upload_dir))


def get_index_gateway(
    store: Annotated[SqliteVectorStore, Depends(get_vector_store)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> EmbeddingIndexGateway:
    return EmbeddingIndexGateway(
        store=store,
        embedding_client=embedding_client,
        batch_size=get_settings().rag_index_batch_size,
    )


def get_document_service(
    storage: Annotated[FileStorage, Depends(get_file_storage)],
    index_gateway: Annotated[EmbeddingIndexGateway, Depends(get_index_gateway)],
) -> DocumentService:
    return DocumentService(
        engine=get_engine(),
        storage=storage,
        index_gateway=index_gateway,
        max_upload_bytes=get_settings().upload_max_bytes,
    )


def get_answering_engine(
    index_gateway: Annotated[EmbeddingIndexGateway, Depends(get_index_gateway)],
    chat_gateway: Annotated[MultiProviderChatGateway, Depends(get_chat_gateway)],
) -> AnsweringEngine:
    settings = get_settings()
    return AnsweringEngine(
        engine=get_engine(),
        index_gateway=index_gateway,
        chat_gateway=chat_gateway,
        top_k=settings.rag_top_k,
        min_score=settings.rag_min_score,
    )


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _http_error(exc: PdfChatError) -> HTTPException:
    if isinstance(exc, DocumentNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidInputError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, DocumentNotReadyError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ModelUnavailableError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, DocumentProcessingError) and isinstance(
        exc.__cause__, ModelUnavailableError
    ):
        return HTTPException(status_code=503, detail=str(exc.__cause__))
    if isinstance(exc, StorageError):
        logger.error("Storage failure: %s", exc)
        return HTTPException(status_code=500, detail="Storage operation failed")
    return HTTPException(status_code=500, detail=str(exc))


def _status_payload(view: DocumentStatusView) -> dict[str, Any]:
    return {
        "document_id": view.document_id,
        "filename": view.filename,
        "status": view.status,
        "page_count": view.page_count,
        "chunk_count": view.chunk_count,
        "upload_date": _to_iso(view.upload_date),
        "message": view.message,
        "error": view.error_message,
    }


def _job_summary(job: JobRecord) -> dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "status": job.status,
    }


def _job_detail(job: JobRecord) -> dict[str, Any]:
    payload_json = job.payload_json
    if isinstance(payload_json, str):
        try:
            parsed_payload = json.loads(payload_json)
        except json.JSONDecodeError:
            parsed_payload = None
        payload_json = parsed_payload if isinstance(parsed_payload, dict) else None

    result_json = job.result_json
    if isinstance(result_json, str):
        try:
            parsed_result = json.loads(result_json)
        except json.JSONDecodeError:
            parsed_result = None
        result_json = parsed_result if isinstance(parsed_result, dict) else None

    return {
        "id": job.id,
        "type": job.type,
        "status": job.status,
        "payload_json": payload_json,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "created_at": _to_iso(job.created_at),
        "updated_at": _to_iso(job.updated_at),
        "started_at": _to_iso(job.started_at),
        "finished_at": _to_iso(job.finished_at),
        "error": job.error,
        "result_json": result_json,
    }


def _sse_event(data: str, *, event: str | None = None) -> str:
    lines = [f"event: {event}"] if event is not None else []
    lines.extend(f"data: {line}" for line in data.split("\n"))
    return "\n".join(lines) + "\n\n"


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/documents/upload")
def upload_document(
    file: Annotated[UploadFile, File()],
    service: Annotated[DocumentService, Depends(get_document_service)],
) -> dict[str, Any]:
    content = file.file.read()
    try:
        result = service.upload_and_process(filename=file.filename, content=content)
    except PdfChatError as exc:
        raise _http_error(exc) from exc

    return {
        "document_id": result.document_id,
        "filename": result.filename,
        "status": result.status,
        "message": result.message,
        "upload_date": _to_iso(result.upload_date),
        "job_id": result.job_id,
    }


@app.get("/api/documents/{document_id}/status")
def get_document_status(
    document_id: str,
    service: Annotated[DocumentService, Depends(get_document_service)],
) -> dict[str, Any]:
    try:
        view = service.get_status(document_id)
    except PdfChatError as exc:
        raise _http_error(exc) from exc
    return _status_payload(view)


@app.get("/api/documents")
def list_documents(
    service: Annotated[DocumentService, Depends(get_document_service)],
) -> dict[str, Any]:
    return {
        "documents": [
            {
                "document_id": view.document_id,
                "filename": view.filename,
                "status": view.status,
                "page_count": view.page_count,
                "file_size": view.file_size,
                "upload_date": _to_iso(view.upload_date),
            }
            for view in service.list_documents()
        ]
    }


@app.delete("/api/documents/{document_id}")
def delete_document(
    document_id: str,
    service: Annotated[DocumentService, Depends(get_document_service)],
) -> dict[str, str]:
    try:
        service.delete_document(document_id)
    except PdfChatError as exc:
        raise _http_error(exc) from exc
    return {"message": "Document deleted successfully", "document_id": document_id}


@app.post("/api/chat")
def chat(
    request: ChatRequest,
    answering: Annotated[AnsweringEngine, Depends(get_answering_engine)],
) -> dict[str, Any]:
    logger.info("Received chat request for document %s", request.document_id)
    want_sources = request.response_format is ResponseFormat.JSON

    try:
        result = answering.answer(
            request.document_id,
            request.question,
            want_sources=want_sources,
        )
    except PdfChatError as exc:
        raise _http_error(exc) from exc

    record_exchange(
        get_engine(),
        document_id=request.document_id,
        question=request.question,
        answer=result.text,
        response_format=request.response_format,
    )

    return {
        "answer": result.text,
        "format": request.response_format.value,
        "document_id": request.document_id,
        "sources": [
            {
                "page_number": source.page_number,
                "content": source.content,
                "relevance_score": round(source.relevance_score, 6),
            }
            for source in result.sources
        ]
        if result.sources is not None
        else None,
    }


@app.post("/api/chat/stream")
def chat_stream(
    request: ChatRequest,
    answering: Annotated[AnsweringEngine, Depends(get_answering_engine)],
) -> StreamingResponse:
    logger.info("Received streaming chat request for document %s", request.document_id)
    engine = get_engine()

    def _record(answer: str) -> None:
        record_exchange(
            engine,
            document_id=request.document_id,
            question=request.question,
            answer=answer,
            response_format=request.response_format,
        )

    try:
        pieces = answering.answer_stream(
            request.document_id,
            request.question,
            on_complete=_record,
        )
    except PdfChatError as exc:
        raise _http_error(exc) from exc

    def _events() -> Iterator[str]:
        try:
            for piece in pieces:
                yield _sse_event(piece)
        except PdfChatError as exc:
            logger.error("Streaming chat failed for document %s: %s", request.document_id, exc)
            yield _sse_event(str(exc), event="error")

    return StreamingResponse(_events(), media_type="text/event-stream")


@app.get("/api/chat/models")
def get_model_status(
    chat_gateway: Annotated[MultiProviderChatGateway, Depends(get_chat_gateway)],
) -> dict[str, Any]:
    active = chat_gateway.active_provider()
    available = [provider.display_name for provider in chat_gateway.available_providers()]
    return {
        "active_provider": active.display_name if active is not None else "None",
        "available_providers": available,
        "total_available": len(available),
    }


@app.get("/api/chat/history")
def chat_history(
    page: int = Query(default=0, ge=0),
    size: int = Query(default=20, ge=1, le=100),
) -> dict[str, Any]:
    history = get_history(get_engine(), page=page, size=size)
    return {
        "items": [
            {
                "id": item.id,
                "document_id": item.document_id,
                "question": item.question,
                "answer": item.answer,
                "response_format": item.response_format,
                "created_at": _to_iso(item.created_at),
            }
            for item in history.items
        ],
        "page": history.page,
        "size": history.size,
        "total_elements": history.total,
    }


@app.get("/jobs")
def list_jobs(
    type: str | None = Query(default=None),
    status: str | None = Query(default=None),
) -> list[dict[str, Any]]:
    with Session(get_engine()) as session:
        stmt = select(JobRecord)
        if type is not None:
            stmt = stmt.where(JobRecord.type == type)
        if status is not None:
            stmt = stmt.where(JobRecord.status == status)

        jobs = session.scalars(
            stmt.order_by(JobRecord.created_at.asc(), JobRecord.id.asc())
        ).all()

    return [_job_summary(job) for job in jobs]


@app.get("/jobs/{job_id}")
def get_job(job_id: str) -> dict[str, Any]:
    with Session(get_engine()) as session:
        job = session.get(JobRecord, job_id)

    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    return _job_detail(job)


def run() -> None:
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("pdfchat_api.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
