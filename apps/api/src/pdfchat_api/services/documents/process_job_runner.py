from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys
from time import perf_counter
from typing import TypedDict

from pdfchat_api.config import Settings, get_settings
from pdfchat_api.db import get_engine
from pdfchat_api.services.documents.pipeline import DocumentPipeline
from pdfchat_api.services.rag.embedding_client import EmbeddingClient, build_embedding_client
from pdfchat_api.services.rag.extractor import PdfTextExtractor
from pdfchat_api.services.rag.index_gateway import EmbeddingIndexGateway
from pdfchat_api.services.rag.vector_store import SqliteVectorStore


class ProcessResult(TypedDict):
    document_id: str
    status: str
    page_count: int | None
    chunk_count: int | None
    error_message: str | None
    duration_ms: int


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="document-process-runner",
        description="Extract, chunk and index one uploaded document",
    )
    parser.add_argument(
        "--payload-json",
        required=True,
        help='JSON object payload, e.g. {"document_id": "..."}',
    )
    return parser


def _resolve_document_id(payload_json_raw: str) -> str:
    parsed = json.loads(payload_json_raw)
    if not isinstance(parsed, dict):
        raise ValueError("payload_json must be a JSON object")

    document_id = parsed.get("document_id")
    if not isinstance(document_id, str) or not document_id.strip():
        raise ValueError("payload_json.document_id must be a non-empty string")
    return document_id.strip()


def build_pipeline(
    settings: Settings,
    *,
    embedding_client: EmbeddingClient | None = None,
) -> DocumentPipeline:
    index_gateway = EmbeddingIndexGateway(
        store=SqliteVectorStore(Path(settings.rag_db_path)),
        embedding_client=embedding_client or build_embedding_client(settings),
        batch_size=settings.rag_index_batch_size,
    )
    return DocumentPipeline(
        engine=get_engine(),
        extractor=PdfTextExtractor(),
        index_gateway=index_gateway,
        chunk_size=settings.rag_chunk_size,
        chunk_overlap=settings.rag_chunk_overlap,
    )


def run_process_job(
    document_id: str,
    *,
    settings: Settings | None = None,
    embedding_client: EmbeddingClient | None = None,
) -> ProcessResult:
    start = perf_counter()
    pipeline = build_pipeline(settings or get_settings(), embedding_client=embedding_client)
    outcome = pipeline.process(document_id)
    duration_ms = int((perf_counter() - start) * 1000)

    return {
        "document_id": outcome.document_id,
        "status": outcome.status,
        "page_count": outcome.page_count,
        "chunk_count": outcome.chunk_count,
        "error_message": outcome.error_message,
        "duration_ms": duration_ms,
    }


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    parser = _build_parser()
    args = parser.parse_args()

    try:
        document_id = _resolve_document_id(args.payload_json)
        result = run_process_job(document_id)
    except Exception as exc:
        print(f"[process-job-runner] failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc

    print(json.dumps(result), flush=True)


if __name__ == "__main__":
    main()
