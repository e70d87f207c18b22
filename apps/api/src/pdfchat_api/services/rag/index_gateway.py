from __future__ import annotations

import logging
from typing import Sequence

from pdfchat_api.errors import IndexingError, VectorStoreError
from pdfchat_api.services.rag.embedding_client import EmbeddingClient, EmbeddingClientError
from pdfchat_api.services.rag.types import Chunk, RetrievedChunk
from pdfchat_api.services.rag.vector_store import SqliteVectorStore, VectorRecord

logger = logging.getLogger(__name__)


class EmbeddingIndexGateway:
    """Embeds chunks and keeps their vectors scoped by document id."""

    def __init__(
        self,
        *,
        store: SqliteVectorStore,
        embedding_client: EmbeddingClient,
        batch_size: int = 10,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self._store = store
        self._embedding_client = embedding_client
        self._batch_size = batch_size

    def index(self, document_id: str, chunks: Sequence[Chunk]) -> None:
        try:
            for start in range(0, len(chunks), self._batch_size):
                batch = chunks[start : start + self._batch_size]
                self._index_batch(document_id, batch)
                logger.debug(
                    "Indexed batch %d-%d for document %s",
                    start,
                    start + len(batch) - 1,
                    document_id,
                )
        except (EmbeddingClientError, VectorStoreError, ValueError) as exc:
            self._discard_partial(document_id)
            raise IndexingError(
                f"Failed to store embeddings for document {document_id}: {exc}"
            ) from exc

        logger.info("Stored %d chunks for document %s", len(chunks), document_id)

    def _index_batch(self, document_id: str, batch: Sequence[Chunk]) -> None:
        embeddings = self._embedding_client.embed_texts([chunk.content for chunk in batch])
        if len(embeddings) != len(batch):
            raise ValueError(
                f"expected {len(batch)} embeddings, got {len(embeddings)}"
            )

        self._store.add(
            [
                VectorRecord(
                    chunk_id=chunk.chunk_id,
                    document_id=document_id,
                    page_number=chunk.page_number,
                    chunk_index=chunk.chunk_index,
                    start_offset=chunk.start_offset,
                    end_offset=chunk.end_offset,
                    content=chunk.content,
                    embedding=embedding,
                )
                for chunk, embedding in zip(batch, embeddings)
            ]
        )

    def _discard_partial(self, document_id: str) -> None:
        try:
            self._store.delete_document(document_id)
        except VectorStoreError:
            logger.exception("Could not discard partial vectors for document %s", document_id)

    def search(
        self,
        document_id: str,
        query: str,
        *,
        top_k: int,
        min_score: float,
    ) -> list[RetrievedChunk]:
        normalized_query = query.strip()
        if not normalized_query:
            raise ValueError("query must not be empty")

        try:
            query_embedding = self._embedding_client.embed_texts([normalized_query])[0]
        except IndexError as exc:
            raise EmbeddingClientError("Failed to generate query embedding") from exc

        hits = self._store.query(
            document_id,
            query_embedding,
            top_k=top_k,
            min_score=min_score,
        )
        logger.debug(
            "Search for document %s returned %d hits (top_k=%d, min_score=%.2f)",
            document_id,
            len(hits),
            top_k,
            min_score,
        )
        return [
            RetrievedChunk(
                content=hit.record.content,
                page_number=hit.record.page_number,
                chunk_index=hit.record.chunk_index,
                relevance_score=hit.score,
            )
            for hit in hits
        ]

    def delete_all(self, document_id: str) -> int:
        deleted = self._store.delete_document(document_id)
        logger.info("Deleted %d vectors for document %s", deleted, document_id)
        return deleted
