"""Retrieval-augmented answering over a single processed document."""

from __future__ import annotations

import logging
from typing import Callable, Iterator

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from pdfchat_api.errors import (
    DocumentNotFoundError,
    DocumentNotReadyError,
    DocumentProcessingError,
    InvalidInputError,
)
from pdfchat_api.llm import MultiProviderChatGateway
from pdfchat_api.models import DocumentStatus
from pdfchat_api.repository import DocumentRepository
from pdfchat_api.services.rag.index_gateway import EmbeddingIndexGateway
from pdfchat_api.services.rag.types import AnswerResult, RetrievedChunk, SourceReference

logger = logging.getLogger(__name__)

NO_RELEVANT_CONTEXT_ANSWER = (
    "I cannot find relevant information in the document to answer your question."
)
EMPTY_ANSWER_FALLBACK = "Unable to generate answer."
SOURCE_EXCERPT_LENGTH = 200

SYSTEM_PROMPT = """\
You are a helpful AI assistant that answers questions based ONLY on the provided document context.

Follow these rules strictly:
1. Only use information from the provided context to answer questions
2. If the answer is not in the context, respond with: "I cannot find this information in the document."
3. Always cite the page number(s) where you found the information
4. Be concise but comprehensive in your answers
5. If the context is ambiguous or unclear, acknowledge it
6. Do not make assumptions or add information not present in the context

When you provide an answer, reference the page numbers like this: (Page X)."""


def build_context(chunks: list[RetrievedChunk]) -> str:
    excerpts = "".join(f"[Page {chunk.page_number}] {chunk.content}\n\n" for chunk in chunks)
    return f"Based on the following excerpts from the document:\n\n{excerpts}"


def build_prompt(question: str, context: str) -> str:
    return f"{SYSTEM_PROMPT}\n\nContext:\n{context}\nQuestion: {question}\n\nAnswer:\n"


def build_sources(chunks: list[RetrievedChunk]) -> list[SourceReference]:
    sources: list[SourceReference] = []
    for chunk in chunks:
        content = chunk.content
        if len(content) > SOURCE_EXCERPT_LENGTH:
            content = content[:SOURCE_EXCERPT_LENGTH] + "..."
        sources.append(
            SourceReference(
                page_number=chunk.page_number,
                content=content,
                relevance_score=chunk.relevance_score,
            )
        )
    return sources


class AnsweringEngine:
    def __init__(
        self,
        *,
        engine: Engine,
        index_gateway: EmbeddingIndexGateway,
        chat_gateway: MultiProviderChatGateway,
        top_k: int = 10,
        min_score: float = 0.5,
    ) -> None:
        self._engine = engine
        self._index_gateway = index_gateway
        self._chat_gateway = chat_gateway
        self._top_k = top_k
        self._min_score = min_score

    def _ensure_ready(self, document_id: str, question: str) -> str:
        normalized = question.strip()
        if not normalized:
            raise InvalidInputError("question must not be empty")

        with Session(self._engine) as session:
            document = DocumentRepository(session).get(document_id)
            if document is None:
                raise DocumentNotFoundError(document_id)
            if document.status != DocumentStatus.READY.value:
                raise DocumentNotReadyError(document_id, document.status)
        return normalized

    def _retrieve(self, document_id: str, question: str) -> list[RetrievedChunk]:
        chunks = self._index_gateway.search(
            document_id,
            question,
            top_k=self._top_k,
            min_score=self._min_score,
        )
        logger.info("Retrieved %d relevant chunks for document %s", len(chunks), document_id)
        return chunks

    def answer(self, document_id: str, question: str, *, want_sources: bool = False) -> AnswerResult:
        question = self._ensure_ready(document_id, question)

        try:
            chunks = self._retrieve(document_id, question)
            if not chunks:
                return AnswerResult(text=NO_RELEVANT_CONTEXT_ANSWER, sources=[])

            response = self._chat_gateway.complete(build_prompt(question, build_context(chunks)))
            text = response.strip() if response else ""
            return AnswerResult(
                text=text or EMPTY_ANSWER_FALLBACK,
                sources=build_sources(chunks) if want_sources else None,
            )
        except Exception as exc:
            logger.error("Error answering question for document %s: %s", document_id, exc)
            raise DocumentProcessingError(f"Failed to process question: {exc}") from exc

    def answer_stream(
        self,
        document_id: str,
        question: str,
        *,
        on_complete: Callable[[str], None] | None = None,
    ) -> Iterator[str]:
        """Validate and retrieve eagerly, then return a lazy stream of answer pieces.

        ``on_complete`` receives the full answer once the stream is drained.
        """
        question = self._ensure_ready(document_id, question)

        try:
            chunks = self._retrieve(document_id, question)
        except Exception as exc:
            logger.error("Error retrieving context for document %s: %s", document_id, exc)
            raise DocumentProcessingError(f"Failed to process question: {exc}") from exc

        if not chunks:
            return self._fixed_stream(NO_RELEVANT_CONTEXT_ANSWER, on_complete)

        prompt = build_prompt(question, build_context(chunks))
        return self._generate_stream(document_id, prompt, on_complete)

    @staticmethod
    def _fixed_stream(
        text: str,
        on_complete: Callable[[str], None] | None,
    ) -> Iterator[str]:
        yield text
        if on_complete is not None:
            on_complete(text)

    def _generate_stream(
        self,
        document_id: str,
        prompt: str,
        on_complete: Callable[[str], None] | None,
    ) -> Iterator[str]:
        pieces: list[str] = []
        try:
            for piece in self._chat_gateway.complete_stream(prompt):
                if not piece:
                    continue
                pieces.append(piece)
                yield piece
        except Exception as exc:
            logger.error("Error streaming answer for document %s: %s", document_id, exc)
            raise DocumentProcessingError(f"Failed to process question: {exc}") from exc

        if on_complete is not None:
            on_complete("".join(pieces).strip() or EMPTY_ANSWER_FALLBACK)
