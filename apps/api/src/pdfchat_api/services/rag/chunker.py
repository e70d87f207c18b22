from __future__ import annotations

import logging
import re
from typing import Iterable

from pdfchat_api.services.rag.types import Chunk, Page

logger = logging.getLogger(__name__)

SENTENCE_BOUNDARY = re.compile(r"[.!?]\s+")


def _validate(chunk_size: int, chunk_overlap: int) -> None:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    if chunk_overlap < 0:
        raise ValueError("chunk_overlap must be >= 0")
    if chunk_overlap >= chunk_size:
        raise ValueError("chunk_overlap must be smaller than chunk_size")


def _last_sentence_boundary(window: str) -> int:
    last_end = -1
    for match in SENTENCE_BOUNDARY.finditer(window):
        last_end = match.end()
    return last_end


def _chunk_spans(text: str, *, chunk_size: int, chunk_overlap: int) -> list[tuple[int, int]]:
    """Return (start, end) spans over ``text``, sentence-aligned where possible."""
    spans: list[tuple[int, int]] = []
    cursor = 0
    text_length = len(text)

    while cursor < text_length:
        end = min(text_length, cursor + chunk_size)

        if end < text_length:
            boundary = _last_sentence_boundary(text[cursor:end])
            if boundary > chunk_overlap:
                end = cursor + boundary

        spans.append((cursor, end))

        if end >= text_length:
            break

        next_cursor = end - chunk_overlap
        if next_cursor <= cursor:
            next_cursor = end
        cursor = next_cursor

    return spans


def chunk_pages(
    pages: Iterable[Page],
    *,
    document_id: str,
    chunk_size: int,
    chunk_overlap: int,
) -> list[Chunk]:
    _validate(chunk_size, chunk_overlap)

    chunks: list[Chunk] = []
    page_total = 0

    for page in pages:
        page_total += 1
        if not page.text or not page.text.strip():
            continue

        for start, end in _chunk_spans(
            page.text,
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
        ):
            content = page.text[start:end].strip()
            if not content:
                continue
            chunks.append(
                Chunk(
                    document_id=document_id,
                    chunk_index=len(chunks),
                    page_number=page.page_number,
                    content=content,
                    start_offset=start,
                    end_offset=end,
                )
            )

    logger.info("Created %d chunks from %d pages", len(chunks), page_total)
    return chunks
