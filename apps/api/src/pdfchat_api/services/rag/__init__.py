from pdfchat_api.services.rag.answering import AnsweringEngine
from pdfchat_api.services.rag.chunker import chunk_pages
from pdfchat_api.services.rag.index_gateway import EmbeddingIndexGateway
from pdfchat_api.services.rag.types import AnswerResult, Chunk, RetrievedChunk, SourceReference

__all__ = [
    "AnswerResult",
    "AnsweringEngine",
    "Chunk",
    "EmbeddingIndexGateway",
    "RetrievedChunk",
    "SourceReference",
    "chunk_pages",
]
