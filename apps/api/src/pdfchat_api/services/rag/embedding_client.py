from __future__ import annotations

import hashlib
import math
from typing import Protocol

import httpx

from pdfchat_api.config import Settings


class EmbeddingClientError(RuntimeError):
    pass


class EmbeddingClient(Protocol):
    def embed_texts(self, texts: list[str]) -> list[list[float]]: ...


class OllamaEmbeddingClient:
    def __init__(self, *, base_url: str, model: str, timeout_seconds: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout_seconds = timeout_seconds

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        try:
            response = httpx.post(
                f"{self._base_url}/embeddings",
                json={"model": self._model, "input": texts},
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise EmbeddingClientError(str(exc)) from exc

        payload = response.json()
        data = payload.get("data")
        if not isinstance(data, list):
            raise EmbeddingClientError("Invalid embeddings payload: missing data")

        vectors: list[list[float]] = []
        for item in data:
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise EmbeddingClientError("Invalid embeddings payload: missing embedding vector")
            vectors.append([float(value) for value in embedding])

        if len(vectors) != len(texts):
            raise EmbeddingClientError(
                f"Invalid embeddings payload: expected {len(texts)} vectors, got {len(vectors)}"
            )

        return vectors


class HashEmbeddingClient:
    """Offline embeddings derived from a SHA-256 digest of the text.

    Identical texts map to identical unit vectors; anything else is noise.
    Useful for local runs without an embedding server.
    """

    def __init__(self, *, dimensions: int) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be > 0")
        self._dimensions = dimensions

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def _embed(self, text: str) -> list[float]:
        seed = hashlib.sha256(text.encode("utf-8")).digest()
        values: list[int] = []
        digest = seed

        while len(values) < self._dimensions:
            digest = hashlib.sha256(digest + seed).digest()
            values.extend(digest)

        vector = [((value / 127.5) - 1.0) for value in values[: self._dimensions]]
        norm = math.sqrt(sum(value * value for value in vector))
        if norm > 0:
            return [value / norm for value in vector]
        return vector


def build_embedding_client(settings: Settings) -> EmbeddingClient:
    if settings.rag_embedding_backend == "hash":
        return HashEmbeddingClient(dimensions=settings.rag_embedding_dim)
    if settings.rag_embedding_backend == "ollama":
        return OllamaEmbeddingClient(
            base_url=settings.ollama_embed_base_url,
            model=settings.ollama_embed_model,
            timeout_seconds=settings.ollama_timeout_seconds,
        )
    raise ValueError(f"Unsupported RAG_EMBEDDING_BACKEND: {settings.rag_embedding_backend}")
