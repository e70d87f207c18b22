from __future__ import annotations

from array import array
from dataclasses import dataclass
import math
from pathlib import Path
import sqlite3
from typing import Sequence

from pdfchat_api.errors import VectorStoreError


@dataclass(frozen=True)
class VectorRecord:
    chunk_id: str
    document_id: str
    page_number: int
    chunk_index: int
    start_offset: int
    end_offset: int
    content: str
    embedding: list[float]

    @property
    def metadata(self) -> dict[str, object]:
        return {
            "document_id": self.document_id,
            "page_number": self.page_number,
            "chunk_index": self.chunk_index,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
        }


@dataclass(frozen=True)
class ScoredVector:
    record: VectorRecord
    score: float


def _encode_embedding(values: list[float]) -> bytes:
    vector = array("f", values)
    return vector.tobytes()


def _decode_embedding(blob: bytes) -> list[float]:
    vector = array("f")
    vector.frombytes(blob)
    return vector.tolist()


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def relevance(a: list[float], b: list[float]) -> float:
    """Cosine similarity clamped to [0, 1]."""
    return min(1.0, max(0.0, _cosine(a, b)))


def _ensure_schema(connection: sqlite3.Connection) -> None:
    connection.executescript(
        """
        CREATE TABLE IF NOT EXISTS vectors (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            chunk_id TEXT NOT NULL UNIQUE,
            document_id TEXT NOT NULL,
            page_number INTEGER NOT NULL,
            chunk_index INTEGER NOT NULL,
            start_offset INTEGER NOT NULL,
            end_offset INTEGER NOT NULL,
            content TEXT NOT NULL,
            embedding BLOB NOT NULL,
            embedding_dim INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE INDEX IF NOT EXISTS idx_vectors_document_id ON vectors(document_id);
        """
    )


class SqliteVectorStore:
    """Brute-force cosine search over embeddings kept in a local sqlite file."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(self._db_path)
        _ensure_schema(connection)
        return connection

    def add(self, records: Sequence[VectorRecord]) -> None:
        if not records:
            return

        try:
            with self._connect() as connection:
                connection.executemany(
                    """
                    INSERT INTO vectors (
                        chunk_id, document_id, page_number, chunk_index,
                        start_offset, end_offset, content, embedding, embedding_dim
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            record.chunk_id,
                            record.document_id,
                            record.page_number,
                            record.chunk_index,
                            record.start_offset,
                            record.end_offset,
                            record.content,
                            sqlite3.Binary(_encode_embedding(record.embedding)),
                            len(record.embedding),
                        )
                        for record in records
                    ],
                )
        except sqlite3.Error as exc:
            raise VectorStoreError(f"Failed to store vectors: {exc}") from exc

    def _load(self, document_id: str) -> list[VectorRecord]:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT chunk_id, document_id, page_number, chunk_index,
                       start_offset, end_offset, content, embedding, embedding_dim
                FROM vectors
                WHERE document_id = ?
                ORDER BY seq
                """,
                (document_id,),
            ).fetchall()

        records: list[VectorRecord] = []
        for (
            chunk_id,
            row_document_id,
            page_number,
            chunk_index,
            start_offset,
            end_offset,
            content,
            embedding_blob,
            embedding_dim,
        ) in rows:
            embedding = _decode_embedding(embedding_blob)
            if len(embedding) != embedding_dim:
                raise VectorStoreError(
                    f"Corrupt embedding for chunk {chunk_id}: "
                    f"expected {embedding_dim} values, found {len(embedding)}"
                )
            records.append(
                VectorRecord(
                    chunk_id=chunk_id,
                    document_id=row_document_id,
                    page_number=page_number,
                    chunk_index=chunk_index,
                    start_offset=start_offset,
                    end_offset=end_offset,
                    content=content,
                    embedding=embedding,
                )
            )
        return records

    def query(
        self,
        document_id: str,
        embedding: list[float],
        *,
        top_k: int,
        min_score: float,
    ) -> list[ScoredVector]:
        if top_k <= 0:
            raise ValueError("top_k must be > 0")

        try:
            records = self._load(document_id)
        except sqlite3.Error as exc:
            raise VectorStoreError(f"Failed to query vectors: {exc}") from exc

        for record in records:
            if len(record.embedding) != len(embedding):
                raise VectorStoreError(
                    f"Embedding dimension mismatch for document {document_id}: "
                    f"query has {len(embedding)}, stored vectors have {len(record.embedding)}"
                )

        scored = [
            ScoredVector(record=record, score=relevance(embedding, record.embedding))
            for record in records
        ]
        # sort is stable, so equal scores keep insertion order
        scored = [hit for hit in scored if hit.score >= min_score]
        scored.sort(key=lambda hit: hit.score, reverse=True)
        return scored[:top_k]

    def count(self, document_id: str) -> int:
        try:
            with self._connect() as connection:
                row = connection.execute(
                    "SELECT COUNT(*) FROM vectors WHERE document_id = ?",
                    (document_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise VectorStoreError(f"Failed to count vectors: {exc}") from exc
        return int(row[0])

    def delete_document(self, document_id: str) -> int:
        try:
            with self._connect() as connection:
                deleted = connection.execute(
                    "DELETE FROM vectors WHERE document_id = ?",
                    (document_id,),
                ).rowcount
                remaining = connection.execute(
                    "SELECT COUNT(*) FROM vectors WHERE document_id = ?",
                    (document_id,),
                ).fetchone()[0]
                if remaining:
                    raise VectorStoreError(
                        f"{remaining} vectors left behind for document {document_id}"
                    )
        except sqlite3.Error as exc:
            raise VectorStoreError(f"Failed to delete vectors: {exc}") from exc
        return int(deleted)
