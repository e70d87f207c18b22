from dataclasses import dataclass


@dataclass(frozen=True)
class Page:
    page_number: int
    text: str


@dataclass(frozen=True)
class ExtractedDocument:
    page_count: int
    pages: list[Page]


@dataclass(frozen=True)
class Chunk:
    document_id: str
    chunk_index: int
    page_number: int
    content: str
    start_offset: int
    end_offset: int

    @property
    def chunk_id(self) -> str:
        return f"{self.document_id}-{self.chunk_index:04d}"


@dataclass(frozen=True)
class RetrievedChunk:
    content: str
    page_number: int
    chunk_index: int
    relevance_score: float


@dataclass(frozen=True)
class SourceReference:
    page_number: int
    content: str
    relevance_score: float


@dataclass(frozen=True)
class AnswerResult:
    text: str
    sources: list[SourceReference] | None = None
