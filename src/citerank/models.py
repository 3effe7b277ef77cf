from __future__ import annotations

from enum import Enum
from pathlib import PurePath

from pydantic import BaseModel, Field

# combined = 0.6 * rerank + 0.4 * base similarity
RERANK_WEIGHT = 0.6
SIMILARITY_WEIGHT = 0.4


class Chunk(BaseModel):
    """A span of a source document, annotated as it moves through the pipeline."""

    chunk_id: str = ""
    content: str
    document_filename: str = "unknown.md"
    document_title: str = ""
    base_similarity: float = Field(default=0.0, ge=0.0, le=1.0)
    rerank_score: float | None = None
    combined_score: float | None = None
    citation_index: int | None = None

    @property
    def title(self) -> str:
        return self.document_title or PurePath(self.document_filename).stem

    def with_rerank_score(self, rerank_score: float) -> Chunk:
        """Return a copy carrying the reranker score and the derived combined score."""
        combined = RERANK_WEIGHT * rerank_score + SIMILARITY_WEIGHT * self.base_similarity
        return self.model_copy(
            update={"rerank_score": rerank_score, "combined_score": combined}
        )


class FilterMode(str, Enum):
    NONE = "none"
    THRESHOLD = "threshold"
    RERANK = "rerank"


class FilterOptions(BaseModel):
    threshold: float = 0.3
    max_chunks: int = 3
    adaptive_threshold: bool = False


class FilterMetrics(BaseModel):
    chunks_before: int = 0
    chunks_after: int = 0
    chunks_filtered: int = 0
    avg_similarity_before: float = 0.0
    avg_similarity_after: float = 0.0
    threshold_used: float | None = None


class FilterResult(BaseModel):
    """Ordered, bounded chunk selection for one query."""

    chunks: list[Chunk] = Field(default_factory=list)
    mode: FilterMode = FilterMode.NONE
    metrics: FilterMetrics = Field(default_factory=FilterMetrics)

    @property
    def has_context(self) -> bool:
        return bool(self.chunks)


class SourceReference(BaseModel):
    filename: str
    title: str
    url: str
    chunk_id: str = ""
    citation_key: str


class FoundCitation(BaseModel):
    number: int
    position: int
    valid: bool


class CitationValidation(BaseModel):
    """Citation compliance of one generated answer."""

    found_citations: list[FoundCitation] = Field(default_factory=list)
    citation_count: int = 0
    valid_citation_count: int = 0
    invalid_citations: list[FoundCitation] = Field(default_factory=list)
    has_valid_citations: bool = False
    has_sources_section: bool = False
    citation_coverage: float = 0.0
    quality_score: float = 0.0


class HallucinationCheck(BaseModel):
    """Answer-length heuristic. A flag for human review, not a verdict."""

    suspected: bool
    length_ratio: float
    analysis: str


class AnswerOptions(BaseModel):
    """Per-call overrides; unset fields fall back to settings."""

    filtering_mode: FilterMode | None = None
    similarity_threshold: float | None = None
    max_chunks: int | None = None
    adaptive_threshold: bool | None = None
    require_citations: bool = False


class Timings(BaseModel):
    retrieval_ms: float = 0.0
    processing_ms: float = 0.0
    generation_ms: float = 0.0
    total_ms: float = 0.0


class RAGResponse(BaseModel):
    question: str
    answer: str
    chunks: list[Chunk] = Field(default_factory=list)
    filtering_mode: FilterMode = FilterMode.NONE
    has_context: bool = False
    citation_count: int = 0
    has_valid_citations: bool = False
    source_references: list[SourceReference] = Field(default_factory=list)
    # Rendered "Sources:" footer for the references, empty without citations
    sources_footer: str = ""
    validation: CitationValidation | None = None
    metrics: FilterMetrics = Field(default_factory=FilterMetrics)
    timings: Timings = Field(default_factory=Timings)


class CitationComparison(BaseModel):
    question: str
    regular: RAGResponse
    cited: RAGResponse
    has_explicit_citations_regular: bool
    hallucination: HallucinationCheck
    length_difference: int
    source_transparency: int
