from __future__ import annotations

import re
import threading

import structlog

from .config import settings
from .models import (
    Chunk,
    CitationValidation,
    FoundCitation,
    HallucinationCheck,
    SourceReference,
)

log = structlog.get_logger()

_CITE_RE = re.compile(r"\[(\d+)\]")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_SOURCES_HEADERS = ("sources:", "references:")

MIN_SENTENCE_CHARS = 10
HALLUCINATION_RATIO = 0.7

CITATION_INSTRUCTIONS = (
    "IMPORTANT: You must cite your sources using the provided reference numbers "
    "[1], [2], etc. Every fact, statement, or piece of information in your answer "
    "must be followed by the appropriate citation number(s). Only use the "
    "reference numbers listed above. Do not include any information that cannot "
    "be cited from the provided sources. End your response with a \"Sources:\" "
    "section listing all cited references with their URLs.\n\n"
    "Please answer the question using only the information provided above, "
    "with proper citations."
)


def build_source_reference(chunk: Chunk, index: int, base_url: str) -> SourceReference:
    return SourceReference(
        filename=chunk.document_filename,
        title=chunk.title,
        url=f"{base_url}{chunk.document_filename}#chunk-{chunk.chunk_id}",
        chunk_id=chunk.chunk_id,
        citation_key=f"[{index}]",
    )


def build_citation_prompt(
    question: str,
    chunks: list[Chunk],
    base_url: str | None = None,
) -> tuple[str, list[SourceReference], list[Chunk]]:
    """Number the chunks 1..n and build a prompt that demands [n] citations.

    Returns the prompt, one reference per chunk (same order), and copies of
    the chunks carrying their ``citation_index``.
    """
    url_root = base_url if base_url is not None else settings.source_base_url

    annotated: list[Chunk] = []
    references: list[SourceReference] = []
    lines = [f"Question: {question}", "", "Relevant Source Materials:", ""]

    for i, chunk in enumerate(chunks, start=1):
        ref = build_source_reference(chunk, i, url_root)
        references.append(ref)
        annotated.append(chunk.model_copy(update={"citation_index": i}))
        lines.append(f"[{i}] Source: {ref.title} ({ref.filename})")
        lines.append(f"URL: {ref.url}")
        lines.append(f"Content: {chunk.content}")
        lines.append("")

    lines.append(CITATION_INSTRUCTIONS)
    return "\n".join(lines), references, annotated


def extract_citations(text: str, num_sources: int) -> list[FoundCitation]:
    """Every ``[n]`` marker in the text, with its offset and validity."""
    found: list[FoundCitation] = []
    for m in _CITE_RE.finditer(text):
        number = int(m.group(1))
        found.append(
            FoundCitation(number=number, position=m.start(), valid=1 <= number <= num_sources)
        )
    return found


def split_sentences(text: str) -> list[str]:
    return [s for s in _SENTENCE_SPLIT_RE.split(text) if len(s.strip()) > MIN_SENTENCE_CHARS]


def citation_coverage(text: str) -> float:
    """Fraction of answer sentences that carry at least one [n] marker."""
    sentences = split_sentences(text)
    if not sentences:
        return 0.0
    cited = sum(1 for s in sentences if _CITE_RE.search(s))
    return cited / len(sentences)


def has_sources_section(text: str) -> bool:
    lowered = text.lower()
    return any(header in lowered for header in _SOURCES_HEADERS)


def validate_citations(
    answer: str,
    source_references: list[SourceReference],
) -> CitationValidation:
    """Check an answer's [n] markers against the references it was given.

    quality = 0.4 * (any valid) + 0.3 * (has Sources section) + 0.3 * coverage
    """
    found = extract_citations(answer, len(source_references))
    valid = [c for c in found if c.valid]
    invalid = [c for c in found if not c.valid]
    sources_section = has_sources_section(answer)
    coverage = citation_coverage(answer)

    if invalid:
        log.warning("invalid_citations", numbers=[c.number for c in invalid])

    quality = (
        (0.4 if valid else 0.0)
        + (0.3 if sources_section else 0.0)
        + coverage * 0.3
    )

    return CitationValidation(
        found_citations=found,
        citation_count=len(found),
        valid_citation_count=len(valid),
        invalid_citations=invalid,
        has_valid_citations=bool(valid) and not invalid,
        has_sources_section=sources_section,
        citation_coverage=coverage,
        quality_score=quality,
    )


def detect_potential_hallucination(regular_answer: str, cited_answer: str) -> HallucinationCheck:
    """Flag answers that shrink by more than 30% once citations are enforced.

    This is a rough length heuristic: a much shorter cited answer *may* mean
    unsupported content was dropped. It marks the pair for human review and
    must not be used as a pass/fail gate.
    """
    if not regular_answer:
        ratio = 1.0
    else:
        ratio = len(cited_answer) / len(regular_answer)
    suspected = ratio < HALLUCINATION_RATIO

    return HallucinationCheck(
        suspected=suspected,
        length_ratio=round(ratio, 2),
        analysis=(
            "Cited version significantly shorter - possible hallucination removal"
            if suspected
            else "Length difference acceptable"
        ),
    )


def format_sources_block(references: list[SourceReference]) -> str:
    """Render references as a Sources footer."""
    if not references:
        return ""
    lines = ["Sources:"]
    for ref in references:
        lines.append(f"{ref.citation_key} {ref.title} - {ref.url}")
    return "\n".join(lines)


class CitationMetrics:
    """Running citation compliance across answers. Safe to share between threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.responses_generated = 0
        self.responses_with_citations = 0
        self.validation_failures = 0
        self.average_citations_per_response = 0.0

    def record(self, validation: CitationValidation) -> None:
        with self._lock:
            self.responses_generated += 1
            if validation.has_valid_citations:
                self.responses_with_citations += 1
            else:
                self.validation_failures += 1

            total = self.average_citations_per_response * (self.responses_generated - 1)
            self.average_citations_per_response = (
                total + validation.citation_count
            ) / self.responses_generated

    @property
    def compliance(self) -> float:
        """Percentage of responses with valid citations."""
        if self.responses_generated == 0:
            return 0.0
        return self.responses_with_citations / self.responses_generated * 100

    def summary(self) -> dict[str, float | int]:
        with self._lock:
            return {
                "responses_generated": self.responses_generated,
                "responses_with_citations": self.responses_with_citations,
                "validation_failures": self.validation_failures,
                "citation_compliance": round(self.compliance, 1),
                "avg_citations": round(self.average_citations_per_response, 1),
            }
