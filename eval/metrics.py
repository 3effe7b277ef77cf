from __future__ import annotations

import re

from pydantic import BaseModel

from src.citerank.models import CitationValidation, RAGResponse, SourceReference

from .dataset import GoldenExample

# Partial credit when the exact fact is missing but the right kind of fact is there
_PARTIAL_PATTERNS: dict[str, re.Pattern[str]] = {
    "money": re.compile(r"\$[\d,.]+(?: million|M|K)?"),
    "person": re.compile(r"Dr\.\s*\w+\s+\w+|[A-Z][a-z]+\s+[A-Z][a-z]+"),
    "days": re.compile(r"\d+\s+(?:vacation\s+)?days?", re.IGNORECASE),
    "size": re.compile(r"\d+\s*GB", re.IGNORECASE),
}
_NO_ANSWER_MARKERS = ("unfortunately", "don't have", "no information")

PARTIAL_CREDIT = 0.6
UNKNOWN_EXPECTATION = 0.5
CORRECT_THRESHOLD = 0.8
LOW_COVERAGE = 0.3


class EvalScores(BaseModel):
    """Per-example evaluation scores."""

    question: str
    answer_quality: float  # Does the answer contain the expected fact?
    citation_quality: float  # CitationValidation.quality_score, 0 when not validated
    source_compliance: float  # Did we cite the expected documents?
    chunks_used: int = 0
    has_valid_citations: bool = False
    issues: list[str] = []
    failed: bool = False

    @property
    def is_correct(self) -> bool:
        return self.answer_quality >= CORRECT_THRESHOLD


def _is_no_answer(answer: str) -> bool:
    lowered = answer.lower()
    return any(marker in lowered for marker in _NO_ANSWER_MARKERS)


def answer_quality(answer: str, expected_pattern: str = "", answer_type: str = "") -> float:
    """1.0 when the expected fact is present, partial credit for the right kind of fact."""
    if not expected_pattern:
        return 0.0 if _is_no_answer(answer) else UNKNOWN_EXPECTATION

    if re.search(expected_pattern, answer, re.IGNORECASE):
        return 1.0

    score = 0.0
    partial = _PARTIAL_PATTERNS.get(answer_type)
    if partial is not None and partial.search(answer):
        score = PARTIAL_CREDIT
    if _is_no_answer(answer):
        score = 0.0
    return score


def source_compliance(references: list[SourceReference], expected_sources: list[str]) -> float:
    """Fraction of expected documents that appear among the offered references."""
    if not expected_sources:
        return 1.0

    filenames = [ref.filename for ref in references]
    found = sum(
        1
        for expected in expected_sources
        if any(expected.removesuffix(".md") in name for name in filenames)
    )
    return found / len(expected_sources)


def citation_quality_issues(validation: CitationValidation | None) -> list[str]:
    if validation is None:
        return ["No validation data available"]

    issues: list[str] = []
    if validation.citation_count == 0:
        issues.append("No citations found")
    if validation.invalid_citations:
        issues.append(f"{len(validation.invalid_citations)} invalid citation(s)")
    if not validation.has_sources_section:
        issues.append("No Sources section found")
    if validation.citation_coverage < LOW_COVERAGE:
        issues.append("Low citation coverage of facts")
    return issues


def evaluate_example(response: RAGResponse, golden: GoldenExample) -> EvalScores:
    """Run all metrics on a single example."""
    validation = response.validation
    return EvalScores(
        question=golden.question,
        answer_quality=answer_quality(
            response.answer, golden.expected_pattern, golden.answer_type
        ),
        citation_quality=validation.quality_score if validation else 0.0,
        source_compliance=source_compliance(
            response.source_references, golden.expected_sources
        ),
        chunks_used=len(response.chunks),
        has_valid_citations=response.has_valid_citations,
        issues=citation_quality_issues(validation),
    )
