"""Similarity-threshold sweep.

Runs every golden question through threshold-mode filtering at each
threshold in a range (adaptive relaxation off) and ranks thresholds by how
often the answer contains the expected fact.
"""
from __future__ import annotations

from functools import cmp_to_key

import structlog
from pydantic import BaseModel

from src.citerank.errors import GenerationError
from src.citerank.models import AnswerOptions, FilterMode
from src.citerank.pipeline import RAGPipeline

from .dataset import GoldenExample
from .metrics import CORRECT_THRESHOLD, answer_quality

log = structlog.get_logger()

# Success rates closer than this are considered a tie; efficiency decides.
SUCCESS_RATE_TIE = 5.0


class ThresholdResult(BaseModel):
    threshold: float
    success_rate: float  # % of questions answered correctly
    avg_chunks: float
    avg_quality: float
    avg_similarity: float  # over questions that got any context
    questions_answered: int  # questions that got any context
    efficiency: float  # % correct among questions that got context


class Recommendation(BaseModel):
    kind: str
    threshold: float
    description: str


class TuningReport(BaseModel):
    results: list[ThresholdResult] = []
    recommendations: list[Recommendation] = []

    @property
    def best(self) -> ThresholdResult | None:
        return self.results[0] if self.results else None


def generate_thresholds(minimum: float = 0.1, maximum: float = 0.8, step: float = 0.05) -> list[float]:
    thresholds: list[float] = []
    n = 0
    while True:
        value = round(minimum + n * step, 2)
        if value > maximum + 1e-9:
            break
        thresholds.append(value)
        n += 1
    return thresholds


def evaluate_threshold(
    pipeline: RAGPipeline,
    examples: list[GoldenExample],
    threshold: float,
    max_chunks: int = 3,
) -> ThresholdResult:
    options = AnswerOptions(
        filtering_mode=FilterMode.THRESHOLD,
        similarity_threshold=threshold,
        max_chunks=max_chunks,
        adaptive_threshold=False,
    )

    correct = 0
    total_chunks = 0
    total_quality = 0.0
    similarity_sum = 0.0
    answered = 0

    for example in examples:
        try:
            response = pipeline.answer(example.question, options)
        except GenerationError:
            log.exception("tuning_question_failed", threshold=threshold, question=example.question[:60])
            continue

        quality = answer_quality(response.answer, example.expected_pattern, example.answer_type)
        total_quality += quality
        total_chunks += len(response.chunks)
        if quality >= CORRECT_THRESHOLD:
            correct += 1
        if response.chunks:
            answered += 1
            similarity_sum += response.metrics.avg_similarity_after

    n = len(examples) or 1
    return ThresholdResult(
        threshold=threshold,
        success_rate=correct / n * 100,
        avg_chunks=total_chunks / n,
        avg_quality=total_quality / n,
        avg_similarity=similarity_sum / answered if answered else 0.0,
        questions_answered=answered,
        efficiency=correct / answered * 100 if answered else 0.0,
    )


def _compare(a: ThresholdResult, b: ThresholdResult) -> float:
    if abs(a.success_rate - b.success_rate) < SUCCESS_RATE_TIE:
        return b.efficiency - a.efficiency
    return b.success_rate - a.success_rate


def recommend(results: list[ThresholdResult]) -> list[Recommendation]:
    """Optimal plus high-precision / balanced / high-recall alternatives, if distinct."""
    if not results:
        return []

    optimal = results[0]
    recs = [
        Recommendation(
            kind="optimal",
            threshold=optimal.threshold,
            description=f"Best balance of success rate ({optimal.success_rate:.0f}%) and coverage",
        )
    ]

    candidates = [
        (
            "high_precision",
            next((r for r in results if r.questions_answered <= 2 and r.success_rate >= 80), None),
            "Maximum accuracy with fewer answers",
        ),
        (
            "balanced",
            next((r for r in results if r.questions_answered >= 3 and r.success_rate >= 50), None),
            "Good balance of accuracy and coverage",
        ),
        (
            "high_recall",
            next((r for r in results if r.questions_answered >= 4), None),
            "Answers the most questions",
        ),
    ]
    for kind, result, description in candidates:
        if result is not None and result.threshold != optimal.threshold:
            recs.append(Recommendation(kind=kind, threshold=result.threshold, description=description))
    return recs


def tune_thresholds(
    pipeline: RAGPipeline,
    examples: list[GoldenExample],
    thresholds: list[float] | None = None,
    max_chunks: int = 3,
) -> TuningReport:
    sweep = thresholds if thresholds is not None else generate_thresholds()

    results: list[ThresholdResult] = []
    for threshold in sweep:
        result = evaluate_threshold(pipeline, examples, threshold, max_chunks=max_chunks)
        log.info(
            "threshold_evaluated",
            threshold=threshold,
            success_rate=round(result.success_rate, 1),
            avg_chunks=round(result.avg_chunks, 2),
        )
        results.append(result)

    results.sort(key=cmp_to_key(_compare))
    return TuningReport(results=results, recommendations=recommend(results))
