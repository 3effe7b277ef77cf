from __future__ import annotations

import json
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from src.citerank.config import settings
from src.citerank.errors import GenerationError
from src.citerank.generator import GeminiGenerator
from src.citerank.ingest import ingest_directory
from src.citerank.models import AnswerOptions
from src.citerank.pipeline import RAGPipeline, failure_response
from src.citerank.retriever import TfidfRetriever, build_retriever

from .dataset import GoldenExample, load_golden_set
from .metrics import EvalScores, evaluate_example

log = structlog.get_logger()


@dataclass
class EvalReport:
    scores: list[EvalScores] = field(default_factory=list)
    citation_summary: dict[str, float | int] = field(default_factory=dict)

    def _avg(self, attr: str) -> float:
        if not self.scores:
            return 0.0
        return sum(getattr(s, attr) for s in self.scores) / len(self.scores)

    @property
    def avg_answer_quality(self) -> float:
        return self._avg("answer_quality")

    @property
    def avg_citation_quality(self) -> float:
        return self._avg("citation_quality")

    @property
    def avg_source_compliance(self) -> float:
        return self._avg("source_compliance")

    @property
    def success_rate(self) -> float:
        """Percentage of examples answered correctly with valid citations."""
        if not self.scores:
            return 0.0
        ok = sum(1 for s in self.scores if s.is_correct and s.has_valid_citations)
        return ok / len(self.scores) * 100

    def passed(self) -> bool:
        return (
            bool(self.scores)
            and self.avg_answer_quality >= settings.eval_answer_quality_threshold
            and self.avg_citation_quality >= settings.eval_citation_quality_threshold
            and self.avg_source_compliance >= settings.eval_source_compliance_threshold
        )

    def summary(self) -> dict[str, object]:
        return {
            "num_examples": len(self.scores),
            "failed_examples": sum(1 for s in self.scores if s.failed),
            "avg_answer_quality": round(self.avg_answer_quality, 3),
            "avg_citation_quality": round(self.avg_citation_quality, 3),
            "avg_source_compliance": round(self.avg_source_compliance, 3),
            "success_rate": round(self.success_rate, 1),
            "citations": self.citation_summary,
            "thresholds": {
                "answer_quality": settings.eval_answer_quality_threshold,
                "citation_quality": settings.eval_citation_quality_threshold,
                "source_compliance": settings.eval_source_compliance_threshold,
            },
            "passed": self.passed(),
        }


def _evaluate_one(
    pipeline: RAGPipeline,
    example: GoldenExample,
    options: AnswerOptions,
) -> EvalScores:
    try:
        response = pipeline.answer(example.question, options)
    except GenerationError as exc:
        log.exception("eval_example_failed", question=example.question[:60])
        scores = evaluate_example(failure_response(example.question, exc), example)
        return scores.model_copy(update={"failed": True})
    return evaluate_example(response, example)


def run_evaluation(
    pipeline: RAGPipeline,
    golden_path: Path | None = None,
    options: AnswerOptions | None = None,
    max_workers: int | None = None,
) -> EvalReport:
    """Run the golden set through the pipeline (citations on), questions in parallel."""
    gpath = golden_path or settings.eval_golden_path
    opts = options or AnswerOptions(require_citations=True)
    workers = max_workers or settings.eval_max_workers

    golden = load_golden_set(gpath)
    if not golden:
        log.warning("empty_golden_set", path=str(gpath))
        return EvalReport()

    results: dict[int, EvalScores] = {}
    with ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_index = {
            executor.submit(_evaluate_one, pipeline, example, opts): i
            for i, example in enumerate(golden)
        }
        for future in as_completed(future_to_index):
            i = future_to_index[future]
            scores = future.result()
            results[i] = scores
            log.info(
                "eval_result",
                question=scores.question[:60],
                answer_quality=scores.answer_quality,
                citation_quality=round(scores.citation_quality, 3),
                issues=scores.issues,
            )

    return EvalReport(
        scores=[results[i] for i in range(len(golden))],
        citation_summary=pipeline.citation_metrics.summary(),
    )


def build_default_pipeline() -> RAGPipeline:
    """Configured retriever (a saved TF-IDF index when present) with the Gemini generator."""
    retriever = build_retriever()
    if isinstance(retriever, TfidfRetriever) and settings.index_path.exists():
        retriever.load()
    else:
        retriever.build(ingest_directory(settings.docs_dir))
    return RAGPipeline(retriever=retriever, generator=GeminiGenerator())


def main(golden_path: Path | None = None) -> None:
    """CLI entrypoint for evaluation."""
    report = run_evaluation(build_default_pipeline(), golden_path=golden_path)
    print(json.dumps(report.summary(), indent=2))

    if not report.passed():
        print("\nEVALUATION FAILED - below threshold", file=sys.stderr)
        sys.exit(1)

    print("\nEVALUATION PASSED")


if __name__ == "__main__":
    main()
