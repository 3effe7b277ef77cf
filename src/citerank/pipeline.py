"""Query pipeline built from small stages.

Each stage takes a frozen `QueryContext` and returns an updated copy, so the
order of work is explicit and every stage can be tested on its own:

    retrieve -> filter/rerank -> prompt (plain or cited) -> generate -> validate

Configuration comes in per call through `AnswerOptions`; `settings` only
supplies defaults. Nothing on the pipeline object changes during a query
except the thread-safe citation metrics, so independent questions can run
concurrently (`answer_many`).
"""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

from .citations import (
    CitationMetrics,
    build_citation_prompt,
    detect_potential_hallucination,
    extract_citations,
    format_sources_block,
    validate_citations,
)
from .config import Settings, settings as default_settings
from .errors import ConfigurationError, GenerationError, GenerationTimeout
from .filtering import select
from .generator import Generator, build_context_prompt
from .models import (
    AnswerOptions,
    Chunk,
    CitationComparison,
    CitationValidation,
    FilterMode,
    FilterOptions,
    FilterResult,
    RAGResponse,
    SourceReference,
    Timings,
)
from .reranker import Reranker, build_reranker
from .retriever import Retriever

log = structlog.get_logger()

NO_CONTEXT_ANSWER = (
    "I don't have enough relevant information in my knowledge base to answer this question."
)
NO_CITABLE_SOURCES_ANSWER = (
    "I don't have sufficient information in my knowledge base to answer this "
    "question with proper citations."
)
GENERATION_FAILURE_ANSWER = (
    "The answer could not be generated because the language model request failed. "
    "This is a service error, not a lack of information; please retry."
)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class QueryContext(BaseModel):
    """Everything known about one query so far. Immutable; stages copy it."""

    model_config = {"frozen": True}

    question: str
    mode: FilterMode
    filter_options: FilterOptions
    require_citations: bool = False
    candidates: list[Chunk] = Field(default_factory=list)
    filter_result: FilterResult | None = None
    prompt: str = ""
    source_references: list[SourceReference] = Field(default_factory=list)
    cited_chunks: list[Chunk] = Field(default_factory=list)
    answer: str | None = None
    validation: CitationValidation | None = None
    timings: Timings = Field(default_factory=Timings)

    @property
    def has_context(self) -> bool:
        return self.filter_result is not None and self.filter_result.has_context

    def with_timing(self, **updates: float) -> Timings:
        return self.timings.model_copy(update=updates)


class Stage(Protocol):
    def process(self, context: QueryContext) -> QueryContext: ...


class RetrieveStage:
    def __init__(self, retriever: Retriever, top_k: int, min_similarity: float) -> None:
        self._retriever = retriever
        self._top_k = top_k
        self._min_similarity = min_similarity

    def process(self, context: QueryContext) -> QueryContext:
        start = time.perf_counter()
        candidates = self._retriever.retrieve(
            context.question, top_k=self._top_k, min_similarity=self._min_similarity
        )
        if not candidates:
            log.warning("retrieval_empty", question=context.question)
        return context.model_copy(
            update={
                "candidates": candidates,
                "timings": context.with_timing(retrieval_ms=_elapsed_ms(start)),
            }
        )


class FilterStage:
    def __init__(self, reranker: Reranker | None = None) -> None:
        self._reranker = reranker

    def process(self, context: QueryContext) -> QueryContext:
        start = time.perf_counter()
        result = select(
            context.question,
            context.candidates,
            mode=context.mode,
            options=context.filter_options,
            reranker=self._reranker,
        )
        return context.model_copy(
            update={
                "filter_result": result,
                "timings": context.with_timing(processing_ms=_elapsed_ms(start)),
            }
        )


class PromptStage:
    """Plain prompt: sources listed under the question, no citation rules."""

    def __init__(self, max_context_chars: int) -> None:
        self._max_context_chars = max_context_chars

    def process(self, context: QueryContext) -> QueryContext:
        if not context.has_context:
            return context
        prompt = build_context_prompt(
            context.question, context.filter_result.chunks, self._max_context_chars
        )
        return context.model_copy(update={"prompt": prompt})


class CitationPromptStage:
    """Numbered sources plus the mandatory-citation instruction block."""

    def __init__(self, base_url: str) -> None:
        self._base_url = base_url

    def process(self, context: QueryContext) -> QueryContext:
        if not context.has_context:
            return context
        prompt, references, annotated = build_citation_prompt(
            context.question, context.filter_result.chunks, base_url=self._base_url
        )
        return context.model_copy(
            update={
                "prompt": prompt,
                "source_references": references,
                "cited_chunks": annotated,
            }
        )


class GenerateStage:
    """Calls the LLM. Skipped entirely when filtering left no context."""

    def __init__(self, generator: Generator) -> None:
        self._generator = generator

    @staticmethod
    def _failure_details(context: QueryContext) -> dict[str, Any]:
        return {
            "query": context.question,
            "filter_result": context.filter_result,
            "prompt": context.prompt,
            "context": context,
        }

    def process(self, context: QueryContext) -> QueryContext:
        if not context.has_context:
            fallback = NO_CITABLE_SOURCES_ANSWER if context.require_citations else NO_CONTEXT_ANSWER
            return context.model_copy(update={"answer": fallback})

        start = time.perf_counter()
        try:
            answer = self._generator.generate(context.prompt)
        except GenerationError as exc:
            log.error("generation_failed", question=context.question, error=str(exc))
            raise type(exc)(str(exc), **self._failure_details(context)) from exc
        except Exception as exc:
            log.exception("generation_failed", question=context.question)
            error_cls = GenerationTimeout if isinstance(exc, TimeoutError) else GenerationError
            raise error_cls(
                f"{type(exc).__name__}: {exc}", **self._failure_details(context)
            ) from exc

        return context.model_copy(
            update={
                "answer": answer,
                "timings": context.with_timing(generation_ms=_elapsed_ms(start)),
            }
        )


class ValidateStage:
    def __init__(self, metrics: CitationMetrics | None = None) -> None:
        self._metrics = metrics

    def process(self, context: QueryContext) -> QueryContext:
        if not context.has_context or context.answer is None:
            return context.model_copy(update={"validation": CitationValidation()})

        validation = validate_citations(context.answer, context.source_references)
        if self._metrics is not None:
            self._metrics.record(validation)
        log.info(
            "citations_validated",
            citations=validation.citation_count,
            valid=validation.has_valid_citations,
            quality=round(validation.quality_score, 2),
        )
        return context.model_copy(update={"validation": validation})


def run_stages(stages: list[Stage], context: QueryContext) -> QueryContext:
    for stage in stages:
        context = stage.process(context)
    return context


def to_response(context: QueryContext) -> RAGResponse:
    result = context.filter_result or FilterResult(mode=context.mode)
    validation = context.validation
    chunks = context.cited_chunks if context.require_citations else result.chunks
    return RAGResponse(
        question=context.question,
        answer=context.answer or "",
        chunks=chunks,
        filtering_mode=result.mode,
        has_context=result.has_context,
        citation_count=validation.citation_count if validation else 0,
        has_valid_citations=validation.has_valid_citations if validation else False,
        source_references=context.source_references,
        sources_footer=format_sources_block(context.source_references),
        validation=validation,
        metrics=result.metrics,
        timings=context.timings,
    )


def failure_response(question: str, error: GenerationError) -> RAGResponse:
    """User-facing response for an infrastructure failure during generation."""
    result = error.filter_result or FilterResult()
    return RAGResponse(
        question=question,
        answer=GENERATION_FAILURE_ANSWER,
        chunks=result.chunks,
        filtering_mode=result.mode,
        has_context=result.has_context,
        metrics=result.metrics,
    )


class RAGPipeline:
    """End-to-end pipeline: retrieve → filter/rerank → prompt → generate → validate."""

    def __init__(
        self,
        retriever: Retriever,
        generator: Generator,
        reranker: Reranker | None = None,
        config: Settings | None = None,
    ) -> None:
        self._config = config or default_settings
        self._retriever = retriever
        self._generator = generator
        self._reranker = reranker or build_reranker(
            self._config.reranker_backend, self._config.rerank_jitter
        )
        self.citation_metrics = CitationMetrics()

    def resolve(self, question: str, options: AnswerOptions | None = None) -> QueryContext:
        """Merge per-call options over the configured defaults."""
        opts = options or AnswerOptions()
        cfg = self._config
        if opts.require_citations:
            default_threshold = cfg.citation_similarity_threshold
            default_max = cfg.citation_max_chunks
        else:
            default_threshold = cfg.similarity_threshold
            default_max = cfg.max_chunks

        try:
            mode = FilterMode(opts.filtering_mode or cfg.filtering_mode)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown filtering mode: {cfg.filtering_mode!r}") from exc

        filter_options = FilterOptions(
            threshold=(
                opts.similarity_threshold
                if opts.similarity_threshold is not None
                else default_threshold
            ),
            max_chunks=opts.max_chunks if opts.max_chunks is not None else default_max,
            adaptive_threshold=(
                opts.adaptive_threshold
                if opts.adaptive_threshold is not None
                else cfg.adaptive_threshold
            ),
        )
        return QueryContext(
            question=question,
            mode=mode,
            filter_options=filter_options,
            require_citations=opts.require_citations,
        )

    def _retrieval_stages(self) -> list[Stage]:
        return [
            RetrieveStage(
                self._retriever,
                top_k=self._config.retrieval_top_k,
                min_similarity=self._config.retrieval_min_similarity,
            ),
            FilterStage(self._reranker),
        ]

    def _generation_stages(self, require_citations: bool) -> list[Stage]:
        stages: list[Stage] = [GenerateStage(self._generator)]
        if require_citations:
            stages.append(ValidateStage(self.citation_metrics))
        return stages

    def stages_for(self, require_citations: bool) -> list[Stage]:
        prompt_stage: Stage = (
            CitationPromptStage(self._config.source_base_url)
            if require_citations
            else PromptStage(self._config.max_context_chars)
        )
        return [
            *self._retrieval_stages(),
            prompt_stage,
            *self._generation_stages(require_citations),
        ]

    def answer(self, question: str, options: AnswerOptions | None = None) -> RAGResponse:
        """Run the full pipeline on one question.

        Raises ``ConfigurationError`` for invalid options and
        ``GenerationError`` (with the filter result attached) when the LLM call
        fails; everything else, including an empty retrieval, yields a response.
        """
        start = time.perf_counter()
        context = self.resolve(question, options)
        context = run_stages(self.stages_for(context.require_citations), context)
        context = context.model_copy(
            update={"timings": context.with_timing(total_ms=_elapsed_ms(start))}
        )

        log.info(
            "answered",
            mode=context.mode.value,
            citations=context.require_citations,
            chunks=len(context.filter_result.chunks) if context.filter_result else 0,
            total_ms=round(context.timings.total_ms, 1),
        )
        return to_response(context)

    def generate_answer(self, context: QueryContext) -> RAGResponse:
        """Redo only generation (and validation) for an already-filtered context.

        Intended for retries after a ``GenerationError``: pass ``error.context``.
        """
        context = run_stages(self._generation_stages(context.require_citations), context)
        return to_response(context)

    def compare_filtering_modes(
        self,
        question: str,
        options: AnswerOptions | None = None,
    ) -> dict[FilterMode, RAGResponse]:
        base = options or AnswerOptions()
        return {
            mode: self.answer(question, base.model_copy(update={"filtering_mode": mode}))
            for mode in FilterMode
        }

    def compare_with_and_without_citations(
        self,
        question: str,
        options: AnswerOptions | None = None,
    ) -> CitationComparison:
        """Answer once plainly and once with citations enforced.

        The hallucination flag is a length heuristic for human review only.
        """
        base = options or AnswerOptions()
        regular = self.answer(question, base.model_copy(update={"require_citations": False}))
        cited = self.answer(question, base.model_copy(update={"require_citations": True}))

        return CitationComparison(
            question=question,
            regular=regular,
            cited=cited,
            has_explicit_citations_regular=bool(extract_citations(regular.answer, 0)),
            hallucination=detect_potential_hallucination(regular.answer, cited.answer),
            length_difference=len(cited.answer) - len(regular.answer),
            source_transparency=len(cited.source_references),
        )

    def answer_many(
        self,
        questions: list[str],
        options: AnswerOptions | None = None,
        max_workers: int = 4,
    ) -> list[RAGResponse]:
        """Answer independent questions concurrently; results keep input order."""
        if not questions:
            return []
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [executor.submit(self.answer, q, options) for q in questions]
            return [f.result() for f in futures]
