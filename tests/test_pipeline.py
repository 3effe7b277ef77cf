import pytest

from src.citerank.config import Settings
from src.citerank.errors import ConfigurationError, GenerationError, GenerationTimeout
from src.citerank.models import AnswerOptions, FilterMode, FilterOptions
from src.citerank.pipeline import (
    GENERATION_FAILURE_ANSWER,
    NO_CITABLE_SOURCES_ANSWER,
    NO_CONTEXT_ANSWER,
    CitationPromptStage,
    FilterStage,
    GenerateStage,
    QueryContext,
    RAGPipeline,
    RetrieveStage,
    ValidateStage,
    failure_response,
)
from src.citerank.reranker import HeuristicReranker

from tests.fakes import FakeGenerator, StaticRetriever, make_chunks

CITED_ANSWER = "Fact one is true [1]. Fact two is also true [2].\n\nSources:\n[1] doc0\n[2] doc1"


@pytest.fixture
def config():
    return Settings(
        filtering_mode="threshold",
        similarity_threshold=0.3,
        max_chunks=3,
        adaptive_threshold=False,
        citation_similarity_threshold=0.2,
        citation_max_chunks=4,
        source_base_url="https://docs.example.com/",
        retrieval_top_k=10,
        retrieval_min_similarity=0.0,
        max_context_chars=2000,
    )


def _pipeline(config, similarities, answer="An answer.", error=None):
    retriever = StaticRetriever(make_chunks(similarities))
    generator = FakeGenerator(answer=answer, error=error)
    pipeline = RAGPipeline(retriever, generator, reranker=HeuristicReranker(), config=config)
    return pipeline, retriever, generator


def test_plain_answer(config):
    pipeline, _, generator = _pipeline(config, [0.9, 0.5, 0.1])
    response = pipeline.answer("What is chunk zero?")

    assert response.answer == "An answer."
    assert response.has_context
    assert response.filtering_mode is FilterMode.THRESHOLD
    assert [c.chunk_id for c in response.chunks] == ["c0", "c1"]
    assert all(c.citation_index is None for c in response.chunks)
    assert response.validation is None
    assert response.sources_footer == ""
    assert "Source 1 (doc0.md):" in generator.prompts[0]
    assert response.timings.total_ms >= 0


def test_no_context_skips_generation(config):
    pipeline, _, generator = _pipeline(config, [0.1, 0.05])
    response = pipeline.answer("Anything?")

    assert response.answer == NO_CONTEXT_ANSWER
    assert not response.has_context
    assert response.chunks == []
    assert generator.prompts == []


def test_no_citable_sources_skips_generation(config):
    pipeline, _, generator = _pipeline(config, [0.1, 0.05])
    response = pipeline.answer("Anything?", AnswerOptions(require_citations=True))

    assert response.answer == NO_CITABLE_SOURCES_ANSWER
    assert response.citation_count == 0
    assert response.source_references == []
    assert generator.prompts == []
    assert pipeline.citation_metrics.responses_generated == 0


def test_empty_retrieval_in_rerank_mode(config):
    pipeline, _, generator = _pipeline(config, [])
    response = pipeline.answer("Anything?", AnswerOptions(filtering_mode=FilterMode.RERANK))
    assert response.answer == NO_CONTEXT_ANSWER
    assert generator.prompts == []


def test_cited_answer(config):
    pipeline, _, generator = _pipeline(config, [0.9, 0.8, 0.7], answer=CITED_ANSWER)
    response = pipeline.answer("What are the facts?", AnswerOptions(require_citations=True))

    assert [c.citation_index for c in response.chunks] == [1, 2, 3]
    assert [r.citation_key for r in response.source_references] == ["[1]", "[2]", "[3]"]
    assert response.source_references[0].url == "https://docs.example.com/doc0.md#chunk-c0"
    assert response.sources_footer.splitlines()[:2] == [
        "Sources:",
        "[1] doc0 - https://docs.example.com/doc0.md#chunk-c0",
    ]
    assert response.has_valid_citations
    assert response.citation_count == 4
    assert response.validation.has_sources_section
    assert "[1] Source: doc0 (doc0.md)" in generator.prompts[0]

    summary = pipeline.citation_metrics.summary()
    assert summary["responses_generated"] == 1
    assert summary["citation_compliance"] == 100.0


def test_invalid_citation_recorded_as_failure(config):
    pipeline, _, _ = _pipeline(config, [0.9], answer="Made up [7].")
    response = pipeline.answer("q", AnswerOptions(require_citations=True))
    assert not response.has_valid_citations
    assert pipeline.citation_metrics.validation_failures == 1


def test_citation_defaults_are_wider(config):
    sims = [0.9, 0.8, 0.7, 0.6, 0.5, 0.25, 0.1]
    pipeline, _, _ = _pipeline(config, sims, answer=CITED_ANSWER)

    plain = pipeline.answer("q")
    cited = pipeline.answer("q", AnswerOptions(require_citations=True))

    assert len(plain.chunks) == 3
    assert len(cited.chunks) == 4
    assert cited.metrics.threshold_used == pytest.approx(0.2)


def test_per_call_options_override_config(config):
    pipeline, _, _ = _pipeline(config, [0.9, 0.8, 0.7, 0.6])
    response = pipeline.answer(
        "q", AnswerOptions(filtering_mode=FilterMode.NONE, max_chunks=1)
    )
    assert response.filtering_mode is FilterMode.NONE
    assert [c.chunk_id for c in response.chunks] == ["c0"]


def test_invalid_max_chunks(config):
    pipeline, _, generator = _pipeline(config, [0.9])
    with pytest.raises(ConfigurationError):
        pipeline.answer("q", AnswerOptions(max_chunks=0))
    assert generator.prompts == []


def test_invalid_mode_rejected():
    with pytest.raises(ValueError):
        AnswerOptions(filtering_mode="fuzzy")


def test_generation_failure_carries_context_for_retry(config):
    pipeline, retriever, generator = _pipeline(
        config, [0.9, 0.8], answer=CITED_ANSWER, error=GenerationTimeout("LLM call timed out")
    )
    with pytest.raises(GenerationTimeout) as excinfo:
        pipeline.answer("What are the facts?", AnswerOptions(require_citations=True))

    err = excinfo.value
    assert err.query == "What are the facts?"
    assert [c.chunk_id for c in err.filter_result.chunks] == ["c0", "c1"]
    assert "[1] Source:" in err.prompt
    assert err.context is not None

    generator.error = None
    response = pipeline.generate_answer(err.context)

    assert response.answer == CITED_ANSWER
    assert response.has_valid_citations
    assert retriever.calls == 1


def test_failure_response(config):
    pipeline, _, _ = _pipeline(config, [0.9], error=GenerationTimeout("slow"))
    with pytest.raises(GenerationTimeout) as excinfo:
        pipeline.answer("q")

    response = failure_response("q", excinfo.value)
    assert response.answer == GENERATION_FAILURE_ANSWER
    assert response.answer != NO_CONTEXT_ANSWER
    assert response.has_context
    assert [c.chunk_id for c in response.chunks] == ["c0"]


def test_compare_filtering_modes(config):
    pipeline, _, _ = _pipeline(config, [0.9, 0.5, 0.1])
    results = pipeline.compare_filtering_modes("chunk passage text")

    assert set(results) == set(FilterMode)
    assert len(results[FilterMode.NONE].chunks) == 3
    assert len(results[FilterMode.THRESHOLD].chunks) == 2
    assert all(r.combined_score is not None for r in results[FilterMode.RERANK].chunks)


def test_compare_with_and_without_citations(config):
    def answer(prompt):
        if "You must cite your sources" in prompt:
            return "Short [1]."
        return "A much longer answer without any citation markers in it at all."

    pipeline, _, _ = _pipeline(config, [0.9, 0.8], answer=answer)
    comparison = pipeline.compare_with_and_without_citations("What is it?")

    assert comparison.has_explicit_citations_regular is False
    assert comparison.hallucination.suspected
    assert comparison.source_transparency == 2
    assert comparison.length_difference < 0
    assert comparison.cited.has_valid_citations


def test_answer_many_keeps_order(config):
    pipeline, retriever, _ = _pipeline(
        config, [0.9], answer=lambda prompt: prompt.splitlines()[0]
    )
    questions = [f"question {i}" for i in range(8)]
    responses = pipeline.answer_many(questions, max_workers=4)

    assert [r.answer for r in responses] == [f"Question: {q}" for q in questions]
    assert retriever.calls == 8


def test_answer_many_empty(config):
    pipeline, _, _ = _pipeline(config, [0.9])
    assert pipeline.answer_many([]) == []


def test_stages_run_in_isolation():
    context = QueryContext(
        question="q",
        mode=FilterMode.THRESHOLD,
        filter_options=FilterOptions(threshold=0.3),
        require_citations=True,
    )
    retriever = StaticRetriever(make_chunks([0.9, 0.1]))

    context = RetrieveStage(retriever, top_k=5, min_similarity=0.0).process(context)
    assert len(context.candidates) == 2

    context = FilterStage().process(context)
    assert [c.chunk_id for c in context.filter_result.chunks] == ["c0"]

    context = CitationPromptStage("https://x/").process(context)
    assert context.source_references[0].url == "https://x/doc0.md#chunk-c0"
    assert context.cited_chunks[0].citation_index == 1

    context = GenerateStage(FakeGenerator("Yes it is [1].")).process(context)
    context = ValidateStage().process(context)
    assert context.answer == "Yes it is [1]."
    assert context.validation.has_valid_citations


def test_unknown_configured_mode(config):
    bad = config.model_copy(update={"filtering_mode": "fuzzy"})
    pipeline = RAGPipeline(StaticRetriever([]), FakeGenerator(), reranker=HeuristicReranker(), config=bad)
    with pytest.raises(ConfigurationError):
        pipeline.answer("q")


def test_untyped_timeout_becomes_generation_timeout(config):
    pipeline, retriever, generator = _pipeline(
        config, [0.9, 0.8], answer=CITED_ANSWER, error=TimeoutError("slow")
    )
    with pytest.raises(GenerationTimeout) as excinfo:
        pipeline.answer("What are the facts?", AnswerOptions(require_citations=True))

    err = excinfo.value
    assert isinstance(err.__cause__, TimeoutError)
    assert err.query == "What are the facts?"
    assert [c.chunk_id for c in err.filter_result.chunks] == ["c0", "c1"]

    generator.error = None
    assert pipeline.generate_answer(err.context).has_valid_citations
    assert retriever.calls == 1


def test_provider_error_becomes_generation_error(config):
    pipeline, _, _ = _pipeline(config, [0.9], error=ValueError("missing API key"))
    with pytest.raises(GenerationError) as excinfo:
        pipeline.answer("q")

    err = excinfo.value
    assert not isinstance(err, GenerationTimeout)
    assert "missing API key" in str(err)
    assert err.context is not None
