from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import FilterResult


class CiteRankError(Exception):
    """Base class for all library errors."""


class ConfigurationError(CiteRankError, ValueError):
    """Invalid per-call options (e.g. non-positive max_chunks)."""


class GenerationError(CiteRankError):
    """The LLM call failed.

    Carries everything computed before generation so a caller can retry the
    generation step alone, without re-running retrieval and reranking.
    """

    def __init__(
        self,
        message: str,
        query: str = "",
        filter_result: FilterResult | None = None,
        prompt: str = "",
        context: Any = None,
    ) -> None:
        super().__init__(message)
        self.query = query
        self.filter_result = filter_result
        self.prompt = prompt
        # Pipeline QueryContext at the point of failure, when raised by a pipeline
        self.context = context


class GenerationTimeout(GenerationError):
    """The LLM call exceeded its time budget."""
