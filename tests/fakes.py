from __future__ import annotations

from typing import Callable

from src.citerank.models import Chunk


def make_chunks(similarities: list[float], prefix: str = "chunk") -> list[Chunk]:
    return [
        Chunk(
            chunk_id=f"c{i}",
            content=f"{prefix} {i} with enough words to look like a real passage of text",
            document_filename=f"doc{i}.md",
            base_similarity=sim,
        )
        for i, sim in enumerate(similarities)
    ]


class StaticRetriever:
    """Returns the same candidates for every query."""

    def __init__(self, chunks: list[Chunk]) -> None:
        self.chunks = chunks
        self.calls = 0

    def retrieve(self, query, top_k=None, min_similarity=None):
        self.calls += 1
        return [c.model_copy() for c in self.chunks]


class FakeGenerator:
    """Answers with a fixed string, a function of the prompt, or raises."""

    def __init__(
        self,
        answer: str | Callable[[str], str] = "An answer.",
        error: Exception | None = None,
    ) -> None:
        self.answer = answer
        self.error = error
        self.prompts: list[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.answer(prompt) if callable(self.answer) else self.answer


class FixedReranker:
    """Scores by content lookup; unknown content scores `default`."""

    def __init__(self, scores: dict[str, float] | None = None, default: float = 0.0) -> None:
        self.scores = scores or {}
        self.default = default

    def score(self, query: str, content: str) -> float:
        return self.scores.get(content, self.default)
