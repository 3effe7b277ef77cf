from __future__ import annotations

import json
from pathlib import Path
from typing import Protocol

import numpy as np
import structlog
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import linear_kernel

from .config import settings
from .models import Chunk
from .reranker import tokenize_for_scoring

log = structlog.get_logger()


class Retriever(Protocol):
    def retrieve(
        self,
        query: str,
        top_k: int | None = None,
        min_similarity: float | None = None,
    ) -> list[Chunk]: ...


def _rank(
    chunks: list[Chunk],
    similarities: np.ndarray,
    top_k: int,
    min_similarity: float,
) -> list[Chunk]:
    """Chunks with their similarity attached, best first, cut at top_k / min_similarity."""
    order = np.argsort(-similarities, kind="stable")
    results: list[Chunk] = []
    for idx in order[:top_k]:
        sim = float(min(1.0, max(0.0, similarities[idx])))
        if sim < min_similarity:
            break
        results.append(chunks[idx].model_copy(update={"base_similarity": sim}))
    return results


class TfidfRetriever:
    """Lexical retrieval: TF-IDF vectors over chunk text, cosine similarity in [0, 1]."""

    def __init__(self) -> None:
        self._chunks: list[Chunk] = []
        self._vectorizer: TfidfVectorizer | None = None
        self._matrix = None
        self._built = False

    def build(self, chunks: list[Chunk]) -> None:
        self._chunks = chunks
        self._built = True
        texts = [c.content for c in chunks]
        # fit_transform rejects a corpus with no scorable terms
        if not any(tokenize_for_scoring(t) for t in texts):
            self._vectorizer = None
            self._matrix = None
            log.info("tfidf_built", num_docs=len(chunks), vocab_size=0)
            return

        # Rows are L2-normalised, so a dot product with the query is cosine similarity
        self._vectorizer = TfidfVectorizer(
            tokenizer=tokenize_for_scoring,
            lowercase=False,
            token_pattern=None,
        )
        self._matrix = self._vectorizer.fit_transform(texts)
        log.info("tfidf_built", num_docs=len(chunks), vocab_size=len(self._vectorizer.vocabulary_))

    def retrieve(
        self,
        query: str,
        top_k: int | None = None,
        min_similarity: float | None = None,
    ) -> list[Chunk]:
        if not self._built:
            raise RuntimeError("TF-IDF index not built. Call build() first.")

        k = top_k or settings.retrieval_top_k
        floor = settings.retrieval_min_similarity if min_similarity is None else min_similarity
        if self._vectorizer is None:
            return []

        query_vec = self._vectorizer.transform([query])
        similarities = linear_kernel(query_vec, self._matrix).ravel()
        results = _rank(self._chunks, similarities, k, floor)

        log.debug("tfidf_retrieval", query=query, hits=len(results))
        return results

    def save(self, path: Path | None = None) -> None:
        save_path = path or settings.index_path
        save_path.parent.mkdir(parents=True, exist_ok=True)
        data = {"chunks": [c.model_dump() for c in self._chunks]}
        save_path.write_text(json.dumps(data), encoding="utf-8")
        log.info("tfidf_saved", path=str(save_path))

    def load(self, path: Path | None = None) -> None:
        load_path = path or settings.index_path
        data = json.loads(load_path.read_text(encoding="utf-8"))
        chunks = [Chunk(**c) for c in data["chunks"]]
        self.build(chunks)
        log.info("tfidf_loaded", path=str(load_path), num_docs=len(chunks))


class Embedder(Protocol):
    def embed_texts(self, texts: list[str]) -> np.ndarray: ...

    def embed_query(self, query: str) -> np.ndarray: ...


class EmbeddingRetriever:
    """Dense retrieval over unit-length embeddings; negative cosine is clamped to 0."""

    def __init__(self, embedder: Embedder | None = None) -> None:
        self._embedder = embedder
        self._chunks: list[Chunk] = []
        self._matrix: np.ndarray | None = None

    def _get_embedder(self) -> Embedder:
        if self._embedder is None:
            from .embeddings import SentenceEmbedder

            self._embedder = SentenceEmbedder()
        return self._embedder

    def build(self, chunks: list[Chunk]) -> None:
        self._chunks = chunks
        self._matrix = self._get_embedder().embed_texts([c.content for c in chunks])
        log.info("embeddings_built", num_docs=len(chunks))

    def retrieve(
        self,
        query: str,
        top_k: int | None = None,
        min_similarity: float | None = None,
    ) -> list[Chunk]:
        if self._matrix is None:
            raise RuntimeError("Embedding index not built. Call build() first.")

        k = top_k or settings.retrieval_top_k
        floor = settings.retrieval_min_similarity if min_similarity is None else min_similarity
        if not self._chunks:
            return []

        similarities = self._matrix @ self._get_embedder().embed_query(query)
        return _rank(self._chunks, similarities, k, floor)


def build_retriever(backend: str | None = None) -> TfidfRetriever | EmbeddingRetriever:
    name = backend or settings.retriever_backend
    if name == "embedding":
        return EmbeddingRetriever()
    if name != "tfidf":
        log.warning("unknown_retriever_backend", backend=name, fallback="tfidf")
    return TfidfRetriever()
