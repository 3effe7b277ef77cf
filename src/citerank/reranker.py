"""Second-pass relevance scoring for retrieved chunks.

The default `HeuristicReranker` approximates a cross-encoder with five
lexical signals blended into a single score in [0, 1]:

    keyword overlap 0.30, phrase match 0.25, question type 0.20,
    content quality 0.15, length fit 0.10

An optional multiplicative jitter simulates model-scoring noise. It is off by
default and draws from an injectable `random.Random`, so results are
reproducible when seeded.
"""
from __future__ import annotations

import math
import random
import re
import string
from typing import Protocol

import structlog

from .config import settings
from .errors import ConfigurationError
from .models import Chunk

log = structlog.get_logger()

KEYWORD_WEIGHT = 0.30
PHRASE_WEIGHT = 0.25
TYPE_WEIGHT = 0.20
QUALITY_WEIGHT = 0.15
LENGTH_WEIGHT = 0.10

PHRASE_BONUS = 0.2
PHRASE_CAP = 0.6

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "is", "are", "was", "were", "be", "been", "have",
        "has", "had", "do", "does", "did", "will", "would", "could", "should",
    }
)

_PUNCT_RE = re.compile(r"[^\w\s]")
_QUOTED_RE = re.compile(r'"([^"]+)"')
_CAPITALIZED_RE = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")
_FULL_NAME_RE = re.compile(r"\b[A-Z][a-z]+ [A-Z][a-z]+\b")
_DATE_RE = re.compile(
    r"\b\d{4}\b|\b\d{1,2}/\d{1,2}/\d{4}\b|"
    r"\b(?:january|february|march|april|may|june|july|august|september|"
    r"october|november|december)\b",
    re.IGNORECASE,
)
_NUMBER_RE = re.compile(r"\b\d+\b")
_LIST_MARKER_RE = re.compile(r"^\s*(?:[-•*]|\d+\.)\s", re.MULTILINE)
# Money, percentages, and durations ("25 days", "25 vacation days")
_CONCRETE_DATA_RE = re.compile(
    r"\$[\d,]+|\d+%|\b\d+\s*(?:[a-z]+\s+)?(?:hours?|days?|weeks?|months?|years?)\b",
    re.IGNORECASE,
)

# Checked in order; the first match wins.
_QUESTION_TYPES: list[tuple[str, re.Pattern[str]]] = [
    ("pricing", re.compile(r"\b(?:how much|cost|price|budget)")),
    ("person", re.compile(r"\b(?:who|lead|person|employee)")),
    ("temporal", re.compile(r"\b(?:when|date|time|year)")),
    ("quantitative", re.compile(r"\b(?:how many|count|number)|\d+")),
    ("definition", re.compile(r"\b(?:what is|define|explain)")),
    ("procedural", re.compile(r"\b(?:how to|implement|steps?)\b")),
]


def tokenize_for_scoring(text: str) -> list[str]:
    """Lowercase, strip punctuation, drop stop words and tokens of <= 2 chars."""
    cleaned = _PUNCT_RE.sub(" ", text.lower())
    return [w for w in cleaned.split() if len(w) > 2 and w not in STOP_WORDS]


def extract_key_phrases(text: str) -> list[str]:
    """Quoted substrings, adjacent word pairs and capitalized-word runs, lowercased."""
    phrases: list[str] = [p.lower() for p in _QUOTED_RE.findall(text)]

    words = [w.strip(string.punctuation) for w in text.split()]
    for first, second in zip(words, words[1:]):
        if len(first) > 2 and len(second) > 2:
            phrases.append(f"{first} {second}".lower())

    phrases.extend(e.lower() for e in _CAPITALIZED_RE.findall(text))

    return list(dict.fromkeys(phrases))


def detect_question_type(question: str) -> str:
    lowered = question.lower()
    for qtype, pattern in _QUESTION_TYPES:
        if pattern.search(lowered):
            return qtype
    return "general"


def type_match_score(question_type: str, text: str) -> float:
    """How well the chunk carries the kind of evidence the question asks for."""
    lowered = text.lower()

    if question_type == "pricing":
        hit = "$" in lowered or any(w in lowered for w in ("cost", "price", "budget"))
        return 0.8 if hit else 0.2
    if question_type == "person":
        hit = bool(_FULL_NAME_RE.search(text)) or "employee" in lowered or "team" in lowered
        return 0.7 if hit else 0.2
    if question_type == "temporal":
        return 0.8 if _DATE_RE.search(text) else 0.3
    if question_type == "quantitative":
        return 0.6 if _NUMBER_RE.search(text) else 0.2
    if question_type == "definition":
        hit = any(p in lowered for p in ("is a", "refers to", "definition"))
        return 0.7 if hit else 0.4
    if question_type == "procedural":
        hit = any(w in lowered for w in ("step", "first", "then", "process"))
        return 0.6 if hit else 0.3
    return 0.5


def content_quality_score(text: str) -> float:
    score = 0.5

    if _LIST_MARKER_RE.search(text):
        score += 0.1
    if _CONCRETE_DATA_RE.search(text):
        score += 0.2
    if len(text) < 50:
        score -= 0.2

    words = text.split()
    unique = {w.lower() for w in words}
    if len(unique) < len(words) * 0.7:
        score -= 0.1

    return max(0.0, min(1.0, score))


def length_score(text: str, question: str) -> float:
    """1.0 inside [max(100, 2q), 5q]; linear ramp below, decay to 0.3 above."""
    text_len = len(text)
    q_len = len(question)
    optimal_min = max(100, q_len * 2)
    optimal_max = max(q_len * 5, 1)

    if text_len < optimal_min:
        return text_len / optimal_min
    if text_len > optimal_max:
        return max(0.3, 1 - (text_len - optimal_max) / optimal_max)
    return 1.0


def keyword_overlap_score(question: str, text: str) -> float:
    q_words = tokenize_for_scoring(question)
    c_words = set(tokenize_for_scoring(text))
    overlap = sum(1 for w in q_words if w in c_words)
    return min(overlap / max(len(q_words), 1), 1.0)


def phrase_match_score(question: str, text: str) -> float:
    lowered = text.lower()
    hits = sum(1 for p in extract_key_phrases(question) if p in lowered)
    return min(hits * PHRASE_BONUS, PHRASE_CAP)


class Reranker(Protocol):
    def score(self, query: str, content: str) -> float: ...


class HeuristicReranker:
    """Blend of lexical relevance signals, optionally jittered."""

    def __init__(self, jitter: float = 0.0, rng: random.Random | None = None) -> None:
        if jitter < 0 or jitter >= 1:
            raise ConfigurationError(f"jitter must be in [0, 1), got {jitter}")
        self._jitter = jitter
        self._rng = rng or random.Random()

    def signals(self, query: str, content: str) -> dict[str, float]:
        return {
            "keyword": keyword_overlap_score(query, content),
            "phrase": phrase_match_score(query, content),
            "type": type_match_score(detect_question_type(query), content),
            "quality": content_quality_score(content),
            "length": length_score(content, query),
        }

    def score(self, query: str, content: str) -> float:
        s = self.signals(query, content)
        blended = (
            s["keyword"] * KEYWORD_WEIGHT
            + s["phrase"] * PHRASE_WEIGHT
            + s["type"] * TYPE_WEIGHT
            + s["quality"] * QUALITY_WEIGHT
            + s["length"] * LENGTH_WEIGHT
        )
        if self._jitter:
            blended *= self._rng.uniform(1 - self._jitter, 1 + self._jitter)
        return max(0.0, min(1.0, blended))


class CrossEncoderReranker:
    """Scores with a sentence-transformers cross-encoder, squashed to [0, 1]."""

    def __init__(self, model_name: str | None = None) -> None:
        self._model_name = model_name or settings.reranker_model
        self._model = None

    def _get_model(self):
        if self._model is None:
            from sentence_transformers import CrossEncoder

            log.info("loading_cross_encoder", model=self._model_name)
            self._model = CrossEncoder(self._model_name)
        return self._model

    def score(self, query: str, content: str) -> float:
        logit = float(self._get_model().predict([[query, content]])[0])
        return 1.0 / (1.0 + math.exp(-logit))


def build_reranker(backend: str | None = None, jitter: float | None = None) -> Reranker:
    name = backend or settings.reranker_backend
    if name == "cross_encoder":
        return CrossEncoderReranker()
    if name != "heuristic":
        log.warning("unknown_reranker_backend", backend=name, fallback="heuristic")
    return HeuristicReranker(jitter=settings.rerank_jitter if jitter is None else jitter)


def rerank(
    query: str,
    candidates: list[Chunk],
    reranker: Reranker | None = None,
) -> list[Chunk]:
    """Annotate candidates with rerank/combined scores, best first.

    Returns copies; the input chunks are left untouched. The sort is stable,
    so ties keep retriever order.
    """
    if not candidates:
        return []

    scorer = reranker or HeuristicReranker()
    scored = [c.with_rerank_score(scorer.score(query, c.content)) for c in candidates]
    scored.sort(key=lambda c: c.combined_score or 0.0, reverse=True)

    log.debug("reranked", input_count=len(candidates))
    return scored
