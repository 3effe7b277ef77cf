from __future__ import annotations

import structlog

from .errors import ConfigurationError
from .models import Chunk, FilterMetrics, FilterMode, FilterOptions, FilterResult
from .reranker import HeuristicReranker, Reranker, rerank

log = structlog.get_logger()

ADAPTIVE_FACTOR = 0.7
ADAPTIVE_FLOOR = 0.1
RERANK_RELAX_FACTOR = 0.8
RERANK_RELAX_FLOOR = 0.15
RERANK_FALLBACK_CANDIDATES = 6
# Absolute floor on combined score in rerank mode. Independent of the caller's
# threshold: a lower threshold widens the candidate pool, not this cut.
COMBINED_SCORE_FLOOR = 0.25


def _validate(mode: FilterMode | str, options: FilterOptions) -> FilterMode:
    try:
        resolved = FilterMode(mode)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown filtering mode: {mode!r}") from exc
    if options.max_chunks <= 0:
        raise ConfigurationError(f"max_chunks must be >= 1, got {options.max_chunks}")
    if not 0.0 <= options.threshold <= 1.0:
        raise ConfigurationError(f"threshold must be in [0, 1], got {options.threshold}")
    return resolved


def _avg_similarity(chunks: list[Chunk]) -> float:
    if not chunks:
        return 0.0
    return sum(c.base_similarity for c in chunks) / len(chunks)


def build_metrics(
    candidates: list[Chunk],
    selected: list[Chunk],
    threshold_used: float | None = None,
) -> FilterMetrics:
    return FilterMetrics(
        chunks_before=len(candidates),
        chunks_after=len(selected),
        chunks_filtered=len(candidates) - len(selected),
        avg_similarity_before=_avg_similarity(candidates),
        avg_similarity_after=_avg_similarity(selected),
        threshold_used=threshold_used,
    )


def apply_threshold(
    candidates: list[Chunk],
    options: FilterOptions,
) -> tuple[list[Chunk], float]:
    """Keep chunks at or above the threshold, relaxing it once if nothing passes."""
    threshold = options.threshold
    kept = [c for c in candidates if c.base_similarity >= threshold]

    if not kept and candidates and options.adaptive_threshold:
        relaxed = max(ADAPTIVE_FLOOR, threshold * ADAPTIVE_FACTOR)
        log.warning("adaptive_threshold", original=threshold, relaxed=relaxed)
        threshold = relaxed
        kept = [c for c in candidates if c.base_similarity >= threshold]

    return kept[: options.max_chunks], threshold


def apply_rerank(
    query: str,
    candidates: list[Chunk],
    options: FilterOptions,
    reranker: Reranker | None = None,
) -> tuple[list[Chunk], float]:
    """Relaxed pre-filter, rerank, combined-score floor, truncate."""
    relaxed = max(RERANK_RELAX_FLOOR, options.threshold * RERANK_RELAX_FACTOR)
    pool = [c for c in candidates if c.base_similarity >= relaxed]
    if not pool:
        pool = candidates[:RERANK_FALLBACK_CANDIDATES]

    scored = rerank(query, pool, reranker=reranker)
    kept = [c for c in scored if (c.combined_score or 0.0) >= COMBINED_SCORE_FLOOR]

    log.debug(
        "rerank_funnel",
        candidates=len(candidates),
        pool=len(pool),
        above_floor=len(kept),
    )
    return kept[: options.max_chunks], relaxed


def select(
    query: str,
    candidates: list[Chunk],
    mode: FilterMode | str = FilterMode.RERANK,
    options: FilterOptions | None = None,
    reranker: Reranker | None = None,
) -> FilterResult:
    """Reduce retriever candidates to a small ordered context.

    - ``none``: first ``max_chunks`` candidates, retriever order.
    - ``threshold``: ``base_similarity >= threshold``, one adaptive retry at
      ``max(0.1, threshold * 0.7)`` when enabled and nothing passed.
    - ``rerank``: pre-filter at ``max(0.15, threshold * 0.8)`` (falling back to
      the first 6 candidates), score with the reranker, order by
      ``combined_score`` and drop anything below 0.25 regardless of threshold.

    The result is always a subsequence of ``candidates`` (annotated copies in
    rerank mode) and never longer than ``max_chunks``. No candidates gives an
    empty result, not an error. Invalid options raise ``ConfigurationError``.
    """
    opts = options or FilterOptions()
    resolved = _validate(mode, opts)

    threshold_used: float | None = None
    if not candidates:
        selected: list[Chunk] = []
    elif resolved is FilterMode.THRESHOLD:
        selected, threshold_used = apply_threshold(candidates, opts)
    elif resolved is FilterMode.RERANK:
        selected, threshold_used = apply_rerank(
            query, candidates, opts, reranker=reranker or HeuristicReranker()
        )
    else:
        selected = candidates[: opts.max_chunks]

    metrics = build_metrics(candidates, selected, threshold_used)
    log.info(
        "filter_applied",
        mode=resolved.value,
        before=metrics.chunks_before,
        after=metrics.chunks_after,
        avg_similarity_after=round(metrics.avg_similarity_after, 3),
    )
    return FilterResult(chunks=selected, mode=resolved, metrics=metrics)
