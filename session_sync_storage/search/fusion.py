"""
Weighted rank fusion of a lexical and a semantic result list.

Each list contributes a score that depends only on an item's position, not
on the underlying relevance values (bm25 and cosine are not comparable):

    score(item at index i of a list of length n) = w × (1 - i / n)

with w = 1 - semantic_weight for the lexical list and w = semantic_weight
for the semantic list. An item found by both lists gets the sum.

Ordering is by total score descending. Ties keep first-seen order: lexical
items in lexical order, then items only the semantic list found, in
semantic order. Sorting is stable, so the output is deterministic.

Examples:
    lexical  = [S1, S2, S3], semantic = [S2, S4], semantic_weight = 0.5
    S1 = 0.5, S2 = 0.5 × 2/3 + 0.5 = 0.833, S3 = 0.167, S4 = 0.25
    fused    = [S2, S1, S4, S3]
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

from ..exceptions import ValidationError

T = TypeVar("T")


@dataclass
class FusedResult(Generic[T]):
    item: T
    score: float
    lexical_rank: int | None = None  # 0-based index in the lexical list
    semantic_rank: int | None = None


def validate_semantic_weight(semantic_weight: float) -> float:
    if not 0.0 <= semantic_weight <= 1.0:
        raise ValidationError(
            "semantic_weight", "must be between 0 and 1", value=str(semantic_weight)
        )
    return float(semantic_weight)


def rank_score(index: int, length: int, weight: float) -> float:
    """Position score of the item at ``index`` in a list of ``length`` items."""
    return weight * (1 - index / length)


def fuse_with_scores(
    lexical: Sequence[T],
    semantic: Sequence[T],
    semantic_weight: float = 0.5,
    key: Callable[[T], Hashable] = lambda item: item,  # type: ignore[assignment,return-value]
) -> list[FusedResult[T]]:
    """
    Fuse two ranked lists, returning every distinct item with its score.

    Items are identified by ``key`` (e.g. the session id). When both lists
    hold the same key, the lexical list's object is kept.

    Raises:
        ValidationError: If semantic_weight is outside [0, 1]
    """
    semantic_weight = validate_semantic_weight(semantic_weight)
    lexical_weight = 1.0 - semantic_weight

    # Insertion order of this dict is the first-seen tie-break order
    fused: dict[Hashable, FusedResult[T]] = {}

    for i, item in enumerate(lexical):
        k = key(item)
        if k in fused:
            continue  # duplicate within one list: first occurrence wins
        fused[k] = FusedResult(
            item=item, score=rank_score(i, len(lexical), lexical_weight), lexical_rank=i
        )

    for i, item in enumerate(semantic):
        k = key(item)
        contribution = rank_score(i, len(semantic), semantic_weight)
        entry = fused.get(k)
        if entry is None:
            fused[k] = FusedResult(item=item, score=contribution, semantic_rank=i)
        elif entry.semantic_rank is None:
            entry.score += contribution
            entry.semantic_rank = i

    return sorted(fused.values(), key=lambda r: r.score, reverse=True)


def fuse_ranked_lists(
    lexical: Sequence[T],
    semantic: Sequence[T],
    semantic_weight: float = 0.5,
    limit: int | None = None,
    key: Callable[[T], Hashable] = lambda item: item,  # type: ignore[assignment,return-value]
) -> list[T]:
    """Fuse two ranked lists into one, best first, at most ``limit`` items."""
    results = fuse_with_scores(lexical, semantic, semantic_weight, key=key)
    if limit is not None:
        results = results[: max(limit, 0)]
    return [r.item for r in results]
