"""Scalar confidence estimate over a scored result set."""

from __future__ import annotations

from collections.abc import Sequence

from kine_rag.models.rag import ScoredDocument

NEUTRAL_CONFIDENCE = 0.5
BEST_WEIGHT = 0.7
MEAN_WEIGHT = 0.3


def estimate_confidence(documents: Sequence[ScoredDocument]) -> float:
    """0.7 x best final score + 0.3 x mean final score, within [0, 1].

    An empty result set is neutral (0.5): no sources is not evidence of a
    bad answer.
    """
    if not documents:
        return NEUTRAL_CONFIDENCE
    scores = [d.final_score for d in documents]
    value = BEST_WEIGHT * max(scores) + MEAN_WEIGHT * (sum(scores) / len(scores))
    return min(max(value, 0.0), 1.0)
