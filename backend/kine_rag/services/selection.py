"""Category-diversified source selection and display formatting."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from kine_rag.models.rag import ScoredDocument, SelectedSource
from kine_rag.models.schemas import FormattedSource

logger = logging.getLogger(__name__)

DEFAULT_MAX_SOURCES = 3
DEFAULT_DIVERSITY_MIN_SCORE = 0.6
DEFAULT_EXCELLENCE_SCORE = 0.85

DEFAULT_CATEGORY_LABEL = "Général"
PREVIEW_CHARS = 120


def select_sources(
    documents: Sequence[ScoredDocument],
    max_count: int = DEFAULT_MAX_SOURCES,
    *,
    diversity_min_score: float = DEFAULT_DIVERSITY_MIN_SCORE,
    excellence_score: float = DEFAULT_EXCELLENCE_SCORE,
) -> list[SelectedSource]:
    """Pick at most ``max_count`` sources, favoring distinct categories.

    The best document is always taken. A later candidate is accepted when
    its category is new (or absent) and it scores above
    ``diversity_min_score``, or unconditionally when it scores above
    ``excellence_score``. Selected sources are re-ranked 1..n in selection
    order.
    """
    if max_count <= 0 or not documents:
        return []

    ordered = sorted(documents, key=lambda d: d.final_score, reverse=True)
    selected: list[SelectedSource] = []
    seen_categories: set[str] = set()

    for doc in ordered:
        if len(selected) >= max_count:
            break
        category = doc.category or None
        if not selected:
            tag = "top"
        elif (category is None or category not in seen_categories) and (
            doc.final_score > diversity_min_score
        ):
            tag = "diverse"
        elif doc.final_score > excellence_score:
            tag = "excellent"
        else:
            continue
        selected.append(
            SelectedSource(
                **doc.model_dump(exclude={"diversity_tag", "rank"}),
                diversity_tag=tag,
                rank=len(selected) + 1,
            )
        )
        if category is not None:
            seen_categories.add(category)

    logger.info(
        "Selected %d of %d sources (categories=%s)",
        len(selected),
        len(documents),
        sorted(seen_categories),
    )
    return selected


def relevance_level(score: float) -> str:
    if score >= 0.9:
        return "Excellente"
    if score >= 0.8:
        return "Très bonne"
    if score >= 0.7:
        return "Bonne"
    return "Correcte"


def format_sources(sources: Sequence[ScoredDocument]) -> list[FormattedSource]:
    """Render sources the way the chat UI displays them."""
    formatted = []
    for position, source in enumerate(sources, start=1):
        preview = source.content[:PREVIEW_CHARS]
        if len(source.content) > PREVIEW_CHARS:
            preview += "..."
        formatted.append(
            FormattedSource(
                title=source.title,
                category=source.category or DEFAULT_CATEGORY_LABEL,
                similarity=f"{round(source.similarity * 100)}%",
                confidence=round(source.final_score * 100),
                relevance_level=relevance_level(source.final_score),
                rank=source.rank or position,
                preview=preview,
            )
        )
    return formatted
