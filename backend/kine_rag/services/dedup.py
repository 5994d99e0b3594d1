"""Near-duplicate detection over chunks and stored documents (lexical Jaccard)."""

from __future__ import annotations

import datetime
import logging
import re
from collections.abc import Iterable, Sequence
from typing import Any

from kine_rag.models.rag import Chunk, Document

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.85

_WORD = re.compile(r"\w+")


def significant_words(text: str) -> set[str]:
    """Lower-cased words longer than three characters."""
    return {w for w in _WORD.findall(text.lower()) if len(w) > 3}


def jaccard(a: str | set[str], b: str | set[str]) -> float:
    """|A ∩ B| / |A ∪ B| over significant words; 0.0 when both are empty."""
    words_a = significant_words(a) if isinstance(a, str) else a
    words_b = significant_words(b) if isinstance(b, str) else b
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def dedupe_chunks(
    chunks: Sequence[Chunk], threshold: float = DEFAULT_THRESHOLD
) -> list[Chunk]:
    """Drop near-duplicate chunks within one ingestion batch.

    When two chunks exceed ``threshold`` the higher-priority one survives
    (the earlier one on ties) and keeps the earlier position. Quadratic in
    the batch size, which is bounded by a single source document.
    """
    kept: list[tuple[Chunk, set[str]]] = []
    dropped = 0
    for chunk in chunks:
        words = significant_words(chunk.content)
        for idx, (other, other_words) in enumerate(kept):
            if jaccard(words, other_words) > threshold:
                if chunk.priority > other.priority:
                    kept[idx] = (chunk, words)
                dropped += 1
                break
        else:
            kept.append((chunk, words))

    if dropped:
        logger.info(
            "Batch dedup: dropped %d of %d chunks (threshold=%.2f)",
            dropped,
            len(chunks),
            threshold,
        )
    return [chunk for chunk, _ in kept]


def find_duplicate(
    content: str,
    candidates: Iterable[Document],
    threshold: float = DEFAULT_THRESHOLD,
) -> Document | None:
    """Return the most similar candidate above ``threshold``, if any."""
    words = significant_words(content)
    best: Document | None = None
    best_score = threshold
    for candidate in candidates:
        score = jaccard(words, significant_words(candidate.content))
        if score > best_score:
            best, best_score = candidate, score
    if best is not None:
        logger.debug("Duplicate of %s (jaccard=%.3f)", best.id, best_score)
    return best


def _union_list(existing: list, incoming: list) -> list:
    merged = list(existing)
    for item in incoming:
        if item not in merged:
            merged.append(item)
    return merged


def merge_metadata(
    existing: dict[str, Any],
    incoming: dict[str, Any],
    *,
    merged_at: datetime.datetime | None = None,
) -> dict[str, Any]:
    """Union two metadata maps for a duplicate resubmission.

    Existing scalar values win on conflict; list values are unioned in
    order. The merge is flagged with ``duplicate_detected``, a timestamp
    and a running ``merge_count``; differing source files are collected in
    ``merged_sources``.
    """
    merged_at = merged_at or datetime.datetime.now(datetime.UTC)
    merged = dict(existing)

    for key, value in incoming.items():
        if key not in merged or merged[key] in (None, "", []):
            merged[key] = value
        elif isinstance(merged[key], list) and isinstance(value, list):
            merged[key] = _union_list(merged[key], value)

    incoming_source = incoming.get("source_file")
    if incoming_source and incoming_source != existing.get("source_file"):
        merged["merged_sources"] = _union_list(
            existing.get("merged_sources", []), [incoming_source]
        )

    merged["duplicate_detected"] = True
    merged["last_merged_at"] = merged_at.isoformat()
    merged["merge_count"] = int(existing.get("merge_count", 0)) + 1
    return merged
