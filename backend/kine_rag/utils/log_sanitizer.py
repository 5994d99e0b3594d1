"""Masking of personal identifiers before they reach the logs."""

from __future__ import annotations

VISIBLE_CHARS = 3


def sanitize_id(value: object) -> str:
    """``abcdef123xyz`` -> ``abc***xyz``; short ids are fully masked."""
    if value is None or value == "":
        return "N/A"
    text = str(value)
    if len(text) <= 2 * VISIBLE_CHARS:
        return "***"
    return f"{text[:VISIBLE_CHARS]}***{text[-VISIBLE_CHARS:]}"
