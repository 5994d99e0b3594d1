"""Text cleaning and structure-aware chunking for ingested physiotherapy documents."""

from __future__ import annotations

import io
import logging
import re
from collections import Counter

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from kine_rag.errors import InvalidContentError
from kine_rag.models.rag import Chunk

logger = logging.getLogger(__name__)

# --- Cleaning ---

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_INLINE_SPACE = re.compile(r"[ \t\u00a0\u2000-\u200b]+")
_EXCESS_NEWLINES = re.compile(r"\n{4,}")
_PRODUCER_LINE = re.compile(
    r"^(?:(?:pdf\s*)?(?:producer|creator|creationdate|moddate)\s*:"
    r"|(?:generated|created|produced)\s+(?:by|with)\s+\S)",
    re.IGNORECASE,
)
_PAGE_NUMBER_LINE = re.compile(
    r"^[-–]?\s*(?:page|p\.)?\s*\d{1,4}(?:\s*(?:/|sur|of)\s*\d{1,4})?\s*[-–]?$",
    re.IGNORECASE,
)
_MAX_BOILERPLATE_LINE = 120
_MAX_REPEATED_LINE = 80
_MIN_REPEATS = 3

# --- Structure ---

_MARKDOWN_HEADER = re.compile(r"^#{1,6}\s+\S")
_NUMBERED_LINE = re.compile(r"^\d{1,2}(?:\.\d{1,2})*[.)]?\s+\S")
_MULTILEVEL_NUMBER = re.compile(r"^\d{1,2}(?:\.\d{1,2})+[.)]?\s+\S")
_DOMAIN_MARKER = re.compile(
    r"^(?:exercises?|exercices?|steps?|étapes?|etapes?|phases?)\s*(?:n°\s*)?\d+\b"
    r"|^(?:protocols?|protocoles?)\b",
    re.IGNORECASE,
)
_CAPS_LABEL = re.compile(r"^[A-ZÀ-ÖØ-ÞŒ][A-ZÀ-ÖØ-ÞŒ0-9 '’/&()-]{2,60}:")
_MAX_HEADING_CHARS = 80

_BULLET_ITEM = re.compile(r"^\s*[-•*▪◦–]\s+\S")
_NUMBERED_ITEM = re.compile(r"^\s*\d{1,2}[.)]\s+\S")
_LIST_ITEM = re.compile(r"^\s*(?:[-•*▪◦–]|\d{1,2}[.)])\s+\S")
_SENTENCE_END = re.compile(r"(?<=[.!?…])\s+(?=\S)")
_HARD_LINE_ENDINGS = (".", "!", "?", "…", ":", ";")

# --- Priority ---

DOMAIN_KEYWORDS: tuple[str, ...] = (
    "exercice",
    "exercise",
    "rééducation",
    "reeducation",
    "rehabilitation",
    "kinésithérapie",
    "kinesitherapie",
    "physiothérapie",
    "physiotherapy",
    "protocol",
    "mobilisation",
    "mobilization",
    "renforcement",
    "strengthening",
    "étirement",
    "stretching",
    "proprioception",
    "amplitude",
    "douleur",
    "pain",
    "articulation",
    "muscle",
    "tendon",
    "ligament",
    "posture",
    "série",
    "répétition",
    "repetition",
)

TITLE_WORD_WEIGHT = 10
KEYWORD_WEIGHT = 5
BULLET_LIST_BONUS = 5
NUMBERED_LIST_BONUS = 10


class Section:
    """A structural section: its opening line and the text that follows."""

    def __init__(self, heading: str, body: str) -> None:
        self.heading = heading
        self.body = body

    @property
    def text(self) -> str:
        if self.heading and self.body:
            return f"{self.heading}\n{self.body}"
        return self.heading or self.body


def clean_text(raw: str) -> str:
    """Strip boilerplate, control characters and redundant whitespace.

    Removes producer metadata lines, isolated page numbers and short lines
    repeated across pages (running headers/footers), then caps blank runs
    at three consecutive newlines.
    """
    if not isinstance(raw, str):
        raise InvalidContentError(
            f"Expected text content, got {type(raw).__name__}",
        )

    text = raw.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    lines = [_INLINE_SPACE.sub(" ", line).strip() for line in text.split("\n")]

    counts = Counter(
        line for line in lines if line and len(line) <= _MAX_REPEATED_LINE
    )
    repeated = {
        line
        for line, n in counts.items()
        if n >= _MIN_REPEATS
        and not _looks_like_heading(line)
        and not _LIST_ITEM.match(line)
    }

    kept: list[str] = []
    for line in lines:
        if line and len(line) <= _MAX_BOILERPLATE_LINE:
            if _PRODUCER_LINE.match(line) or _PAGE_NUMBER_LINE.match(line):
                continue
            if line in repeated:
                continue
        kept.append(line)

    cleaned = _EXCESS_NEWLINES.sub("\n\n\n", "\n".join(kept)).strip()
    logger.debug("Cleaned text: %d -> %d chars", len(raw), len(cleaned))
    return cleaned


def _looks_like_heading(line: str) -> bool:
    return bool(
        _MARKDOWN_HEADER.match(line)
        or _DOMAIN_MARKER.match(line)
        or _CAPS_LABEL.match(line)
    )


def _is_section_start(lines: list[str], index: int) -> bool:
    line = lines[index].strip()
    if not line:
        return False
    if _MARKDOWN_HEADER.match(line):
        return True
    if len(line) > _MAX_HEADING_CHARS:
        return False
    if _DOMAIN_MARKER.match(line) or _CAPS_LABEL.match(line):
        return True
    if _MULTILEVEL_NUMBER.match(line):
        return True
    if _NUMBERED_LINE.match(line) and not line.endswith((".", ";", ",", "!", "?")):
        # A lone numbered line is a heading; adjacent numbered lines form a list.
        return not (
            _NUMBERED_LINE.match(_neighbour(lines, index, -1))
            or _NUMBERED_LINE.match(_neighbour(lines, index, 1))
        )
    return False


def _neighbour(lines: list[str], index: int, step: int) -> str:
    i = index + step
    while 0 <= i < len(lines):
        if lines[i].strip():
            return lines[i].strip()
        i += step
    return ""


def split_sections(text: str) -> list[Section]:
    """Split cleaned text at structural delimiters.

    Recognized section starts: markdown headers, numbered headings
    ("1. Introduction", "2.3 Résultats"), domain markers ("EXERCICE 3",
    "PROTOCOLE", "STEP 2") and all-caps labels followed by a colon.
    Text before the first delimiter becomes an untitled section.
    """
    lines = text.split("\n")
    sections: list[Section] = []
    current_heading = ""
    current_lines: list[str] = []

    def _flush() -> None:
        body = "\n".join(current_lines).strip()
        if body or current_heading:
            sections.append(Section(heading=current_heading, body=body))

    for index, line in enumerate(lines):
        if _is_section_start(lines, index):
            _flush()
            current_heading = line.strip()
            current_lines = []
        else:
            current_lines.append(line)

    _flush()
    return sections


def _is_ingestible(text: str, min_chars: int) -> bool:
    return len(text.strip()) >= min_chars and any(c.isalpha() for c in text)


def _hard_split(text: str, max_chars: int) -> list[str]:
    """Cut an oversized sentence at word boundaries."""
    pieces: list[str] = []
    while len(text) > max_chars:
        cut = text.rfind(" ", 0, max_chars + 1)
        if cut <= 0:
            cut = max_chars
        pieces.append(text[:cut].rstrip())
        text = text[cut:].lstrip()
    if text:
        pieces.append(text)
    return pieces


def _paragraph_lines(paragraph: str) -> list[str]:
    """Re-join soft-wrapped lines, keeping list items and hard breaks apart."""
    merged: list[str] = []
    for line in paragraph.split("\n"):
        line = line.strip()
        if not line:
            continue
        if (
            merged
            and not _LIST_ITEM.match(line)
            and not merged[-1].endswith(_HARD_LINE_ENDINGS)
        ):
            merged[-1] = f"{merged[-1]} {line}"
        else:
            merged.append(line)
    return merged


# A unit is (text, separator placed before it when it is not the first in a chunk).
_Unit = tuple[str, str]


def _units(section: Section, max_chars: int) -> list[_Unit]:
    units: list[_Unit] = []
    if section.heading:
        units.extend((piece, "\n") for piece in _hard_split(section.heading, max_chars))
    for paragraph in re.split(r"\n{2,}", section.body):
        for line_idx, line in enumerate(_paragraph_lines(paragraph)):
            sentences = [s for s in _SENTENCE_END.split(line) if s.strip()]
            for sent_idx, sentence in enumerate(sentences):
                if sent_idx:
                    sep = " "
                elif line_idx:
                    sep = "\n"
                else:
                    sep = "\n\n"
                pieces = _hard_split(sentence.strip(), max_chars)
                for piece_idx, piece in enumerate(pieces):
                    units.append((piece, " " if piece_idx else sep))
    return units


def _join(units: list[_Unit]) -> str:
    return "".join(
        text if i == 0 else sep + text for i, (text, sep) in enumerate(units)
    )


def _overlap_tail(units: list[_Unit], overlap: int) -> list[_Unit]:
    """Trailing whole sentences (about ``overlap`` chars) for the next chunk."""
    tail: list[_Unit] = []
    size = 0
    for text, sep in reversed(units):
        added = len(text) + (len(sep) if tail else 0)
        if size + added > overlap:
            break
        tail.insert(0, (text, sep))
        size += added
    if not tail and len(units[-1][0]) <= overlap * 2:
        tail = [units[-1]]
    if len(tail) == len(units):
        return []
    return tail


def split_long_section(
    section: Section, *, max_chars: int = 1200, overlap: int = 100
) -> list[str]:
    """Re-split an oversized section on sentence boundaries with a soft overlap.

    Every returned piece is at most ``max_chars`` long; sentences longer than
    that are cut at word boundaries.
    """
    chunks: list[str] = []
    current: list[_Unit] = []

    for unit in _units(section, max_chars):
        if current and len(_join([*current, unit])) > max_chars:
            chunks.append(_join(current))
            tail = _overlap_tail(current, overlap)
            current = tail if tail and len(_join([*tail, unit])) <= max_chars else []
        current.append(unit)

    if current:
        chunks.append(_join(current))
    return chunks


def score_priority(content: str, title: str = "") -> int:
    """Ingestion priority: title words, domain keywords and list structure."""
    lowered = content.lower()
    title_words = {w for w in re.findall(r"\w+", title.lower()) if len(w) > 3}
    title_hits = sum(
        len(re.findall(rf"\b{re.escape(word)}\b", lowered)) for word in title_words
    )
    keyword_hits = sum(
        len(re.findall(rf"\b{re.escape(keyword)}", lowered))
        for keyword in DOMAIN_KEYWORDS
    )

    lines = content.split("\n")
    score = TITLE_WORD_WEIGHT * title_hits + KEYWORD_WEIGHT * keyword_hits
    if sum(1 for line in lines if _BULLET_ITEM.match(line)) >= 2:
        score += BULLET_LIST_BONUS
    if sum(1 for line in lines if _NUMBERED_ITEM.match(line)) >= 2:
        score += NUMBERED_LIST_BONUS
    return score


def chunk_text(
    raw_text: str,
    title: str = "",
    *,
    max_chars: int = 1200,
    overlap: int = 100,
    min_chars: int = 50,
) -> list[Chunk]:
    """Clean raw text and cut it into prioritized, semantically coherent chunks.

    Returns an empty list when nothing ingestible survives cleaning and
    filtering; callers treat that as "no content", not as an error.
    """
    text = clean_text(raw_text)
    if not text:
        return []

    pieces: list[str] = []
    sections = split_sections(text)
    for section in sections:
        section_text = section.text
        if not _is_ingestible(section_text, min_chars):
            continue
        if len(section_text) <= max_chars:
            pieces.append(section_text)
        else:
            pieces.extend(
                p
                for p in split_long_section(
                    section, max_chars=max_chars, overlap=overlap
                )
                if _is_ingestible(p, min_chars)
            )

    chunks = [Chunk(content=p, priority=score_priority(p, title)) for p in pieces]
    logger.info(
        "Chunked %r: %d sections -> %d chunks (max_chars=%d)",
        title,
        len(sections),
        len(chunks),
        max_chars,
    )
    return chunks


# --- PDF extraction ---


def validate_pdf(data: bytes) -> None:
    """Reject empty buffers and anything without a PDF signature."""
    if not data:
        raise InvalidContentError("Empty PDF buffer")
    if not data.startswith(b"%PDF"):
        raise InvalidContentError("File is not a valid PDF")


def extract_pdf_text(data: bytes) -> tuple[str, int]:
    """Return the concatenated page text and the page count."""
    validate_pdf(data)
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PyPdfError, ValueError) as e:
        raise InvalidContentError(f"Unreadable PDF: {e}") from e
    text = "\n\n".join(pages)
    logger.info("Extracted %d chars from %d PDF pages", len(text), len(pages))
    return text, len(pages)


def get_pdf_info(data: bytes) -> dict:
    """Summarize a PDF without ingesting it."""
    text, pages = extract_pdf_text(data)
    return {
        "pages": pages,
        "text_length": len(text),
        "has_text": len(text) > 100,
        "preview": text[:200] + "...",
    }
