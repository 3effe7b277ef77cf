from __future__ import annotations

import hashlib
import re
from pathlib import PurePath

from .config import settings
from .models import Chunk

_HEADING_RE = re.compile(r"^(#{1,3})\s+(.+)$", re.MULTILINE)

# Packing granularities, coarsest first: paragraphs, sentences, words
_LEVELS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\n\s*\n"), "\n\n"),
    (re.compile(r"(?<=[.!?])\s+"), " "),
    (re.compile(r"\s+"), " "),
]


def _pack(text: str, max_size: int, level: int = 0) -> list[str]:
    """Greedily pack units of one granularity into pieces of at most max_size.

    A unit that is too large on its own is packed again one level finer;
    below words it is cut into fixed-size slices.
    """
    if len(text) <= max_size:
        return [text] if text.strip() else []
    if level >= len(_LEVELS):
        return [text[i : i + max_size] for i in range(0, len(text), max_size)]

    pattern, joiner = _LEVELS[level]
    pieces: list[str] = []
    current = ""

    for unit in (u.strip() for u in pattern.split(text)):
        if not unit:
            continue
        candidate = f"{current}{joiner}{unit}" if current else unit
        if len(candidate) <= max_size:
            current = candidate
            continue

        if current:
            pieces.append(current)
        if len(unit) > max_size:
            pieces.extend(_pack(unit, max_size, level + 1))
            current = ""
        else:
            current = unit

    if current:
        pieces.append(current)
    return pieces


def _overlap_tail(text: str, overlap: int) -> str:
    """Last `overlap` chars of text, trimmed forward to a word start."""
    if len(text) <= overlap:
        return text
    tail = text[-overlap:]
    space = tail.find(" ")
    if 0 <= space < len(tail) - 1:
        return tail[space + 1 :]
    return tail


def make_chunk_id(filename: str, section: str, index: int) -> str:
    return hashlib.sha256(f"{filename}:{section}:{index}".encode()).hexdigest()[:16]


def chunk_text(
    text: str,
    filename: str,
    title: str = "",
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
) -> list[Chunk]:
    """Split text into chunks of roughly chunk_size chars tagged with their document.

    Each chunk after the first is prefixed with the tail of the one before it.
    """
    size = chunk_size if chunk_size is not None else settings.chunk_size
    overlap = chunk_overlap if chunk_overlap is not None else settings.chunk_overlap
    doc_title = title or PurePath(filename).stem

    pieces = _pack(text.strip(), size)

    chunks: list[Chunk] = []
    for i, piece in enumerate(pieces):
        content = piece
        if i > 0 and overlap > 0:
            content = f"{_overlap_tail(pieces[i - 1], overlap)} {piece}"
        chunks.append(
            Chunk(
                chunk_id=make_chunk_id(filename, doc_title, i),
                content=content,
                document_filename=filename,
                document_title=doc_title,
            )
        )
    return chunks


def split_sections(text: str) -> list[tuple[str, str]]:
    """(heading, section text) pairs; text before the first heading has heading ""."""
    matches = list(_HEADING_RE.finditer(text))
    if not matches:
        return [("", text)]

    sections: list[tuple[str, str]] = []
    preface = text[: matches[0].start()]
    if preface.strip():
        sections.append(("", preface))

    bounds = [m.start() for m in matches[1:]] + [len(text)]
    for m, end in zip(matches, bounds):
        sections.append((m.group(2).strip(), text[m.start() : end]))
    return sections


def chunk_markdown(text: str, filename: str) -> list[Chunk]:
    """Chunk markdown section by section; short sections stay whole."""
    chunks: list[Chunk] = []
    for heading, section_text in split_sections(text):
        chunks.extend(chunk_text(section_text, filename=filename, title=heading))
    return chunks
