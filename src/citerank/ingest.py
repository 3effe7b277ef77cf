from __future__ import annotations

from pathlib import Path

import structlog

from .chunker import chunk_markdown, chunk_text
from .models import Chunk

log = structlog.get_logger()

DEFAULT_EXTENSIONS = frozenset({".md", ".markdown", ".txt", ".rst"})


def ingest_file(path: Path) -> list[Chunk]:
    """Load a single text document and return its chunks."""
    text = path.read_text(encoding="utf-8", errors="replace")
    if not text.strip():
        log.warning("empty_file", path=path.as_posix())
        return []

    if path.suffix.lower() in (".md", ".markdown"):
        chunks = chunk_markdown(text, filename=path.name)
    else:
        chunks = chunk_text(text, filename=path.name)

    log.info("ingested_file", path=path.as_posix(), chunks=len(chunks))
    return chunks


def ingest_directory(
    directory: Path,
    glob_pattern: str = "**/*",
    extensions: set[str] | frozenset[str] | None = None,
) -> list[Chunk]:
    """Recursively ingest all supported files from a directory."""
    allowed = DEFAULT_EXTENSIONS if extensions is None else extensions

    all_chunks: list[Chunk] = []
    for path in sorted(directory.glob(glob_pattern)):
        if not path.is_file() or path.suffix.lower() not in allowed:
            continue
        try:
            all_chunks.extend(ingest_file(path))
        except OSError:
            log.exception("ingest_error", path=str(path))

    log.info("ingest_complete", directory=str(directory), total_chunks=len(all_chunks))
    return all_chunks
