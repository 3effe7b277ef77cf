#!/usr/bin/env python3
"""Chunk the docs directory and save the TF-IDF index used by the pipeline."""
from __future__ import annotations

import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.citerank.config import settings
from src.citerank.ingest import ingest_directory
from src.citerank.retriever import TfidfRetriever


def main() -> None:
    docs_dir = Path(sys.argv[1]) if len(sys.argv) > 1 else settings.docs_dir

    if not docs_dir.exists():
        print(f"Error: {docs_dir} does not exist")
        sys.exit(1)

    chunks = ingest_directory(docs_dir)
    retriever = TfidfRetriever()
    retriever.build(chunks)
    retriever.save()
    print(f"Indexed {len(chunks)} chunks from {docs_dir} -> {settings.index_path}")


if __name__ == "__main__":
    main()
