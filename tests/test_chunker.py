from src.citerank.chunker import chunk_markdown, chunk_text, split_sections
from src.citerank.ingest import ingest_directory, ingest_file


def test_chunk_text_short():
    """Short text should produce a single chunk."""
    chunks = chunk_text("Hello world.", filename="test.txt", chunk_size=100, chunk_overlap=0)
    assert len(chunks) == 1
    assert chunks[0].content == "Hello world."
    assert chunks[0].document_filename == "test.txt"
    assert chunks[0].title == "test"


def test_chunk_text_splits():
    """Long text should be split into multiple chunks."""
    text = "word " * 200
    chunks = chunk_text(text.strip(), filename="test.txt", chunk_size=100, chunk_overlap=0)
    assert len(chunks) > 1
    for c in chunks:
        assert len(c.content) <= 120


def test_chunk_text_overlap():
    """Later chunks start with the tail of the previous one."""
    text = "A " * 100 + "B " * 100
    chunks = chunk_text(text.strip(), filename="test.txt", chunk_size=100, chunk_overlap=20)
    assert len(chunks) >= 2
    assert len(chunks[1].content) > 100
    assert chunks[1].content.startswith("A")


def test_chunk_ids_unique_and_stable():
    text = "Hello. " * 50
    first = chunk_text(text, filename="test.txt", chunk_size=50, chunk_overlap=0)
    second = chunk_text(text, filename="test.txt", chunk_size=50, chunk_overlap=0)
    ids = [c.chunk_id for c in first]
    assert len(ids) == len(set(ids))
    assert ids == [c.chunk_id for c in second]


def test_chunks_start_unscored():
    chunks = chunk_text("Some text here.", filename="a.md")
    assert chunks[0].base_similarity == 0.0
    assert chunks[0].rerank_score is None
    assert chunks[0].citation_index is None


def test_chunk_markdown_by_headings():
    md = """# Introduction
This is the intro.

## Setup
Setup instructions here with more text to fill out the section.

## Usage
Usage instructions here.
"""
    chunks = chunk_markdown(md, filename="readme.md")
    assert len(chunks) == 3
    assert [c.title for c in chunks] == ["Introduction", "Setup", "Usage"]
    assert all(c.document_filename == "readme.md" for c in chunks)


def test_chunk_markdown_no_headings():
    md = "Just some plain text without any headings. " * 20
    chunks = chunk_markdown(md, filename="plain.md")
    assert len(chunks) >= 1
    assert chunks[0].title == "plain"


def test_empty_text():
    assert chunk_text("", filename="empty.txt", chunk_size=100, chunk_overlap=0) == []


def test_ingest_directory(tmp_path):
    (tmp_path / "handbook.md").write_text("# Vacation\nEmployees get 25 days.\n", encoding="utf-8")
    nested = tmp_path / "policies"
    nested.mkdir()
    (nested / "remote.txt").write_text("Remote work is allowed on Fridays.", encoding="utf-8")
    (nested / "logo.png").write_bytes(b"\x89PNG")
    (tmp_path / "blank.md").write_text("   \n", encoding="utf-8")

    chunks = ingest_directory(tmp_path)

    assert {c.document_filename for c in chunks} == {"handbook.md", "remote.txt"}
    handbook = next(c for c in chunks if c.document_filename == "handbook.md")
    assert handbook.title == "Vacation"


def test_ingest_file_empty(tmp_path):
    path = tmp_path / "empty.md"
    path.write_text("", encoding="utf-8")
    assert ingest_file(path) == []


def test_chunk_text_prefers_sentence_boundaries():
    text = "First sentence is here. Second sentence follows it. Third one ends the text."
    chunks = chunk_text(text, filename="s.txt", chunk_size=55, chunk_overlap=0)
    assert [c.content for c in chunks] == [
        "First sentence is here. Second sentence follows it.",
        "Third one ends the text.",
    ]


def test_chunk_text_splits_oversized_word():
    chunks = chunk_text("x" * 25, filename="w.txt", chunk_size=10, chunk_overlap=0)
    assert [len(c.content) for c in chunks] == [10, 10, 5]


def test_split_sections():
    text = "Intro text\n# A\nbody a\n## B\nbody b"
    assert split_sections(text) == [
        ("", "Intro text\n"),
        ("A", "# A\nbody a\n"),
        ("B", "## B\nbody b"),
    ]
    assert split_sections("no headings") == [("", "no headings")]
