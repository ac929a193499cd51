"""Tests for knowledge file loading and chunking."""

from __future__ import annotations

import math
from pathlib import Path

import pytest

from pipeline.loader import FileDataLoader, chunk_id, discover_files, parse_chunk_id
from protocols.errors import UnreadableSource

PARAGRAPH = (
    "Knowledge Bot reads the files in this folder and answers questions about them. "
    "Each file is split into small pieces, and every piece is turned into a vector "
    "so that similar questions can find it. When you ask something, the bot "
    "looks up the closest pieces and then uses them."
)


def words(n: int, prefix: str = "word") -> str:
    return " ".join(f"{prefix}{i:03d}" for i in range(n))


def assert_exact_slices(text: str, docs) -> None:
    for d in docs:
        offset = d.metadata["offset"]
        assert text[offset : offset + len(d.content)] == d.content


def test_fifty_word_paragraph_with_limit_200_is_a_single_document(tmp_path: Path):
    assert len(PARAGRAPH.split()) == 50
    path = tmp_path / "intro.md"
    path.write_text(PARAGRAPH + "\n", encoding="utf-8")

    docs = FileDataLoader(max_tokens=200).load(path)

    assert len(docs) == 1
    assert docs[0].id == "intro.md:0"
    assert docs[0].content == PARAGRAPH
    assert docs[0].metadata["filename"] == "intro.md"
    assert docs[0].metadata["source"] == str(path.resolve())
    assert docs[0].metadata["offset"] == 0
    assert 0 < docs[0].metadata["token_count"] <= 200
    assert docs[0].embedding is None


def test_long_text_is_split_into_overlapping_windows(tmp_path: Path):
    text = words(1000)
    path = tmp_path / "big.md"
    path.write_text(text, encoding="utf-8")
    loader = FileDataLoader(max_tokens=200, overlap_tokens=20)

    docs = loader.load(path)

    total = loader.count_tokens(text)
    assert len(docs) == 1 + math.ceil((total - 200) / 180)
    assert [d.id for d in docs] == [f"big.md:{i}" for i in range(len(docs))]
    assert all(d.metadata["token_count"] <= 200 for d in docs)
    assert docs[0].metadata["offset"] == 0
    assert docs[-1].content.endswith("word999")
    for prev, nxt in zip(docs, docs[1:]):
        prev_end = prev.metadata["offset"] + len(prev.content)
        assert prev.metadata["offset"] < nxt.metadata["offset"] < prev_end
    assert_exact_slices(text, docs)


@pytest.mark.parametrize(
    "text",
    [
        "知識" * 20000,
        "https://example.com/download?token=" + "a1b2c3d4" * 5000,
    ],
    ids=["cjk", "long-url"],
)
def test_text_without_whitespace_is_still_bounded(tmp_path: Path, text: str):
    path = tmp_path / "dense.txt"
    path.write_text(text, encoding="utf-8")

    docs = FileDataLoader(max_tokens=200, overlap_tokens=20).load(path)

    assert len(docs) > 10
    assert all(d.metadata["token_count"] <= 200 for d in docs)
    assert max(len(d.content) for d in docs) <= 2000
    assert docs[0].metadata["offset"] == 0
    assert text.endswith(docs[-1].content)
    assert_exact_slices(text, docs)


def test_formatting_inside_chunk_is_preserved(tmp_path: Path):
    path = tmp_path / "guide.md"
    path.write_text("  # Title\n\n- item one\n- item two\n\n", encoding="utf-8")

    docs = FileDataLoader().load(path)

    assert docs[0].content == "# Title\n\n- item one\n- item two"
    assert docs[0].metadata["offset"] == 2


@pytest.mark.parametrize("content", ["", "   \n\n\t  "])
def test_empty_file_yields_no_documents(tmp_path: Path, content: str):
    path = tmp_path / "empty.md"
    path.write_text(content, encoding="utf-8")

    assert FileDataLoader().load(path) == []


def test_special_token_text_is_treated_as_plain_text(tmp_path: Path):
    path = tmp_path / "tokens.md"
    path.write_text("The marker <|endoftext|> ends a sample.", encoding="utf-8")

    docs = FileDataLoader().load(path)

    assert docs[0].content == "The marker <|endoftext|> ends a sample."


def test_ids_are_stable_across_loads(tmp_path: Path):
    path = tmp_path / "stable.md"
    path.write_text(words(500), encoding="utf-8")
    loader = FileDataLoader(max_tokens=100, overlap_tokens=10)

    assert loader.load(path) == loader.load(path)


def test_chunk_id_round_trip():
    assert parse_chunk_id(chunk_id("notes:v2.md", 7)) == ("notes:v2.md", 7)
    assert parse_chunk_id("manual-entry") is None
    assert parse_chunk_id("guide.md:intro") is None


def test_missing_file_is_unreadable(tmp_path: Path):
    with pytest.raises(UnreadableSource) as exc:
        FileDataLoader().load(tmp_path / "missing.md")
    assert exc.value.path.name == "missing.md"


def test_directory_is_unreadable(tmp_path: Path):
    with pytest.raises(UnreadableSource, match="not a regular file"):
        FileDataLoader().load(tmp_path)


def test_binary_file_is_unreadable(tmp_path: Path):
    path = tmp_path / "blob.txt"
    path.write_bytes(b"\xff\xfe\x00\x80binary")

    with pytest.raises(UnreadableSource, match="UTF-8"):
        FileDataLoader().load(path)


@pytest.mark.parametrize("max_tokens,overlap", [(0, 0), (10, 10), (10, -1)])
def test_invalid_chunk_settings(max_tokens: int, overlap: int):
    with pytest.raises(ValueError):
        FileDataLoader(max_tokens=max_tokens, overlap_tokens=overlap)


def test_discover_files_filters_supported_extensions(knowledge_dir: Path):
    (knowledge_dir / "nested").mkdir()
    (knowledge_dir / "nested" / "deep.md").write_text("deep", encoding="utf-8")
    (knowledge_dir / "NOTES.MD").write_text("upper", encoding="utf-8")

    found = [p.name for p in discover_files(knowledge_dir)]

    assert found == ["NOTES.MD", "faq.txt", "overview.md"]
