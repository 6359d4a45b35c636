"""Tests for document chunking."""

import pytest

from app.core.chunking import chunk_document, reassemble, split_paragraphs, split_sentences
from app.core.text_utils import normalize_whitespace


def _paragraph(label: str, words: int) -> str:
    return " ".join(f"{label}w{i}" for i in range(words))


def _document(paragraphs: int, words_per_paragraph: int) -> str:
    return "\n\n".join(_paragraph(f"p{p}", words_per_paragraph) for p in range(paragraphs))


def test_chunk_document_empty():
    assert chunk_document("", 100) == []
    assert chunk_document("   \n\n ", 100) == []


def test_chunk_document_rejects_bad_budget():
    with pytest.raises(ValueError):
        chunk_document("some text", 0)


def test_chunk_document_packs_paragraphs():
    text = _document(10, 100)
    chunks = chunk_document(text, 250)

    assert len(chunks) == 5
    assert [c.index for c in chunks] == list(range(5))
    assert all(c.word_count <= 250 for c in chunks)
    assert chunks[0].word_count == 200


def test_chunk_document_reassembles_to_source():
    text = _document(7, 130)
    chunks = chunk_document(text, 300)
    assert normalize_whitespace(reassemble(chunks)) == normalize_whitespace(text)


def test_reassemble_orders_by_index():
    chunks = chunk_document(_document(4, 50), 60)
    assert reassemble(list(reversed(chunks))) == reassemble(chunks)


def test_oversized_paragraph_splits_on_sentences():
    sentences = [" ".join(f"s{n}w{i}" for i in range(9)) + " end." for n in range(30)]
    text = " ".join(sentences)

    chunks = chunk_document(text, 25)

    assert all(c.word_count <= 25 for c in chunks)
    assert all(c.text.endswith("end.") for c in chunks)
    assert normalize_whitespace(reassemble(chunks)) == normalize_whitespace(text)


def test_oversized_sentence_is_sliced():
    text = _paragraph("x", 120)

    chunks = chunk_document(text, 50)

    assert [c.word_count for c in chunks] == [50, 50, 20]
    assert normalize_whitespace(reassemble(chunks)) == text


def test_forty_thousand_words_make_forty_chunks():
    text = _document(400, 100)

    chunks = chunk_document(text, 1000)

    assert len(chunks) == 40
    assert all(c.word_count == 1000 for c in chunks)


def test_split_helpers():
    assert split_paragraphs("a\n\n\n b \n  \nc") == ["a", "b", "c"]
    assert split_sentences("One. Two! Three? Four") == ["One.", "Two!", "Three?", "Four"]
