"""Document chunking along paragraph and sentence boundaries."""

import re

from app.core.schemas_reconstruction import Chunk
from app.core.text_utils import count_words

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|(?<=[.!?][\"')\]])\s+")

PARAGRAPH_JOINER = "\n\n"
SENTENCE_JOINER = " "


def split_paragraphs(text: str) -> list[str]:
    """Split text on blank lines, dropping empty paragraphs."""
    return [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(text) if p.strip()]


def split_sentences(paragraph: str) -> list[str]:
    """Split a paragraph after terminal punctuation."""
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(paragraph) if s and s.strip()]


def _hard_slices(sentence: str, max_words: int) -> list[str]:
    words = sentence.split()
    return [" ".join(words[i : i + max_words]) for i in range(0, len(words), max_words)]


def _pack(pieces: list[str], max_words: int, joiner: str) -> list[str]:
    """Greedily group pieces so no group exceeds max_words (pieces must each fit)."""
    groups: list[str] = []
    buffer: list[str] = []
    buffer_words = 0

    for piece in pieces:
        piece_words = count_words(piece)
        if buffer and buffer_words + piece_words > max_words:
            groups.append(joiner.join(buffer))
            buffer = []
            buffer_words = 0
        buffer.append(piece)
        buffer_words += piece_words

    if buffer:
        groups.append(joiner.join(buffer))
    return groups


def _split_oversized_paragraph(paragraph: str, max_words: int) -> list[str]:
    """Break a paragraph over budget into sentence groups, slicing sentences only as a last resort."""
    sentences: list[str] = []
    for sentence in split_sentences(paragraph):
        if count_words(sentence) > max_words:
            sentences.extend(_hard_slices(sentence, max_words))
        else:
            sentences.append(sentence)
    return _pack(sentences, max_words, SENTENCE_JOINER)


def chunk_document(text: str, max_words_per_chunk: int) -> list[Chunk]:
    """
    Split a document into ordered chunks of at most ``max_words_per_chunk`` words.

    Paragraphs are accumulated greedily. A paragraph that alone exceeds the
    budget is split at sentence boundaries, and a sentence that alone exceeds
    it is sliced by word count. Joining the chunk texts with blank lines
    reproduces the document up to whitespace.

    Args:
        text: Document text
        max_words_per_chunk: Word budget per chunk

    Returns:
        Chunks indexed from 0 in document order

    Raises:
        ValueError: If max_words_per_chunk < 1
    """
    if max_words_per_chunk < 1:
        raise ValueError(f"max_words_per_chunk must be positive, got {max_words_per_chunk}")

    if not text or not text.strip():
        return []

    pieces: list[str] = []
    for paragraph in split_paragraphs(text):
        if count_words(paragraph) > max_words_per_chunk:
            pieces.extend(_split_oversized_paragraph(paragraph, max_words_per_chunk))
        else:
            pieces.append(paragraph)

    texts = _pack(pieces, max_words_per_chunk, PARAGRAPH_JOINER)
    return [Chunk(index=i, text=t, word_count=count_words(t)) for i, t in enumerate(texts)]


def reassemble(chunks: list[Chunk]) -> str:
    """Join chunks back together in index order."""
    ordered = sorted(chunks, key=lambda c: c.index)
    return PARAGRAPH_JOINER.join(c.text for c in ordered)
