from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, replace
from typing import List

logger = logging.getLogger(__name__)

__all__ = [
    "MIN_CHUNK_SIZE",
    "MAX_CHUNK_SIZE",
    "TextChunk",
    "chunk_text",
    "split_into_sentences",
    "split_long_sentence",
    "hard_split_by_length",
    "is_valid_chunk_size",
]

MIN_CHUNK_SIZE = 1
MAX_CHUNK_SIZE = 10000
SENTENCE_END_PATTERN = re.compile(r"[.!?]+\s*")


@dataclass(frozen=True)
class TextChunk:
    id: str
    sequence_index: int
    total_count: int
    text: str


def is_valid_chunk_size(limit: int) -> bool:
    return MIN_CHUNK_SIZE <= limit <= MAX_CHUNK_SIZE


def chunk_text(text: str, limit: int) -> List[TextChunk]:
    """
    Split text into ordered chunks of at most ``limit`` characters.

    Sentences are kept whole whenever they fit. Sentences longer than ``limit`` are
    split on word boundaries, and words longer than ``limit`` are sliced into
    ``limit``-sized pieces. ``total_count`` is stamped on every chunk once the whole
    batch exists.
    """
    if limit < MIN_CHUNK_SIZE:
        raise ValueError(f"Chunk size must be a positive integer, got {limit}.")

    text = (text or "").strip()
    if not text:
        return []

    pieces: List[str] = []
    current = ""
    for sentence in split_into_sentences(text):
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= limit:
            current = candidate
            continue

        if current:
            pieces.append(current)
        if len(sentence) <= limit:
            current = sentence
        else:
            pieces.extend(split_long_sentence(sentence, max_chars=limit))
            current = ""

    if current:
        pieces.append(current)

    stamp = int(time.time() * 1000)
    chunks = [
        TextChunk(id=f"chunk_{index}_{stamp}", sequence_index=index, total_count=0, text=piece)
        for index, piece in enumerate(pieces)
    ]
    logger.debug("Split %d characters into %d chunks (limit=%d).", len(text), len(chunks), limit)
    return [replace(chunk, total_count=len(chunks)) for chunk in chunks]


def split_into_sentences(text: str) -> List[str]:
    """
    Split text after runs of terminal punctuation, keeping the punctuation.

    A trailing fragment without terminal punctuation becomes its own sentence.
    """
    text = (text or "").strip()
    if not text:
        return []

    sentences: List[str] = []
    last_end = 0
    for match in SENTENCE_END_PATTERN.finditer(text):
        sentence = text[last_end : match.end()].strip()
        if sentence:
            sentences.append(sentence)
        last_end = match.end()

    remainder = text[last_end:].strip()
    if remainder:
        sentences.append(remainder)

    return sentences or [text]


def split_long_sentence(sentence: str, max_chars: int) -> List[str]:
    """
    Greedily pack whole words into fragments of at most ``max_chars`` characters.

    Words that do not fit on their own are force-split with ``hard_split_by_length``.
    """
    sentence = (sentence or "").strip()
    if not sentence:
        return []

    fragments: List[str] = []
    buffer = ""
    for word in sentence.split():
        candidate = f"{buffer} {word}" if buffer else word
        if len(candidate) <= max_chars:
            buffer = candidate
            continue

        if buffer:
            fragments.append(buffer)
        if len(word) <= max_chars:
            buffer = word
        else:
            fragments.extend(hard_split_by_length(word, max_chars=max_chars))
            buffer = ""

    if buffer:
        fragments.append(buffer)

    return fragments


def hard_split_by_length(text: str, max_chars: int) -> List[str]:
    """Slice text into pieces of exactly ``max_chars`` characters; the last may be shorter."""
    return [text[start : start + max_chars] for start in range(0, len(text), max_chars)]
