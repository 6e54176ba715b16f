"""Sentence-packing chunker with trailing-sentence overlap."""

from __future__ import annotations

import html
import re
import unicodedata
from dataclasses import dataclass

from helpdesk_agent.config import ChunkingConfig
from helpdesk_agent.types import Chunk

_SCRIPT_STYLE_PATTERN = re.compile(r"(?is)<(script|style)\b[^>]*>.*?</\1\s*>")
_TAG_PATTERN = re.compile(r"<[^>]*>")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?。！？])\s+")

_TOKENS_PER_WORD = 1.3


@dataclass(slots=True, frozen=True)
class _Sentence:
    text: str
    words: int
    symbols: int


@dataclass(slots=True)
class _Piece:
    sentences: list[_Sentence]
    seeded: int = 0
    fallback: bool = False


class SentenceChunker:
    """Builds overlapping chunks from sentence-like units.

    Design notes:
    1. Cleaning first.
       Script/style blocks and tags are removed, entities decoded, and all
       whitespace collapsed to single spaces. Paragraph structure is not
       preserved, so chunk contents joined with a space reproduce the cleaned
       text exactly.

    2. Greedy packing second.
       Sentences are appended to the running chunk until the next one would
       push the estimate over `max_tokens`. The closed chunk's trailing
       sentences (about `overlap_tokens` worth, never all of them) seed the
       next chunk so neighbours share context.

    3. Oversized sentences.
       A sentence that alone exceeds `max_tokens` flushes the running chunk
       and is split on word boundaries without overlap. The chunk after it
       starts unseeded.

    4. Small tails.
       A final chunk estimated below `min_chunk_size` takes trailing sentences
       from its predecessor: moved when there is no overlap, copied (widening
       the overlap) otherwise. Both chunks stay within `max_tokens`.

    Token counts come from `estimate_tokens` and are approximate.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()

    def chunk(self, text: str) -> list[Chunk]:
        """Split raw article text into ordered, contiguously indexed chunks."""

        cleaned = clean_text(text)
        if not cleaned:
            return []

        max_tokens = self.config.max_tokens
        pieces: list[_Piece] = []
        current: list[_Sentence] = []
        seeded = 0

        for raw in _SENTENCE_SPLIT.split(cleaned):
            if not raw:
                continue
            sentence = _measure(raw)

            if _estimate([sentence]) > max_tokens:
                if len(current) > seeded:
                    pieces.append(_Piece(sentences=current, seeded=seeded))
                current, seeded = [], 0
                pieces.extend(
                    _Piece(sentences=[part], fallback=True)
                    for part in self._split_long_sentence(sentence)
                )
                continue

            if current and _estimate([*current, sentence]) > max_tokens:
                pieces.append(_Piece(sentences=current, seeded=seeded))
                seed = self._overlap_seed(current, sentence)
                current, seeded = [*seed, sentence], len(seed)
                continue

            current.append(sentence)

        if len(current) > seeded:
            pieces.append(_Piece(sentences=current, seeded=seeded))

        self._rebalance_tail(pieces)

        chunks: list[Chunk] = []
        for index, piece in enumerate(pieces):
            content = " ".join(sentence.text for sentence in piece.sentences)
            chunks.append(
                Chunk(content=content, index=index, token_count=estimate_tokens(content))
            )
        return chunks

    def _overlap_seed(self, closed: list[_Sentence], upcoming: _Sentence) -> list[_Sentence]:
        if self.config.overlap_tokens <= 0:
            return []

        seed: list[_Sentence] = []
        seed_tokens = 0
        # The first sentence is never carried over, so a chunk is never
        # repeated in full.
        for sentence in reversed(closed[1:]):
            if seed_tokens >= self.config.overlap_tokens:
                break
            seed.insert(0, sentence)
            seed_tokens += _estimate([sentence])

        while seed and _estimate([*seed, upcoming]) > self.config.max_tokens:
            seed.pop(0)
        return seed

    def _split_long_sentence(self, sentence: _Sentence) -> list[_Sentence]:
        parts: list[_Sentence] = []
        words: list[str] = []
        word_count = 0
        symbols = 0

        for word in sentence.text.split(" "):
            word_symbols = _count_symbols(word)
            candidate = int((word_count + 1) * _TOKENS_PER_WORD) + symbols + word_symbols
            if words and candidate > self.config.max_tokens:
                parts.append(_Sentence(text=" ".join(words), words=word_count, symbols=symbols))
                words, word_count, symbols = [], 0, 0
            words.append(word)
            word_count += 1
            symbols += word_symbols

        if words:
            parts.append(_Sentence(text=" ".join(words), words=word_count, symbols=symbols))
        return parts

    def _rebalance_tail(self, pieces: list[_Piece]) -> None:
        if len(pieces) < 2 or self.config.min_chunk_size <= 0:
            return
        last, previous = pieces[-1], pieces[-2]
        if last.fallback or previous.fallback:
            return

        min_size = self.config.min_chunk_size
        max_tokens = self.config.max_tokens
        if last.seeded:
            # Seeded tails widen their overlap; the previous chunk is left as is.
            while _estimate(last.sentences) < min_size and last.seeded < len(previous.sentences) - 1:
                candidate = previous.sentences[-(last.seeded + 1)]
                if _estimate([candidate, *last.sentences]) > max_tokens:
                    break
                last.sentences.insert(0, candidate)
                last.seeded += 1
            return

        while _estimate(last.sentences) < min_size and len(previous.sentences) > 1:
            candidate = previous.sentences[-1]
            if _estimate([candidate, *last.sentences]) > max_tokens:
                break
            previous.sentences.pop()
            last.sentences.insert(0, candidate)


def chunk_text(
    text: str, max_tokens: int, overlap_tokens: int, min_chunk_size: int
) -> list[Chunk]:
    """Functional entry point mirroring `SentenceChunker.chunk`."""
    config = ChunkingConfig(
        max_tokens=max_tokens,
        overlap_tokens=overlap_tokens,
        min_chunk_size=min_chunk_size,
    )
    return SentenceChunker(config).chunk(text)


def clean_text(text: str) -> str:
    """Strip markup, decode entities and collapse whitespace."""
    text = _SCRIPT_STYLE_PATTERN.sub(" ", text)
    text = _TAG_PATTERN.sub(" ", text)
    text = html.unescape(text)
    return _WHITESPACE_PATTERN.sub(" ", text).strip()


def estimate_tokens(text: str) -> int:
    """Approximate token count: 1.3 per word plus one per punctuation/symbol."""
    text = text.strip()
    if not text:
        return 0
    return int(len(text.split()) * _TOKENS_PER_WORD) + _count_symbols(text)


def _measure(text: str) -> _Sentence:
    return _Sentence(text=text, words=len(text.split()), symbols=_count_symbols(text))


def _estimate(sentences: list[_Sentence]) -> int:
    words = sum(sentence.words for sentence in sentences)
    symbols = sum(sentence.symbols for sentence in sentences)
    return int(words * _TOKENS_PER_WORD) + symbols


def _count_symbols(text: str) -> int:
    return sum(1 for char in text if unicodedata.category(char)[0] in ("P", "S"))
