"""Reassembly of per-chunk transcripts.

Adjacent chunks share a few seconds of audio, so the head of each chunk
usually repeats the tail of the previous one. Independent transcription
passes rarely agree byte-for-byte, so the overlap is found by fuzzy
matching (normalized Levenshtein similarity) instead of exact comparison.
"""

import logging
from typing import List, Sequence

logger = logging.getLogger(__name__)

TAIL_WORDS = 5
MAX_OVERLAP_WORDS = 10
SIMILARITY_THRESHOLD = 0.8


def levenshtein_distance(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """1.0 for identical strings, 0.0 when either is empty."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    longer = max(len(a), len(b))
    return (longer - levenshtein_distance(a, b)) / longer


def find_word_overlap(
    tail: Sequence[str],
    head: Sequence[str],
    threshold: float = SIMILARITY_THRESHOLD,
) -> int:
    """Number of leading ``head`` words that repeat the end of ``tail``.

    Longest candidate first, so a full overlap wins over a partial one.
    """
    max_overlap = min(len(tail), len(head), MAX_OVERLAP_WORDS)
    for size in range(max_overlap, 0, -1):
        tail_text = " ".join(tail[-size:]).lower()
        head_text = " ".join(head[:size]).lower()
        if similarity(tail_text, head_text) > threshold:
            return size
    return 0


class ChunkMerger:
    """Merges ordered chunk transcripts into one text."""

    def __init__(self, tail_words: int = TAIL_WORDS, threshold: float = SIMILARITY_THRESHOLD):
        self.tail_words = tail_words
        self.threshold = threshold

    def merge(self, chunk_texts: List[str]) -> str:
        """Concatenate chunk texts, dropping duplicated boundary words.

        Args:
            chunk_texts: Transcripts in chunk order; empty strings mark failed chunks

        Returns:
            Merged transcript
        """
        merged: List[str] = []
        tail: List[str] = []

        for index, text in enumerate(chunk_texts):
            words = (text or "").split()
            if not words:
                continue

            if tail:
                overlap = find_word_overlap(tail, words, self.threshold)
                if overlap:
                    logger.debug(f"Chunk {index}: dropped {overlap} overlapping words")
                    words = words[overlap:]

            merged.extend(words)
            # The accumulated text, not just this chunk, is the comparison base
            tail = merged[-self.tail_words:]

        return " ".join(merged)
