"""
Sentence Segmenter

Splits raw document text into sentence-like units. A boundary is any run
of whitespace preceded by sentence-terminal punctuation (., ! or ?); the
punctuation stays attached to the sentence before it.

Two views of the same split are provided:
- split_sentences(): the trimmed sentence strings
- sentence_spans(): half-open (start, end) offsets into the input that tile
  it end to end, so callers can map sentences back to document positions
"""

import re

SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def sentence_spans(text: str) -> list[tuple[int, int]]:
    """
    Return sentence ranges covering ``text``.

    Each range includes the whitespace that follows its sentence, so the
    first range starts at 0, each range starts where the previous ended,
    and the last range ends at ``len(text)``. Whitespace-only pieces are
    folded into the preceding range; text that is entirely whitespace
    yields no ranges.

    Args:
        text: Raw document text

    Returns:
        List of (start, end) offsets
    """
    if not text or not text.strip():
        return []

    spans: list[tuple[int, int]] = []
    start = 0
    for match in SENTENCE_BOUNDARY.finditer(text):
        spans.append((start, match.end()))
        start = match.end()
    if start < len(text):
        spans.append((start, len(text)))

    merged: list[tuple[int, int]] = []
    for span_start, span_end in spans:
        if merged and not text[span_start:span_end].strip():
            merged[-1] = (merged[-1][0], span_end)
        else:
            merged.append((span_start, span_end))
    return merged


def split_sentences(text: str) -> list[str]:
    """Split text into ordered, non-empty, trimmed sentences."""
    return [text[start:end].strip() for start, end in sentence_spans(text)]
