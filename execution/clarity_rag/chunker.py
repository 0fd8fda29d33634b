"""
Hierarchical Chunker

Splits document text into a two-level chunk index:
- Parent chunks (~1200 tokens) that overlap their successor by ~100 tokens
- Child chunks (~400 tokens) that decompose each large parent

Every chunk records exact character offsets into the source document, plus
page number and section heading provenance looked up from ordered
breakpoint tables. Transcripts are chunked into single-resolution chunks
that carry timestamps instead.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from .segmenter import sentence_spans

logger = logging.getLogger(__name__)

PARENT = "parent"
CHILD = "child"


@dataclass(frozen=True)
class Chunk:
    """A contiguous span of source text with provenance."""
    content: str
    chunk_type: str  # "parent" or "child"
    chunk_index: int
    char_start: int
    char_end: int
    parent_index: Optional[int] = None  # Set on child chunks only

    # Provenance
    page_number: Optional[int] = None
    section_heading: Optional[str] = None
    timestamp_start: Optional[float] = None  # Seconds, transcripts only
    timestamp_end: Optional[float] = None

    @property
    def is_parent(self) -> bool:
        return self.chunk_type == PARENT

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "chunk_type": self.chunk_type,
            "chunk_index": self.chunk_index,
            "parent_index": self.parent_index,
            "char_start": self.char_start,
            "char_end": self.char_end,
            "page_number": self.page_number,
            "section_heading": self.section_heading,
            "timestamp_start": self.timestamp_start,
            "timestamp_end": self.timestamp_end,
        }


@dataclass
class ChunkConfig:
    """Configuration for chunk sizes."""
    parent_chunk_tokens: int = 1200
    child_chunk_tokens: int = 400
    overlap_tokens: int = 100  # Shared between consecutive parents
    chars_per_token: int = 4

    @property
    def parent_chunk_chars(self) -> int:
        return self.parent_chunk_tokens * self.chars_per_token

    @property
    def child_chunk_chars(self) -> int:
        return self.child_chunk_tokens * self.chars_per_token

    @property
    def overlap_chars(self) -> int:
        return self.overlap_tokens * self.chars_per_token


@dataclass(frozen=True)
class SectionHeading:
    """A heading and the document offset where its section begins."""
    heading: str
    offset: int


@dataclass(frozen=True)
class TranscriptSegment:
    """A timed piece of transcript text."""
    text: str
    start: float
    end: float


# =============================================================================
# Provenance lookup
# =============================================================================

def find_page_number(offset: int, page_breaks: Optional[list[int]]) -> Optional[int]:
    """
    Page containing ``offset``.

    Pages start at 1 and increment for every break at or before the offset.

    Args:
        offset: Character offset into the document
        page_breaks: Ascending offsets where a new page begins

    Returns:
        1-based page number, or None when no page table is available
    """
    if page_breaks is None:
        return None
    page = 1
    for page_break in page_breaks:
        if offset >= page_break:
            page += 1
        else:
            break
    return page


def find_section_heading(
    offset: int,
    section_headings: Optional[list[SectionHeading]],
) -> Optional[str]:
    """Heading of the last section starting at or before ``offset``."""
    if not section_headings:
        return None
    heading = None
    for section in section_headings:
        if section.offset <= offset:
            heading = section.heading
        else:
            break
    return heading


def _normalize_headings(
    section_headings: Optional[list[Union[SectionHeading, dict]]],
) -> Optional[list[SectionHeading]]:
    """Accept SectionHeading objects or {"heading", "offset"} dicts."""
    if section_headings is None:
        return None
    normalized = []
    for item in section_headings:
        if isinstance(item, SectionHeading):
            normalized.append(item)
        else:
            normalized.append(SectionHeading(
                heading=item.get("heading", item.get("text", "")),
                offset=int(item["offset"]),
            ))
    return normalized


def _check_ascending(offsets: list[int], label: str) -> None:
    for previous, current in zip(offsets, offsets[1:]):
        if current < previous:
            raise ValueError(
                f"{label} must be in ascending offset order "
                f"(found {current} after {previous})"
            )


# =============================================================================
# Chunker
# =============================================================================

class HierarchicalChunker:
    """
    Builds overlapping parent chunks and their child chunks.

    Sentences are packed greedily into a parent buffer. When the next
    sentence would push the buffer past the parent size, the buffer is
    emitted (followed by its children) and the next buffer is seeded with
    the trailing overlap window of the one just emitted.

    Usage:
        chunker = HierarchicalChunker()
        chunks = chunker.chunk(text, page_breaks=[3000, 6100])
    """

    def __init__(self, config: Optional[ChunkConfig] = None):
        self.config = config or ChunkConfig()

    def chunk(
        self,
        text: str,
        page_breaks: Optional[list[int]] = None,
        section_headings: Optional[list[Union[SectionHeading, dict]]] = None,
    ) -> list[Chunk]:
        """
        Chunk document text.

        Args:
            text: Raw document text
            page_breaks: Ascending offsets where each new page begins
            section_headings: Ascending SectionHeading entries (or dicts)

        Returns:
            Chunks in order, each parent followed by its children

        Raises:
            ValueError: If a breakpoint table is not in ascending order
        """
        headings = _normalize_headings(section_headings)
        if page_breaks is not None:
            _check_ascending(list(page_breaks), "page_breaks")
        if headings is not None:
            _check_ascending([h.offset for h in headings], "section_headings")

        spans = sentence_spans(text)
        if not spans:
            return []

        parent_size = self.config.parent_chunk_chars
        overlap = self.config.overlap_chars

        chunks: list[Chunk] = []
        parent_count = 0
        buf_start: Optional[int] = None
        buf_end = 0

        for span_start, span_end in spans:
            if buf_start is not None and span_end - buf_start > parent_size:
                parent = self._make_parent(
                    text, buf_start, buf_end, parent_count, page_breaks, headings,
                )
                chunks.append(parent)
                chunks.extend(self.split_into_children(
                    text, parent, page_breaks, headings,
                ))
                parent_count += 1
                buf_start = buf_end - min(overlap, buf_end - buf_start)

            if buf_start is None:
                buf_start = span_start
            buf_end = span_end

        if buf_start is not None and text[buf_start:buf_end].strip():
            parent = self._make_parent(
                text, buf_start, buf_end, parent_count, page_breaks, headings,
            )
            chunks.append(parent)
            chunks.extend(self.split_into_children(text, parent, page_breaks, headings))
            parent_count += 1

        logger.debug(
            f"Chunked {len(text)} chars into {parent_count} parents, "
            f"{len(chunks) - parent_count} children"
        )
        return chunks

    def _make_parent(
        self,
        text: str,
        start: int,
        end: int,
        index: int,
        page_breaks: Optional[list[int]],
        headings: Optional[list[SectionHeading]],
    ) -> Chunk:
        return Chunk(
            content=text[start:end].strip(),
            chunk_type=PARENT,
            chunk_index=index,
            char_start=start,
            char_end=end,
            page_number=find_page_number(start, page_breaks),
            section_heading=find_section_heading(start, headings),
        )

    def split_into_children(
        self,
        text: str,
        parent: Chunk,
        page_breaks: Optional[list[int]] = None,
        section_headings: Optional[list[SectionHeading]] = None,
    ) -> list[Chunk]:
        """
        Decompose a parent chunk into child chunks.

        Parents whose content fits in a single child produce no children.
        Children do not overlap each other and together cover the parent's
        full character range.

        Args:
            text: The full document text the parent was cut from
            parent: Parent chunk to split
            page_breaks: Ascending page break offsets
            section_headings: Ascending section headings

        Returns:
            Child chunks with absolute document offsets
        """
        child_size = self.config.child_chunk_chars
        if len(parent.content) <= child_size:
            return []

        base = parent.char_start
        spans = sentence_spans(text[parent.char_start:parent.char_end])

        ranges = []
        buf_start: Optional[int] = None
        buf_end = 0
        for span_start, span_end in spans:
            if buf_start is not None and span_end - buf_start > child_size:
                ranges.append((buf_start, buf_end))
                buf_start = None
            if buf_start is None:
                buf_start = span_start
            buf_end = span_end
        if buf_start is not None:
            ranges.append((buf_start, buf_end))

        children = []
        for index, (rel_start, rel_end) in enumerate(ranges):
            start, end = base + rel_start, base + rel_end
            children.append(Chunk(
                content=text[start:end].strip(),
                chunk_type=CHILD,
                chunk_index=index,
                parent_index=parent.chunk_index,
                char_start=start,
                char_end=end,
                page_number=find_page_number(start, page_breaks),
                section_heading=find_section_heading(start, section_headings),
            ))
        return children

    # =========================================================================
    # Transcripts
    # =========================================================================

    @staticmethod
    def _normalize_segments(
        segments: list[Union[TranscriptSegment, dict]],
    ) -> list[TranscriptSegment]:
        normalized = []
        previous_start = None
        for position, item in enumerate(segments):
            if isinstance(item, TranscriptSegment):
                segment = item
            else:
                segment = TranscriptSegment(
                    text=item.get("text", ""),
                    start=float(item["start"]),
                    end=float(item["end"]),
                )
            if segment.end < segment.start:
                raise ValueError(
                    f"Transcript segment {position} ends before it starts "
                    f"({segment.start} > {segment.end})"
                )
            if previous_start is not None and segment.start < previous_start:
                raise ValueError(
                    f"Transcript segment {position} starts at {segment.start}, "
                    f"before the previous segment at {previous_start}"
                )
            previous_start = segment.start
            normalized.append(segment)
        return normalized

    def transcript_text(self, segments: list[Union[TranscriptSegment, dict]]) -> str:
        """The single-space joined transcript that chunk offsets refer to."""
        return " ".join(
            s.text.strip() for s in self._normalize_segments(segments) if s.text.strip()
        )

    def chunk_transcript(
        self,
        segments: list[Union[TranscriptSegment, dict]],
    ) -> list[Chunk]:
        """
        Chunk timestamped transcript segments.

        Segments are accumulated whole (never split) until the parent size
        would be exceeded. Transcript chunks are single-resolution: no
        overlap and no children.

        Args:
            segments: Ordered TranscriptSegment entries (or dicts with
                text/start/end)

        Returns:
            Parent chunks carrying timestamp_start/timestamp_end

        Raises:
            ValueError: If segment times go backwards or end before start
        """
        parent_size = self.config.parent_chunk_chars

        placed = []  # (segment, char_start, char_end) in the joined text
        cursor = 0
        for segment in self._normalize_segments(segments):
            piece = segment.text.strip()
            if not piece:
                continue
            if placed:
                cursor += 1
            placed.append((segment, cursor, cursor + len(piece)))
            cursor += len(piece)

        joined = " ".join(s.text.strip() for s, _, _ in placed)

        chunks: list[Chunk] = []
        buffer: list[tuple] = []

        def flush():
            first_segment, start, _ = buffer[0]
            last_segment, _, end = buffer[-1]
            chunks.append(Chunk(
                content=joined[start:end],
                chunk_type=PARENT,
                chunk_index=len(chunks),
                char_start=start,
                char_end=end,
                timestamp_start=first_segment.start,
                timestamp_end=last_segment.end,
            ))

        for entry in placed:
            _, seg_start, seg_end = entry
            if buffer and seg_end - buffer[0][1] > parent_size:
                flush()
                buffer = []
            buffer.append(entry)

        if buffer:
            flush()

        logger.debug(f"Chunked {len(placed)} transcript segments into {len(chunks)} chunks")
        return chunks


# CLI for testing
if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) > 1:
        with open(sys.argv[1], encoding="utf-8") as f:
            sample = f.read()
    else:
        sample = " ".join(
            f"Clause {i} sets out the obligations of the parties in detail."
            for i in range(400)
        )

    result = HierarchicalChunker().chunk(sample)
    for c in result:
        indent = "  " if c.chunk_type == CHILD else ""
        print(
            f"{indent}{c.chunk_type} #{c.chunk_index} "
            f"[{c.char_start}:{c.char_end}] {len(c.content)} chars"
        )
