"""
Result Merging and Snippet Highlighting

Combines the lexical and vector branches into one ranked list and builds
highlighted snippets for display.

Merge rule:
- Vector hits are taken first, with their score multiplied by a boost
- Lexical hits for new documents are added at their own score
- Lexical hits for documents already present add a corroboration bonus,
  capped at 1.0
- Results are ordered by score, ties keeping insertion order
"""

import re
import logging
from dataclasses import dataclass, replace
from typing import Optional

from .vector_store import SearchResult

logger = logging.getLogger(__name__)

VECTOR_SCORE_BOOST = 1.2
CORROBORATION_BONUS = 0.1
CORROBORATION_CAP = 1.0
SNIPPET_MAX_CHARS = 300
SNIPPET_CONTEXT_CHARS = 100
HIGHLIGHT_MARKER = "**"

# Too common to be useful highlight targets
STOPWORDS = frozenset({
    "and", "are", "any", "for", "from", "has", "have", "into", "not", "that",
    "the", "their", "this", "was", "were", "what", "when", "where", "which",
    "who", "with", "within",
})


@dataclass
class MergeConfig:
    """Scoring constants for merging search branches."""
    vector_boost: float = VECTOR_SCORE_BOOST
    corroboration_bonus: float = CORROBORATION_BONUS
    corroboration_cap: float = CORROBORATION_CAP
    snippet_max_chars: int = SNIPPET_MAX_CHARS
    snippet_context_chars: int = SNIPPET_CONTEXT_CHARS


def merge_results(
    lexical: list[SearchResult],
    vector: list[SearchResult],
    config: Optional[MergeConfig] = None,
) -> list[SearchResult]:
    """
    Merge lexical and vector results into one ranked list.

    Args:
        lexical: Lexical branch results
        vector: Vector branch results
        config: Optional scoring constants

    Returns:
        New SearchResult objects (inputs are not modified), one per
        document, sorted by score descending
    """
    config = config or MergeConfig()
    merged: dict[str, SearchResult] = {}

    for result in vector:
        if result.document_id in merged:
            continue
        merged[result.document_id] = replace(
            result,
            similarity_score=result.similarity_score * config.vector_boost,
            metadata={**result.metadata, "matched_by": ["vector"]},
        )

    for result in lexical:
        existing = merged.get(result.document_id)
        if existing is None:
            merged[result.document_id] = replace(
                result,
                metadata={**result.metadata, "matched_by": ["lexical"]},
            )
            continue
        if "lexical" in existing.metadata.get("matched_by", []):
            continue
        bumped = min(existing.similarity_score + config.corroboration_bonus, config.corroboration_cap)
        existing.similarity_score = max(existing.similarity_score, bumped)
        existing.metadata["matched_by"] = existing.metadata["matched_by"] + ["lexical"]

    return sorted(merged.values(), key=lambda r: r.similarity_score, reverse=True)


def highlight_terms(query: str, expanded_query: Optional[str] = None) -> list[str]:
    """Distinct lower-cased words of the query and its expansion, longest first."""
    terms = []
    seen = set()
    for source in (query, expanded_query or ""):
        for word in re.findall(r"\w+", source.lower()):
            if len(word) < 3 or word in STOPWORDS or word in seen:
                continue
            seen.add(word)
            terms.append(word)
    return sorted(terms, key=len, reverse=True)


def highlight_snippet(
    text: str,
    terms: list[str],
    snippet_max: int = SNIPPET_MAX_CHARS,
    context_chars: int = SNIPPET_CONTEXT_CHARS,
) -> str:
    """
    Build a snippet around the earliest matching term.

    The window runs from ``context_chars`` before the match to
    ``snippet_max`` after it, with "..." marking truncation on either side,
    and every term occurrence inside it is wrapped in ``**``.

    Args:
        text: Text to excerpt
        terms: Terms to look for (case-insensitive)
        snippet_max: Characters to keep after the match
        context_chars: Characters to keep before the match

    Returns:
        Highlighted snippet; the leading ``snippet_max`` characters plus
        "..." when no term matches
    """
    if not text:
        return ""

    terms = [t for t in terms if t]
    if not terms:
        return text[:snippet_max] + "..."

    pattern = re.compile(
        "|".join(re.escape(t) for t in sorted(terms, key=len, reverse=True)),
        re.IGNORECASE,
    )
    match = pattern.search(text)
    if match is None:
        return text[:snippet_max] + "..."

    start = max(0, match.start() - context_chars)
    end = min(len(text), match.start() + snippet_max)
    snippet = pattern.sub(lambda m: f"{HIGHLIGHT_MARKER}{m.group(0)}{HIGHLIGHT_MARKER}", text[start:end])

    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet


def apply_highlights(
    results: list[SearchResult],
    terms: list[str],
    config: Optional[MergeConfig] = None,
) -> list[SearchResult]:
    """Set highlighted_snippet on each result, falling back to a plain prefix."""
    config = config or MergeConfig()
    for result in results:
        try:
            result.highlighted_snippet = highlight_snippet(
                result.extracted_text,
                terms,
                snippet_max=config.snippet_max_chars,
                context_chars=config.snippet_context_chars,
            )
        except Exception as e:
            logger.warning(f"Highlighting failed for {result.document_id}: {e}")
            result.highlighted_snippet = (result.extracted_text or "")[:config.snippet_max_chars]
    return results
