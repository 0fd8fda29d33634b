"""
Legal Query Expansion

Asks a chat completion model to enrich a search query with legal
terminology, related concepts and synonyms before retrieval. Expansion is
best-effort: any provider, credential or parse problem falls back to the
original query with no suggested terms.
"""

import os
import re
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


EXPANSION_PROMPT = """You are a legal search expert. Given a search query, suggest related legal terms and concepts that should be included in the search.

Original Query: "{query}"

Provide suggestions in the following JSON format:
{{
  "expandedQuery": "Enhanced version of the original query with legal context",
  "suggestedTerms": ["term1", "term2", "term3"],
  "legalConcepts": ["concept1", "concept2"],
  "synonyms": ["synonym1", "synonym2"]
}}

Focus on:
- Legal terminology and synonyms
- Related concepts in law
- Common phrases used in legal documents
- Both formal legal language and plain language equivalents

Return only the JSON object without any additional text."""

# Keys whose lists are folded into suggested_terms, in order
TERM_KEYS = ("suggestedTerms", "legalConcepts", "synonyms", "relatedTerms")

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass
class QueryExpansion:
    """An expanded query and the extra terms the model suggested."""
    expanded_query: str
    suggested_terms: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "expanded_query": self.expanded_query,
            "suggested_terms": self.suggested_terms,
        }


@dataclass
class ExpansionConfig:
    """Configuration for query expansion."""
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    max_tokens: int = 400
    timeout_seconds: float = 30.0
    max_retries: int = 1  # Extra provider attempts before falling back
    enabled: bool = True


def parse_expansion(raw: Optional[str], query: str) -> QueryExpansion:
    """
    Parse a model response into a QueryExpansion.

    Tolerates markdown code fences around the JSON. Anything that is not a
    JSON object yields the fallback; missing or mistyped fields fall back
    individually.
    """
    fallback = QueryExpansion(expanded_query=query, suggested_terms=[])
    if not raw or not raw.strip():
        return fallback

    cleaned = _CODE_FENCE.sub("", raw.strip())
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        # Models sometimes wrap the object in prose; try the outermost braces
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            logger.warning("Failed to parse query expansion, using original query")
            return fallback
        try:
            payload = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError:
            logger.warning("Failed to parse query expansion, using original query")
            return fallback

    if not isinstance(payload, dict):
        logger.warning("Query expansion was not a JSON object, using original query")
        return fallback

    expanded = payload.get("expandedQuery")
    if not isinstance(expanded, str) or not expanded.strip():
        expanded = query

    terms: list[str] = []
    seen = set()
    for key in TERM_KEYS:
        values = payload.get(key)
        if not isinstance(values, list):
            continue
        for value in values:
            if not isinstance(value, str):
                continue
            term = value.strip()
            if term and term.lower() not in seen:
                seen.add(term.lower())
                terms.append(term)

    return QueryExpansion(expanded_query=expanded.strip(), suggested_terms=terms)


class QueryExpander:
    """
    Expands search queries with an OpenAI chat model.

    Usage:
        expander = QueryExpander()
        expansion = expander.expand("breach of lease")
        expansion.expanded_query   # "breach of lease agreement, tenant default ..."
        expansion.suggested_terms  # ["lease violation", "landlord remedies", ...]
    """

    def __init__(self, config: Optional[ExpansionConfig] = None, client=None):
        self.config = config or ExpansionConfig(
            model=os.getenv("QUERY_EXPANSION_MODEL", ExpansionConfig.model),
        )
        self._client = client

    def _get_client(self):
        """Get or create the OpenAI client, or None when no key is configured."""
        if self._client is None:
            api_key = os.getenv("OPENAI_API_KEY")
            if not api_key:
                return None
            from openai import OpenAI
            self._client = OpenAI(
                api_key=api_key,
                timeout=self.config.timeout_seconds,
            )
        return self._client

    def expand(self, query: str) -> QueryExpansion:
        """
        Expand a query with legal context.

        Args:
            query: The user's raw search query

        Returns:
            QueryExpansion; the original query and no terms on any failure
        """
        fallback = QueryExpansion(expanded_query=query, suggested_terms=[])
        if not self.config.enabled or not query or not query.strip():
            return fallback

        client = self._get_client()
        if client is None:
            logger.warning("OPENAI_API_KEY not set, skipping query expansion")
            return fallback

        attempts = self.config.max_retries + 1
        for attempt in range(attempts):
            try:
                response = client.chat.completions.create(
                    model=self.config.model,
                    messages=[{
                        "role": "user",
                        "content": EXPANSION_PROMPT.format(query=query),
                    }],
                    temperature=self.config.temperature,
                    max_tokens=self.config.max_tokens,
                )
                raw = response.choices[0].message.content
                break
            except Exception as e:
                if attempt < attempts - 1:
                    logger.warning(f"Query expansion attempt {attempt + 1} failed: {e}")
                    continue
                logger.warning(f"Query expansion failed: {e}. Using original query.")
                return fallback

        expansion = parse_expansion(raw, query)
        logger.info(
            f"Query expanded: '{query}' -> '{expansion.expanded_query[:100]}' "
            f"({len(expansion.suggested_terms)} suggested terms)"
        )
        return expansion


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    text = " ".join(sys.argv[1:]) or "landlord failed to return the deposit"
    result = QueryExpander().expand(text)
    print(json.dumps(result.to_dict(), indent=2))
