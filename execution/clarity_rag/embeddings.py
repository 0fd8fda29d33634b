"""
Batch Embedding Service

Generates embeddings with OpenAI's text-embedding-3-small (1536 dims).

Inputs are trimmed, truncated to the model's context window, and sent in
fixed-size batches. Entries that are empty after trimming are never sent to
the provider; they come back as empty vectors in their original positions,
so the output always lines up one-to-one with the input.
"""

import os
import time
import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding service."""
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 100  # Items per provider call
    max_tokens: int = 8191  # Model context window
    chars_per_token: int = 4
    max_retries: int = 2  # Extra attempts per failed batch
    retry_backoff_seconds: float = 1.0  # Doubles after each failed attempt
    timeout_seconds: float = 60.0

    @property
    def max_input_chars(self) -> int:
        return self.max_tokens * self.chars_per_token


class EmbeddingConfigurationError(Exception):
    """Raised when the embedding provider cannot be configured (e.g. no API key)."""


class EmbeddingBatchError(Exception):
    """Raised when a batch still fails after its retries."""

    def __init__(self, message: str, batch_index: int, attempts: int = 0):
        super().__init__(message)
        self.batch_index = batch_index
        self.attempts = attempts


@dataclass
class EmbeddingBatchResult:
    """Embeddings aligned with their inputs, plus preprocessing notes."""
    vectors: list[list[float]]
    truncated_indices: list[int] = field(default_factory=list)
    skipped_indices: list[int] = field(default_factory=list)


class EmbeddingService:
    """
    Embeds text in order-preserving batches.

    Usage:
        service = EmbeddingService()
        vectors = service.embed_batch(["first chunk", "", "third chunk"])
        # -> [[...1536 floats...], [], [...1536 floats...]]
    """

    _env_var_name = "OPENAI_API_KEY"

    def __init__(self, config: Optional[EmbeddingConfig] = None, client=None):
        """
        Initialize embedding service.

        Args:
            config: Optional configuration. Uses defaults if not provided.
            client: Optional pre-built OpenAI-compatible client. When omitted
                one is created on first use from OPENAI_API_KEY.
        """
        self.config = config or EmbeddingConfig()
        self._client = client

    def _get_client(self):
        """Get or create the OpenAI client."""
        if self._client is None:
            api_key = os.getenv(self._env_var_name)
            if not api_key:
                raise EmbeddingConfigurationError(
                    f"{self._env_var_name} is not set. Embeddings cannot be generated."
                )
            from openai import OpenAI
            self._client = OpenAI(
                api_key=api_key,
                timeout=self.config.timeout_seconds,
                max_retries=0,  # Batches are retried here
            )
            logger.info(f"OpenAI embedding client initialized with model {self.config.model}")
        return self._client

    def _prepare(self, text: Optional[str]) -> tuple[str, bool]:
        """Trim and truncate one input. Returns (text, was_truncated)."""
        cleaned = (text or "").strip()
        limit = self.config.max_input_chars
        if len(cleaned) > limit:
            return cleaned[:limit], True
        return cleaned, False

    def embed_text(self, text: str) -> list[float]:
        """
        Embed a single string.

        Returns:
            Embedding vector, or an empty list when the text is blank
        """
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Embed many strings.

        Args:
            texts: Strings to embed, in any mix of empty and non-empty

        Returns:
            One vector per input, in input order ([] for blank inputs)

        Raises:
            EmbeddingConfigurationError: If no API key is configured
            EmbeddingBatchError: If a batch fails after retries
        """
        return self.embed_batch_detailed(texts).vectors

    def embed_batch_detailed(self, texts: list[str]) -> EmbeddingBatchResult:
        """Embed many strings and report which inputs were truncated or skipped."""
        result = EmbeddingBatchResult(vectors=[[] for _ in texts])
        if not texts:
            return result

        prepared = []
        for i, text in enumerate(texts):
            cleaned, truncated = self._prepare(text)
            if truncated:
                result.truncated_indices.append(i)
            if not cleaned:
                result.skipped_indices.append(i)
            prepared.append(cleaned)

        if result.truncated_indices:
            logger.warning(
                f"Truncated {len(result.truncated_indices)} inputs to "
                f"{self.config.max_input_chars} chars"
            )

        if len(result.skipped_indices) == len(texts):
            return result

        client = self._get_client()
        batch_size = self.config.batch_size
        batch_count = (len(prepared) + batch_size - 1) // batch_size

        logger.info(
            f"Embedding {len(texts)} texts in {batch_count} batches "
            f"with {self.config.model}"
        )

        for batch_index in range(batch_count):
            offset = batch_index * batch_size
            batch = prepared[offset:offset + batch_size]

            positions = [offset + i for i, t in enumerate(batch) if t]
            if not positions:
                continue
            payload = [prepared[p] for p in positions]

            vectors = self._embed_with_retry(client, payload, batch_index)
            for position, vector in zip(positions, vectors):
                result.vectors[position] = vector

            if (batch_index + 1) % 10 == 0:
                logger.info(f"Processed batch {batch_index + 1}/{batch_count}")

        return result

    def _embed_with_retry(
        self,
        client,
        payload: list[str],
        batch_index: int,
    ) -> list[list[float]]:
        """Send one batch, retrying the whole batch with exponential backoff."""
        attempts = self.config.max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                response = client.embeddings.create(
                    model=self.config.model,
                    input=payload,
                )
                data = sorted(response.data, key=lambda d: d.index)
                if len(data) != len(payload):
                    raise EmbeddingBatchError(
                        f"Provider returned {len(data)} embeddings for "
                        f"{len(payload)} inputs in batch {batch_index}",
                        batch_index=batch_index,
                        attempts=attempt + 1,
                    )
                return [list(d.embedding) for d in data]
            except EmbeddingBatchError:
                raise
            except Exception as e:
                last_error = e
                if attempt < attempts - 1:
                    delay = self.config.retry_backoff_seconds * (2 ** attempt)
                    logger.warning(
                        f"Embedding batch {batch_index} failed "
                        f"(attempt {attempt + 1}/{attempts}): {e}. Retrying in {delay}s"
                    )
                    time.sleep(delay)

        logger.error(f"Embedding batch {batch_index} failed after {attempts} attempts: {last_error}")
        raise EmbeddingBatchError(
            f"Embedding batch {batch_index} failed after {attempts} attempts: {last_error}",
            batch_index=batch_index,
            attempts=attempts,
        ) from last_error

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions


def get_embedding_service(config: Optional[EmbeddingConfig] = None) -> EmbeddingService:
    """
    Factory for the embedding service.

    EMBEDDING_MODEL overrides the default model name.
    """
    if config is None:
        config = EmbeddingConfig(
            model=os.getenv("EMBEDDING_MODEL", EmbeddingConfig.model),
        )
    return EmbeddingService(config)


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    service = get_embedding_service()

    if len(sys.argv) > 1:
        query = " ".join(sys.argv[1:])
    else:
        query = "What are the termination clauses in this contract?"

    print(f"Query: {query}")
    embedding = service.embed_text(query)
    print(f"Embedding dimensions: {len(embedding)}")
    print(f"First 10 values: {embedding[:10]}")
