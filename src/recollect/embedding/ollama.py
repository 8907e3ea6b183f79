"""Ollama embedding adapter with async httpx.

This module provides an EmbeddingAdapter backed by the Ollama embeddings API with:
- Exponential backoff retry logic for network resilience
- Batch embedding chunked by max_batch_size, one request per chunk
- Optional L2 normalisation of returned vectors
- Dimension discovery from the first response
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from recollect.embedding.base import DEFAULT_MAX_BATCH_SIZE, EmbeddingAdapter
from recollect.errors import ErrorKind, RecollectError
from recollect.memory.vector_math import normalize_vector

logger = logging.getLogger(__name__)


def _embedding_error(message: str) -> RecollectError:
    return RecollectError(ErrorKind.EMBEDDING_FAILURE, message)


class OllamaEmbeddingAdapter(EmbeddingAdapter):
    """Async HTTP client for the Ollama /api/embed endpoint.

    Args:
        host: Ollama server host URL (default: "http://localhost:11434")
        model: Embedding model name (default: "nomic-embed-text")
        timeout: Request timeout in seconds (default: 30)
        max_batch_size: Number of texts per API call (default: 100)
        normalize: If True, L2-normalise every returned vector (default: False)

    Example:
        >>> async with OllamaEmbeddingAdapter() as embedder:
        ...     vector = await embedder.embed("What is Python?")
        ...     vectors = await embedder.embed_batch(["doc1", "doc2"])
    """

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        timeout: float = 30.0,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        normalize: bool = False,
    ):
        if max_batch_size < 1:
            raise ValueError(f"max_batch_size must be at least 1, got {max_batch_size}")

        self.host = host.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.max_batch_size = max_batch_size
        self.normalize = normalize
        self._dimensions: Optional[int] = None
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OllamaEmbeddingAdapter":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _request_with_retry(
        self,
        payload: dict,
        max_retries: int = 3,
        base_delay: float = 1.0,
    ) -> dict:
        """Make HTTP request to Ollama API with exponential backoff retry.

        Connection and transport errors are retried; timeouts and HTTP
        status errors fail immediately.

        Args:
            payload: Request payload dictionary
            max_retries: Maximum number of attempts (default: 3)
            base_delay: Initial delay in seconds (default: 1.0)

        Returns:
            Response JSON data

        Raises:
            RecollectError: EMBEDDING_FAILURE if the request fails after all retries
        """
        client = await self._get_client()
        last_error: Exception | None = None

        for attempt in range(max_retries):
            try:
                response = await client.post(
                    f"{self.host}/api/embed",
                    json=payload,
                )
                response.raise_for_status()
                result: dict[str, Any] = response.json()
                return result

            except httpx.TimeoutException as e:
                raise _embedding_error(
                    f"Request timeout after {self.timeout}s. "
                    f"Consider increasing timeout for model {self.model}"
                ) from e

            except httpx.HTTPStatusError as e:
                raise _embedding_error(
                    f"Ollama API error: {e.response.status_code} - {e.response.text}"
                ) from e

            except httpx.RequestError as e:
                last_error = e
                if attempt < max_retries - 1:
                    delay = base_delay * (2**attempt)  # 1s, 2s, 4s
                    logger.warning(
                        f"Request error (attempt {attempt + 1}/{max_retries}), "
                        f"retrying in {delay}s: {e}"
                    )
                    await asyncio.sleep(delay)
                else:
                    raise _embedding_error(
                        f"Ollama API request failed after {max_retries} attempts: {e}"
                    ) from e

            except ValueError as e:
                raise _embedding_error(f"Invalid JSON from Ollama API: {e}") from e

        raise _embedding_error(f"Unexpected error: {last_error}")

    def _finish(self, embedding: list[float]) -> list[float]:
        vector = [float(x) for x in embedding]
        if self._dimensions is None:
            self._dimensions = len(vector)
        return normalize_vector(vector) if self.normalize else vector

    async def embed(self, text: str) -> list[float]:
        """Generate embedding for a single text.

        Raises:
            RecollectError: EMBEDDING_FAILURE if embedding generation fails
            ValueError: If text is empty
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        data = await self._request_with_retry({"model": self.model, "input": text})
        embeddings = data.get("embeddings")

        if not embeddings:
            raise _embedding_error("No embedding returned from Ollama API")

        return self._finish(embeddings[0])

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts.

        Texts are sent in chunks of max_batch_size, one chunk at a time.

        Args:
            texts: Input texts to embed

        Returns:
            One embedding per input text, in input order. Empty input gives
            an empty list without calling the API.

        Raises:
            RecollectError: EMBEDDING_FAILURE if any chunk fails or returns
                the wrong number of embeddings
            ValueError: If any text is empty
        """
        if not texts:
            return []

        if any(not text or not text.strip() for text in texts):
            raise ValueError("Texts cannot contain empty strings")

        all_embeddings: list[list[float]] = []

        for i in range(0, len(texts), self.max_batch_size):
            batch = texts[i : i + self.max_batch_size]
            data = await self._request_with_retry({"model": self.model, "input": batch})
            embeddings = data.get("embeddings")

            if not embeddings or len(embeddings) != len(batch):
                raise _embedding_error(
                    f"Expected {len(batch)} embeddings, got {len(embeddings) if embeddings else 0}"
                )

            all_embeddings.extend(self._finish(embedding) for embedding in embeddings)

        return all_embeddings

    def get_dimensions(self) -> Optional[int]:
        return self._dimensions

    def get_model_name(self) -> str:
        return self.model
