#!/usr/bin/env python3
"""
Embedding Service - OpenAI-compatible embeddings client
One batch of texts in, one vector per text out in the same order, or the
whole batch fails with EmbeddingFailed

A circuit breaker sits in front of the endpoint so a dead service costs one
rejected call per batch instead of one full timeout.
"""

from typing import List, Optional, Protocol

import httpx

from repo_indexer.infrastructure.circuit_breaker import CircuitBreaker, CircuitOpenError
from repo_indexer.infrastructure.error_handling import EmbeddingFailed
from repo_indexer.infrastructure.resilience import RetryConfig, async_http_retrying
from repo_indexer.infrastructure.structured_logging import get_logger

logger = get_logger(__name__)


class EmbeddingService(Protocol):
    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        ...


class EmbeddingClient:
    """Client for a POST /embeddings endpoint"""

    def __init__(
        self,
        api_url: str = "https://api.openai.com/v1",
        api_key: Optional[str] = None,
        model: str = "text-embedding-3-small",
        dimension: Optional[int] = None,
        timeout: float = 60.0,
        retry_config: Optional[RetryConfig] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = api_url.rstrip("/")
        self.model = model
        self.dimension = dimension
        self.retry_config = retry_config or RetryConfig()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name="embeddings",
            failure_threshold=5,
            failure_window=60.0,
            recovery_timeout=30.0,
        )

        headers = {}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.timeout = httpx.Timeout(
            connect=5.0,   # Connection setup
            read=timeout,  # Embeddings can be slow for large batches
            write=30.0,    # Sending batch texts
            pool=5.0
        )
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings) -> "EmbeddingClient":
        return cls(
            api_url=settings.embedding_api_url,
            api_key=settings.embedding_api_key,
            model=settings.embedding_model,
            dimension=settings.embedding_dimension,
            timeout=settings.embedding_timeout,
            retry_config=RetryConfig(max_attempts=settings.max_retries),
        )

    async def close(self):
        """Clean up client connections"""
        await self.client.aclose()

    async def __aenter__(self) -> "EmbeddingClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """Embed one batch atomically"""
        if not texts:
            return []

        try:
            return await self.circuit_breaker.call(self._request_batch, texts)
        except CircuitOpenError as e:
            raise EmbeddingFailed(str(e), batch_size=len(texts), original_exception=e) from e
        except EmbeddingFailed:
            raise
        except httpx.HTTPStatusError as e:
            raise EmbeddingFailed(
                f"Embedding API returned {e.response.status_code}",
                batch_size=len(texts),
                original_exception=e,
            ) from e
        except httpx.TransportError as e:
            raise EmbeddingFailed(
                f"Embedding API unreachable: {type(e).__name__}: {e}",
                batch_size=len(texts),
                original_exception=e,
            ) from e

    async def _request_batch(self, texts: List[str]) -> List[List[float]]:
        async for attempt in async_http_retrying(self.retry_config):
            with attempt:
                response = await self.client.post(
                    "/embeddings",
                    json={"model": self.model, "input": texts}
                )
                response.raise_for_status()

        try:
            data = response.json()
            items = sorted(data["data"], key=lambda item: item["index"])
            vectors = [item["embedding"] for item in items]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingFailed(
                f"Malformed embedding response: {e}",
                batch_size=len(texts),
                original_exception=e,
            ) from e

        self._validate(vectors, len(texts))
        return vectors

    def _validate(self, vectors: List[List[float]], expected: int) -> None:
        if len(vectors) != expected:
            raise EmbeddingFailed(
                f"Expected {expected} embeddings, got {len(vectors)}",
                batch_size=expected,
            )
        for vector in vectors:
            if not vector:
                raise EmbeddingFailed("Embedding response contained an empty vector", batch_size=expected)
            if self.dimension is not None and len(vector) != self.dimension:
                raise EmbeddingFailed(
                    f"Invalid embedding dimension: {len(vector)}, expected {self.dimension}",
                    batch_size=expected,
                )
