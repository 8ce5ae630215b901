"""Embedding providers: text in, fixed-size float vector out.

Both providers talk HTTP through ``httpx.AsyncClient`` with a bounded
timeout. Failures (model missing, HTTP error, timeout, malformed or
wrongly sized vector) raise ``EmbeddingProviderError``; a provider never
hands back a zero or empty vector in place of a real one, and never retries.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from sitechat.errors import EmbeddingProviderError

logger = structlog.get_logger(__name__)


class EmbeddingProvider(ABC):
    """Converts text to vectors of a fixed ``dimension``.

    ``embed_batch`` keeps at most ``concurrency`` requests in flight,
    returns vectors in input order and fails on the first error.
    """

    def __init__(self, model: str, dimension: int, concurrency: int = 4):
        self.model = model
        self.dimension = dimension
        self.concurrency = max(1, concurrency)

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []

        start_time = time.time()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(text: str) -> List[float]:
            async with semaphore:
                return await self.embed(text)

        tasks = [asyncio.ensure_future(_bounded(text)) for text in texts]
        try:
            vectors = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        logger.info(
            "Batch embeddings generated",
            model=self.model,
            count=len(vectors),
            concurrency=self.concurrency,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return list(vectors)

    async def check_model(self) -> bool:
        """Whether the configured model is available; providers without a model listing assume yes."""
        return True

    def _validate(self, vector: Any) -> List[float]:
        if not isinstance(vector, list) or not vector:
            raise EmbeddingProviderError(f"Empty embedding returned by model {self.model}")
        if len(vector) != self.dimension:
            raise EmbeddingProviderError(
                f"Embedding dimension mismatch for model {self.model}: "
                f"expected {self.dimension}, got {len(vector)}"
            )
        values = [float(v) for v in vector]
        if not any(values):
            raise EmbeddingProviderError(f"Zero vector returned by model {self.model}")
        return values


class _HttpEmbeddingProvider(EmbeddingProvider):
    """Shared HTTP plumbing; ``transport`` is injectable for tests."""

    def __init__(
        self,
        base_url: str,
        model: str,
        dimension: int,
        timeout_seconds: float = 30.0,
        concurrency: int = 4,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(model=model, dimension=dimension, concurrency=concurrency)
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._headers = headers or {}
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout_seconds),
            headers=self._headers,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as e:
            logger.error("Embedding request timed out", model=self.model, path=path, timeout=self.timeout_seconds)
            raise EmbeddingProviderError(
                f"Embedding request to {self.base_url}{path} timed out after {self.timeout_seconds}s"
            ) from e
        except httpx.HTTPStatusError as e:
            logger.error(
                "Embedding request failed",
                model=self.model,
                status=e.response.status_code,
                response=e.response.text[:200],
            )
            raise EmbeddingProviderError(
                f"Embedding provider returned HTTP {e.response.status_code} for model {self.model}"
            ) from e
        except httpx.HTTPError as e:
            logger.error("Embedding provider unreachable", model=self.model, error=str(e))
            raise EmbeddingProviderError(f"Embedding provider unreachable at {self.base_url}: {e}") from e
        except ValueError as e:
            raise EmbeddingProviderError(f"Malformed embedding response from {self.base_url}{path}") from e


class OllamaEmbeddingProvider(_HttpEmbeddingProvider):
    """Ollama ``/api/embeddings`` (one prompt per request)."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        dimension: int = 768,
        timeout_seconds: float = 30.0,
        concurrency: int = 4,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url=base_url,
            model=model,
            dimension=dimension,
            timeout_seconds=timeout_seconds,
            concurrency=concurrency,
            transport=transport,
        )

    async def embed(self, text: str) -> List[float]:
        data = await self._request("POST", "/api/embeddings", json={"model": self.model, "prompt": text})
        if not isinstance(data, dict):
            raise EmbeddingProviderError(f"Malformed embedding response from model {self.model}")
        return self._validate(data.get("embedding"))

    async def check_model(self) -> bool:
        try:
            data = await self._request("GET", "/api/tags")
        except EmbeddingProviderError as e:
            logger.error("Error checking Ollama models", error=str(e))
            return False

        names = [m.get("name", "") for m in (data or {}).get("models", [])]
        has_model = any(self.model in name for name in names)
        if not has_model:
            logger.warning(
                "Embedding model not found in Ollama",
                model=self.model,
                available=names,
                hint=f"ollama pull {self.model}",
            )
        return has_model


class OpenAIEmbeddingProvider(_HttpEmbeddingProvider):
    """OpenAI-compatible ``/embeddings``; batches go out as multi-input requests."""

    max_inputs_per_request = 100

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "text-embedding-3-small",
        dimension: int = 1536,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
        concurrency: int = 4,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise EmbeddingProviderError("OpenAI API key not configured")
        super().__init__(
            base_url=base_url,
            model=model,
            dimension=dimension,
            timeout_seconds=timeout_seconds,
            concurrency=concurrency,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    async def _embed_inputs(self, inputs: List[str]) -> List[List[float]]:
        data = await self._request(
            "POST",
            "/embeddings",
            json={"model": self.model, "input": inputs, "encoding_format": "float"},
        )
        try:
            rows = sorted(data["data"], key=lambda row: row.get("index", 0))
            vectors = [row["embedding"] for row in rows]
        except (KeyError, TypeError) as e:
            raise EmbeddingProviderError(f"Malformed embedding response from model {self.model}") from e
        if len(vectors) != len(inputs):
            raise EmbeddingProviderError(
                f"Expected {len(inputs)} embeddings from model {self.model}, got {len(vectors)}"
            )
        return [self._validate(v) for v in vectors]

    async def embed(self, text: str) -> List[float]:
        return (await self._embed_inputs([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        size = self.max_inputs_per_request
        batches = [list(texts[i:i + size]) for i in range(0, len(texts), size)]
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(batch: List[str]) -> List[List[float]]:
            async with semaphore:
                return await self._embed_inputs(batch)

        results = await asyncio.gather(*[_bounded(b) for b in batches])
        return [vector for batch in results for vector in batch]

    async def check_model(self) -> bool:
        try:
            await self._request("GET", f"/models/{self.model}")
        except EmbeddingProviderError as e:
            logger.error("Error checking OpenAI model", model=self.model, error=str(e))
            return False
        return True
