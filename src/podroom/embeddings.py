"""
Embedding Clients

Local sentence-transformers embedder (lazy-loaded) and an
OpenAI-compatible /embeddings client.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx

from .config import Settings, settings
from .errors import ConfigurationError, UpstreamError
from .llm import RetryPolicy
from .stats import UsageStats

logger = logging.getLogger(__name__)


class Embedder(ABC):
    """Embedding collaborator: texts in, equal-length vectors out."""

    def __init__(self, dimensions: int = None, stats: Optional[UsageStats] = None, batch_size: int = None):
        self.dimensions = dimensions or settings.embedding_dimensions
        self.batch_size = batch_size or settings.embedding_batch_size
        self.stats = stats or UsageStats()

    @abstractmethod
    async def _embed(self, texts: List[str]) -> List[List[float]]:
        """Embed one batch."""

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Embed texts in batches.

        Raises:
            UpstreamError: If the backend fails or returns vectors of the wrong size
        """
        if not texts:
            return []

        vectors: List[List[float]] = []
        batch_size = max(1, self.batch_size)
        for i in range(0, len(texts), batch_size):
            batch = texts[i:i + batch_size]
            result = await self._embed(batch)
            if len(result) != len(batch):
                raise UpstreamError(f"Embedding returned {len(result)} vectors for {len(batch)} texts")
            for vector in result:
                if len(vector) != self.dimensions:
                    raise UpstreamError(
                        f"Embedding has {len(vector)} dims, expected {self.dimensions}"
                    )
            vectors.extend([float(x) for x in vector] for vector in result)

        self.stats.incr("embedding_calls")
        self.stats.incr("embedded_texts", len(texts))
        return vectors

    async def embed_one(self, text: str) -> List[float]:
        return (await self.embed([text]))[0]


# Lazy-loaded local models, keyed by name
_models = {}


def get_sentence_model(name: str):
    """Get or load a sentence-transformers model (cached)."""
    if name not in _models:
        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading embedding model: {name}")
        _models[name] = SentenceTransformer(name, device="cpu")
    return _models[name]


class SentenceTransformerEmbedder(Embedder):
    """Runs a local sentence-transformers model in a worker thread."""

    def __init__(self, model_name: str = None, **kwargs):
        super().__init__(**kwargs)
        self.model_name = model_name or settings.embedding_model

    async def _embed(self, texts: List[str]) -> List[List[float]]:
        def encode():
            model = get_sentence_model(self.model_name)
            return model.encode(texts, normalize_embeddings=True).tolist()

        try:
            return await asyncio.to_thread(encode)
        except Exception as e:
            raise UpstreamError(f"Local embedding failed: {e}") from e


class OpenAIEmbedder(Embedder):
    """OpenAI-compatible /embeddings client."""

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        model: str = None,
        timeout: float = None,
        retry: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        if not self.api_key:
            raise ConfigurationError("PODROOM_OPENAI_API_KEY is required for openai embeddings")
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.model = model or settings.openai_embedding_model
        self.timeout = timeout or settings.embedding_timeout_seconds
        self.retry = retry or RetryPolicy()
        self._transport = transport

    async def _embed(self, texts: List[str]) -> List[List[float]]:
        return await self.retry.call(self._request, texts)

    async def _request(self, texts: List[str]) -> List[List[float]]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/embeddings",
                    json={"model": self.model, "input": texts, "dimensions": self.dimensions},
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
                data = sorted(response.json()["data"], key=lambda d: d["index"])
                return [d["embedding"] for d in data]
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Embedding request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Embedding request failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise UpstreamError(f"Embedding returned an unexpected payload: {e}") from e


def create_embedder(config: Settings = None, stats: Optional[UsageStats] = None) -> Embedder:
    config = config or settings
    if config.embedding_provider == "openai":
        return OpenAIEmbedder(
            api_key=config.openai_api_key,
            base_url=config.openai_base_url,
            model=config.openai_embedding_model,
            timeout=config.embedding_timeout_seconds,
            retry=RetryPolicy.from_settings(config),
            dimensions=config.embedding_dimensions,
            batch_size=config.embedding_batch_size,
            stats=stats,
        )
    return SentenceTransformerEmbedder(
        model_name=config.embedding_model,
        dimensions=config.embedding_dimensions,
            batch_size=config.embedding_batch_size,
        stats=stats,
    )
