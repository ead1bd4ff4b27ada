"""Embedding client: LiteLLM Router in front of the configured provider."""

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from litellm import Router

from clip_history.core.cache import ClipCache
from clip_history.core.config import Settings
from clip_history.core.errors import TransientIOError

logger = logging.getLogger(__name__)

EMBEDDING_ALIAS = "clip-embedding"
FALLBACK_MODEL = "fallback-hash"
MAX_INPUT_CHARS = 8000


@dataclass
class EmbeddingResult:
    vector: List[float]
    model: str


class EmbeddingClient:
    """Generates embeddings for clips and search queries."""

    def __init__(self, settings: Optional[Settings] = None, cache: Optional[ClipCache] = None):
        self.settings = settings or Settings.from_env()
        self.cache = cache
        self.router = Router(
            model_list=[
                {
                    "model_name": EMBEDDING_ALIAS,
                    "litellm_params": self._litellm_params(),
                }
            ],
            num_retries=self.settings.max_retries,
            timeout=self.settings.request_timeout,
        )
        logger.info(f"Embedding client configured for {self.settings.embedding_model}")

    @property
    def model(self) -> str:
        return self.settings.embedding_model

    def _litellm_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"model": self.settings.embedding_model}
        if self.settings.embedding_api_base:
            params["api_base"] = self.settings.embedding_api_base
        if self.settings.embedding_api_key:
            params["api_key"] = self.settings.embedding_api_key
        return params

    def _models_endpoint(self) -> str:
        base = (self.settings.embedding_api_base or "").rstrip("/")
        if self.model.startswith("ollama/"):
            return f"{base}/api/tags"
        return f"{base}/v1/models"

    async def probe(self) -> Dict[str, Any]:
        """Check that the provider answers on its models endpoint."""
        status = {
            "model": self.model,
            "api_base": self.settings.embedding_api_base,
            "available": False,
            "latency_ms": None,
        }
        if not self.settings.embedding_api_base:
            status["error"] = "no api base configured"
            return status

        start_time = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                response = await client.get(self._models_endpoint())
        except httpx.HTTPError as e:
            logger.debug(f"Embedding provider probe failed: {e}")
            status["error"] = str(e)
            return status

        status["latency_ms"] = round((time.perf_counter() - start_time) * 1000, 1)
        status["available"] = response.status_code == 200
        if not status["available"]:
            status["error"] = f"HTTP {response.status_code}"
        return status

    async def embed(self, text: str) -> EmbeddingResult:
        """Embed one text. Falls back to a hash vector when enabled."""
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        text = text[:MAX_INPUT_CHARS]
        try:
            response = await self.router.aembedding(model=EMBEDDING_ALIAS, input=[text])
            item = response.data[0]
            vector = item["embedding"] if isinstance(item, dict) else item.embedding
            return EmbeddingResult(vector=list(vector), model=self.model)
        except Exception as e:
            if not self.settings.embedding_fallback:
                logger.error(f"Embedding generation failed: {e}")
                raise TransientIOError(f"Embedding generation failed: {e}") from e
            logger.warning(f"Embedding generation failed, using fallback: {e}")
            return EmbeddingResult(vector=self._fallback_embedding(text), model=FALLBACK_MODEL)

    async def embed_query(self, query: str) -> EmbeddingResult:
        """Embed a search query, served from cache when possible."""
        key = "query_embedding:{}:{}".format(
            self.model, hashlib.sha256(query.encode("utf-8")).hexdigest()
        )
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached:
                return EmbeddingResult(vector=cached["vector"], model=cached["model"])

        result = await self.embed(query)
        # Fallback vectors are not cached so a recovered provider is used next time
        if self.cache is not None and result.model != FALLBACK_MODEL:
            await self.cache.set(
                key,
                {"vector": result.vector, "model": result.model},
                ttl=self.settings.embedding_cache_ttl,
            )
        return result

    def _fallback_embedding(self, text: str) -> List[float]:
        """Deterministic hash-based vector, values in [-1, 1]."""
        dimensions = self.settings.embedding_dimensions
        embedding: List[float] = []
        block = 0
        while len(embedding) < dimensions:
            digest = hashlib.md5(f"{block}:{text}".encode("utf-8")).digest()
            embedding.extend((byte_val - 128) / 128.0 for byte_val in digest)
            block += 1
        return embedding[:dimensions]
