"""Text embeddings via Ollama, with a bounded TTL cache in front.

``generate_embedding`` never raises: an empty vector means "embedding
unavailable" and callers are expected to skip whatever needed it.
"""

from __future__ import annotations

import logging
import math
import time
from collections import OrderedDict
from collections.abc import Callable, Sequence
from typing import Protocol

import ollama

from jarvis.config import Settings
from jarvis.config import settings as default_settings

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0 for empty, mismatched or zero vectors."""
    if len(a) != len(b) or not a:
        return 0.0

    dot = norm_a = norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    denominator = math.sqrt(norm_a) * math.sqrt(norm_b)
    if denominator == 0:
        return 0.0
    # Clamp float drift so identical vectors compare as exactly 1.0
    return max(-1.0, min(1.0, dot / denominator))


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class EmbeddingCache:
    """Size-bounded LRU cache with a per-entry time-to-live.

    Expired entries are dropped lazily when looked up. Not thread-safe;
    concurrent writers to the same key simply overwrite each other.
    """

    def __init__(
        self,
        max_size: int = 100,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[list[float], float]] = OrderedDict()

    def get(self, key: str) -> list[float] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None

        embedding, stored_at = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None

        self._entries.move_to_end(key)
        logger.debug("Embedding cache hit")
        return embedding

    def set(self, key: str, embedding: list[float]) -> None:
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
        self._entries[key] = (embedding, self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, int]:
        return {"size": len(self._entries), "max_size": self.max_size}

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------


class EmbeddingBackend(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class OllamaEmbedder:
    """Generates embeddings with an Ollama embedding model."""

    def __init__(self, settings: Settings, client: ollama.AsyncClient | None = None) -> None:
        self.model = settings.ollama_embed_model
        self._client = client or ollama.AsyncClient(host=settings.ollama_base_url)

    async def embed(self, text: str) -> list[float]:
        response = await self._client.embed(model=self.model, input=text)
        embeddings = response["embeddings"]
        return list(embeddings[0]) if embeddings else []


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class EmbeddingService:
    """Normalizes text, consults the cache, then the backend."""

    def __init__(
        self,
        backend: EmbeddingBackend | None,
        cache: EmbeddingCache | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or default_settings
        self.backend = backend
        if cache is None:
            cache = EmbeddingCache(settings.cache_size, settings.cache_ttl_seconds)
        self.cache = cache
        self.max_chars = settings.embedding_max_chars

    def normalize(self, text: str) -> str:
        return text.strip().casefold()[: self.max_chars]

    async def generate_embedding(self, text: str) -> list[float]:
        if not text or not text.strip():
            return []

        normalized = self.normalize(text)
        cached = self.cache.get(normalized)
        if cached is not None:
            return cached

        if self.backend is None:
            logger.warning("No embedding backend configured, returning empty embedding")
            return []

        try:
            embedding = await self.backend.embed(normalized)
        except Exception:
            logger.exception("Error generating embedding")
            return []

        if embedding:
            self.cache.set(normalized, embedding)
        return embedding
