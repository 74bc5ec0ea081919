"""Storage-agnostic vector index behind the episodic memory.

The in-process store ranks with client-side cosine similarity: correct but
O(n) per query, fine for low episode counts. Past the scale thresholds the
same interface is served by Qdrant.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from jarvis.config import Settings
from jarvis.memory.embeddings import cosine_similarity

logger = logging.getLogger(__name__)

SCALE_OK_THRESHOLD = 500


@dataclass(frozen=True)
class VectorMatch:
    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


class VectorStore(Protocol):
    async def upsert(self, id: str, embedding: list[float], metadata: dict[str, Any]) -> None: ...

    async def query(
        self, embedding: list[float], top_k: int, filter: dict[str, Any] | None = None
    ) -> list[VectorMatch]: ...

    async def delete(self, id: str) -> None: ...

    async def count(self) -> int: ...


def _matches(metadata: dict[str, Any], filter: dict[str, Any] | None) -> bool:
    if not filter:
        return True
    return all(metadata.get(k) == v for k, v in filter.items())


class InMemoryVectorStore:
    def __init__(self) -> None:
        self._vectors: dict[str, tuple[list[float], dict[str, Any]]] = {}

    async def upsert(self, id: str, embedding: list[float], metadata: dict[str, Any]) -> None:
        self._vectors[id] = (embedding, dict(metadata))

    async def query(
        self, embedding: list[float], top_k: int, filter: dict[str, Any] | None = None
    ) -> list[VectorMatch]:
        matches = [
            VectorMatch(id=id, score=cosine_similarity(embedding, vector), metadata=metadata)
            for id, (vector, metadata) in self._vectors.items()
            if _matches(metadata, filter)
        ]
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    async def delete(self, id: str) -> None:
        self._vectors.pop(id, None)

    async def count(self) -> int:
        return len(self._vectors)


class QdrantVectorStore:
    """Qdrant-backed store. Arbitrary string IDs are mapped to UUIDv5 point
    IDs; the original ID travels in the payload under ``_id``."""

    def __init__(self, client: AsyncQdrantClient, collection: str, vector_size: int) -> None:
        self._client = client
        self.collection = collection
        self.vector_size = vector_size

    @staticmethod
    def point_id(id: str) -> str:
        return str(uuid.uuid5(uuid.NAMESPACE_URL, id))

    async def _ensure_collection(self) -> None:
        if not await self._client.collection_exists(self.collection):
            await self._client.create_collection(
                collection_name=self.collection,
                vectors_config=VectorParams(size=self.vector_size, distance=Distance.COSINE),
            )

    async def upsert(self, id: str, embedding: list[float], metadata: dict[str, Any]) -> None:
        await self._ensure_collection()
        await self._client.upsert(
            collection_name=self.collection,
            points=[
                PointStruct(
                    id=self.point_id(id),
                    vector=embedding,
                    payload={**metadata, "_id": id},
                )
            ],
        )

    async def query(
        self, embedding: list[float], top_k: int, filter: dict[str, Any] | None = None
    ) -> list[VectorMatch]:
        if not await self._client.collection_exists(self.collection):
            return []

        query_filter = None
        if filter:
            query_filter = Filter(
                must=[FieldCondition(key=k, match=MatchValue(value=v)) for k, v in filter.items()]
            )
        results = await self._client.query_points(
            collection_name=self.collection,
            query=embedding,
            limit=top_k,
            query_filter=query_filter,
        )
        matches = []
        for point in results.points:
            payload = dict(point.payload or {})
            original_id = payload.pop("_id", str(point.id))
            matches.append(VectorMatch(id=original_id, score=point.score, metadata=payload))
        return matches

    async def delete(self, id: str) -> None:
        if not await self._client.collection_exists(self.collection):
            return
        await self._client.delete(
            collection_name=self.collection,
            points_selector=PointIdsList(points=[self.point_id(id)]),
        )

    async def count(self) -> int:
        if not await self._client.collection_exists(self.collection):
            return 0
        result = await self._client.count(collection_name=self.collection, exact=True)
        return result.count


def get_vector_store(settings: Settings, episode_count: int = 0) -> VectorStore:
    """Pick the backing index: Qdrant once configured and past the warning
    threshold, otherwise the in-process store."""
    if settings.qdrant_url and episode_count > settings.scale_warning_threshold:
        logger.info("Using Qdrant vector store at %d episodes", episode_count)
        if settings.qdrant_url == ":memory:":
            client = AsyncQdrantClient(location=":memory:")
        else:
            client = AsyncQdrantClient(url=settings.qdrant_url)
        return QdrantVectorStore(client, settings.qdrant_collection, settings.embedding_dimension)
    return InMemoryVectorStore()


ScaleStatus = Literal["green", "yellow", "orange", "red"]


@dataclass(frozen=True)
class ScaleRecommendation:
    status: ScaleStatus
    message: str


def get_scale_recommendation(
    episode_count: int,
    warning_threshold: int = 800,
    critical_threshold: int = 1500,
) -> ScaleRecommendation:
    """Traffic-light advice on when to move off client-side similarity."""
    if episode_count < SCALE_OK_THRESHOLD:
        return ScaleRecommendation("green", "Current approach works well")
    if episode_count < warning_threshold:
        return ScaleRecommendation("yellow", "Monitor performance")
    if episode_count < critical_threshold:
        return ScaleRecommendation("orange", "Consider migrating to a dedicated vector index (Qdrant)")
    return ScaleRecommendation("red", "Performance degraded - migrate to a dedicated vector index (Qdrant)")
