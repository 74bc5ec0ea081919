"""Durable episode storage: one collection of episodes per doctor.

``InMemoryEpisodeRepository`` is the default and what the tests use;
``QdrantEpisodeRepository`` keeps each doctor's episodes in their own Qdrant
collection, with the episode as payload and its embedding as the vector.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Protocol

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PointIdsList,
    PointStruct,
    Range,
    VectorParams,
)

from jarvis.memory.types import Episode, Outcome

logger = logging.getLogger(__name__)


def episode_time(episode: Episode) -> datetime:
    return datetime.fromisoformat(episode.timestamp)


class EpisodeRepository(Protocol):
    """Storage contract the episode store and retrieval layer rely on."""

    @property
    def available(self) -> bool: ...

    async def add(self, doctor_id: str, episode: Episode) -> str: ...

    async def update_outcome(self, doctor_id: str, episode_id: str, outcome: Outcome) -> bool: ...

    async def recent(
        self, doctor_id: str, limit: int, patient_ref: str | None = None
    ) -> list[Episode]:
        """Most recent first; *patient_ref* narrows before the limit applies."""
        ...

    async def older_than(self, doctor_id: str, cutoff: datetime, limit: int) -> list[str]:
        """IDs of episodes stamped strictly before *cutoff*."""
        ...

    async def delete_many(self, doctor_id: str, episode_ids: list[str]) -> int: ...

    async def count(self, doctor_id: str) -> int: ...


class InMemoryEpisodeRepository:
    """Process-local repository; contents vanish with the process."""

    def __init__(self) -> None:
        self._episodes: dict[str, dict[str, Episode]] = {}

    @property
    def available(self) -> bool:
        return True

    async def add(self, doctor_id: str, episode: Episode) -> str:
        self._episodes.setdefault(doctor_id, {})[episode.episode_id] = episode
        return episode.episode_id

    async def update_outcome(self, doctor_id: str, episode_id: str, outcome: Outcome) -> bool:
        episodes = self._episodes.get(doctor_id, {})
        episode = episodes.get(episode_id)
        if episode is None:
            return False
        episodes[episode_id] = episode.model_copy(update={"outcome": outcome})
        return True

    async def recent(
        self, doctor_id: str, limit: int, patient_ref: str | None = None
    ) -> list[Episode]:
        episodes = self._episodes.get(doctor_id, {}).values()
        if patient_ref is not None:
            episodes = [e for e in episodes if e.patient_ref == patient_ref]
        return sorted(episodes, key=episode_time, reverse=True)[:limit]

    async def older_than(self, doctor_id: str, cutoff: datetime, limit: int) -> list[str]:
        expired = [
            e.episode_id
            for e in self._episodes.get(doctor_id, {}).values()
            if episode_time(e) < cutoff
        ]
        return expired[:limit]

    async def delete_many(self, doctor_id: str, episode_ids: list[str]) -> int:
        episodes = self._episodes.get(doctor_id, {})
        deleted = 0
        for episode_id in episode_ids:
            if episodes.pop(episode_id, None) is not None:
                deleted += 1
        return deleted

    async def count(self, doctor_id: str) -> int:
        return len(self._episodes.get(doctor_id, {}))


# ---------------------------------------------------------------------------
# Qdrant
# ---------------------------------------------------------------------------

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class QdrantEpisodeRepository:
    """Episodes stored as Qdrant points, one collection per doctor.

    Episode IDs must be UUID strings (a Qdrant point-ID requirement).
    Ordering by recency happens client-side over a scroll of the collection.
    """

    def __init__(
        self,
        client: AsyncQdrantClient,
        collection_prefix: str = "jarvis_memory",
        page_size: int = 256,
    ) -> None:
        self._client = client
        self.collection_prefix = collection_prefix
        self.page_size = page_size

    @classmethod
    def from_url(cls, url: str, collection_prefix: str = "jarvis_memory") -> "QdrantEpisodeRepository":
        if url == ":memory:":
            return cls(AsyncQdrantClient(location=":memory:"), collection_prefix)
        return cls(AsyncQdrantClient(url=url), collection_prefix)

    @property
    def available(self) -> bool:
        return self._client is not None

    def collection_name(self, doctor_id: str) -> str:
        return f"{self.collection_prefix}_{_UNSAFE_NAME_CHARS.sub('_', doctor_id)}"

    async def _ensure_collection(self, collection: str, vector_size: int) -> None:
        if not await self._client.collection_exists(collection):
            await self._client.create_collection(
                collection_name=collection,
                vectors_config=VectorParams(size=vector_size, distance=Distance.COSINE),
            )

    async def _scroll(
        self, collection: str, scroll_filter: Filter | None = None, with_vectors: bool = True
    ) -> list[Any]:
        if not await self._client.collection_exists(collection):
            return []

        points: list[Any] = []
        offset = None
        while True:
            batch, offset = await self._client.scroll(
                collection_name=collection,
                scroll_filter=scroll_filter,
                limit=self.page_size,
                offset=offset,
                with_payload=True,
                with_vectors=with_vectors,
            )
            points.extend(batch)
            if offset is None:
                return points

    @staticmethod
    def _to_episode(point: Any) -> Episode:
        payload = dict(point.payload or {})
        payload.pop("ts", None)
        vector = point.vector if isinstance(point.vector, list) else []
        return Episode(**payload, embedding=vector)

    async def add(self, doctor_id: str, episode: Episode) -> str:
        collection = self.collection_name(doctor_id)
        await self._ensure_collection(collection, len(episode.embedding))

        payload = episode.model_dump(exclude={"embedding"})
        payload["ts"] = episode_time(episode).timestamp()
        await self._client.upsert(
            collection_name=collection,
            points=[PointStruct(id=episode.episode_id, vector=episode.embedding, payload=payload)],
        )
        return episode.episode_id

    async def update_outcome(self, doctor_id: str, episode_id: str, outcome: Outcome) -> bool:
        collection = self.collection_name(doctor_id)
        if not await self._client.collection_exists(collection):
            return False
        found = await self._client.retrieve(collection_name=collection, ids=[episode_id])
        if not found:
            return False
        await self._client.set_payload(
            collection_name=collection,
            payload={"outcome": outcome},
            points=[episode_id],
        )
        return True

    async def recent(
        self, doctor_id: str, limit: int, patient_ref: str | None = None
    ) -> list[Episode]:
        scroll_filter = None
        if patient_ref is not None:
            scroll_filter = Filter(
                must=[FieldCondition(key="patient_ref", match=MatchValue(value=patient_ref))]
            )
        points = await self._scroll(self.collection_name(doctor_id), scroll_filter=scroll_filter)
        points.sort(key=lambda p: p.payload.get("ts", 0.0), reverse=True)
        return [self._to_episode(p) for p in points[:limit]]

    async def older_than(self, doctor_id: str, cutoff: datetime, limit: int) -> list[str]:
        points = await self._scroll(
            self.collection_name(doctor_id),
            scroll_filter=Filter(
                must=[FieldCondition(key="ts", range=Range(lt=cutoff.timestamp()))]
            ),
            with_vectors=False,
        )
        return [str(p.id) for p in points[:limit]]

    async def delete_many(self, doctor_id: str, episode_ids: list[str]) -> int:
        collection = self.collection_name(doctor_id)
        if not episode_ids or not await self._client.collection_exists(collection):
            return 0
        await self._client.delete(
            collection_name=collection,
            points_selector=PointIdsList(points=episode_ids),
        )
        return len(episode_ids)

    async def count(self, doctor_id: str) -> int:
        collection = self.collection_name(doctor_id)
        if not await self._client.collection_exists(collection):
            return 0
        result = await self._client.count(collection_name=collection, exact=True)
        return result.count
