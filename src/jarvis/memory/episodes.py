"""Episode store: writes de-identified, embedded interactions to memory.

Memory is strictly best-effort: every operation has a disabled/unavailable
fast path and swallows backend failures after logging them, so a broken
memory layer can never fail the agent response it sits behind.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jarvis.config import Settings
from jarvis.config import settings as default_settings
from jarvis.memory.deidentify import deidentify, extract_tags, hash_patient_id
from jarvis.memory.embeddings import EmbeddingService
from jarvis.memory.repository import EpisodeRepository
from jarvis.memory.types import Episode, Outcome
from jarvis.memory.vector_store import VectorStore

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class EpisodeStore:
    """Owns episodes: the only writer of the episodic memory."""

    def __init__(
        self,
        repository: EpisodeRepository | None,
        embeddings: EmbeddingService,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
        vector_store: VectorStore | None = None,
    ) -> None:
        self.repository = repository
        self.embeddings = embeddings
        # Secondary index kept in step on save and cleanup; search reads the repository
        self.vector_store = vector_store
        self.settings = settings or default_settings
        self._clock = clock

    @property
    def available(self) -> bool:
        return self.repository is not None and self.repository.available

    def patient_ref(self, patient_id: str) -> str:
        return hash_patient_id(patient_id, self.settings.patient_hash_key)

    def build_summary(self, query: str, response: str, tools_used: list[str]) -> str:
        """Short human summary from already de-identified text."""
        tools = f" Tools used: {', '.join(tools_used)}." if tools_used else ""
        short = _truncate(response, self.settings.summary_response_chars)
        return f'Query: "{query}" Response: {short}{tools}'

    async def save_episode(
        self,
        doctor_id: str,
        patient_id: str,
        patient_name: str,
        query: str,
        response: str,
        tools_used: list[str],
        confidence: float,
        session_id: str,
    ) -> str | None:
        """Persist one interaction; returns the episode ID or ``None``."""
        if not self.settings.memory_enabled:
            logger.debug("Memory disabled, episode not saved")
            return None
        if not self.available:
            logger.debug("Episode repository unavailable, episode not saved")
            return None

        try:
            clean_query = deidentify(query, patient_name)
            clean_response = deidentify(response, patient_name)
            summary = self.build_summary(clean_query, clean_response, tools_used)

            embedding = await self.embeddings.generate_embedding(f"{clean_query} {summary}")
            if not embedding:
                logger.warning("Failed to generate embedding, skipping episode save")
                return None

            episode = Episode(
                episode_id=str(uuid.uuid4()),
                patient_ref=self.patient_ref(patient_id),
                patient_name=patient_name,
                doctor_id=doctor_id,
                timestamp=self._clock().isoformat(),
                session_id=session_id,
                summary=summary,
                user_query=query,
                response=response[: self.settings.response_storage_cap],
                tools_used=list(tools_used),
                outcome="none",
                embedding=embedding,
                tags=extract_tags(f"{query} {response}"),
                confidence=confidence,
            )
            episode_id = await self.repository.add(doctor_id, episode)
            if self.vector_store is not None:
                await self.vector_store.upsert(
                    episode_id,
                    embedding,
                    {"doctor_id": doctor_id, "patient_ref": episode.patient_ref},
                )
        except Exception:
            logger.exception("Error saving episode")
            return None

        logger.info("Episode saved: %s", episode_id)
        return episode_id

    async def update_episode_outcome(
        self, doctor_id: str, episode_id: str, outcome: Outcome
    ) -> bool:
        """Set the outcome tag, the only mutation a stored episode allows."""
        if not self.available:
            return False
        try:
            updated = await self.repository.update_outcome(doctor_id, episode_id, outcome)
        except Exception:
            logger.exception("Error updating outcome for episode %s", episode_id)
            return False
        if updated:
            logger.info("Outcome updated: %s -> %s", episode_id, outcome)
        return updated

    async def cleanup_old_episodes(self, doctor_id: str) -> int:
        """Delete up to one batch of episodes older than the retention window."""
        if not self.available:
            return 0

        cutoff = self._clock() - timedelta(days=self.settings.retention_days)
        try:
            expired = await self.repository.older_than(
                doctor_id, cutoff, self.settings.cleanup_batch_size
            )
            if not expired:
                return 0
            deleted = await self.repository.delete_many(doctor_id, expired)
            if self.vector_store is not None:
                for episode_id in expired:
                    await self.vector_store.delete(episode_id)
        except Exception:
            logger.exception("Episode cleanup failed for doctor %s", doctor_id)
            return 0

        logger.info("Cleaned up %d old episodes", deleted)
        return deleted

    def check_scale_warning(self, episode_count: int) -> bool:
        """Advisory only: flags when client-side search starts to degrade."""
        if episode_count > self.settings.scale_warning_threshold:
            logger.warning(
                "Scale warning: %d episodes. Consider migrating to a dedicated "
                "vector index for better performance.",
                episode_count,
            )
            return True
        return False
