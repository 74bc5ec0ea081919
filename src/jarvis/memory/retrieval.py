"""Semantic search and patient history over the episode store."""

from __future__ import annotations

import logging
import secrets
import string
import time
from datetime import datetime

from jarvis.memory.cleanup import RetentionWorker
from jarvis.memory.deidentify import deidentify
from jarvis.memory.embeddings import cosine_similarity
from jarvis.memory.episodes import EpisodeStore
from jarvis.memory.types import Episode, MemorySearchResult

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(n: int) -> str:
    digits = []
    while True:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
        if n == 0:
            return "".join(reversed(digits))


def generate_session_id() -> str:
    """Groups related turns: ``SES-<base36 ms>-<4 random chars>``."""
    stamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"SES-{stamp}-{suffix}"


def format_episodes_for_context(results: list[MemorySearchResult]) -> str:
    """Render search results as a prompt block; empty string means omit it."""
    if not results:
        return ""

    lines = []
    for i, r in enumerate(results, 1):
        date = datetime.fromisoformat(r.episode.timestamp).strftime("%b %d")
        summary = r.episode.summary[:150]
        lines.append(f"[Memory {i}] {date}: {summary}... ({r.similarity * 100:.0f}% match)")

    return (
        "\n--- Relevant Past Interactions ---\n"
        + "\n".join(lines)
        + "\n--- End Memory ---\n"
    )


class MemoryRetrieval:
    """Read side of episodic memory."""

    def __init__(self, store: EpisodeStore, cleanup: RetentionWorker | None = None) -> None:
        self.store = store
        self.cleanup = cleanup
        self.settings = store.settings

    def _matches_patient(self, episode: Episode, patient_id: str) -> bool:
        target = self.store.patient_ref(patient_id)
        length = self.settings.patient_ref_prefix_length
        if length <= 0:
            return episode.patient_ref == target
        # Coarse mode: distinct patients can share a prefix
        return episode.patient_ref.lower().startswith(target[:length].lower())

    async def _patient_episodes(self, doctor_id: str, patient_id: str, limit: int) -> list[Episode]:
        """Most recent episodes for one patient, filtered before *limit* applies."""
        target = self.store.patient_ref(patient_id)
        if self.settings.patient_ref_prefix_length <= 0:
            return await self.store.repository.recent(doctor_id, limit, patient_ref=target)

        # Coarse mode filters client-side, so widen the window until enough match
        fetch = max(limit, 1) * 2
        while True:
            batch = await self.store.repository.recent(doctor_id, fetch)
            matches = [e for e in batch if self._matches_patient(e, patient_id)]
            if len(matches) >= limit or len(batch) < fetch:
                return matches[:limit]
            fetch *= 2

    async def search_memory(
        self,
        doctor_id: str,
        query_text: str,
        patient_id: str | None = None,
        patient_name: str | None = None,
    ) -> list[MemorySearchResult]:
        if not self.settings.memory_enabled or not self.store.available:
            return []

        try:
            clean_query = deidentify(query_text, patient_name) if patient_name else query_text
            query_embedding = await self.store.embeddings.generate_embedding(clean_query)
            if not query_embedding:
                logger.info("Failed to generate query embedding")
                return []

            window = self.settings.search_window
            if patient_id:
                episodes = await self._patient_episodes(doctor_id, patient_id, window)
            else:
                episodes = await self.store.repository.recent(doctor_id, window)
            self.store.check_scale_warning(await self.store.repository.count(doctor_id))
        except Exception:
            logger.exception("Memory search failed")
            return []

        if self.cleanup is not None:
            self.cleanup.request(doctor_id)

        results = [
            MemorySearchResult(
                episode=e, similarity=cosine_similarity(query_embedding, e.embedding)
            )
            for e in episodes
            if e.embedding
        ]
        results = [r for r in results if r.similarity >= self.settings.similarity_threshold]
        results.sort(key=lambda r: r.similarity, reverse=True)
        results = results[: self.settings.max_episodes_to_retrieve]

        logger.info("Found %d relevant memories", len(results))
        return results

    async def get_patient_history(
        self, doctor_id: str, patient_id: str, max_results: int = 10
    ) -> list[Episode]:
        """Most recent episodes for a patient, independent of similarity."""
        if not self.store.available:
            return []
        try:
            return await self._patient_episodes(doctor_id, patient_id, max_results)
        except Exception:
            logger.exception("Patient history lookup failed")
            return []
