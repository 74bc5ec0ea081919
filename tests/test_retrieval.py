"""Unit tests for jarvis.memory.retrieval: semantic search and formatting."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone

import pytest

from conftest import EmptyEmbedder, KeywordEmbedder
from jarvis.config import Settings
from jarvis.memory.cleanup import RetentionWorker
from jarvis.memory.embeddings import EmbeddingService
from jarvis.memory.episodes import EpisodeStore
from jarvis.memory.repository import InMemoryEpisodeRepository
from jarvis.memory.retrieval import (
    MemoryRetrieval,
    format_episodes_for_context,
    generate_session_id,
)
from jarvis.memory.types import Episode, MemorySearchResult

DOCTOR = "DOC-001"


def _episode(i: int, embedding: list[float], patient_id: str = "P-001", **overrides) -> Episode:
    from jarvis.memory.deidentify import hash_patient_id

    stamp = datetime(2026, 10, 1, tzinfo=timezone.utc) + timedelta(hours=i)
    fields = {
        "episode_id": f"EP-{i}",
        "patient_ref": hash_patient_id(patient_id),
        "doctor_id": DOCTOR,
        "timestamp": stamp.isoformat(),
        "session_id": "SES-x",
        "summary": f"Query: episode {i}",
        "user_query": f"episode {i}",
        "response": "ok",
        "embedding": embedding,
    }
    fields.update(overrides)
    return Episode(**fields)


def _retrieval(settings: Settings, episodes: list[Episode], cleanup: bool = False) -> MemoryRetrieval:
    repository = InMemoryEpisodeRepository()
    for e in episodes:
        repository._episodes.setdefault(DOCTOR, {})[e.episode_id] = e
    store = EpisodeStore(repository, EmbeddingService(KeywordEmbedder(), settings=settings), settings)
    return MemoryRetrieval(store, RetentionWorker(store) if cleanup else None)


# Query "fever" embeds to this vector under KeywordEmbedder
FEVER = [1.0, 0, 0, 0, 0, 0, 0, 0, 0.1]
CHEST = [0, 1.0, 0, 0, 0, 0, 0, 0, 0.1]


class TestSearchMemory:
    @pytest.mark.asyncio
    async def test_threshold_and_ordering(self, settings: Settings):
        episodes = [
            _episode(1, FEVER),
            _episode(2, CHEST),
            _episode(3, [1.0, 0.5, 0, 0, 0, 0, 0, 0, 0.1]),
        ]
        results = await _retrieval(settings, episodes).search_memory(DOCTOR, "fever")

        assert [r.episode.episode_id for r in results] == ["EP-1", "EP-3"]
        assert all(r.similarity >= settings.similarity_threshold for r in results)
        assert results[0].similarity == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_top_k_bound(self):
        settings = Settings(_env_file=None, max_episodes_to_retrieve=2)
        episodes = [_episode(i, FEVER) for i in range(6)]
        results = await _retrieval(settings, episodes).search_memory(DOCTOR, "fever")
        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_search_window_bounds_candidates(self):
        settings = Settings(_env_file=None, search_window=2)
        # Only the two most recent episodes are considered
        episodes = [_episode(1, FEVER), _episode(2, CHEST), _episode(3, CHEST)]
        results = await _retrieval(settings, episodes).search_memory(DOCTOR, "fever")
        assert results == []

    @pytest.mark.asyncio
    async def test_patient_filter(self, settings: Settings):
        episodes = [_episode(1, FEVER, "P-001"), _episode(2, FEVER, "P-002")]
        results = await _retrieval(settings, episodes).search_memory(
            DOCTOR, "fever", patient_id="P-002", patient_name="Ramesh Kumar"
        )
        assert [r.episode.episode_id for r in results] == ["EP-2"]

    @pytest.mark.asyncio
    async def test_coarse_prefix_filter_can_overmatch(self):
        settings = Settings(_env_file=None, patient_ref_prefix_length=3)
        episodes = [_episode(1, FEVER, "P-001"), _episode(2, FEVER, "P-002")]
        results = await _retrieval(settings, episodes).search_memory(DOCTOR, "fever", patient_id="P-002")
        # Every plain ref starts with "PH-", so a 3-character prefix keeps both
        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_skips_unembedded_episodes(self, settings: Settings):
        episodes = [_episode(1, []), _episode(2, FEVER)]
        results = await _retrieval(settings, episodes).search_memory(DOCTOR, "fever")
        assert [r.episode.episode_id for r in results] == ["EP-2"]

    @pytest.mark.asyncio
    async def test_other_doctor_sees_nothing(self, settings: Settings):
        results = await _retrieval(settings, [_episode(1, FEVER)]).search_memory("DOC-999", "fever")
        assert results == []

    @pytest.mark.asyncio
    async def test_embedding_failure_returns_empty(self, settings: Settings):
        repository = InMemoryEpisodeRepository()
        store = EpisodeStore(repository, EmbeddingService(EmptyEmbedder(), settings=settings), settings)
        assert await MemoryRetrieval(store).search_memory(DOCTOR, "fever") == []

    @pytest.mark.asyncio
    async def test_disabled_memory_returns_empty(self):
        settings = Settings(_env_file=None, memory_enabled=False)
        results = await _retrieval(settings, [_episode(1, FEVER)]).search_memory(DOCTOR, "fever")
        assert results == []

    @pytest.mark.asyncio
    async def test_requests_background_cleanup(self, settings: Settings):
        retrieval = _retrieval(settings, [_episode(1, FEVER)], cleanup=True)
        await retrieval.search_memory(DOCTOR, "fever")
        assert DOCTOR in retrieval.cleanup._pending

    @pytest.mark.asyncio
    async def test_scale_warning_counts_whole_store(self, caplog):
        settings = Settings(_env_file=None, scale_warning_threshold=5, search_window=2)
        episodes = [_episode(i, FEVER) for i in range(6)]
        with caplog.at_level(logging.WARNING, logger="jarvis.memory.episodes"):
            await _retrieval(settings, episodes).search_memory(DOCTOR, "fever")
        assert "Scale warning: 6 episodes" in caplog.text

    @pytest.mark.asyncio
    async def test_no_scale_warning_below_threshold(self, settings: Settings, caplog):
        with caplog.at_level(logging.WARNING, logger="jarvis.memory.episodes"):
            await _retrieval(settings, [_episode(1, FEVER)]).search_memory(DOCTOR, "fever")
        assert "Scale warning" not in caplog.text

    @pytest.mark.asyncio
    async def test_patient_filter_applies_before_window(self):
        settings = Settings(_env_file=None, search_window=2)
        episodes = [_episode(1, FEVER, "P-001")] + [_episode(i, FEVER, "P-002") for i in range(2, 6)]
        results = await _retrieval(settings, episodes).search_memory(DOCTOR, "fever", patient_id="P-001")
        assert [r.episode.episode_id for r in results] == ["EP-1"]


class TestPatientHistory:
    @pytest.mark.asyncio
    async def test_most_recent_first_and_bounded(self, settings: Settings):
        episodes = [_episode(i, FEVER) for i in range(5)] + [_episode(9, FEVER, "P-002")]
        history = await _retrieval(settings, episodes).get_patient_history(DOCTOR, "P-001", max_results=3)
        assert [e.episode_id for e in history] == ["EP-4", "EP-3", "EP-2"]

    @pytest.mark.asyncio
    async def test_busy_doctor_does_not_hide_older_patient(self, settings: Settings):
        episodes = [_episode(0, FEVER, "P-001")] + [_episode(i, FEVER, "P-002") for i in range(1, 21)]
        retrieval = _retrieval(settings, episodes)

        history = await retrieval.get_patient_history(DOCTOR, "P-001", max_results=10)
        assert [e.episode_id for e in history] == ["EP-0"]

    @pytest.mark.asyncio
    async def test_saved_episodes_for_interleaved_patients(self, episode_store: EpisodeStore, clock):
        saved = {"P-001": [], "P-002": []}
        for i in range(12):
            patient_id = "P-001" if i % 4 == 0 else "P-002"
            episode_id = await episode_store.save_episode(
                DOCTOR, patient_id, "Someone", f"fever check {i}", "stable", [], 0.85, "SES-x"
            )
            saved[patient_id].append(episode_id)
            clock.advance(minutes=5)

        retrieval = MemoryRetrieval(episode_store)
        history = await retrieval.get_patient_history(DOCTOR, "P-001", max_results=2)
        assert [e.episode_id for e in history] == saved["P-001"][::-1][:2]
        everything = await retrieval.get_patient_history(DOCTOR, "P-001", max_results=10)
        assert {e.episode_id for e in everything} == set(saved["P-001"])

    @pytest.mark.asyncio
    async def test_coarse_mode_widens_fetch_until_enough_match(self):
        # A prefix as long as the ref keeps matching exact while using client-side filtering
        settings = Settings(_env_file=None, patient_ref_prefix_length=64)
        episodes = [_episode(i, FEVER, "P-001") for i in range(3)]
        episodes += [_episode(i, FEVER, "P-002") for i in range(3, 40)]
        history = await _retrieval(settings, episodes).get_patient_history(DOCTOR, "P-001", max_results=2)
        assert [e.episode_id for e in history] == ["EP-2", "EP-1"]


class TestFormatting:
    def test_empty_results_format_to_empty_string(self):
        assert format_episodes_for_context([]) == ""

    def test_formats_block(self):
        result = MemorySearchResult(episode=_episode(1, FEVER), similarity=0.876)
        block = format_episodes_for_context([result])

        assert block.startswith("\n--- Relevant Past Interactions ---\n")
        assert block.endswith("--- End Memory ---\n")
        assert "[Memory 1] Oct 01: Query: episode 1... (88% match)" in block

    def test_session_id_shape(self):
        session_id = generate_session_id()
        assert re.fullmatch(r"SES-[0-9a-z]+-[0-9a-z]{4}", session_id)
        assert generate_session_id() != session_id
