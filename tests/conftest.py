"""Shared fixtures, fakes and markers for the test suite."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from jarvis.agent.state import AgentContext, AgentUser
from jarvis.config import Settings
from jarvis.llm import ModelReply, ToolInvocation
from jarvis.memory.embeddings import EmbeddingCache, EmbeddingService
from jarvis.memory.episodes import EpisodeStore
from jarvis.memory.repository import InMemoryEpisodeRepository
from jarvis.patients import PatientStore

SAMPLE_FILE = Path(__file__).resolve().parents[1] / "data" / "patients" / "sample_ward.json"


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "integration: marks tests that require live services (Ollama, Qdrant, etc.)",
    )


def is_ollama_available() -> bool:
    """Check if the Ollama server is reachable and has a model."""
    try:
        import ollama

        models = ollama.list().get("models", [])
        return len(models) > 0
    except Exception:
        return False


# ------------------------------------------------------------------
# Fakes
# ------------------------------------------------------------------


class ScriptedModel:
    """ModelBackend that replays a fixed list of replies, then answers "Done."."""

    def __init__(self, replies: list[ModelReply] | None = None) -> None:
        self.replies = list(replies or [])
        self.calls: list[list[dict[str, Any]]] = []

    async def generate(self, messages, tools) -> ModelReply:
        self.calls.append(list(messages))
        if self.replies:
            return self.replies.pop(0)
        return ModelReply(text="Done.")


class LoopingModel:
    """Always asks for the same tool, never answers."""

    def __init__(self, name: str = "get_ops_metrics", arguments: dict | None = None) -> None:
        self.call = ToolInvocation(name=name, arguments=arguments or {})
        self.calls = 0

    async def generate(self, messages, tools) -> ModelReply:
        self.calls += 1
        return ModelReply(tool_call=self.call)


class StallingModel:
    """Never returns within any reasonable timeout."""

    async def generate(self, messages, tools) -> ModelReply:
        await asyncio.sleep(3600)
        return ModelReply(text="too late")


class KeywordEmbedder:
    """Deterministic bag-of-keywords embedding: one axis per keyword."""

    KEYWORDS = ("fever", "chest", "order", "vitals", "discharge", "sepsis", "cbc", "pain")

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        lower = text.lower()
        vector = [float(lower.count(k)) for k in self.KEYWORDS]
        # Constant bias axis keeps every vector non-zero
        return [*vector, 0.1]


class EmptyEmbedder:
    async def embed(self, text: str) -> list[float]:
        return []


class FixedClock:
    """Controllable UTC clock for retention tests."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def patient_store() -> PatientStore:
    store = PatientStore()
    store.load_file(SAMPLE_FILE)
    return store


@pytest.fixture
def doctor() -> AgentUser:
    return AgentUser(id="DOC-001", name="Dr. Rao", role="doctor")


@pytest.fixture
def context(patient_store: PatientStore, doctor: AgentUser) -> AgentContext:
    return AgentContext(
        current_patient=None,
        all_patients=patient_store.list_patients(),
        current_user=doctor,
        update_patient=patient_store.update_patient,
    )


@pytest.fixture
def patient_context(patient_store: PatientStore, doctor: AgentUser) -> AgentContext:
    return AgentContext(
        current_patient=patient_store.get_patient("P-001"),
        all_patients=patient_store.list_patients(),
        current_user=doctor,
        update_patient=patient_store.update_patient,
    )


@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def episode_store(settings: Settings, embedder: KeywordEmbedder, clock: FixedClock) -> EpisodeStore:
    embeddings = EmbeddingService(embedder, EmbeddingCache(), settings)
    return EpisodeStore(InMemoryEpisodeRepository(), embeddings, settings, clock=clock)
