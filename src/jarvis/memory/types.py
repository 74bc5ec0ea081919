"""Episodic memory records."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

Outcome = Literal["accepted", "rejected", "modified", "none"]


class Episode(BaseModel):
    """One persisted, de-identified agent interaction.

    ``patient_ref`` is a hash of the raw patient ID; ``patient_name`` is kept
    for display and is never part of the embedded text.
    """

    episode_id: str
    patient_ref: str
    patient_name: str = ""
    doctor_id: str
    timestamp: str  # ISO 8601, UTC
    session_id: str
    summary: str
    user_query: str
    response: str
    tools_used: list[str] = Field(default_factory=list)
    outcome: Outcome = "none"
    embedding: list[float] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    confidence: float = 0.0


class MemorySearchResult(BaseModel):
    episode: Episode
    similarity: float  # cosine, [-1, 1]
