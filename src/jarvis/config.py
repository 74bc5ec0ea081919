"""Application settings loaded from environment variables."""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


def _default_confirmation_policy() -> dict[str, bool]:
    return {"add_order": True, "create_note": True, "update_vitals": True}


class Settings(BaseSettings):
    """Central configuration; values come from .env or JARVIS_* variables."""

    # Agent loop
    agent_enabled: bool = True
    max_steps: int = 5
    timeout_ms: int = 15_000
    fallback_message: str = (
        "I wasn't able to complete that request. Please try rephrasing "
        "or ask a simpler question."
    )
    # Write tools that must go through a human before they take effect
    require_confirmation: dict[str, bool] = Field(
        default_factory=_default_confirmation_policy
    )

    # Ollama (chat + embeddings)
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.1"
    ollama_embed_model: str = "nomic-embed-text"

    # Memory
    memory_enabled: bool = True
    embedding_dimension: int = 768
    embedding_max_chars: int = 2000
    cache_size: int = 100
    cache_ttl_seconds: float = 3600.0
    max_episodes_to_retrieve: int = 5
    similarity_threshold: float = 0.65
    search_window: int = 100
    response_storage_cap: int = 1000
    summary_response_chars: int = 200

    # Retention
    retention_days: int = 90
    cleanup_batch_size: int = 50

    # Scale advisories
    scale_warning_threshold: int = 800
    scale_critical_threshold: int = 1500

    # Patient reference hashing; an empty key means a plain (non-keyed) hash
    patient_hash_key: str = ""
    # 0 compares whole refs; a positive length enables the coarse prefix match
    patient_ref_prefix_length: int = 0

    # Qdrant; an empty URL keeps vectors in-process
    qdrant_url: str = ""
    qdrant_collection: str = "jarvis_episodes"

    model_config = {
        "env_prefix": "JARVIS_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    @model_validator(mode="after")
    def _validate_budgets(self) -> "Settings":
        """Reject budgets the agent and memory layer cannot honour."""
        if self.max_steps <= 0:
            raise ValueError("max_steps must be greater than 0.")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be greater than 0.")
        if not -1.0 <= self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be within [-1, 1].")
        if self.max_episodes_to_retrieve <= 0:
            raise ValueError("max_episodes_to_retrieve must be greater than 0.")
        if self.retention_days < 0:
            raise ValueError("retention_days must not be negative.")
        if self.scale_warning_threshold >= self.scale_critical_threshold:
            raise ValueError(
                "scale_warning_threshold must be below scale_critical_threshold."
            )
        return self

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    def needs_confirmation(self, tool_name: str) -> bool:
        """Whether the confirmation policy gates *tool_name*."""
        return bool(self.require_confirmation.get(tool_name, False))


settings = Settings()
