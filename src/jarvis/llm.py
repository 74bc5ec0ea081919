"""Ollama chat wrapper with native tool calling, plus the agent prompt."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import ollama

from jarvis.agent.state import AgentContext
from jarvis.config import Settings

# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

AGENT_SYSTEM_PROMPT = """\
You are Jarvis, an advanced AI medical assistant for doctors in a hospital setting.

{patient_context}
{memory_block}
You have access to tools to read patient data, check drug interactions and \
stage orders, notes or vitals updates. Staged changes are only applied after \
the doctor confirms them.

Guidelines:
- Use tools to get accurate, current information
- When adding orders, always confirm with the doctor first
- Provide clear, actionable responses
- Cite the data source when providing patient information
- If you're unsure, say so rather than guessing
- Placeholders like [PATIENT] or [MRN] in past interactions are intentional
- Be concise but thorough

Remember: You are assisting a busy doctor. Be efficient and accurate.
"""

PATIENT_CONTEXT_TEMPLATE = """\
Current Patient Context:
- Name: {name}
- Age: {age}
- Gender: {gender}
- Status: {status}
- Chief Complaints: {complaints}
"""

NO_PATIENT_CONTEXT = "No specific patient selected.\n"


def build_agent_system_prompt(context: AgentContext, memory_block: str = "") -> str:
    """Render the system prompt for one agent invocation."""
    patient = context.current_patient
    if patient is not None:
        patient_context = PATIENT_CONTEXT_TEMPLATE.format(
            name=patient.name,
            age=patient.age if patient.age is not None else "Unknown",
            gender=patient.gender or "Unknown",
            status=patient.status or "Unknown",
            complaints=", ".join(c.complaint for c in patient.chief_complaints) or "None",
        )
    else:
        patient_context = NO_PATIENT_CONTEXT
    return AGENT_SYSTEM_PROMPT.format(
        patient_context=patient_context,
        memory_block=memory_block,
    )


# ---------------------------------------------------------------------------
# Model backend
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolInvocation:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelReply:
    """Either a tool invocation or free text, never both."""

    text: str = ""
    tool_call: ToolInvocation | None = None


class ModelBackend(Protocol):
    """Anything that can answer a chat history, optionally with tools."""

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelReply: ...


class OllamaModel:
    """ModelBackend backed by a local Ollama server."""

    def __init__(self, settings: Settings, client: ollama.AsyncClient | None = None) -> None:
        self.model = settings.ollama_model
        self._client = client or ollama.AsyncClient(host=settings.ollama_base_url)

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelReply:
        response = await self._client.chat(
            model=self.model,
            messages=messages,
            tools=tools or None,
            options={"temperature": 0.2},
        )
        message = response["message"]

        # The loop handles one tool per step
        tool_calls = message.get("tool_calls") or []
        if tool_calls:
            function = tool_calls[0]["function"]
            return ModelReply(
                tool_call=ToolInvocation(
                    name=function["name"],
                    arguments=dict(function.get("arguments") or {}),
                )
            )
        return ModelReply(text=message.get("content") or "")
