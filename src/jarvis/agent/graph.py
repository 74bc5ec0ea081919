"""LangGraph reasoning loop for the Jarvis agent.

Flow: reason → (act → reason)* → finalize, with a forced exit to summarize
once the step budget is spent. A single wall-clock deadline races every
model call; a timeout or any other failure degrades to a partial answer
built from the steps recorded so far, never to an exception.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable
from typing import Any

from langgraph.graph import END, StateGraph

from jarvis.agent.executor import execute_tool
from jarvis.agent.state import (
    AgentContext,
    AgentResponse,
    AgentState,
    AgentStep,
    ToolAction,
    ToolResult,
)
from jarvis.agent.tools import get_tool, get_tool_declarations
from jarvis.config import Settings
from jarvis.config import settings as default_settings
from jarvis.llm import ModelBackend, OllamaModel, build_agent_system_prompt
from jarvis.memory.episodes import EpisodeStore
from jarvis.memory.retrieval import (
    MemoryRetrieval,
    format_episodes_for_context,
    generate_session_id,
)

logger = logging.getLogger(__name__)

CONFIDENCE_WITH_TOOLS = 0.85
CONFIDENCE_WITHOUT_TOOLS = 0.7
CONFIDENCE_MAX_STEPS = 0.5
CONFIDENCE_PARTIAL = 0.3

DISABLED_MESSAGE = (
    "Agent mode is disabled. Set JARVIS_AGENT_ENABLED=true in your environment."
)
NOT_CONFIGURED_MESSAGE = (
    "The language model is not configured. Set JARVIS_OLLAMA_MODEL to enable the agent."
)


def _dedupe(names: list[str]) -> list[str]:
    return list(dict.fromkeys(names))


def _gathered_data(steps: list[AgentStep]) -> list[Any]:
    return [
        s.observation.data
        for s in steps
        if s.observation is not None and s.observation.success and s.observation.data is not None
    ]


def _observation_message(tool_name: str, result: ToolResult) -> dict[str, Any]:
    return {
        "role": "tool",
        "tool_name": tool_name,
        "content": json.dumps(result.model_dump(exclude_none=True), default=str),
    }


# ------------------------------------------------------------------
# Routing
# ------------------------------------------------------------------


def _route_reasoning(state: AgentState) -> str:
    """Conditional edge: run the requested tool or finish."""
    if state.get("next_action") is not None:
        return "act"
    return "finalize"


class AgentLoop:
    """Bounded ReAct loop. One instance can serve many concurrent queries;
    all per-query state lives in the graph state."""

    def __init__(
        self,
        model: ModelBackend | None,
        settings: Settings | None = None,
        memory: MemoryRetrieval | None = None,
        episodes: EpisodeStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.model = model
        self.settings = settings or default_settings
        self.memory = memory
        self.episodes = episodes
        self._clock = clock
        self._background: set[asyncio.Task[Any]] = set()
        self.graph = self.build_graph()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "AgentLoop":
        model = OllamaModel(settings) if settings.ollama_model else None
        return cls(model, settings, **kwargs)

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def build_graph(self) -> Any:
        graph = StateGraph(AgentState)

        graph.add_node("reason", self._reason)
        graph.add_node("act", self._act)
        graph.add_node("finalize", self._finalize)
        graph.add_node("summarize", self._summarize)

        graph.set_entry_point("reason")

        graph.add_conditional_edges("reason", _route_reasoning)
        graph.add_conditional_edges("act", self._route_after_act)
        graph.add_edge("finalize", END)
        graph.add_edge("summarize", END)

        return graph.compile()

    def _route_after_act(self, state: AgentState) -> str:
        """Conditional edge: keep reasoning until the step budget is spent."""
        if state.get("step_count", 0) >= self.settings.max_steps:
            return "summarize"
        return "reason"

    async def _reason(self, state: AgentState) -> dict[str, Any]:
        """Ask the model for the next move under the remaining time budget."""
        step_count = state.get("step_count", 0) + 1
        remaining = state["deadline"] - self._clock()
        if remaining <= 0:
            raise asyncio.TimeoutError

        reply = await asyncio.wait_for(
            self.model.generate(state["messages"], get_tool_declarations()),
            timeout=remaining,
        )

        if reply.tool_call is None:
            return {"step_count": step_count, "next_action": None, "answer": reply.text}

        call = reply.tool_call
        assistant = {
            "role": "assistant",
            "content": "",
            "tool_calls": [{"function": {"name": call.name, "arguments": call.arguments}}],
        }
        return {
            "step_count": step_count,
            "next_action": ToolAction(tool=call.name, params=call.arguments),
            "messages": [*state["messages"], assistant],
        }

    async def _act(self, state: AgentState) -> dict[str, Any]:
        """Dispatch the requested tool and feed its result back as an observation."""
        action = state["next_action"]
        step_number = state["step_count"]
        result = await execute_tool(action.tool, action.params, state["context"], self.settings)
        logger.debug("Step %d: tool %s -> success=%s", step_number, action.tool, result.success)

        pending = list(state.get("pending_actions", []))
        if result.requires_confirmation and result.data is not None:
            staged = self._stage_action(action.tool, result)
            if staged is None:
                result = ToolResult.fail(
                    f"Could not stage {action.tool} for confirmation; nothing was queued."
                )
            else:
                pending.append(staged)

        step = AgentStep(
            step_number=step_number,
            thought=f"Decided to use tool: {action.tool}",
            action=action,
            observation=result,
        )

        return {
            "steps": [*state.get("steps", []), step],
            "tools_used": [*state.get("tools_used", []), action.tool],
            "pending_actions": pending,
            "messages": [*state["messages"], _observation_message(action.tool, result)],
            "next_action": None,
        }

    def _stage_action(self, tool_name: str, result: ToolResult) -> Any:
        tool = get_tool(tool_name)
        if tool is None or tool.build_action is None:
            logger.warning("Tool %s requires confirmation but stages no action", tool_name)
            return None
        try:
            return tool.build_action(result.data, f"ACT-{uuid.uuid4().hex[:12]}")
        except (KeyError, TypeError, ValueError):
            logger.exception("Could not stage pending action for %s", tool_name)
            return None

    async def _finalize(self, state: AgentState) -> dict[str, Any]:
        """The model answered in text: that is the final answer."""
        steps = state.get("steps", [])
        final = AgentStep(
            step_number=state["step_count"],
            thought="Generated final response.",
            is_final=True,
        )
        used_tools = bool(state.get("tools_used"))
        return {
            "steps": [*steps, final],
            "answer": state.get("answer") or self.settings.fallback_message,
            "confidence": CONFIDENCE_WITH_TOOLS if used_tools else CONFIDENCE_WITHOUT_TOOLS,
        }

    async def _summarize(self, state: AgentState) -> dict[str, Any]:
        """Step budget spent without a final answer: report what was gathered."""
        data = _gathered_data(state.get("steps", []))
        answer = (
            "I gathered some information but couldn't complete the full analysis. "
            "Here's what I found:\n\n" + json.dumps(data, indent=2, default=str)
        )
        return {"answer": answer, "confidence": CONFIDENCE_MAX_STEPS}

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        query: str,
        context: AgentContext,
        session_id: str | None = None,
    ) -> AgentResponse:
        """Answer *query*. Always returns a well-formed response."""
        if not self.settings.agent_enabled:
            return AgentResponse(answer=DISABLED_MESSAGE, confidence=0.0)
        if self.model is None:
            return AgentResponse(answer=NOT_CONFIGURED_MESSAGE, confidence=0.0)

        deadline = self._clock() + self.settings.timeout_seconds
        memory_block = await self._recall(query, context, deadline)
        state: AgentState = {
            "query": query,
            "context": context,
            "deadline": deadline,
            "messages": [
                {"role": "system", "content": build_agent_system_prompt(context, memory_block)},
                {"role": "user", "content": query},
            ],
            "step_count": 0,
            "steps": [],
            "tools_used": [],
            "pending_actions": [],
            "next_action": None,
        }

        last: AgentState = state
        try:
            async for snapshot in self.graph.astream(
                state,
                config={"recursion_limit": self.settings.max_steps * 2 + 5},
                stream_mode="values",
            ):
                last = snapshot
        except asyncio.TimeoutError:
            logger.warning("Agent timed out after %d ms", self.settings.timeout_ms)
            return self._partial(last, "I ran out of time before finishing")
        except Exception:
            logger.exception("Agent loop error")
            return self._partial(last, "I encountered an issue")

        response = AgentResponse(
            answer=last["answer"],
            steps=last.get("steps", []),
            tools_used=_dedupe(last.get("tools_used", [])),
            confidence=last["confidence"],
            pending_actions=last.get("pending_actions", []),
        )
        self._remember(query, context, response, session_id)
        return response

    def _partial(self, state: AgentState, reason: str) -> AgentResponse:
        steps = state.get("steps", [])
        if not steps:
            return AgentResponse(answer=self.settings.fallback_message, confidence=0.0)

        data = _gathered_data(steps)
        answer = f"{reason}, but gathered some information."
        if data:
            answer += " Here's what I found:\n\n" + json.dumps(data, indent=2, default=str)
        return AgentResponse(
            answer=answer,
            steps=steps,
            tools_used=_dedupe(state.get("tools_used", [])),
            confidence=CONFIDENCE_PARTIAL,
            pending_actions=state.get("pending_actions", []),
        )

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------

    async def _recall(self, query: str, context: AgentContext, deadline: float) -> str:
        """Relevant past episodes as a prompt block, or "" on any failure."""
        if self.memory is None:
            return ""
        patient = context.current_patient
        try:
            results = await asyncio.wait_for(
                self.memory.search_memory(
                    context.current_user.id,
                    query,
                    patient.id if patient else None,
                    patient.name if patient else None,
                ),
                timeout=max(deadline - self._clock(), 0),
            )
        except Exception:
            logger.warning("Memory recall skipped", exc_info=True)
            return ""
        return format_episodes_for_context(results)

    def _remember(
        self,
        query: str,
        context: AgentContext,
        response: AgentResponse,
        session_id: str | None,
    ) -> None:
        """Save the interaction in the background; the response never waits."""
        if self.episodes is None:
            return
        patient = context.current_patient
        task = asyncio.create_task(
            self.episodes.save_episode(
                doctor_id=context.current_user.id,
                patient_id=patient.id if patient else "",
                patient_name=patient.name if patient else "",
                query=query,
                response=response.answer,
                tools_used=response.tools_used,
                confidence=response.confidence,
                session_id=session_id or generate_session_id(),
            )
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def flush(self) -> None:
        """Wait for pending background episode saves."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)


async def run_agent(
    query: str,
    context: AgentContext,
    model: ModelBackend | None = None,
    settings: Settings | None = None,
) -> AgentResponse:
    """One-shot convenience wrapper around ``AgentLoop``."""
    settings = settings or default_settings
    loop = AgentLoop(model, settings) if model is not None else AgentLoop.from_settings(settings)
    return await loop.run(query, context)
