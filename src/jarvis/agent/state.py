"""Agent data model: tool results, steps, pending actions and graph state."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Annotated, Any, Literal, TypedDict, Union

from pydantic import BaseModel, Field, model_validator

from jarvis.patients import Patient, PatientUpdater


class AgentUser(BaseModel):
    id: str
    name: str
    role: str
    email: str | None = None


@dataclass
class AgentContext:
    """Everything a tool handler may look at. Built fresh per invocation."""

    current_patient: Patient | None
    all_patients: Sequence[Patient]
    current_user: AgentUser
    update_patient: Callable[[str, PatientUpdater], Any] | None = None


class ToolResult(BaseModel):
    """Outcome of one tool call.

    A failed result never carries data, and only a successful result can
    be escalated to a pending action.
    """

    success: bool
    data: Any = None
    error: str | None = None
    rationale: str | None = None
    requires_confirmation: bool = False

    @model_validator(mode="after")
    def _check_invariants(self) -> "ToolResult":
        if not self.success and self.data is not None:
            raise ValueError("A failed ToolResult must not carry data.")
        if self.requires_confirmation and not self.success:
            raise ValueError("Only a successful ToolResult can require confirmation.")
        return self

    @classmethod
    def ok(cls, data: Any, rationale: str | None = None) -> "ToolResult":
        return cls(success=True, data=data, rationale=rationale)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)


class ToolAction(BaseModel):
    tool: str
    params: dict[str, Any] = Field(default_factory=dict)


class AgentStep(BaseModel):
    """One iteration of the loop; the list of steps is the audit trail."""

    step_number: int
    thought: str
    action: ToolAction | None = None
    observation: ToolResult | None = None
    is_final: bool = False


# ------------------------------------------------------------------
# Pending actions: one typed variant per kind of staged mutation
# ------------------------------------------------------------------


class OrderPayload(BaseModel):
    order: str
    category: str
    priority: str = "routine"


class NotePayload(BaseModel):
    note_text: str
    note_type: str = "progress"


class VitalsPayload(BaseModel):
    pulse: float | None = None
    bp_sys: float | None = None
    bp_dia: float | None = None
    spo2: float | None = None
    temp_c: float | None = None
    rr: float | None = None


class _BaseAction(BaseModel):
    action_id: str
    description: str
    patient_id: str | None = None
    patient_name: str | None = None


class OrderAction(_BaseAction):
    type: Literal["order"] = "order"
    payload: OrderPayload


class NoteAction(_BaseAction):
    type: Literal["note"] = "note"
    payload: NotePayload


class UpdateAction(_BaseAction):
    type: Literal["update"] = "update"
    payload: VitalsPayload


PendingAction = Annotated[
    Union[OrderAction, NoteAction, UpdateAction],
    Field(discriminator="type"),
]


class AgentResponse(BaseModel):
    answer: str
    steps: list[AgentStep] = Field(default_factory=list)
    tools_used: list[str] = Field(default_factory=list)
    confidence: float = 0.0
    pending_actions: list[PendingAction] = Field(default_factory=list)


# ------------------------------------------------------------------
# Graph state
# ------------------------------------------------------------------


class AgentState(TypedDict, total=False):
    """State that flows through every node of the reasoning graph.

    Fields use ``total=False`` so nodes can return partial updates
    (only the keys they modify).
    """

    # Input
    query: str
    context: AgentContext
    # Monotonic-clock deadline shared by every model call of this query
    deadline: float

    # Conversation sent to the model (Ollama chat message dicts)
    messages: list[dict[str, Any]]

    # Bookkeeping
    step_count: int
    steps: list[AgentStep]
    tools_used: list[str]
    pending_actions: list[OrderAction | NoteAction | UpdateAction]

    # Set by reason when the model asks for a tool
    next_action: ToolAction | None

    # Set by finalize / summarize
    answer: str
    confidence: float
