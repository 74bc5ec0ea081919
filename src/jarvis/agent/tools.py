"""Tool registry: typed, named operations over patient data.

Read tools are side-effect free. Write tools never mutate anything: they
return a ``PENDING_CONFIRMATION`` payload describing the intended effect,
which the loop turns into a typed pending action.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from jarvis.agent.state import (
    AgentContext,
    NoteAction,
    NotePayload,
    OrderAction,
    OrderPayload,
    ToolResult,
    UpdateAction,
    VitalsPayload,
)
from jarvis.patients import Patient, find_patient

PENDING_CONFIRMATION = "PENDING_CONFIRMATION"

ToolHandler = Callable[[dict[str, Any], AgentContext], Awaitable[ToolResult]]
ActionBuilder = Callable[[dict[str, Any], str], OrderAction | NoteAction | UpdateAction]


class ToolName(str, Enum):
    GET_PATIENT_SUMMARY = "get_patient_summary"
    GET_PATIENT_VITALS_HISTORY = "get_patient_vitals_history"
    GET_PATIENT_MEDICATIONS = "get_patient_medications"
    GET_PATIENT_ORDERS = "get_patient_orders"
    SEARCH_PATIENTS = "search_patients"
    GET_OPS_METRICS = "get_ops_metrics"
    CHECK_DRUG_INTERACTIONS = "check_drug_interactions"
    ADD_ORDER = "add_order"
    CREATE_NOTE = "create_note"
    UPDATE_VITALS = "update_vitals"


@dataclass(frozen=True)
class ToolDefinition:
    """A registered tool: schema for the model, handler for the executor."""

    name: ToolName
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler
    mutating: bool = False
    # Turns a PENDING_CONFIRMATION payload into a typed pending action
    build_action: ActionBuilder | None = None

    @property
    def required(self) -> list[str]:
        return list(self.parameters.get("required", []))

    def declaration(self) -> dict[str, Any]:
        """Ollama/OpenAI-style function tool declaration."""
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


# ------------------------------------------------------------------
# Known drug interactions (simplified, for demonstration only)
# ------------------------------------------------------------------

DRUG_INTERACTIONS: dict[str, dict[str, str]] = {
    "warfarin": {
        "aspirin": "Additive bleeding risk. Monitor INR and signs of bleeding.",
        "ibuprofen": "NSAIDs increase bleeding risk with anticoagulants.",
        "nsaids": "NSAIDs increase bleeding risk with anticoagulants.",
        "naproxen": "NSAIDs increase bleeding risk with anticoagulants.",
    },
    "metformin": {
        "contrast dye": "Risk of lactic acidosis. Hold metformin around iodinated contrast.",
        "alcohol": "Increased risk of lactic acidosis.",
    },
    "ace inhibitors": {
        "potassium supplements": "Risk of hyperkalaemia. Monitor serum potassium.",
        "spironolactone": "Risk of hyperkalaemia. Monitor serum potassium.",
    },
    "digoxin": {
        "amiodarone": "Raises digoxin levels. Consider dose reduction.",
        "verapamil": "Raises digoxin levels and additive AV block.",
    },
    "lithium": {
        "nsaids": "Reduced lithium clearance. Risk of toxicity.",
        "ace inhibitors": "Reduced lithium clearance. Risk of toxicity.",
        "diuretics": "Reduced lithium clearance. Risk of toxicity.",
    },
    "ssris": {
        "maois": "Risk of serotonin syndrome. Avoid combination.",
        "tramadol": "Risk of serotonin syndrome and lowered seizure threshold.",
        "triptans": "Risk of serotonin syndrome.",
    },
}

PENDING_ORDER_STATUSES = frozenset({"draft", "sent", "scheduled"})
VITAL_FIELDS = ("pulse", "bp_sys", "bp_dia", "spo2", "temp_c", "rr")


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _lookup(params: dict[str, Any], ctx: AgentContext) -> Patient | None:
    return find_patient(str(params.get("patient_identifier", "")), list(ctx.all_patients))


def _not_found(params: dict[str, Any]) -> ToolResult:
    return ToolResult.fail(f'Patient "{params.get("patient_identifier", "")}" not found.')


def _format_vitals(v: Any) -> dict[str, Any]:
    bp = f"{v.bp_sys:g}/{v.bp_dia:g}" if v.bp_sys is not None and v.bp_dia is not None else None
    return {"pulse": v.pulse, "bp": bp, "spo2": v.spo2, "temp": v.temp_c, "rr": v.rr}


def _pending_payload(patient: Patient, **fields: Any) -> dict[str, Any]:
    return {
        "action": PENDING_CONFIRMATION,
        "patient": patient.name,
        "patient_id": patient.id,
        **fields,
    }


# ------------------------------------------------------------------
# Read tools
# ------------------------------------------------------------------


async def get_patient_summary(params: dict[str, Any], ctx: AgentContext) -> ToolResult:
    patient = _lookup(params, ctx)
    if patient is None:
        return _not_found(params)

    pending_orders = sum(1 for o in patient.orders if o.status in PENDING_ORDER_STATUSES)
    return ToolResult.ok(
        {
            "id": patient.id,
            "name": patient.name,
            "age": patient.age,
            "gender": patient.gender,
            "status": patient.status,
            "triage": patient.triage.level,
            "chief_complaints": [c.complaint for c in patient.chief_complaints],
            "vitals": patient.vitals.model_dump() if patient.vitals else None,
            "active_problems": [p.description for p in patient.active_problems],
            "pending_orders": pending_orders,
            "recent_labs": [
                {"name": r.name, "value": r.value, "is_abnormal": r.is_abnormal}
                for r in patient.results[:3]
            ],
        },
        rationale="Retrieved from patient store.",
    )


async def get_patient_vitals_history(params: dict[str, Any], ctx: AgentContext) -> ToolResult:
    patient = _lookup(params, ctx)
    if patient is None:
        return _not_found(params)

    count = int(params.get("count") or 3)
    history = patient.vitals_history[:count]
    if history:
        return ToolResult.ok(
            [
                {"recorded_at": rec.recorded_at, **_format_vitals(rec.measurements)}
                for rec in history
            ],
            rationale=f"Retrieved {len(history)} records from vitals history.",
        )
    if patient.vitals is not None:
        return ToolResult.ok(
            [{"recorded_at": "current", **_format_vitals(patient.vitals)}],
            rationale="No vitals history, showing current vitals.",
        )
    return ToolResult.ok([], rationale="No vitals recorded for this patient.")


async def get_patient_medications(params: dict[str, Any], ctx: AgentContext) -> ToolResult:
    patient = _lookup(params, ctx)
    if patient is None:
        return _not_found(params)

    meds = [o for o in patient.orders if o.category == "medication"]
    return ToolResult.ok(
        [{"name": m.label, "status": m.status, "priority": m.priority} for m in meds],
        rationale=f"Found {len(meds)} medication orders.",
    )


async def get_patient_orders(params: dict[str, Any], ctx: AgentContext) -> ToolResult:
    patient = _lookup(params, ctx)
    if patient is None:
        return _not_found(params)

    status_filter = params.get("status_filter") or "pending"
    orders = patient.orders
    if status_filter == "pending":
        orders = [o for o in orders if o.status != "completed"]
    elif status_filter == "completed":
        orders = [o for o in orders if o.status == "completed"]

    return ToolResult.ok(
        [
            {"label": o.label, "category": o.category, "status": o.status, "priority": o.priority}
            for o in orders
        ],
        rationale=f"Found {len(orders)} {status_filter} orders.",
    )


async def search_patients(params: dict[str, Any], ctx: AgentContext) -> ToolResult:
    results = list(ctx.all_patients)

    name = params.get("name")
    if name:
        results = [p for p in results if name.lower() in p.name.lower()]
    triage_level = params.get("triage_level")
    if triage_level:
        results = [p for p in results if p.triage.level == triage_level]
    status = params.get("status")
    if status:
        results = [p for p in results if status.lower() in p.status.lower()]

    return ToolResult.ok(
        [
            {
                "id": p.id,
                "name": p.name,
                "triage": p.triage.level,
                "status": p.status,
                "chief_complaint": p.chief_complaints[0].complaint if p.chief_complaints else None,
            }
            for p in results[:10]
        ],
        rationale=f"Found {len(results)} matching patients (showing up to 10).",
    )


async def get_ops_metrics(params: dict[str, Any], ctx: AgentContext) -> ToolResult:
    patients = list(ctx.all_patients)
    in_treatment = sum(1 for p in patients if p.status == "In Treatment")
    occupancy = round(in_treatment / max(len(patients), 1) * 100)

    return ToolResult.ok(
        {
            "total_patients": len(patients),
            "in_treatment": in_treatment,
            "critical_count": sum(1 for p in patients if p.triage.level == "Red"),
            "yellow_count": sum(1 for p in patients if p.triage.level == "Yellow"),
            "pending_discharge": sum(
                1
                for p in patients
                if p.discharge_status == "finalized" or p.status == "Discharged"
            ),
            "occupancy_estimate": f"{occupancy}%",
        },
        rationale="Calculated from current patient roster.",
    )


async def check_drug_interactions(params: dict[str, Any], ctx: AgentContext) -> ToolResult:
    drugs = params.get("drugs")
    if isinstance(drugs, str):
        drugs = [drugs]
    if not isinstance(drugs, list):
        return ToolResult.fail("Parameter 'drugs' must be a list of drug names.")

    lowered = [str(d).strip().lower() for d in drugs]
    found: list[dict[str, Any]] = []
    for i, drug in enumerate(lowered):
        for key, partners in DRUG_INTERACTIONS.items():
            if key not in drug:
                continue
            for j, other in enumerate(lowered):
                if i == j:
                    continue
                for partner, note in partners.items():
                    if partner in other:
                        found.append(
                            {
                                "pair": [drug, other],
                                "severity": "Moderate to Severe",
                                "note": note,
                            }
                        )
                        break

    return ToolResult.ok(
        {
            "interactions": found,
            "checked_drugs": list(drugs),
            "interaction_count": len(found),
        },
        rationale=(
            f"Found {len(found)} potential interaction(s). Review carefully."
            if found
            else "No known interactions found in our database."
        ),
    )


# ------------------------------------------------------------------
# Write tools (staged, never applied here)
# ------------------------------------------------------------------


async def add_order(params: dict[str, Any], ctx: AgentContext) -> ToolResult:
    patient = _lookup(params, ctx)
    if patient is None:
        return _not_found(params)

    return ToolResult(
        success=True,
        data=_pending_payload(
            patient,
            order=str(params["order_label"]),
            category=str(params["category"]),
            priority=str(params.get("priority") or "routine"),
        ),
        rationale="Order staged. Awaiting doctor confirmation.",
        requires_confirmation=True,
    )


async def create_note(params: dict[str, Any], ctx: AgentContext) -> ToolResult:
    patient = _lookup(params, ctx)
    if patient is None:
        return _not_found(params)

    return ToolResult(
        success=True,
        data=_pending_payload(
            patient,
            note_text=str(params["note_text"]),
            note_type=str(params.get("note_type") or "progress"),
        ),
        rationale="Note drafted. Awaiting doctor confirmation.",
        requires_confirmation=True,
    )


async def update_vitals(params: dict[str, Any], ctx: AgentContext) -> ToolResult:
    patient = _lookup(params, ctx)
    if patient is None:
        return _not_found(params)

    given = params["vitals"]
    if not isinstance(given, dict):
        return ToolResult.fail("Parameter 'vitals' must be an object of measurements.")
    vitals = {f: given[f] for f in VITAL_FIELDS if given.get(f) is not None}
    if not vitals:
        return ToolResult.fail("No vital sign values were provided.")

    return ToolResult(
        success=True,
        data=_pending_payload(patient, vitals=vitals),
        rationale="Vitals update staged. Awaiting doctor confirmation.",
        requires_confirmation=True,
    )


def _order_action(data: dict[str, Any], action_id: str) -> OrderAction:
    return OrderAction(
        action_id=action_id,
        description=f"{data['order']} for {data.get('patient') or 'patient'}",
        patient_id=data.get("patient_id"),
        patient_name=data.get("patient"),
        payload=OrderPayload(
            order=data["order"], category=data["category"], priority=data["priority"]
        ),
    )


def _note_action(data: dict[str, Any], action_id: str) -> NoteAction:
    return NoteAction(
        action_id=action_id,
        description=f"{data['note_type'].capitalize()} note for {data.get('patient') or 'patient'}",
        patient_id=data.get("patient_id"),
        patient_name=data.get("patient"),
        payload=NotePayload(note_text=data["note_text"], note_type=data["note_type"]),
    )


def _update_action(data: dict[str, Any], action_id: str) -> UpdateAction:
    fields = ", ".join(sorted(data["vitals"]))
    return UpdateAction(
        action_id=action_id,
        description=f"Update vitals ({fields}) for {data.get('patient') or 'patient'}",
        patient_id=data.get("patient_id"),
        patient_name=data.get("patient"),
        payload=VitalsPayload(**data["vitals"]),
    )


# ------------------------------------------------------------------
# Registry
# ------------------------------------------------------------------

_IDENTIFIER = {"type": "string", "description": "Patient name or ID. Can be partial match."}

_DEFINITIONS = [
    ToolDefinition(
        name=ToolName.GET_PATIENT_SUMMARY,
        description=(
            "Get a structured summary of a patient including demographics, vitals, "
            'problems, and status. Use when user asks to "summarize" or "tell me about" a patient.'
        ),
        parameters={
            "type": "object",
            "properties": {"patient_identifier": _IDENTIFIER},
            "required": ["patient_identifier"],
        },
        handler=get_patient_summary,
    ),
    ToolDefinition(
        name=ToolName.GET_PATIENT_VITALS_HISTORY,
        description=(
            'Get the last N vital sign recordings for a patient. Use when user asks about '
            '"vitals trend", "last vitals", or "vitals history".'
        ),
        parameters={
            "type": "object",
            "properties": {
                "patient_identifier": _IDENTIFIER,
                "count": {"type": "integer", "description": "Number of recent records. Default 3."},
            },
            "required": ["patient_identifier"],
        },
        handler=get_patient_vitals_history,
    ),
    ToolDefinition(
        name=ToolName.GET_PATIENT_MEDICATIONS,
        description=(
            'Get the current medications for a patient. Use when user asks about '
            '"meds", "medications", or "drugs".'
        ),
        parameters={
            "type": "object",
            "properties": {"patient_identifier": _IDENTIFIER},
            "required": ["patient_identifier"],
        },
        handler=get_patient_medications,
    ),
    ToolDefinition(
        name=ToolName.GET_PATIENT_ORDERS,
        description='Get pending or all orders for a patient. Use when user asks about "orders", "labs", "tests".',
        parameters={
            "type": "object",
            "properties": {
                "patient_identifier": _IDENTIFIER,
                "status_filter": {
                    "type": "string",
                    "enum": ["all", "pending", "completed"],
                    "description": "Filter by status. Default: pending.",
                },
            },
            "required": ["patient_identifier"],
        },
        handler=get_patient_orders,
    ),
    ToolDefinition(
        name=ToolName.SEARCH_PATIENTS,
        description=(
            "Search for patients by name, status, or triage level. Use when user asks "
            '"who are my critical patients" or "find patient named...". Critical means triage Red.'
        ),
        parameters={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Partial name match."},
                "triage_level": {
                    "type": "string",
                    "enum": ["Red", "Yellow", "Green"],
                    "description": "Filter by triage.",
                },
                "status": {
                    "type": "string",
                    "description": 'Filter by status (e.g., "In Treatment", "Waiting").',
                },
            },
        },
        handler=search_patients,
    ),
    ToolDefinition(
        name=ToolName.GET_OPS_METRICS,
        description=(
            "Get hospital operational metrics like bed occupancy, critical count, pending "
            'discharges. Use when user asks about "ops", "beds", "hospital status".'
        ),
        parameters={"type": "object", "properties": {}},
        handler=get_ops_metrics,
    ),
    ToolDefinition(
        name=ToolName.CHECK_DRUG_INTERACTIONS,
        description=(
            "Check for drug-drug interactions given a list of medications. "
            "Use when user asks about interactions or safety."
        ),
        parameters={
            "type": "object",
            "properties": {
                "drugs": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "List of drug names to check.",
                },
            },
            "required": ["drugs"],
        },
        handler=check_drug_interactions,
    ),
    ToolDefinition(
        name=ToolName.ADD_ORDER,
        description=(
            "Stage a new order (medication, lab, imaging) for a patient. REQUIRES USER "
            'CONFIRMATION before execution. Use when user says "order CBC" or "add medication".'
        ),
        parameters={
            "type": "object",
            "properties": {
                "patient_identifier": _IDENTIFIER,
                "order_label": {
                    "type": "string",
                    "description": 'The order to add (e.g., "Complete Blood Count", "Paracetamol 500mg").',
                },
                "category": {
                    "type": "string",
                    "enum": ["investigation", "medication", "radiology", "procedure", "nursing", "referral"],
                    "description": "Order category.",
                },
                "priority": {
                    "type": "string",
                    "enum": ["routine", "urgent", "STAT"],
                    "description": "Order priority. Default: routine.",
                },
            },
            "required": ["patient_identifier", "order_label", "category"],
        },
        handler=add_order,
        mutating=True,
        build_action=_order_action,
    ),
    ToolDefinition(
        name=ToolName.CREATE_NOTE,
        description=(
            "Draft a clinical note for a patient. REQUIRES USER CONFIRMATION before it is "
            'filed. Use when user says "write a note" or "document that...".'
        ),
        parameters={
            "type": "object",
            "properties": {
                "patient_identifier": _IDENTIFIER,
                "note_text": {"type": "string", "description": "Body of the note."},
                "note_type": {
                    "type": "string",
                    "enum": ["progress", "procedure", "handover"],
                    "description": "Kind of note. Default: progress.",
                },
            },
            "required": ["patient_identifier", "note_text"],
        },
        handler=create_note,
        mutating=True,
        build_action=_note_action,
    ),
    ToolDefinition(
        name=ToolName.UPDATE_VITALS,
        description=(
            "Stage new vital sign values for a patient. REQUIRES USER CONFIRMATION before "
            "they are recorded. Provide at least one measurement."
        ),
        parameters={
            "type": "object",
            "properties": {
                "patient_identifier": _IDENTIFIER,
                "vitals": {
                    "type": "object",
                    "description": "Measurements to record.",
                    "properties": {
                        "pulse": {"type": "number", "description": "Heart rate (bpm)."},
                        "bp_sys": {"type": "number", "description": "Systolic BP (mmHg)."},
                        "bp_dia": {"type": "number", "description": "Diastolic BP (mmHg)."},
                        "spo2": {"type": "number", "description": "Oxygen saturation (%)."},
                        "temp_c": {"type": "number", "description": "Temperature (°C)."},
                        "rr": {"type": "number", "description": "Respiratory rate (/min)."},
                    },
                },
            },
            "required": ["patient_identifier", "vitals"],
        },
        handler=update_vitals,
        mutating=True,
        build_action=_update_action,
    ),
]

TOOLS: dict[ToolName, ToolDefinition] = {d.name: d for d in _DEFINITIONS}


def _check_registry(tools: dict[ToolName, ToolDefinition]) -> None:
    missing = set(ToolName) - set(tools)
    if missing:
        raise RuntimeError(f"Unregistered tools: {sorted(t.value for t in missing)}")


_check_registry(TOOLS)


def get_tool(name: str) -> ToolDefinition | None:
    """Return the tool registered under *name*, or ``None``."""
    try:
        return TOOLS[ToolName(name)]
    except ValueError:
        return None


def list_tools() -> list[ToolDefinition]:
    return list(TOOLS.values())


def get_tool_names() -> list[str]:
    return [name.value for name in TOOLS]


def get_tool_declarations() -> list[dict[str, Any]]:
    return [d.declaration() for d in TOOLS.values()]
