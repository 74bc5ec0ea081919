"""Patient bundle loader and the in-memory patient repository."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

TriageLevel = Literal["Red", "Yellow", "Green"]


# ------------------------------------------------------------------
# Patient shape
# ------------------------------------------------------------------


class Triage(BaseModel):
    level: TriageLevel | None = None
    reasons: list[str] = Field(default_factory=list)


class ChiefComplaint(BaseModel):
    complaint: str
    duration: str = ""


class Vitals(BaseModel):
    pulse: float | None = None
    bp_sys: float | None = None
    bp_dia: float | None = None
    spo2: float | None = None
    temp_c: float | None = None
    rr: float | None = None


class VitalsRecord(BaseModel):
    recorded_at: str
    measurements: Vitals


class Order(BaseModel):
    order_id: str
    label: str
    category: str
    status: str = "draft"
    priority: str = "routine"
    created_at: str = ""


class LabResult(BaseModel):
    id: str
    name: str
    value: str
    unit: str = ""
    is_abnormal: bool = False


class ActiveProblem(BaseModel):
    description: str
    status: str = "active"


class Patient(BaseModel):
    """A patient as seen by the agent tools (read-only from their side)."""

    id: str
    name: str
    age: int | None = None
    gender: str = ""
    contact: str = ""
    status: str = ""
    triage: Triage = Field(default_factory=Triage)
    chief_complaints: list[ChiefComplaint] = Field(default_factory=list)
    vitals: Vitals | None = None
    # Most recent first
    vitals_history: list[VitalsRecord] = Field(default_factory=list)
    orders: list[Order] = Field(default_factory=list)
    results: list[LabResult] = Field(default_factory=list)
    active_problems: list[ActiveProblem] = Field(default_factory=list)
    discharge_status: str | None = None


PatientUpdater = Callable[[Patient], Patient]


def find_patient(identifier: str, patients: list[Patient]) -> Patient | None:
    """Match on exact ID or on a name substring, case-insensitively.

    Ambiguous names resolve to the first patient in *patients*.
    """
    lower = identifier.strip().lower()
    if not lower:
        return None
    for patient in patients:
        if patient.id.lower() == lower or lower in patient.name.lower():
            return patient
    return None


class PatientStore:
    """In-memory patient repository loaded from bundle JSON files.

    A bundle is ``{"resourceType": "PatientBundle", "patients": [...]}``.
    Insertion order is preserved, so lookups that resolve ambiguity by
    "first match" are deterministic.
    """

    def __init__(self, patients: list[Patient] | None = None) -> None:
        self._patients: dict[str, Patient] = {}
        for patient in patients or []:
            self._patients[patient.id] = patient

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_file(self, path: Path) -> None:
        """Load a single patient bundle JSON file into the store."""
        with open(path, encoding="utf-8") as f:
            bundle = json.load(f)

        if not isinstance(bundle, dict) or bundle.get("resourceType") != "PatientBundle":
            raise ValueError(f"Not a patient bundle: {path}")

        for raw in bundle.get("patients", []):
            patient = Patient.model_validate(raw)
            self._patients[patient.id] = patient

    def load_directory(self, directory: Path) -> None:
        """Load all ``*.json`` bundle files from a directory."""
        for path in sorted(directory.glob("*.json")):
            self.load_file(path)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def list_patients(self) -> list[Patient]:
        return list(self._patients.values())

    def get_patient(self, patient_id: str) -> Patient | None:
        return self._patients.get(patient_id)

    def find_patient(self, identifier: str) -> Patient | None:
        """Free-text lookup by ID or partial name."""
        return find_patient(identifier, self.list_patients())

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def update_patient(self, patient_id: str, updater: PatientUpdater) -> Patient:
        """Replace a stored patient with ``updater(patient)``."""
        current = self._patients.get(patient_id)
        if current is None:
            raise KeyError(f"Unknown patient: {patient_id}")
        updated = updater(current)
        self._patients[patient_id] = updated
        return updated
