"""Unit tests for jarvis.patients: bundle loading and lookups."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import SAMPLE_FILE
from jarvis.patients import Order, Patient, PatientStore, find_patient


@pytest.fixture
def store() -> PatientStore:
    s = PatientStore()
    s.load_file(SAMPLE_FILE)
    return s


class TestLoading:
    """Verify that patient bundles are parsed correctly."""

    def test_loads_all_patients(self, store: PatientStore):
        assert [p.id for p in store.list_patients()] == ["P-001", "P-002", "P-003", "P-004"]

    def test_nested_fields_parsed(self, store: PatientStore):
        gita = store.get_patient("P-001")
        assert gita is not None
        assert gita.triage.level == "Yellow"
        assert gita.vitals is not None and gita.vitals.temp_c == 38.5
        assert len(gita.vitals_history) == 2
        assert {o.category for o in gita.orders} == {"investigation", "medication"}

    def test_rejects_non_bundle(self, tmp_path: Path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"resourceType": "Bundle", "entry": []}))
        with pytest.raises(ValueError, match="Not a patient bundle"):
            PatientStore().load_file(path)

    def test_load_directory(self, tmp_path: Path):
        bundle = {"resourceType": "PatientBundle", "patients": [{"id": "X-1", "name": "Test One"}]}
        (tmp_path / "a.json").write_text(json.dumps(bundle))
        s = PatientStore()
        s.load_directory(tmp_path)
        assert s.get_patient("X-1") is not None


class TestLookup:
    """Free-text lookup semantics shared by every patient tool."""

    def test_exact_id_case_insensitive(self, store: PatientStore):
        assert store.find_patient("p-002").name == "Ramesh Kumar"

    def test_partial_name(self, store: PatientStore):
        assert store.find_patient("ramesh").id == "P-002"

    def test_unknown_returns_none(self, store: PatientStore):
        assert store.find_patient("nobody") is None

    def test_blank_identifier_returns_none(self, store: PatientStore):
        assert store.find_patient("   ") is None

    def test_ambiguous_name_resolves_to_first(self):
        patients = [Patient(id="A", name="Anil Shah"), Patient(id="B", name="Anil Mehta")]
        assert find_patient("anil", patients).id == "A"


class TestUpdate:
    def test_update_replaces_patient(self, store: PatientStore):
        def add_order(p: Patient) -> Patient:
            order = Order(order_id="O-99", label="CBC", category="investigation")
            return p.model_copy(update={"orders": [*p.orders, order]})

        updated = store.update_patient("P-003", add_order)
        assert [o.label for o in updated.orders] == ["CBC"]
        assert store.get_patient("P-003").orders[0].order_id == "O-99"

    def test_update_unknown_patient_raises(self, store: PatientStore):
        with pytest.raises(KeyError):
            store.update_patient("P-999", lambda p: p)
