"""Unit tests for the run-scoped IdentifierMap."""

import pytest

from clinical_import.domain.identifier_map import IdentifierConflictError, IdentifierMap


class TestPatientBindings:
    """Test patient natural-key bindings."""

    def test_bind_and_resolve(self):
        id_map = IdentifierMap()
        id_map.bind_patient("P1", 10, original_num="1")
        assert id_map.resolve_patient("P1") == 10
        assert id_map.resolve_patient(None, "1") == 10
        assert id_map.resolve_patient("unknown", "1") == 10
        assert id_map.resolve_patient("unknown") is None
        assert "P1" in id_map

    def test_rebinding_same_surrogate_is_allowed(self):
        id_map = IdentifierMap()
        id_map.bind_patient("P1", 10)
        id_map.bind_patient("P1", 10, original_num=1)
        assert id_map.resolve_patient(original_num="1") == 10

    def test_rebinding_conflict_raises(self):
        """Test bindings are monotonic."""
        id_map = IdentifierMap()
        id_map.bind_patient("P1", 10)
        with pytest.raises(IdentifierConflictError, match="P1"):
            id_map.bind_patient("P1", 11)
        assert id_map.resolve_patient("P1") == 10

    def test_conflict_is_value_error(self):
        assert issubclass(IdentifierConflictError, ValueError)

    def test_reverse_lookup(self):
        id_map = IdentifierMap()
        id_map.bind_patient("P1", 10)
        assert id_map.natural_key_for(10) == "P1"
        assert id_map.natural_key_for(99) is None


class TestVisitBindings:
    """Test temporary visit id bindings."""

    def test_bind_visit_by_string_key(self):
        """Test numeric and string temporary ids share one key space."""
        id_map = IdentifierMap()
        id_map.bind_visit(0, 100, patient_num=10)
        assert id_map.resolve_visit("0", 10) == 100
        assert id_map.resolve_visit(0, 10) == 100
        assert id_map.resolve_visit(None, 10) is None
        assert id_map.visit_key_for(100) == "0"
        assert id_map.visit_owner(100) == 10

    def test_visit_ids_are_scoped_per_patient(self):
        """Test two patients may reuse the same temporary visit id."""
        id_map = IdentifierMap()
        id_map.bind_visit("1", 100, patient_num=10)
        id_map.bind_visit("1", 200, patient_num=20)
        assert id_map.resolve_visit("1", 10) == 100
        assert id_map.resolve_visit("1", 20) == 200
        assert id_map.resolve_visit("1", 30) is None
        assert id_map.visit_owner(200) == 20
        assert len(id_map) == 2

    def test_first_visit_for_patient(self):
        id_map = IdentifierMap()
        id_map.bind_visit("a", 100, patient_num=10)
        id_map.bind_visit("b", 101, patient_num=10)
        assert id_map.first_visit_for(10) == 100
        assert id_map.first_visit_for(11) is None

    def test_visit_conflict_raises(self):
        id_map = IdentifierMap()
        id_map.bind_visit("0", 100, patient_num=10)
        with pytest.raises(IdentifierConflictError):
            id_map.bind_visit("0", 101, patient_num=10)

    def test_default_visits(self):
        id_map = IdentifierMap()
        id_map.bind_default_visit(10, 500)
        assert id_map.default_visit_for(10) == 500
        assert id_map.default_visit_for(11) is None
        assert id_map.visit_owner(500) == 10
        assert id_map.visit_owner(501) is None


class TestMapSummary:
    """Test size and serialisation."""

    def test_len_counts_patients_and_visits(self):
        id_map = IdentifierMap()
        id_map.bind_patient("P1", 10, original_num="1")
        id_map.bind_visit("0", 100, patient_num=10)
        id_map.bind_default_visit(10, 101)
        assert len(id_map) == 2

    def test_to_dict(self):
        id_map = IdentifierMap()
        id_map.bind_patient("P1", 10, original_num="1")
        id_map.bind_visit("0", 100, patient_num=10)
        id_map.bind_default_visit(10, 101)
        assert id_map.to_dict() == {
            "patients": {"P1": 10},
            "original_patients": {"1": 10},
            "visits": {"10": {"0": 100}},
            "default_visits": {"10": 101},
        }

    def test_maps_are_not_shared(self):
        first, second = IdentifierMap(), IdentifierMap()
        first.bind_patient("P1", 10)
        assert second.resolve_patient("P1") is None
