"""Unit tests for the import result envelope."""

import pytest

from clinical_import.domain.enums import EntityType, IssueSeverity
from clinical_import.domain.identifier_map import IdentifierMap
from clinical_import.domain.ports import ImportAbortedError, Result
from clinical_import.domain.results import EntityCounts, ImportIssue, ImportResult


class TestImportIssue:
    """Test structured issues."""

    def test_round_trip_through_dict(self):
        issue = ImportIssue.warning(
            "DEFAULT_VISIT_CREATED", "created", entity=EntityType.VISIT, position=3, details={"patient_num": 1}
        )
        restored = ImportIssue.from_dict(issue.to_dict())
        assert restored.code == "DEFAULT_VISIT_CREATED"
        assert restored.entity is EntityType.VISIT
        assert restored.position == 3
        assert restored.severity is IssueSeverity.WARNING
        assert restored.timestamp == issue.timestamp
        assert restored.details == {"patient_num": 1}

    def test_from_dict_defaults(self):
        restored = ImportIssue.from_dict({"code": "X", "message": "m"})
        assert restored.entity is None
        assert restored.severity is IssueSeverity.ERROR

    def test_str_names_entity_and_position(self):
        issue = ImportIssue.error("MISSING_PATIENT_ID", "no id", entity=EntityType.PATIENT, position=2)
        assert str(issue) == "MISSING_PATIENT_ID [patient #2]: no id"
        assert str(ImportIssue.error("NO_PATIENTS", "none")) == "NO_PATIENTS: none"


class TestImportResult:
    """Test the envelope helpers."""

    def test_defaults(self):
        result = ImportResult()
        assert result.success
        assert set(result.counts) == {"patient", "visit", "observation"}
        assert all(counts.is_balanced() for counts in result.counts.values())

    def test_warnings_do_not_fail(self):
        result = ImportResult()
        result.add_warning("DUPLICATES_ENCOUNTERED", "dupes")
        assert result.success
        assert result.warning_codes() == ["DUPLICATES_ENCOUNTERED"]

    def test_fail_marks_unsuccessful(self):
        result = ImportResult().fail("NO_PATIENTS", "No patients", entity=EntityType.PATIENT)
        assert not result.success
        assert result.error_codes() == ["NO_PATIENTS"]

    def test_add_error_keeps_success(self):
        """Test record-level errors accumulate without failing the run."""
        result = ImportResult()
        result.add_error("VISIT_PATIENT_NOT_FOUND", "missing", entity=EntityType.VISIT, position=0)
        assert result.success
        assert result.errors[0].position == 0

    def test_raise_for_errors(self):
        result = ImportResult().fail("DUPLICATE_PATIENT", "Patient with PATIENT_CD 'P1' already exists")
        with pytest.raises(ImportAbortedError, match="DUPLICATE_PATIENT") as exc_info:
            result.raise_for_errors()
        assert exc_info.value.errors[0].code == "DUPLICATE_PATIENT"

    def test_raise_for_errors_on_success_is_noop(self):
        ImportResult().raise_for_errors()

    def test_count_by_entity(self):
        result = ImportResult()
        result.count(EntityType.VISIT).imported += 2
        assert result.counts["visit"] == EntityCounts(imported=2)

    def test_to_dict(self):
        id_map = IdentifierMap()
        id_map.bind_patient("P1", 1)
        result = ImportResult(identifier_map=id_map, metadata={"format": "csv"})
        result.add_warning("W", "warn")
        data = result.to_dict()
        assert data["success"] is True
        assert data["counts"]["patient"] == {"total": 0, "imported": 0, "duplicates": 0, "failed": 0}
        assert data["identifier_map"]["patients"] == {"P1": 1}
        assert data["warnings"][0]["severity"] == "warning"
        assert "data" not in data


class TestResultType:
    """Test the parser Result type."""

    def test_success_result(self):
        result = Result.success_result(42)
        assert result.is_success()
        assert result.value == 42

    def test_failure_from_exception(self):
        result = Result.failure_result(ValueError("bad"))
        assert result.is_failure()
        assert result.error == "bad"
        assert result.error_type == "ValueError"
        assert result.error_details == {}
