"""Unit tests for the ImportService orchestrator."""

import json
import logging
from unittest.mock import Mock

import pytest
from pydantic import ValidationError

from clinical_import.adapters.parsers import default_parsers
from clinical_import.domain.enums import DuplicateStrategy, ImportFormat
from clinical_import.domain.ports import Result
from clinical_import.domain.services.import_service import ImportOptions, ImportService


def json_export(patients, visits=None, observations=None):
    return json.dumps({
        "metadata": {"title": "Unit export"},
        "data": {"patients": patients, "visits": visits or [], "observations": observations or []},
    })


SURVEY_WITHOUT_PATIENT = """<html><head><title>PHQ Result</title></head><body>
<script>window.surveyData = {"questionnaire": {"title": "PHQ-9", "type": "phq 9"},
"date": "2024-02-01", "responses": [{"code": "44250", "answer": 2}, {"answer": "often"}]};</script>
</body></html>"""


class TestImportOptions:
    """Test option validation."""

    def test_defaults(self):
        options = ImportOptions()
        assert options.duplicate_strategy is DuplicateStrategy.SKIP
        assert options.max_file_size == 50 * 1024 * 1024
        assert options.batch_size == 1000

    def test_size_strings_and_case(self):
        options = ImportOptions(max_file_size="1KB", duplicate_strategy="UPDATE")
        assert options.max_file_size == 1024
        assert options.duplicate_strategy is DuplicateStrategy.UPDATE

    def test_invalid_strategy(self):
        with pytest.raises(ValidationError):
            ImportOptions(duplicate_strategy="merge")


class TestImportFile:
    """Test import_file outcomes."""

    def test_csv_success(self, service, variant_a_csv):
        result = service.import_file(variant_a_csv, "export.csv")
        assert result.success, result.errors
        assert result.metadata["format"] == "csv"
        assert result.metadata["patient_count"] == 2
        assert result.metadata["visit_count"] == 3
        assert result.metadata["observation_count"] == 5
        assert result.data.metadata.export_date == "2024-03-01"
        assert "duration_ms" in result.statistics

    def test_run_id_in_metadata_and_logs(self, service, variant_a_csv, caplog):
        with caplog.at_level(logging.INFO, logger="clinical_import.domain.services.import_service"):
            result = service.import_file(variant_a_csv, "export.csv")
        import_id = result.metadata["import_id"]
        assert import_id
        started = next(r for r in caplog.records if r.getMessage().startswith("Starting file import"))
        assert started.import_id == import_id
        assert started.source_file == "export.csv"

    def test_bytes_content(self, service, variant_a_csv):
        result = service.import_file(variant_a_csv.encode("utf-8"), "export.csv")
        assert result.success

    def test_file_too_large(self, service, variant_a_csv):
        result = service.import_file(variant_a_csv, "export.csv", options={"max_file_size": 10})
        assert not result.success
        assert result.error_codes() == ["FILE_TOO_LARGE"]
        assert result.data is None

    def test_unsupported_format(self, service):
        result = service.import_file("free text without structure", "notes.txt")
        assert result.error_codes() == ["UNSUPPORTED_FORMAT"]
        assert result.data is None

    def test_service_not_found(self, variant_a_csv):
        result = ImportService({}).import_file(variant_a_csv, "export.csv")
        assert result.error_codes() == ["SERVICE_NOT_FOUND"]

    def test_parser_exception_is_contained(self, variant_a_csv):
        parser = Mock()
        parser.name = "broken"
        parser.parse.side_effect = RuntimeError("boom")
        result = ImportService({ImportFormat.CSV: parser}).import_file(variant_a_csv, "export.csv")
        assert result.error_codes() == ["IMPORT_FAILED"]
        assert "boom" in result.errors[0].message

    def test_parser_failure_issues_become_errors(self, service):
        result = service.import_file("{broken", "export.json")
        assert not result.success
        assert result.error_codes() == ["INVALID_JSON"]

    def test_parser_warnings_are_kept(self, service):
        content = json.dumps({"data": {"patients": [{"PATIENT_CD": "P1"}]}})
        result = service.import_file(content, "export.json")
        assert result.success
        assert "MISSING_METADATA" in result.warning_codes()

    def test_strict_validation_keeps_data(self, service):
        """Test missing required fields fail the run but keep the preview data."""
        content = json_export(
            [{"PATIENT_NUM": 1, "SEX_CD": "F"}],
            observations=[{"PATIENT_NUM": 1, "VALUE": 5}],
        )
        result = service.import_file(content, "export.json")
        assert not result.success
        assert result.error_codes() == ["MISSING_REQUIRED_FIELD", "MISSING_REQUIRED_FIELD"]
        assert result.data is not None
        assert result.data.statistics.patient_count == 1


class TestImportForPatient:
    """Test stamping records onto a target patient."""

    def test_placeholder_patient_for_survey_without_patient(self, service):
        result = service.import_for_patient(SURVEY_WITHOUT_PATIENT, "phq.html", "P-001")
        assert result.success, result.errors
        data = result.data.data
        assert [p.patient_cd for p in data.patients] == ["P-001"]
        assert data.patients[0].sourcesystem_cd == "SURVEY_SYSTEM"
        assert all(o.patient_cd == "P-001" for o in data.observations)
        assert all(v.patient_cd == "P-001" for v in data.visits)
        assert result.metadata["target_patient"] == "P-001"
        assert result.metadata["target_visit"] is None
        assert "MISSING_PATIENT_INFO" in result.warning_codes()

    def test_patients_merged(self, service):
        content = json_export(
            [{"PATIENT_CD": "A", "SEX_CD": "F"}, {"PATIENT_CD": "B", "AGE_IN_YEARS": 40}],
            observations=[{"PATIENT_CD": "B", "CONCEPT_CD": "X", "VALUE": 1}],
        )
        result = service.import_for_patient(content, "export.json", "TARGET")
        patients = result.data.data.patients
        assert len(patients) == 1
        assert patients[0].patient_cd == "TARGET"
        assert patients[0].sex_cd == "F"
        assert patients[0].age_in_years == 40
        assert "PATIENTS_MERGED" in result.warning_codes()
        assert result.data.data.observations[0].patient_cd == "TARGET"

    def test_visits_merged_with_visit_ref(self, service):
        content = json_export(
            [{"PATIENT_CD": "A"}],
            visits=[
                {"PATIENT_CD": "A", "ENCOUNTER_NUM": "0", "START_DATE": "2024-01-01"},
                {"PATIENT_CD": "A", "ENCOUNTER_NUM": "1", "LOCATION_CD": "Ward 3"},
            ],
            observations=[{"PATIENT_CD": "A", "ENCOUNTER_NUM": "1", "CONCEPT_CD": "X", "VALUE": 1}],
        )
        result = service.import_for_patient(content, "export.json", "A", visit_ref="V-9")
        visits = result.data.data.visits
        assert len(visits) == 1
        assert visits[0].encounter_num == "V-9"
        assert visits[0].location_cd == "Ward 3"
        assert result.data.data.observations[0].encounter_num == "V-9"
        assert "VISITS_MERGED" in result.warning_codes()
        assert result.metadata["target_visit"] == "V-9"

    def test_unexpected_failure(self):
        parser = Mock()
        parser.name = "odd"
        parser.parse.return_value = Result.success_result(object())
        service = ImportService({ImportFormat.JSON: parser})
        result = service.import_for_patient("{}", "export.json", "P1")
        assert result.error_codes() == ["PATIENT_IMPORT_FAILED"]
        assert result.data is None


class TestServiceConfiguration:
    """Test format listing and option updates."""

    def test_supported_formats(self, service):
        assert service.get_supported_formats() == ["csv", "json", "hl7", "html"]
        assert ImportService({ImportFormat.CSV: default_parsers()[ImportFormat.CSV]}).get_supported_formats() == ["csv"]

    def test_update_options(self, service):
        options = service.update_options(duplicate_strategy="update", batch_size=10)
        assert options.duplicate_strategy is DuplicateStrategy.UPDATE
        assert service.options.batch_size == 10

    def test_update_options_rejects_invalid(self, service):
        with pytest.raises(ValidationError):
            service.update_options(batch_size=0)

    def test_detect_format(self, service):
        assert service.detect_format("", "a.json") == ImportFormat.JSON
