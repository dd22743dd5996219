"""Unit tests for the JSON export parser."""

import json

import pytest

from clinical_import.adapters.parsers.json_parser import JSONParser, questionnaire_title
from clinical_import.domain.enums import ValueType


@pytest.fixture
def parser():
    return JSONParser()


def export(data, metadata=None):
    document = {"data": data}
    if metadata is not None:
        document["metadata"] = metadata
    return json.dumps(document)


class TestValidExports:
    """Test parsing of well-formed exports."""

    def test_camel_case_export(self, parser):
        content = export(
            {
                "patients": [{"id": 1, "patientId": "P001", "gender": "female", "birthDate": "1980-05-15"}],
                "visits": [{"id": 10, "patientId": 1, "startDate": "2024-01-15", "location": "Clinic A"}],
                "observations": [
                    {"patientId": 1, "visitId": 10, "conceptCode": "LOINC: 8867-4", "valueType": "N", "value": 72},
                    {"patientId": 1, "visitId": 10, "conceptCode": "NOTE", "value": "stable"},
                ],
            },
            metadata={"title": "Ward export", "version": 2, "exportDate": "2024-02-01"},
        )
        result = parser.parse(content, {"filename": "export.json"})
        assert result.is_success(), result.error_details

        structure = result.value
        patient = structure.data.patients[0]
        assert patient.patient_cd == "P001"
        assert patient.patient_num == "1"
        assert patient.sex_cd == "F"
        assert patient.sourcesystem_cd == "JSON_IMPORT"

        visit = structure.data.visits[0]
        assert visit.encounter_num == "10"
        assert visit.patient_num == "1"
        assert visit.inout_cd == "O"
        assert visit.location_cd == "Clinic A"

        heart_rate, note = structure.data.observations
        assert heart_rate.encounter_num == "10"
        assert heart_rate.nval_num == 72.0
        assert note.valtype_cd is ValueType.TEXT

        assert structure.metadata.title == "Ward export"
        assert structure.metadata.version == "2"
        assert structure.metadata.export_date == "2024-02-01"
        assert structure.metadata.warnings == []

    def test_store_column_export(self, parser):
        content = export({
            "patients": [{"PATIENT_CD": "P1", "SEX_CD": "M", "SOURCESYSTEM_CD": "LEGACY"}],
            "observations": [{"PATIENT_CD": "P1", "CONCEPT_CD": "X", "VALTYPE_CD": "T", "TVAL_CHAR": "ok"}],
        }, metadata={"title": "t"})
        structure = parser.parse(content).value
        assert structure.data.patients[0].sourcesystem_cd == "LEGACY"
        assert structure.data.observations[0].tval_char == "ok"

    def test_questionnaire_observation(self, parser):
        blob = {"title": "PHQ-9", "items": [{"id": "q1", "value": 2}]}
        content = export({
            "patients": [{"PATIENT_CD": "P1"}],
            "observations": [{"PATIENT_CD": "P1", "valueType": "Q", "value": blob}],
        }, metadata={"title": "t"})
        observation = parser.parse(content).value.data.observations[0]
        assert observation.valtype_cd is ValueType.QUESTIONNAIRE
        assert observation.concept_cd == "CUSTOM: QUESTIONNAIRE"
        assert observation.category_char == "SURVEY_BEST"
        assert observation.tval_char == "PHQ-9"
        assert json.loads(observation.observation_blob) == blob

    def test_byte_order_mark(self, parser):
        content = "\ufeff" + export({"patients": [{"PATIENT_CD": "P1"}]}, metadata={"title": "t"})
        assert parser.parse(content).is_success()

    def test_missing_metadata_warns(self, parser):
        structure = parser.parse(export({"patients": [{"PATIENT_CD": "P1"}]})).value
        assert [w["code"] for w in structure.metadata.warnings] == ["MISSING_METADATA"]
        assert structure.metadata.title == "JSON Import"


class TestQuestionnaireTitle:
    """Test questionnaire title resolution."""

    def test_title_from_blob_string(self):
        assert questionnaire_title({"OBSERVATION_BLOB": '{"label": "GAD-7"}'}) == "GAD-7"

    def test_title_from_reference(self):
        blob = {"questionnaireReference": {"questionnaireCode": "BDI"}}
        assert questionnaire_title({"blob": blob}) == "BDI"

    def test_fallbacks(self):
        assert questionnaire_title({"TVAL_CHAR": "Named"}) == "Named"
        assert questionnaire_title({"OBSERVATION_BLOB": "{broken"}) == "Unknown Questionnaire"


class TestInvalidExports:
    """Test structural failures."""

    @pytest.mark.parametrize("content,code", [
        ("{not json", "INVALID_JSON"),
        ("[1, 2]", "INVALID_JSON_STRUCTURE"),
        ('{"metadata": {"title": "t"}}', "MISSING_DATA"),
        ('{"data": {"other": []}}', "MISSING_CLINICAL_DATA"),
        ('{"data": {"patients": {}}}', "INVALID_PATIENTS_FORMAT"),
        ('{"data": {"patients": [], "visits": [1]}}', "INVALID_VISITS_FORMAT"),
        ('{"data": {"observations": "none"}}', "INVALID_OBSERVATIONS_FORMAT"),
    ])
    def test_error_codes(self, parser, content, code):
        result = parser.parse(content)
        assert result.is_failure()
        assert result.error_type == code
        assert result.error_details["parser"] == "json"

    def test_record_validation_failure(self, parser):
        content = export({"observations": [{"PATIENT_CD": "P1", "CONCEPT_CD": "X", "VALTYPE_CD": "Z"}]})
        result = parser.parse(content)
        assert result.error_type == "JSON_IMPORT_ERROR"
