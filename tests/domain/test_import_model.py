"""Unit tests for the canonical import model and normalisation helpers."""

from datetime import date, datetime

import pytest
from pydantic import ValidationError

from clinical_import.domain.enums import ValueType
from clinical_import.domain.import_model import (
    ObservationRecord,
    PatientRecord,
    VisitRecord,
    create_import_structure,
)
from clinical_import.domain.utils import (
    infer_value_type,
    normalize_inout_code,
    normalize_sex_code,
    parse_date,
    parse_file_size,
    parse_numeric,
    parse_timestamp,
)


class TestPatientRecord:
    """Test patient record normalisation."""

    def test_upper_case_columns(self):
        """Test store column names are accepted."""
        patient = PatientRecord.model_validate(
            {"PATIENT_CD": "P001", "SEX_CD": "female", "AGE_IN_YEARS": "45", "BIRTH_DATE": "1979-03-02"}
        )
        assert patient.patient_cd == "P001"
        assert patient.sex_cd == "F"
        assert patient.age_in_years == 45
        assert patient.birth_date == date(1979, 3, 2)

    def test_camel_case_aliases(self):
        """Test camelCase aliases map onto fields."""
        patient = PatientRecord.model_validate({"patientId": "P7", "gender": "m", "birthDate": "05/15/1980"})
        assert patient.patient_cd == "P7"
        assert patient.sex_cd == "M"
        assert patient.birth_date == date(1980, 5, 15)

    def test_numeric_identifiers_become_strings(self):
        """Test integer and integral float identifiers are stringified."""
        patient = PatientRecord.model_validate({"code": 101, "PATIENT_NUM": 5.0})
        assert patient.patient_cd == "101"
        assert patient.patient_num == "5"

    def test_defaults(self):
        """Test default source system and empty identifiers."""
        patient = PatientRecord.model_validate({"PATIENT_CD": "  "})
        assert patient.patient_cd is None
        assert patient.sourcesystem_cd == "IMPORT"

    def test_out_of_range_age_dropped(self):
        """Test implausible ages are discarded instead of failing."""
        patient = PatientRecord.model_validate({"PATIENT_CD": "P1", "AGE_IN_YEARS": "250"})
        assert patient.age_in_years is None

    def test_records_are_frozen(self):
        """Test records cannot be mutated after validation."""
        patient = PatientRecord(patient_cd="P1")
        with pytest.raises(ValidationError):
            patient.patient_cd = "P2"


class TestVisitRecord:
    """Test visit record normalisation."""

    def test_aliases_and_timestamps(self):
        """Test visit ids, UTC timestamps and setting codes."""
        visit = VisitRecord.model_validate(
            {"visitId": 3, "patientCode": "P1", "startDate": "2024-01-15T10:30:00Z", "inout": "inpatient"}
        )
        assert visit.encounter_num == "3"
        assert visit.patient_cd == "P1"
        assert visit.start_date == datetime(2024, 1, 15, 10, 30)
        assert visit.inout_cd == "I"

    def test_date_only_start(self):
        """Test a date-only start becomes midnight."""
        visit = VisitRecord.model_validate({"start": "2024-01-01"})
        assert visit.start_date == datetime(2024, 1, 1)


class TestObservationRecord:
    """Test observation value routing."""

    def test_numeric_value_inferred(self):
        """Test a numeric value without type goes to NVAL_NUM."""
        observation = ObservationRecord.model_validate({"CONCEPT_CD": "LOINC: 8867-4", "VALUE": "72.5"})
        assert observation.valtype_cd is ValueType.NUMERIC
        assert observation.nval_num == 72.5
        assert observation.tval_char is None
        assert observation.has_value()

    def test_text_value_with_type(self):
        """Test an explicit text type goes to TVAL_CHAR."""
        observation = ObservationRecord.model_validate({"CONCEPT_CD": "X", "VALTYPE_CD": "T", "VALUE": "positive"})
        assert observation.tval_char == "positive"
        assert observation.value == "positive"

    def test_date_value_normalised(self):
        """Test date values are stored as ISO dates in TVAL_CHAR."""
        observation = ObservationRecord.model_validate({"conceptCode": "X", "valueType": "d", "value": "01/31/2024"})
        assert observation.valtype_cd is ValueType.DATE
        assert observation.tval_char == "2024-01-31"

    def test_blob_value_serialised(self):
        """Test structured values go to the blob slot as JSON."""
        observation = ObservationRecord.model_validate({"CONCEPT_CD": "X", "VALTYPE_CD": "B", "VALUE": {"a": 1}})
        assert observation.observation_blob == '{"a": 1}'
        assert observation.has_value()

    def test_questionnaire_routes_to_blob(self):
        """Test questionnaire values use the blob slot."""
        observation = ObservationRecord.model_validate({"CONCEPT_CD": "Q", "VALTYPE_CD": "Q", "VALUE": [1, 2]})
        assert observation.observation_blob == "[1, 2]"

    def test_discriminant_without_value(self):
        """Test a numeric type with a non-numeric value has no value."""
        observation = ObservationRecord.model_validate({"CONCEPT_CD": "X", "VALTYPE_CD": "N", "VALUE": "abc"})
        assert observation.nval_num is None
        assert not observation.has_value()

    def test_type_inferred_from_populated_slot(self):
        """Test the discriminant is derived from an explicit slot."""
        observation = ObservationRecord.model_validate({"CONCEPT_CD": "X", "NVAL_NUM": "7"})
        assert observation.valtype_cd is ValueType.NUMERIC
        assert observation.nval_num == 7.0

    def test_provider_and_instance_defaults(self):
        """Test provider and instance defaults."""
        observation = ObservationRecord.model_validate({"CONCEPT_CD": "X", "VALUE": "1", "PROVIDER_ID": ""})
        assert observation.provider_id == "@"
        assert observation.instance_num == 1

    def test_invalid_valtype_rejected(self):
        """Test an unknown value-type code fails validation."""
        with pytest.raises(ValidationError):
            ObservationRecord.model_validate({"CONCEPT_CD": "X", "VALTYPE_CD": "Z"})


class TestImportStructure:
    """Test structure construction."""

    def test_create_import_structure_counts(self):
        """Test counts and patient ids are refreshed."""
        structure = create_import_structure(
            patients=[{"code": "P1"}, {"code": "P2"}],
            visits=[{"patientCode": "P1", "start": "2024-01-01"}],
            observations=[{"patientCode": "P1", "conceptCode": "X", "valueType": "N", "value": 72}],
            metadata={"title": "Test"},
        )
        assert structure.statistics.patient_count == 2
        assert structure.metadata.visit_count == 1
        assert structure.metadata.observation_count == 1
        assert structure.metadata.patient_ids == ["P1", "P2"]
        assert structure.data.observations[0].nval_num == 72.0

    def test_accepts_records(self):
        """Test record instances pass through unchanged."""
        patient = PatientRecord(patient_cd="P1")
        structure = create_import_structure(patients=[patient])
        assert structure.data.patients[0] is patient


class TestNormalisationHelpers:
    """Test value-level helpers."""

    def test_sex_codes(self):
        assert normalize_sex_code("Male") == "M"
        assert normalize_sex_code("2") == "F"
        assert normalize_sex_code("x") == "x"
        assert normalize_sex_code("") is None

    def test_inout_codes(self):
        assert normalize_inout_code("Emergency") == "E"
        assert normalize_inout_code("out") == "O"

    def test_parse_numeric(self):
        assert parse_numeric("3.5") == 3.5
        assert parse_numeric("NaN") is None
        assert parse_numeric(True) is None
        assert parse_numeric("abc") is None

    def test_infer_value_type(self):
        assert infer_value_type(5) == "N"
        assert infer_value_type("2024-01-15") == "D"
        assert infer_value_type('{"a": 1}') == "B"
        assert infer_value_type("hello") == "T"

    def test_parse_timestamp_converts_to_utc(self):
        """Test aware timestamps are converted to naive UTC."""
        assert parse_timestamp("2024-01-15T10:00:00+02:00") == datetime(2024, 1, 15, 8, 0)
        assert parse_timestamp("not a date") is None

    def test_parse_date_layouts(self):
        assert parse_date("15.01.2024") == date(2024, 1, 15)
        assert parse_date("2024/01/15") == date(2024, 1, 15)

    @pytest.mark.parametrize("value,expected", [
        ("50MB", 50 * 1024 * 1024),
        ("512 KB", 512 * 1024),
        ("1gb", 1024 ** 3),
        (1024, 1024),
    ])
    def test_parse_file_size(self, value, expected):
        assert parse_file_size(value) == expected

    def test_parse_file_size_invalid(self):
        with pytest.raises(ValueError):
            parse_file_size("lots")
