"""Unit tests for the CSV parser.

Tests cover:
- Variant detection and delimiter detection
- Two-header (variant A) grouping of patients, visits and observations
- Four-header (variant B) value types and units
- Structural errors and warnings
"""

import pytest

from clinical_import.adapters.parsers.csv_parser import (
    VARIANT_A,
    VARIANT_B,
    CSVParser,
    detect_delimiter,
    detect_variant,
    extract_comment_metadata,
    normalize_valtype,
)
from clinical_import.domain.enums import ImportFormat, ValueType


VARIANT_B_CSV = (
    "FIELD_NAME;PATIENT_CD;GENDER;VISIT_DATE;LOINC: 8480-6;NOTE\n"
    "VALTYPE_CD;T;T;D;numeric;T\n"
    "UNIT_CD;;;;mmHg;\n"
    "NAME_CHAR;Patient;Gender;Visit date;Systolic;Note\n"
    ";P010;F;2024-05-01;120;stable\n"
    ";P010;F;2024-05-02;118;\n"
)


@pytest.fixture
def parser():
    return CSVParser()


class TestHelpers:
    """Test module-level helpers."""

    def test_detect_variant(self):
        assert detect_variant(["FIELD_NAME;A;B", "VALTYPE_CD;T;T"]) == VARIANT_B
        assert detect_variant(["Patient,Sex", "PATIENT_CD,SEX_CD"]) == VARIANT_A

    @pytest.mark.parametrize("line,expected", [
        ("a,b,c", ","),
        ("a;b;c", ";"),
        ("a\tb\tc", "\t"),
        ("a|b|c", "|"),
        ("a,b", None),
    ])
    def test_detect_delimiter(self, line, expected):
        assert detect_delimiter(line) == expected

    def test_normalize_valtype(self):
        assert normalize_valtype("numeric") == "N"
        assert normalize_valtype("d") == "D"
        assert normalize_valtype("") is None
        assert normalize_valtype("weird") is None

    def test_comment_metadata(self):
        metadata = extract_comment_metadata(["# Export Date: 2024-01-01", "# Version: 2", "# Ward export description"])
        assert metadata["export_date"] == "2024-01-01"
        assert metadata["version"] == "2"
        assert metadata["description"] == "Ward export description"


class TestVariantA:
    """Test the two-header export layout."""

    def test_groups_rows_by_patient(self, parser, variant_a_csv):
        result = parser.parse(variant_a_csv, {"filename": "export.csv"})
        assert result.is_success(), result.error_details

        structure = result.value
        patients = structure.data.patients
        assert [p.patient_cd for p in patients] == ["P001", "P002"]
        assert [p.patient_num for p in patients] == ["1", "2"]
        assert patients[0].sex_cd == "F"

        visits = structure.data.visits
        assert [v.encounter_num for v in visits] == ["0", "1", "2"]
        assert [v.patient_cd for v in visits] == ["P001", "P001", "P002"]

        observations = structure.data.observations
        assert len(observations) == 5
        heart_rate = observations[0]
        assert heart_rate.concept_cd == "LOINC: 8867-4"
        assert heart_rate.valtype_cd is ValueType.NUMERIC
        assert heart_rate.nval_num == 72.0
        assert heart_rate.encounter_num == "0"
        diagnosis = observations[1]
        assert diagnosis.valtype_cd is ValueType.TEXT
        assert diagnosis.tval_char == "I10"

    def test_metadata(self, parser, variant_a_csv):
        metadata = parser.parse(variant_a_csv, {"filename": "export.csv"}).value.metadata
        assert metadata.format == ImportFormat.CSV.value
        assert metadata.export_date == "2024-03-01"
        assert metadata.source == "Ward export"
        assert metadata.filename == "export.csv"
        assert metadata.variant == VARIANT_A

    def test_patient_level_observations_without_start_date(self, parser):
        content = "Patient,Weight\nPATIENT_CD,LOINC: 29463-7\nP1,70\n"
        structure = parser.parse(content).value
        assert structure.data.visits == []
        assert structure.data.observations[0].encounter_num is None
        assert structure.data.observations[0].patient_num == "1"
        assert [w["code"] for w in structure.metadata.warnings] == ["MISSING_RECOMMENDED_FIELD"]

    def test_quoted_values(self, parser):
        content = 'Patient,Comment,Visit\nPATIENT_CD,NOTE,START_DATE\nP1,"fine, stable",2024-01-01\n'
        result = parser.parse(content)
        assert result.is_success(), result.error_details
        assert result.value.data.observations[0].tval_char == "fine, stable"


class TestVariantB:
    """Test the four-header condensed layout."""

    def test_types_and_units_from_headers(self, parser):
        result = parser.parse(VARIANT_B_CSV)
        assert result.is_success(), result.error_details

        structure = result.value
        assert structure.metadata.variant == VARIANT_B
        assert [p.patient_cd for p in structure.data.patients] == ["P010"]
        assert structure.data.patients[0].sex_cd == "F"
        assert len(structure.data.visits) == 2

        systolic = [o for o in structure.data.observations if o.concept_cd == "LOINC: 8480-6"]
        assert [o.nval_num for o in systolic] == [120.0, 118.0]
        assert all(o.unit_cd == "mmHg" for o in systolic)
        note = [o for o in structure.data.observations if o.concept_cd == "NOTE"]
        assert note[0].tval_char == "stable"


class TestStructuralErrors:
    """Test structural failures are reported as issues."""

    def test_missing_headers(self, parser):
        result = parser.parse("PATIENT_CD,SEX_CD\n")
        assert result.is_failure()
        assert result.error_type == "MISSING_HEADERS"

    def test_no_data_rows(self, parser):
        result = parser.parse("Patient,Sex\nPATIENT_CD,SEX_CD\n")
        assert result.error_type == "NO_DATA_ROWS"

    def test_row_length_mismatch(self, parser):
        content = "Patient,Sex,Visit\nPATIENT_CD,SEX_CD,START_DATE\nP1,F\nP2,M,2024-01-01\n"
        result = parser.parse(content)
        assert result.error_type == "ROW_LENGTH_MISMATCH"
        issue = result.error_details["issues"][0]
        assert issue["position"] == 0
        assert issue["details"]["row"] == 1

    def test_header_mismatch(self, parser):
        content = "Patient,Sex\nPATIENT_CD,SEX_CD,START_DATE\nP1,F\n"
        result = parser.parse(content)
        assert "HEADER_MISMATCH" in [i["code"] for i in result.error_details["issues"]]

    def test_parser_is_reusable(self, parser, variant_a_csv):
        """Test warnings of a previous parse do not leak into the next."""
        parser.parse("Patient,Weight\nPATIENT_CD,LOINC: 29463-7\nP1,70\n")
        structure = parser.parse(variant_a_csv).value
        assert structure.metadata.warnings == []
