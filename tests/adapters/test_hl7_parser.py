"""Unit tests for the HL7 parser (FHIR Composition and CDA).

Security Impact:
    - Verifies XML entity declarations are rejected by defusedxml
"""

import json

import pytest

from clinical_import.adapters.parsers.hl7_parser import (
    HL7Parser,
    determine_category,
    determine_visit_type,
)
from clinical_import.domain.enums import ValueType


def composition(sections, **extra):
    return json.dumps({"resourceType": "Composition", "title": "Discharge", "date": "2024-03-01",
                       "section": sections, **extra})


PATIENT_SECTION = {
    "title": "Patient Information",
    "entry": [
        {"title": "Patient: P100", "value": "P100"},
        {"title": "Gender", "value": "female"},
        {"title": "Age", "value": 54},
        {"title": "Patient: P200", "value": "P200"},
        {"title": "Gender", "value": "male"},
    ],
}

CDA_DOCUMENT = """<?xml version="1.0" encoding="UTF-8"?>
<ClinicalDocument xmlns="urn:hl7-org:v3" xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance">
  <title>Lab Report</title>
  <effectiveTime value="20240301"/>
  <recordTarget>
    <patientRole>
      <id root="2.16.840.1.113883.19.5" extension="CDA-001"/>
      <patient>
        <administrativeGenderCode code="F"/>
        <birthTime value="19800515"/>
      </patient>
    </patientRole>
  </recordTarget>
  <componentOf>
    <encompassingEncounter>
      <code code="AMB"/>
      <effectiveTime>
        <low value="20240301080000"/>
        <high value="20240301100000"/>
      </effectiveTime>
      <location>
        <healthCareFacility>
          <location><name>General Clinic</name></location>
        </healthCareFacility>
      </location>
    </encompassingEncounter>
  </componentOf>
  <component>
    <structuredBody>
      <component>
        <section>
          <entry>
            <observation>
              <code code="2947-0" codeSystemName="LID" displayName="Sodium"/>
              <value xsi:type="PQ" value="140" unit="mmol/L"/>
            </observation>
          </entry>
          <entry>
            <observation>
              <code code="47965005" codeSystemName="SCTID" displayName="Diagnosis"/>
              <value xsi:type="CD" code="44054006" displayName="Diabetes"/>
            </observation>
          </entry>
          <entry>
            <observation>
              <code code="21612-7" codeSystemName="LID"/>
              <value xsi:type="TS" value="20240215"/>
            </observation>
          </entry>
          <entry>
            <observation>
              <value xsi:type="ST">orphan</value>
            </observation>
          </entry>
        </section>
      </component>
    </structuredBody>
  </component>
</ClinicalDocument>
"""


@pytest.fixture
def parser():
    return HL7Parser()


class TestHelpers:
    """Test category and visit-type mapping."""

    @pytest.mark.parametrize("title,expected", [
        ("CUSTOM: QUESTIONNAIRE", "SURVEY_BEST"),
        ("LID: 2947-0", "LAB"),
        ("SCTID: 47965005", "DIAGNOSIS"),
        ("SCTID: 60621009", "VITAL_SIGNS"),
        ("Heart rate", "CLINICAL"),
        (None, "CLINICAL"),
    ])
    def test_determine_category(self, title, expected):
        assert determine_category(title) == expected

    @pytest.mark.parametrize("location,expected", [
        ("City Hospital", "I"),
        ("Outpatient Clinic", "O"),
        ("Emergency Room", "E"),
        ("Home", "O"),
        (None, "O"),
    ])
    def test_determine_visit_type(self, location, expected):
        assert determine_visit_type(location) == expected


class TestFhirComposition:
    """Test FHIR Composition parsing."""

    def test_patients_visits_and_observations(self, parser):
        content = composition([
            PATIENT_SECTION,
            {"title": "Visit 1", "entry": [
                {"title": "Visit Date", "value": "2024-02-01"},
                {"title": "Location", "value": "City Hospital"},
                {"title": "Patient", "value": "P200"},
            ]},
            {"title": "Vitals", "entry": [
                {"title": "LID: 8867-4", "value": 72, "unit": "/min"},
                {"title": "Comment", "value": "stable"},
            ]},
        ], author=[{"display": "Dr. Who"}])
        result = parser.parse(content, {"filename": "discharge.json"})
        assert result.is_success(), result.error_details

        structure = result.value
        assert [p.patient_cd for p in structure.data.patients] == ["P100", "P200"]
        assert [p.patient_num for p in structure.data.patients] == ["1", "2"]
        assert structure.data.patients[0].age_in_years == 54

        visit = structure.data.visits[0]
        assert visit.encounter_num == "0"
        assert visit.patient_cd == "P200"
        assert visit.inout_cd == "I"
        assert visit.location_cd == "City Hospital"

        heart_rate, comment = structure.data.observations
        assert heart_rate.patient_cd == "P200"
        assert heart_rate.encounter_num == "0"
        assert heart_rate.valtype_cd is ValueType.NUMERIC
        assert heart_rate.nval_num == 72.0
        assert heart_rate.unit_cd == "/min"
        assert comment.valtype_cd is ValueType.TEXT
        assert comment.tval_char == "stable"
        assert structure.metadata.author == "Dr. Who"
        assert structure.metadata.title == "Discharge"

    def test_observations_before_any_visit_use_first_patient(self, parser):
        content = composition([PATIENT_SECTION, {"title": "History", "entry": [{"title": "Smoker", "value": "no"}]}])
        observation = parser.parse(content).value.data.observations[0]
        assert observation.patient_cd == "P100"
        assert observation.encounter_num is None
        assert observation.start_date is not None

    def test_visit_for_unknown_patient_is_skipped(self, parser):
        content = composition([
            PATIENT_SECTION,
            {"title": "Visit 1", "entry": [{"title": "Patient", "value": "NOBODY"}]},
        ])
        structure = parser.parse(content).value
        assert structure.data.visits == []
        assert [w["code"] for w in structure.metadata.warnings] == ["MISSING_PATIENT_INFO"]

    def test_bundle_is_unwrapped(self, parser):
        bundle = {
            "resourceType": "Bundle",
            "entry": [{"resource": {"resourceType": "Composition", "section": [PATIENT_SECTION]}}],
        }
        result = parser.parse(json.dumps(bundle))
        assert result.is_success()
        assert len(result.value.data.patients) == 2

    @pytest.mark.parametrize("content,code", [
        ('{"resourceType": "Composition"', "HL7_IMPORT_ERROR"),
        ('{"resourceType": "Patient"}', "INVALID_RESOURCE_TYPE"),
        ('{"resourceType": "Composition", "section": {}}', "MISSING_SECTIONS"),
    ])
    def test_error_codes(self, parser, content, code):
        result = parser.parse(content)
        assert result.is_failure()
        assert result.error_type == code


class TestCdaDocument:
    """Test CDA ClinicalDocument parsing."""

    def test_clinical_document(self, parser):
        result = parser.parse(CDA_DOCUMENT)
        assert result.is_success(), result.error_details

        structure = result.value
        patient = structure.data.patients[0]
        assert patient.patient_cd == "CDA-001"
        assert patient.sex_cd == "F"
        assert str(patient.birth_date) == "1980-05-15"

        visit = structure.data.visits[0]
        assert visit.inout_cd == "O"
        assert visit.location_cd == "General Clinic"
        assert visit.start_date.hour == 8
        assert visit.end_date.hour == 10

        sodium, diagnosis, measured = structure.data.observations
        assert sodium.concept_cd == "LID: 2947-0"
        assert sodium.nval_num == 140.0
        assert sodium.unit_cd == "mmol/L"
        assert sodium.category_char == "LAB"
        assert diagnosis.valtype_cd is ValueType.SELECTION
        assert diagnosis.tval_char == "Diabetes"
        assert measured.valtype_cd is ValueType.DATE
        assert measured.tval_char == "2024-02-15"
        assert all(o.encounter_num == "0" for o in structure.data.observations)

        assert structure.metadata.title == "Lab Report"
        assert [w["code"] for w in structure.metadata.warnings] == ["MISSING_CONCEPT_CODE"]

    def test_not_a_clinical_document(self, parser):
        result = parser.parse("<Other></Other>")
        assert result.error_type == "INVALID_RESOURCE_TYPE"

    def test_missing_record_target(self, parser):
        result = parser.parse('<ClinicalDocument xmlns="urn:hl7-org:v3"></ClinicalDocument>')
        assert result.error_type == "MISSING_SECTIONS"

    def test_malformed_xml(self, parser):
        result = parser.parse("<ClinicalDocument><unclosed></ClinicalDocument>")
        assert result.error_type == "HL7_IMPORT_ERROR"

    def test_entity_declarations_rejected(self, parser):
        content = (
            '<?xml version="1.0"?><!DOCTYPE doc [<!ENTITY boom "boom">]>'
            "<ClinicalDocument>&boom;</ClinicalDocument>"
        )
        result = parser.parse(content)
        assert result.is_failure()
        assert result.error_type == "HL7_IMPORT_ERROR"
        assert "Unsafe XML" in result.error
