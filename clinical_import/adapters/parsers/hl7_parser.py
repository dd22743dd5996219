"""HL7 Parser.

This adapter implements the ParserPort contract for two HL7 encodings:

    FHIR Composition (JSON):
        The "Patient Information" section lists patients (``Patient: <id>``
        entries followed by ``Gender`` / ``Age`` / ``Birth Date``). Sections
        titled ``Visit ...`` describe visits (``Visit Date``, ``Location``,
        optional ``Patient``). Every other section holds observations that
        belong to the most recent visit section. A Bundle whose entries
        contain a Composition is unwrapped first.

    CDA ClinicalDocument (XML):
        ``recordTarget`` gives the patient, ``componentOf/encompassingEncounter``
        the visit, and every ``observation`` element an observation. Value
        types follow the CDA ``xsi:type`` of the value: PQ numeric with unit,
        CD/CE selection, TS date, anything else text.

Security Impact:
    - XML is parsed with defusedxml to block entity expansion and external
      entity attacks

Architecture:
    - Implements ParserPort (Hexagonal Architecture)
    - Visits get ordinal temporary ids; observations reference them
"""

import json
import logging
from typing import Any, Dict, Optional
from xml.etree.ElementTree import Element

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as SafeET
from defusedxml.ElementTree import ParseError as SafeParseError

from clinical_import.adapters.parsers.base import BaseParser
from clinical_import.domain.enums import EntityType, ImportFormat, InOutCode, ValueType
from clinical_import.domain.import_model import ImportStructure
from clinical_import.domain.ports import Result, TransformationError

logger = logging.getLogger(__name__)

SOURCESYSTEM = "HL7_IMPORT"
ACTIVE_STATUS = "SCTID: 55561003"
ALIVE_STATUS = "SCTID: 438949009"
XSI_TYPE = "{http://www.w3.org/2001/XMLSchema-instance}type"

# (substrings that must all occur in the lower-cased title, category)
CATEGORY_RULES = (
    (("questionnaire",), "SURVEY_BEST"),
    (("custom",), "SURVEY_BEST"),
    (("lid:", "72172"), "SURVEY_BEST"),
    (("sctid:", "47965005"), "DIAGNOSIS"),
    (("lid:", "2947"), "LAB"),
    (("lid:", "6298"), "LAB"),
    (("sctid:", "399423000"), "ADMINISTRATIVE"),
    (("sctid:", "60621009"), "VITAL_SIGNS"),
    (("lid:", "52418"), "MEDICATION"),
    (("lid:", "74287"), "SOCIAL_HISTORY"),
    (("sctid:", "262188008"), "ASSESSMENT"),
)

ENCOUNTER_CLASS_CODES = {
    "IMP": InOutCode.INPATIENT.value,
    "ACUTE": InOutCode.INPATIENT.value,
    "AMB": InOutCode.OUTPATIENT.value,
    "EMER": InOutCode.EMERGENCY.value,
}


def determine_category(title: Optional[str]) -> str:
    """Derive an observation category from its concept title."""
    if not title:
        return "CLINICAL"
    lowered = title.lower()
    for needles, category in CATEGORY_RULES:
        if all(needle in lowered for needle in needles):
            return category
    return "CLINICAL"


def determine_visit_type(location: Optional[str]) -> str:
    """Map a location description to I, O or E (outpatient by default)."""
    if not location:
        return InOutCode.OUTPATIENT.value
    lowered = location.lower()
    if "hospital" in lowered:
        return InOutCode.INPATIENT.value
    if "clinic" in lowered:
        return InOutCode.OUTPATIENT.value
    if "emergency" in lowered:
        return InOutCode.EMERGENCY.value
    return InOutCode.OUTPATIENT.value


def _local(tag: Any) -> str:
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def _child(element: Optional[Element], *path: str) -> Optional[Element]:
    """Walk direct children by local name, ignoring namespaces."""
    current = element
    for name in path:
        if current is None:
            return None
        current = next((c for c in current if _local(c.tag) == name), None)
    return current


def _descendants(element: Element, name: str) -> list[Element]:
    return [e for e in element.iter() if _local(e.tag) == name]


class HL7Parser(BaseParser):
    """Parser for HL7 FHIR Composition JSON and CDA XML documents."""

    format = ImportFormat.HL7
    name = "hl7"

    def can_parse(self, content: str, filename: Optional[str] = None) -> bool:
        text = (content or "").strip()
        return "<ClinicalDocument" in text or '"resourceType"' in text

    def parse(self, content: str, options: Optional[Dict[str, Any]] = None) -> Result[ImportStructure]:
        """Parse an HL7 document.

        Parameters:
            content: FHIR JSON or CDA XML text
            options: Optional "filename"

        Returns:
            Result[ImportStructure]: Failure codes HL7_IMPORT_ERROR,
                INVALID_RESOURCE_TYPE, MISSING_SECTIONS
        """
        self.reset()
        options = options or {}
        text = content.strip()

        try:
            if text.startswith("<"):
                return self._parse_cda(text, options)
            return self._parse_fhir(text, options)
        except TransformationError as e:
            return self.transformation_failure("HL7_IMPORT_ERROR", e)

    # ------------------------------------------------------------------
    # FHIR Composition
    # ------------------------------------------------------------------

    def _parse_fhir(self, text: str, options: Dict[str, Any]) -> Result[ImportStructure]:
        try:
            document = json.loads(text)
        except ValueError:
            return self.failure([self.error("HL7_IMPORT_ERROR", "Failed to parse HL7 JSON content", entity=EntityType.FILE)])

        document = self._unwrap_bundle(document)
        if not isinstance(document, dict) or document.get("resourceType") != "Composition":
            return self.failure([self.error(
                "INVALID_RESOURCE_TYPE", "Expected FHIR Composition resource type", entity=EntityType.FILE
            )])

        sections = document.get("section")
        if not isinstance(sections, list):
            return self.failure([self.error("MISSING_SECTIONS", "HL7 document missing sections array", entity=EntityType.FILE)])

        patients, visits, observations = self._extract_sections(sections, document.get("date"))
        authors = document.get("author") or [{}]
        structure = self.build_structure(patients, visits, observations, metadata={
            "title": document.get("title") or "HL7 FHIR Composition Import",
            "source": "HL7 FHIR Composition",
            "author": authors[0].get("display") if isinstance(authors[0], dict) else None,
            "export_date": document.get("date"),
            "filename": options.get("filename"),
        })
        return self.success(structure)

    @staticmethod
    def _unwrap_bundle(document: Any) -> Any:
        if isinstance(document, dict) and document.get("resourceType") == "Bundle":
            for entry in document.get("entry") or []:
                resource = entry.get("resource") if isinstance(entry, dict) else None
                if isinstance(resource, dict) and resource.get("resourceType") == "Composition":
                    return resource
        return document

    def _extract_sections(self, sections: list, document_date: Optional[str]) -> tuple[list, list, list]:
        patients: list[Dict[str, Any]] = []
        visits: list[Dict[str, Any]] = []
        observations: list[Dict[str, Any]] = []
        current_visit: Optional[Dict[str, Any]] = None

        for section in sections:
            entries = section.get("entry") if isinstance(section, dict) else None
            if not isinstance(entries, list):
                continue
            entries = [e for e in entries if isinstance(e, dict)]
            title = section.get("title") or ""

            if title == "Patient Information":
                patients.extend(self._patients_from_entries(entries, start=len(patients) + 1))
            elif title.startswith("Visit "):
                visit = self._visit_from_entries(entries, patients, len(visits))
                if visit is not None:
                    visits.append(visit)
                    current_visit = visit
            else:
                observations.extend(self._observations_from_entries(entries, patients, current_visit, document_date))

        return patients, visits, observations

    @staticmethod
    def _patients_from_entries(entries: list, start: int) -> list[Dict[str, Any]]:
        patients = []
        current = None
        for entry in entries:
            title = entry.get("title") or ""
            value = entry.get("value")
            if title.startswith("Patient: "):
                current = {
                    "PATIENT_NUM": str(start + len(patients)),
                    "PATIENT_CD": value if value not in (None, "") else title[len("Patient: "):],
                    "VITAL_STATUS_CD": ALIVE_STATUS,
                    "SOURCESYSTEM_CD": SOURCESYSTEM,
                }
                patients.append(current)
            elif current is not None and title == "Gender":
                current["SEX_CD"] = value
            elif current is not None and title == "Age":
                current["AGE_IN_YEARS"] = value
            elif current is not None and title in ("Birth Date", "Date of Birth"):
                current["BIRTH_DATE"] = value
        return patients

    def _visit_from_entries(self, entries: list, patients: list, ordinal: int) -> Optional[Dict[str, Any]]:
        details = {entry.get("title"): entry.get("value") for entry in entries}
        patient = patients[0] if patients else None
        if details.get("Patient") is not None:
            patient = next((p for p in patients if p["PATIENT_CD"] == str(details["Patient"])), None)

        if patient is None:
            self.warn(
                "MISSING_PATIENT_INFO",
                "Visit section without a resolvable patient was skipped",
                entity=EntityType.VISIT,
                position=ordinal,
                details={"patient": details.get("Patient")},
            )
            return None

        location = details.get("Location")
        return {
            "ENCOUNTER_NUM": str(ordinal),
            "PATIENT_CD": patient["PATIENT_CD"],
            "PATIENT_NUM": patient["PATIENT_NUM"],
            "ACTIVE_STATUS_CD": ACTIVE_STATUS,
            "START_DATE": details.get("Visit Date"),
            "INOUT_CD": determine_visit_type(location),
            "LOCATION_CD": location or SOURCESYSTEM,
            "SOURCESYSTEM_CD": SOURCESYSTEM,
        }

    def _observations_from_entries(
        self,
        entries: list,
        patients: list,
        visit: Optional[Dict[str, Any]],
        document_date: Optional[str],
    ) -> list[Dict[str, Any]]:
        observations = []
        if visit is not None:
            owner = {"PATIENT_CD": visit["PATIENT_CD"], "PATIENT_NUM": visit["PATIENT_NUM"]}
        elif patients:
            owner = {"PATIENT_CD": patients[0]["PATIENT_CD"], "PATIENT_NUM": patients[0]["PATIENT_NUM"]}
        else:
            if entries:
                self.warn("MISSING_PATIENT_INFO", "Observation section without patient was skipped",
                          entity=EntityType.OBSERVATION)
            return observations

        for entry in entries:
            title = entry.get("title")
            if title in ("Visit Date", "Location") or not title:
                continue
            value = entry.get("value")
            record = {
                **owner,
                "ENCOUNTER_NUM": visit["ENCOUNTER_NUM"] if visit else None,
                "CONCEPT_CD": title,
                "CATEGORY_CHAR": determine_category(title),
                "START_DATE": (visit or {}).get("START_DATE") or document_date,
                "SOURCESYSTEM_CD": SOURCESYSTEM,
                "UNIT_CD": entry.get("unit"),
            }
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                record.update({"VALTYPE_CD": ValueType.NUMERIC.value, "NVAL_NUM": value})
            else:
                record.update({"VALTYPE_CD": ValueType.TEXT.value, "TVAL_CHAR": None if value is None else str(value)})
            observations.append(record)
        return observations

    # ------------------------------------------------------------------
    # CDA ClinicalDocument
    # ------------------------------------------------------------------

    def _parse_cda(self, text: str, options: Dict[str, Any]) -> Result[ImportStructure]:
        try:
            root = SafeET.fromstring(text)
        except SafeParseError as e:
            return self.failure([self.error("HL7_IMPORT_ERROR", f"Failed to parse HL7 XML content: {e}", entity=EntityType.FILE)])
        except DefusedXmlException as e:
            logger.warning(f"Rejected unsafe XML construct in HL7 document: {e}")
            return self.failure([self.error("HL7_IMPORT_ERROR", f"Unsafe XML content rejected: {e}", entity=EntityType.FILE)])

        if _local(root.tag) != "ClinicalDocument":
            return self.failure([self.error(
                "INVALID_RESOURCE_TYPE", "Expected CDA ClinicalDocument root element", entity=EntityType.FILE
            )])

        patient = self._cda_patient(root)
        if patient is None:
            return self.failure([self.error(
                "MISSING_SECTIONS", "CDA document has no recordTarget patient", entity=EntityType.FILE
            )])

        visit = self._cda_visit(root, patient)
        observations = [
            self._cda_observation(element, patient, visit)
            for element in _descendants(root, "observation")
        ]

        title = _child(root, "title")
        effective = _child(root, "effectiveTime")
        structure = self.build_structure(
            [patient],
            [visit] if visit else [],
            [o for o in observations if o is not None],
            metadata={
                "title": (title.text or "").strip() if title is not None and title.text else "HL7 CDA Import",
                "source": "HL7 CDA ClinicalDocument",
                "export_date": effective.get("value") if effective is not None else None,
                "filename": options.get("filename"),
            },
        )
        return self.success(structure)

    @staticmethod
    def _cda_patient(root: Element) -> Optional[Dict[str, Any]]:
        role = _child(root, "recordTarget", "patientRole")
        if role is None:
            return None
        identifier = _child(role, "id")
        patient_cd = None
        if identifier is not None:
            patient_cd = identifier.get("extension") or identifier.get("root")
        person = _child(role, "patient")
        gender = _child(person, "administrativeGenderCode")
        birth = _child(person, "birthTime")
        return {
            "PATIENT_NUM": "1",
            "PATIENT_CD": patient_cd,
            "SEX_CD": gender.get("code") if gender is not None else None,
            "BIRTH_DATE": birth.get("value") if birth is not None else None,
            "VITAL_STATUS_CD": ALIVE_STATUS,
            "SOURCESYSTEM_CD": SOURCESYSTEM,
        }

    @staticmethod
    def _cda_visit(root: Element, patient: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        encounter = _child(root, "componentOf", "encompassingEncounter")
        if encounter is None:
            return None
        effective = _child(encounter, "effectiveTime")
        start = end = None
        if effective is not None:
            low, high = _child(effective, "low"), _child(effective, "high")
            start = low.get("value") if low is not None else effective.get("value")
            end = high.get("value") if high is not None else None

        location = None
        place = _child(encounter, "location", "healthCareFacility")
        if place is not None:
            name = _child(place, "location", "name")
            code = _child(place, "code")
            if name is not None and name.text:
                location = name.text.strip()
            elif code is not None:
                location = code.get("displayName") or code.get("code")

        code = _child(encounter, "code")
        class_code = code.get("code", "").upper() if code is not None else ""
        return {
            "ENCOUNTER_NUM": "0",
            "PATIENT_CD": patient["PATIENT_CD"],
            "PATIENT_NUM": patient["PATIENT_NUM"],
            "ACTIVE_STATUS_CD": ACTIVE_STATUS,
            "START_DATE": start,
            "END_DATE": end,
            "INOUT_CD": ENCOUNTER_CLASS_CODES.get(class_code) or determine_visit_type(location),
            "LOCATION_CD": location or SOURCESYSTEM,
            "SOURCESYSTEM_CD": SOURCESYSTEM,
        }

    def _cda_observation(
        self, element: Element, patient: Dict[str, Any], visit: Optional[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        code = _child(element, "code")
        if code is None or not (code.get("code") or code.get("displayName")):
            self.warn("MISSING_CONCEPT_CODE", "CDA observation without code was skipped", entity=EntityType.OBSERVATION)
            return None

        system = code.get("codeSystemName")
        concept = code.get("code") or code.get("displayName")
        concept_cd = f"{system}: {concept}" if system else concept
        effective = _child(element, "effectiveTime")
        record = {
            "PATIENT_CD": patient["PATIENT_CD"],
            "PATIENT_NUM": patient["PATIENT_NUM"],
            "ENCOUNTER_NUM": visit["ENCOUNTER_NUM"] if visit else None,
            "CONCEPT_CD": concept_cd,
            "CATEGORY_CHAR": determine_category(concept_cd),
            "START_DATE": (effective.get("value") if effective is not None else None) or (visit or {}).get("START_DATE"),
            "SOURCESYSTEM_CD": SOURCESYSTEM,
        }

        value = _child(element, "value")
        if value is None:
            record["VALTYPE_CD"] = ValueType.TEXT.value
            record["TVAL_CHAR"] = code.get("displayName") or concept
            return record

        value_type = (value.get(XSI_TYPE) or "").split(":")[-1].upper()
        if value_type == "PQ":
            record.update({"VALTYPE_CD": ValueType.NUMERIC.value, "NVAL_NUM": value.get("value"), "UNIT_CD": value.get("unit")})
        elif value_type in ("CD", "CE", "CV", "CO"):
            record.update({"VALTYPE_CD": ValueType.SELECTION.value,
                           "TVAL_CHAR": value.get("displayName") or value.get("code")})
        elif value_type == "TS":
            record.update({"VALTYPE_CD": ValueType.DATE.value, "VALUE": value.get("value")})
        else:
            text = value.get("value") or (value.text or "").strip() or None
            record.update({"VALTYPE_CD": ValueType.TEXT.value, "TVAL_CHAR": text})
        return record
