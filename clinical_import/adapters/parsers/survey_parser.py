"""HTML Survey Parser.

Survey result pages embed their data as JSON inside the HTML, either as a
``window.surveyData = {...};`` style assignment or as a bare object inside a
``<script>`` block. The payload may be flat or wrap its content in a ``cda``
object:

    {"patient": {...}, "questionnaire": {...}, "responses": [...], "date": ...}
    {"cda": {"patient": {...}, "section": [{"entry": [...]}]}}

One patient, one outpatient visit and one observation per response are
produced. When the payload names a questionnaire a ``Q`` summary observation
carrying the whole questionnaire result is added.

Security Impact:
    - Script content is only decoded as JSON, never evaluated
    - The page itself is never rendered or fetched from

Architecture:
    - Implements ParserPort (Hexagonal Architecture)
    - Registered for ImportFormat.HTML
"""

import json
import logging
import re
from datetime import date
from typing import Any, Dict, Iterator, Optional

from clinical_import.adapters.parsers.base import BaseParser
from clinical_import.domain.enums import EntityType, ImportFormat, InOutCode, ValueType
from clinical_import.domain.import_model import ImportStructure
from clinical_import.domain.ports import Result, TransformationError
from clinical_import.domain.utils import is_date_like, is_numeric

logger = logging.getLogger(__name__)

SOURCESYSTEM = "SURVEY_SYSTEM"
SURVEY_CATEGORY = "SURVEY_BEST"
QUESTIONNAIRE_CONCEPT = "CUSTOM: QUESTIONNAIRE"
SURVEY_LOCATION = "OUTPATIENT"

SURVEY_KEYS = ("questionnaire", "survey", "assessment", "responses", "answers", "section")
PAYLOAD_KEYS = SURVEY_KEYS + ("cda", "patient", "subject")

_SCRIPT_PATTERN = re.compile(r"<script[^>]*>(.*?)</script>", re.IGNORECASE | re.DOTALL)
_ASSIGNMENT_PATTERN = re.compile(r"window\.(?:questionnaire|survey|cda)Data\s*=\s*", re.IGNORECASE)
_TITLE_PATTERN = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)
_NUMERIC_CODE = re.compile(r"^\d+$")

_decoder = json.JSONDecoder()


def _json_objects(text: str) -> Iterator[Dict[str, Any]]:
    """Yield every JSON object that starts at a ``{`` in text, outermost first."""
    position = text.find("{")
    while position != -1:
        try:
            obj, end = _decoder.raw_decode(text, position)
        except ValueError:
            position = text.find("{", position + 1)
            continue
        if isinstance(obj, dict):
            yield obj
        position = text.find("{", end)


def _is_payload(obj: Dict[str, Any]) -> bool:
    return any(key in obj for key in PAYLOAD_KEYS)


def extract_survey_payload(html: str) -> Optional[Dict[str, Any]]:
    """Find the embedded survey JSON in an HTML page.

    ``window.*Data`` assignments are tried first, then JSON objects inside
    script blocks, then any JSON object in the page mentioning ``"cda"``.

    Returns:
        The decoded payload, or None if nothing recognisable is embedded
    """
    for match in _ASSIGNMENT_PATTERN.finditer(html):
        try:
            obj, _ = _decoder.raw_decode(html, match.end())
        except ValueError:
            continue
        if isinstance(obj, dict):
            return obj

    for script in _SCRIPT_PATTERN.findall(html):
        for obj in _json_objects(script):
            if _is_payload(obj):
                return obj

    if '"cda"' in html:
        for obj in _json_objects(html):
            if "cda" in obj:
                return obj
    return None


def flatten_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Merge a nested ``cda`` object into the top level; top-level keys win."""
    nested = payload.get("cda")
    if not isinstance(nested, dict):
        return payload
    merged = dict(nested)
    merged.update({k: v for k, v in payload.items() if k != "cda" and v is not None})
    return merged


def _responses(payload: Dict[str, Any]) -> list:
    for key in ("responses", "answers"):
        if isinstance(payload.get(key), list):
            return payload[key]
    sections = payload.get("section")
    if isinstance(sections, list) and sections and isinstance(sections[0], dict):
        entries = sections[0].get("entry")
        if isinstance(entries, list):
            return entries
    questionnaire = payload.get("questionnaire")
    if isinstance(questionnaire, dict) and isinstance(questionnaire.get("responses"), list):
        return questionnaire["responses"]
    return []


def response_concept(response: Dict[str, Any], index: int) -> str:
    """Concept code of a response; bare numeric codes are SNOMED CT ids."""
    code = response.get("code")
    concept = None
    if isinstance(code, str) and code.strip():
        concept = code.strip()
    elif response.get("questionCode"):
        concept = str(response["questionCode"])
    elif isinstance(code, list) and code and isinstance(code[0], dict):
        coding = code[0].get("coding") or [{}]
        concept = coding[0].get("code") if isinstance(coding[0], dict) else None

    if not concept:
        return f"SURVEY_Q_{index + 1}"
    if _NUMERIC_CODE.match(str(concept)):
        return f"SCTID: {concept}"
    return str(concept)


def response_value(response: Dict[str, Any]) -> tuple[Optional[str], Any]:
    """Value type and value of a response answer."""
    value = next(
        (response[k] for k in ("answer", "response", "value") if response.get(k) not in (None, "")),
        None,
    )
    if value is None:
        return ValueType.TEXT.value, None
    if isinstance(value, bool):
        return ValueType.TEXT.value, "Yes" if value else "No"
    if isinstance(value, (int, float)):
        return ValueType.NUMERIC.value, value
    if isinstance(value, (dict, list)):
        return ValueType.BLOB.value, json.dumps(value)
    text = str(value)
    if is_numeric(text):
        return ValueType.NUMERIC.value, text
    if is_date_like(text):
        return ValueType.DATE.value, text
    return ValueType.TEXT.value, text


class SurveyParser(BaseParser):
    """Parser for HTML survey result pages with embedded JSON."""

    format = ImportFormat.HTML
    name = "survey"

    def can_parse(self, content: str, filename: Optional[str] = None) -> bool:
        return extract_survey_payload(content or "") is not None

    def parse(self, content: str, options: Optional[Dict[str, Any]] = None) -> Result[ImportStructure]:
        """Parse an HTML survey page.

        Parameters:
            content: Raw HTML text
            options: Optional "filename"

        Returns:
            Result[ImportStructure]: Failure codes NO_CDA_FOUND,
                NO_SURVEY_RESPONSES, SURVEY_IMPORT_ERROR
        """
        self.reset()
        options = options or {}

        payload = extract_survey_payload(content)
        if payload is None:
            return self.failure([self.error("NO_CDA_FOUND", "No CDA data found in HTML content", entity=EntityType.FILE)])

        survey = flatten_payload(payload)
        issues = self._validate(survey)
        if issues:
            return self.failure(issues)

        try:
            patient = self._patient(survey)
            visit = self._visit(survey, patient)
            observations = self._observations(survey, patient, visit)
            structure = self.build_structure(
                [patient] if patient else [],
                [visit],
                observations,
                metadata=self._metadata(content, survey, options),
            )
        except TransformationError as e:
            return self.transformation_failure("SURVEY_IMPORT_ERROR", e)
        return self.success(structure)

    def _validate(self, survey: Dict[str, Any]) -> list:
        has_survey = any(survey.get(key) for key in SURVEY_KEYS)
        if not has_survey:
            self.warn(
                "NO_SURVEY_DATA_DETECTED",
                "Embedded data does not appear to contain survey/questionnaire information",
                entity=EntityType.FILE,
            )
        if not (survey.get("patient") or survey.get("subject")):
            self.warn("MISSING_PATIENT_INFO", "No patient information found in survey data", entity=EntityType.PATIENT)
        if has_survey and not _responses(survey):
            return [self.error("NO_SURVEY_RESPONSES", "Survey contains no response data", entity=EntityType.FILE)]
        return []

    @staticmethod
    def _patient(survey: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        person = survey.get("patient") or survey.get("subject")
        if not isinstance(person, dict):
            person = {"identifier": person} if isinstance(person, (str, int)) else {}
        info = survey.get("info") if isinstance(survey.get("info"), dict) else {}

        patient_cd = (
            person.get("identifier")
            or info.get("PID")
            or survey.get("PID")
            or person.get("display")
            or person.get("patientId")
            or person.get("uid")
            or survey.get("identifier")
        )
        sex = person.get("gender") or person.get("sex") or survey.get("gender")
        if not person and patient_cd is None and sex is None:
            return None
        return {
            "PATIENT_NUM": "1",
            "PATIENT_CD": patient_cd,
            "SEX_CD": sex,
            "AGE_IN_YEARS": person.get("age") or survey.get("age"),
            "BIRTH_DATE": person.get("birthDate") or person.get("dob") or survey.get("birthDate"),
            "SOURCESYSTEM_CD": SOURCESYSTEM,
        }

    @staticmethod
    def _visit(survey: Dict[str, Any], patient: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "ENCOUNTER_NUM": "0",
            "PATIENT_CD": patient["PATIENT_CD"] if patient else None,
            "PATIENT_NUM": patient["PATIENT_NUM"] if patient else None,
            "START_DATE": survey.get("date") or survey.get("completedAt") or date.today().isoformat(),
            "LOCATION_CD": SURVEY_LOCATION,
            "INOUT_CD": InOutCode.OUTPATIENT.value,
            "SOURCESYSTEM_CD": SOURCESYSTEM,
        }

    def _observations(
        self, survey: Dict[str, Any], patient: Optional[Dict[str, Any]], visit: Dict[str, Any]
    ) -> list[Dict[str, Any]]:
        responses = [r for r in _responses(survey) if isinstance(r, dict)]
        questions = survey.get("questions") if isinstance(survey.get("questions"), list) else []
        for question in questions:
            if isinstance(question, dict) and (question.get("response") or question.get("answer")):
                responses.append({"question": question.get("text") or question.get("question"), **question})

        observations = []
        for index, response in enumerate(responses):
            valtype, value = response_value(response)
            observations.append({
                **self._owner(patient, visit),
                "CONCEPT_CD": response_concept(response, index),
                "CATEGORY_CHAR": SURVEY_CATEGORY,
                "START_DATE": response.get("date") or visit["START_DATE"],
                "UNIT_CD": response.get("unit"),
                "VALTYPE_CD": valtype,
                "VALUE": value,
            })

        summary = self._questionnaire_summary(survey, responses, patient, visit)
        if summary is not None:
            observations.append(summary)
        return observations

    @staticmethod
    def _owner(patient: Optional[Dict[str, Any]], visit: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "PATIENT_CD": patient["PATIENT_CD"] if patient else None,
            "PATIENT_NUM": patient["PATIENT_NUM"] if patient else None,
            "ENCOUNTER_NUM": visit["ENCOUNTER_NUM"],
            "SOURCESYSTEM_CD": SOURCESYSTEM,
        }

    def _questionnaire_summary(
        self, survey: Dict[str, Any], responses: list, patient: Optional[Dict[str, Any]], visit: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        questionnaire = survey.get("questionnaire") or survey.get("survey")
        if not isinstance(questionnaire, dict):
            return None
        kind = questionnaire.get("type") or "Imported Survey"
        title = questionnaire.get("title") or kind
        result = {
            "title": title,
            "questionnaire_code": re.sub(r"\s+", "_", kind).upper(),
            "coding": SURVEY_CATEGORY,
            "date_end": survey.get("completedAt") or survey.get("date"),
            "items": [
                {
                    "id": f"q_{index + 1}",
                    "text": response.get("question") or f"Question {index + 1}",
                    "value": response.get("answer", response.get("response")),
                }
                for index, response in enumerate(responses)
            ],
        }
        return {
            **self._owner(patient, visit),
            "CONCEPT_CD": QUESTIONNAIRE_CONCEPT,
            "CATEGORY_CHAR": SURVEY_CATEGORY,
            "START_DATE": visit["START_DATE"],
            "VALTYPE_CD": ValueType.QUESTIONNAIRE.value,
            "TVAL_CHAR": title,
            "OBSERVATION_BLOB": result,
        }

    @staticmethod
    def _metadata(html: str, survey: Dict[str, Any], options: Dict[str, Any]) -> Dict[str, Any]:
        title = _TITLE_PATTERN.search(html)
        questionnaire = survey.get("questionnaire") if isinstance(survey.get("questionnaire"), dict) else {}
        survey_info = survey.get("survey") if isinstance(survey.get("survey"), dict) else {}
        return {
            "title": title.group(1).strip() if title else questionnaire.get("title") or "Survey Import",
            "source": "HTML Survey",
            "filename": options.get("filename"),
            "export_date": survey.get("completedAt") or survey.get("date"),
            "survey_type": questionnaire.get("type") or survey_info.get("type"),
            "response_count": len(_responses(survey)),
        }
