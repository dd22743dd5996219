"""JSON Parser.

This adapter implements the ParserPort contract for the application's own
JSON export format:

    {
        "metadata": {"title": ..., "source": ..., "version": ...},
        "data": {"patients": [...], "visits": [...], "observations": [...]}
    }

Records accept store column names (PATIENT_CD, START_DATE, ...) as well as
camelCase aliases (patientId, startDate, conceptCode, valueType, value, ...).
Questionnaire observations (value type ``Q``) take their title from the
questionnaire blob.

Security Impact:
    - Byte-order marks are stripped before decoding
    - Structural problems are reported as issues; nothing is partially accepted
"""

import json
import logging
from typing import Any, Dict, Optional

from clinical_import.adapters.parsers.base import BaseParser
from clinical_import.domain.enums import EntityType, ImportFormat, ValueType
from clinical_import.domain.import_model import ImportStructure
from clinical_import.domain.ports import Result, TransformationError

logger = logging.getLogger(__name__)

DEFAULT_SOURCESYSTEM = "JSON_IMPORT"
QUESTIONNAIRE_CONCEPT = "CUSTOM: QUESTIONNAIRE"
QUESTIONNAIRE_CATEGORY = "SURVEY_BEST"


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def questionnaire_title(observation: Dict[str, Any]) -> str:
    """Title of a questionnaire observation, read from its blob when possible."""
    title = _first(observation, "TVAL_CHAR", "tval_char", "textValue") or "Unknown Questionnaire"
    blob = _first(observation, "OBSERVATION_BLOB", "observation_blob", "blob", "value")
    if blob is None:
        return title
    if isinstance(blob, str):
        try:
            blob = json.loads(blob)
        except ValueError:
            logger.warning("Failed to parse OBSERVATION_BLOB for questionnaire title")
            return title
    if isinstance(blob, dict):
        reference = blob.get("questionnaireReference") or {}
        return blob.get("title") or blob.get("label") or reference.get("questionnaireCode") or title
    return title


class JSONParser(BaseParser):
    """Parser for the application's JSON export format."""

    format = ImportFormat.JSON
    name = "json"

    def can_parse(self, content: str, filename: Optional[str] = None) -> bool:
        try:
            data = json.loads((content or "").lstrip("\ufeff"))
        except ValueError:
            return False
        return isinstance(data, dict) and "data" in data

    def parse(self, content: str, options: Optional[Dict[str, Any]] = None) -> Result[ImportStructure]:
        """Parse JSON export content.

        Parameters:
            content: Raw JSON text
            options: Optional "filename"

        Returns:
            Result[ImportStructure]: Failure codes INVALID_JSON,
                INVALID_JSON_STRUCTURE, MISSING_DATA, MISSING_CLINICAL_DATA,
                INVALID_PATIENTS_FORMAT, INVALID_VISITS_FORMAT,
                INVALID_OBSERVATIONS_FORMAT, JSON_IMPORT_ERROR
        """
        self.reset()
        options = options or {}

        try:
            document = json.loads(content.lstrip("\ufeff"))
        except ValueError as e:
            return self.failure([self.error("INVALID_JSON", f"Invalid JSON format: {e}", entity=EntityType.FILE)])

        issues = self._validate_document(document)
        if issues:
            return self.failure(issues)

        metadata = document.get("metadata") or {}
        data = document["data"]
        try:
            structure = self.build_structure(
                [self._patient(p) for p in data.get("patients") or []],
                [self._visit(v) for v in data.get("visits") or []],
                [self._observation(o) for o in data.get("observations") or []],
                metadata={
                    "title": metadata.get("title") or "JSON Import",
                    "source": metadata.get("source") or "JSON File",
                    "version": str(metadata.get("version") or "1.0"),
                    "author": metadata.get("author"),
                    "description": metadata.get("description"),
                    "export_date": metadata.get("exportDate") or metadata.get("export_date"),
                    "filename": options.get("filename"),
                },
            )
        except (TransformationError, AttributeError, TypeError) as e:
            error = e if isinstance(e, TransformationError) else TransformationError(str(e), source=self.name)
            return self.transformation_failure("JSON_IMPORT_ERROR", error)

        return self.success(structure)

    def _validate_document(self, document: Any) -> list:
        if not isinstance(document, dict):
            return [self.error("INVALID_JSON_STRUCTURE", "JSON data must be a valid object", entity=EntityType.FILE)]

        if not document.get("metadata"):
            self.warn("MISSING_METADATA", "JSON missing metadata section", entity=EntityType.FILE)

        data = document.get("data")
        if not isinstance(data, dict):
            return [self.error("MISSING_DATA", "JSON must contain data section", entity=EntityType.FILE)]

        if not any(key in data for key in ("patients", "visits", "observations")):
            return [self.error(
                "MISSING_CLINICAL_DATA",
                "Data section must contain at least one of: patients, visits, or observations",
                entity=EntityType.FILE,
            )]

        issues = []
        for key, code in (
            ("patients", "INVALID_PATIENTS_FORMAT"),
            ("visits", "INVALID_VISITS_FORMAT"),
            ("observations", "INVALID_OBSERVATIONS_FORMAT"),
        ):
            value = data.get(key)
            if value is not None and not isinstance(value, list):
                issues.append(self.error(code, f"{key.capitalize()} must be an array", entity=EntityType.FILE))
            elif value and not all(isinstance(item, dict) for item in value):
                issues.append(self.error(code, f"{key.capitalize()} must be an array of objects", entity=EntityType.FILE))
        return issues

    @staticmethod
    def _patient(patient: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(patient)
        record["PATIENT_NUM"] = _first(patient, "PATIENT_NUM", "patient_num", "patientNum", "id")
        record["PATIENT_CD"] = _first(patient, "PATIENT_CD", "patient_cd", "patientId", "patientCode", "code")
        record.pop("id", None)
        record.setdefault("SOURCESYSTEM_CD", _first(patient, "SOURCESYSTEM_CD", "sourceSystem") or DEFAULT_SOURCESYSTEM)
        return record

    @staticmethod
    def _reference_patient(item: Dict[str, Any], record: Dict[str, Any]) -> None:
        """Resolve the owning-patient fields of a visit or observation.

        ``patientId`` may carry either a natural key or a file-local number, so
        it fills whichever of the two is not given explicitly.
        """
        patient_id = item.get("patientId")
        record["PATIENT_CD"] = _first(item, "PATIENT_CD", "patient_cd", "patientCode") or patient_id
        record["PATIENT_NUM"] = _first(item, "PATIENT_NUM", "patient_num", "patientNum") or patient_id
        record.pop("patientId", None)

    def _visit(self, visit: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(visit)
        self._reference_patient(visit, record)
        record.setdefault("INOUT_CD", _first(visit, "INOUT_CD", "inout_cd", "inOut", "visitType") or "O")
        record.setdefault("SOURCESYSTEM_CD", _first(visit, "SOURCESYSTEM_CD", "sourceSystem") or DEFAULT_SOURCESYSTEM)
        return record

    def _observation(self, observation: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(observation)
        self._reference_patient(observation, record)
        record.setdefault("SOURCESYSTEM_CD", _first(observation, "SOURCESYSTEM_CD", "sourceSystem") or DEFAULT_SOURCESYSTEM)

        valtype = _first(observation, "VALTYPE_CD", "valtype_cd", "valtypeCd", "valueType")
        if isinstance(valtype, str) and valtype.strip().upper() == ValueType.QUESTIONNAIRE.value:
            record["VALTYPE_CD"] = ValueType.QUESTIONNAIRE.value
            record["TVAL_CHAR"] = questionnaire_title(observation)
            record["CONCEPT_CD"] = _first(observation, "CONCEPT_CD", "concept_cd", "conceptCode") or QUESTIONNAIRE_CONCEPT
            record["CATEGORY_CHAR"] = _first(observation, "CATEGORY_CHAR", "category_char", "category") or QUESTIONNAIRE_CATEGORY
            record["OBSERVATION_BLOB"] = _first(observation, "OBSERVATION_BLOB", "observation_blob", "blob", "value")
            for key in ("value", "textValue", "blob", "tval_char", "observation_blob"):
                record.pop(key, None)
        return record
