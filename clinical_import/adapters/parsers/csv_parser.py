"""CSV Parser.

This adapter implements the ParserPort contract for the two CSV layouts the
clinical application exports:

    Variant A ("two-header app export"):
        row 1 human-readable labels, row 2 concept codes, then one row per
        patient/visit. Patient columns (PATIENT_CD, SEX_CD, AGE_IN_YEARS,
        BIRTH_DATE) and visit columns (START_DATE, END_DATE, LOCATION_CD,
        INOUT_CD) are recognised; every other column is an observation keyed
        by its concept code.

    Variant B ("four-header condensed"):
        FIELD_NAME, VALTYPE_CD, UNIT_CD and NAME_CHAR header rows, usually
        semicolon delimited. Value types and units of observation columns come
        from the header rows. A leading column whose header cells repeat the
        header row names is treated as a label column and ignored.

Lines starting with ``#`` are comments; ``Export Date:``, ``Source:`` and
``Version:`` comments become metadata.

Architecture:
    - Implements ParserPort (Hexagonal Architecture)
    - pandas tokenises the rows; all structural problems are reported as
      issues in a failure Result instead of exceptions
"""

import io
import logging
from typing import Any, Dict, Optional

import pandas as pd

from clinical_import.adapters.parsers.base import BaseParser
from clinical_import.domain.enums import EntityType, ImportFormat, ValueType
from clinical_import.domain.import_model import ImportStructure
from clinical_import.domain.ports import Result, TransformationError

logger = logging.getLogger(__name__)

VARIANT_A = "variantA"
VARIANT_B = "variantB"

CANDIDATE_DELIMITERS = (",", ";", "|", "\t")
DEFAULT_DELIMITERS = {VARIANT_A: ",", VARIANT_B: ";"}
HEADER_ROWS = {VARIANT_A: 2, VARIANT_B: 4}
VARIANT_B_HEADER_LABELS = ("FIELD_NAME", "VALTYPE_CD", "UNIT_CD", "NAME_CHAR")

PATIENT_FIELDS = ("PATIENT_CD", "SEX_CD", "AGE_IN_YEARS", "BIRTH_DATE")
VISIT_FIELDS = ("START_DATE", "END_DATE", "LOCATION_CD", "INOUT_CD")
RECOMMENDED_FIELDS = ("PATIENT_CD", "START_DATE")

# Variant B field synonyms mapped onto canonical column names
VARIANT_B_PATIENT_FIELDS = {
    "PATIENT_CD": "PATIENT_CD",
    "PATIENT_NUM": "PATIENT_NUM",
    "SEX_CD": "SEX_CD",
    "GENDER": "SEX_CD",
    "AGE_IN_YEARS": "AGE_IN_YEARS",
    "AGE": "AGE_IN_YEARS",
    "BIRTH_DATE": "BIRTH_DATE",
    "DOB": "BIRTH_DATE",
}
VARIANT_B_VISIT_FIELDS = {
    "START_DATE": "START_DATE",
    "VISIT_DATE": "START_DATE",
    "END_DATE": "END_DATE",
    "LOCATION_CD": "LOCATION_CD",
    "INOUT_CD": "INOUT_CD",
    "ENCOUNTER_NUM": "ENCOUNTER_NUM",
}

VALID_VALTYPES = {vt.value for vt in ValueType}
VALTYPE_WORDS = {
    "NUMERIC": "N",
    "NUMBER": "N",
    "INTEGER": "N",
    "DATE": "D",
    "TEXT": "T",
    "STRING": "T",
    "SELECTION": "S",
    "FINDING": "F",
    "BLOB": "B",
}


def normalize_valtype(raw: str) -> Optional[str]:
    """Map a VALTYPE_CD header cell to a value-type code; None lets the value decide."""
    text = (raw or "").strip().upper()
    if text in VALTYPE_WORDS:
        return VALTYPE_WORDS[text]
    return text if text in VALID_VALTYPES else None


def detect_delimiter(line: str) -> Optional[str]:
    """Pick the delimiter occurring most often (at least twice) in a header line."""
    counts = {delimiter: line.count(delimiter) for delimiter in CANDIDATE_DELIMITERS}
    best = max(CANDIDATE_DELIMITERS, key=lambda d: counts[d])
    return best if counts[best] >= 2 else None


def detect_variant(lines: list[str]) -> str:
    """Classify data lines (comments removed) as variant A or B."""
    first_line = lines[0]
    second_line = lines[1] if len(lines) > 1 else ""
    first_cell = first_line.split(";")[0].split(",")[0].strip().strip('"')

    if first_cell == "FIELD_NAME" or "FIELD_NAME;" in first_line:
        return VARIANT_B
    if ";" in first_line and ("VALTYPE_CD" in second_line or "numeric" in second_line or "date" in second_line):
        return VARIANT_B
    return VARIANT_A


def extract_comment_metadata(comment_lines: list[str]) -> Dict[str, Optional[str]]:
    metadata: Dict[str, Optional[str]] = {
        "export_date": None,
        "source": None,
        "version": None,
        "description": None,
    }
    for line in comment_lines:
        clean = line.lstrip("#").strip()
        lowered = clean.lower()
        value = clean.split(":", 1)[1].strip() if ":" in clean else ""
        if lowered.startswith("export date:"):
            metadata["export_date"] = value
        elif lowered.startswith("source:"):
            metadata["source"] = value
        elif lowered.startswith("version:"):
            metadata["version"] = value
        elif "description" in lowered or "export" in lowered:
            metadata["description"] = clean
    return metadata


class _PatientGroup:
    """Rows of one patient collected while scanning the file."""

    def __init__(self, key: str, ordinal: int):
        self.key = key
        self.patient_num = str(ordinal)
        self.info: Dict[str, Any] = {}
        self.visits: Dict[str, Dict[str, Any]] = {}
        self.visit_order: list[str] = []

    def visit(self, visit_key: str) -> Dict[str, Any]:
        if visit_key not in self.visits:
            self.visits[visit_key] = {"observations": []}
            self.visit_order.append(visit_key)
        return self.visits[visit_key]


class CSVParser(BaseParser):
    """CSV parser for the two-header and four-header clinical export layouts.

    Parameters:
        comment_prefix: Prefix marking comment lines (default: '#')
    """

    format = ImportFormat.CSV
    name = "csv"

    def __init__(self, comment_prefix: str = "#"):
        super().__init__()
        self.comment_prefix = comment_prefix

    def can_parse(self, content: str, filename: Optional[str] = None) -> bool:
        lines = [line for line in (content or "").splitlines() if line.strip()]
        return len(lines) >= 2 and any(d in lines[0] for d in CANDIDATE_DELIMITERS)

    def parse(self, content: str, options: Optional[Dict[str, Any]] = None) -> Result[ImportStructure]:
        """Parse CSV content into the canonical import model.

        Parameters:
            content: Raw CSV text
            options: Optional "filename"

        Returns:
            Result[ImportStructure]: Failure codes MISSING_HEADERS, HEADER_MISMATCH,
                NO_DATA_ROWS, ROW_LENGTH_MISMATCH, CSV_PARSE_ERROR
        """
        self.reset()
        options = options or {}

        lines = content.splitlines()
        comment_lines = [line for line in lines if line.strip().startswith(self.comment_prefix)]
        data_lines = [line for line in lines if line.strip() and not line.strip().startswith(self.comment_prefix)]

        if len(data_lines) < 2:
            return self.failure([self.error(
                "MISSING_HEADERS", "CSV must have at least header rows", details={"type": "header"}
            )])

        variant = detect_variant(data_lines)
        header_rows = HEADER_ROWS[variant]
        if len(data_lines) < header_rows:
            return self.failure([self.error(
                "MISSING_HEADERS",
                f"CSV must have at least {header_rows} header rows for {variant}",
                details={"type": "header", "variant": variant},
            )])

        delimiter = detect_delimiter(data_lines[0]) or self._fallback_delimiter(data_lines[0], variant)
        logger.debug(f"CSV variant {variant} with delimiter {delimiter!r}")

        try:
            frame, lengths = self._read_rows(data_lines, delimiter)
        except (pd.errors.ParserError, ValueError) as e:
            return self.failure([self.error("CSV_PARSE_ERROR", f"CSV could not be tokenised: {e}")])

        headers = [self._cells(frame, i, lengths[i]) for i in range(header_rows)]
        rows = [self._cells(frame, i, len(headers[0])) for i in range(header_rows, len(frame))]
        row_lengths = lengths[header_rows:]

        issues = self._validate_structure(variant, headers, row_lengths)
        if issues:
            return self.failure(issues)

        metadata = extract_comment_metadata(comment_lines)
        metadata.update({
            "filename": options.get("filename"),
            "variant": variant,
            "rows_processed": len(rows),
            "title": metadata.get("description") or options.get("filename"),
        })

        try:
            if variant == VARIANT_A:
                groups = self._group_variant_a(headers, rows)
                column_types: Dict[str, Dict[str, str]] = {}
            else:
                groups, column_types = self._group_variant_b(headers, rows)
            patients, visits, observations = self._to_records(groups, column_types)
            structure = self.build_structure(patients, visits, observations, metadata)
        except TransformationError as e:
            return self.transformation_failure("CSV_PARSE_ERROR", e)

        return self.success(structure)

    # ------------------------------------------------------------------
    # Tokenising and validation
    # ------------------------------------------------------------------

    @staticmethod
    def _fallback_delimiter(line: str, variant: str) -> str:
        default = DEFAULT_DELIMITERS[variant]
        if default in line:
            return default
        return next((d for d in CANDIDATE_DELIMITERS if d in line), default)

    @staticmethod
    def _read_rows(data_lines: list[str], delimiter: str) -> tuple[pd.DataFrame, list[int]]:
        """Tokenise lines into a string frame plus the real field count of each row.

        The frame is read wider than any row can be, so short rows are padded
        with NaN and long rows are never dropped; the field count of a row is
        its number of non-NaN cells.
        """
        width = max(line.count(delimiter) for line in data_lines) + 1
        frame = pd.read_csv(
            io.StringIO("\n".join(data_lines)),
            sep=delimiter,
            header=None,
            names=list(range(width)),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            engine="python",
            quotechar='"',
        )
        lengths = []
        for _, row in frame.iterrows():
            present = [i for i, value in enumerate(row.tolist()) if not pd.isna(value)]
            lengths.append(present[-1] + 1 if present else 0)
        return frame.fillna(""), lengths

    @staticmethod
    def _cells(frame: pd.DataFrame, index: int, length: int) -> list[str]:
        return [str(value).strip() for value in frame.iloc[index].tolist()[:length]]

    def _validate_structure(self, variant: str, headers: list[list[str]], row_lengths: list[int]) -> list:
        issues = []
        if variant == VARIANT_A:
            labels, codes = headers
            if not any(labels):
                issues.append(self.error("MISSING_HEADERS", "Human-readable headers are missing", details={"type": "header"}))
            if not any(codes):
                issues.append(self.error("MISSING_HEADERS", "Concept code headers are missing", details={"type": "header"}))
            if len(labels) != len(codes):
                issues.append(self.error("HEADER_MISMATCH", "Header row lengths do not match", details={"type": "header"}))
            for field in RECOMMENDED_FIELDS:
                if field not in codes:
                    self.warn(
                        "MISSING_RECOMMENDED_FIELD",
                        f"Recommended field '{field}' not found in headers",
                        entity=EntityType.FILE,
                        details={"field": field},
                    )
        else:
            for label, row in zip(VARIANT_B_HEADER_LABELS, headers):
                if not any(row):
                    issues.append(self.error("MISSING_HEADERS", f"{label} header row is missing", details={"type": "header"}))

        if not row_lengths:
            issues.append(self.error("NO_DATA_ROWS", "No data rows found in CSV", details={"type": "data"}))

        expected = len(headers[0])
        for index, length in enumerate(row_lengths):
            if length != expected:
                issues.append(self.error(
                    "ROW_LENGTH_MISMATCH",
                    f"Row {index + 1} has {length} columns, expected {expected}",
                    position=index,
                    details={"type": "data", "row": index + 1},
                ))
        return issues

    # ------------------------------------------------------------------
    # Grouping rows by patient
    # ------------------------------------------------------------------

    @staticmethod
    def _group_for(groups: Dict[str, _PatientGroup], patient_cd: str, row_index: int) -> _PatientGroup:
        key = patient_cd or f"PATIENT_{row_index}"
        if key not in groups:
            groups[key] = _PatientGroup(key, len(groups) + 1)
            if patient_cd:
                groups[key].info["PATIENT_CD"] = patient_cd
        return groups[key]

    def _group_variant_a(self, headers: list[list[str]], rows: list[list[str]]) -> Dict[str, _PatientGroup]:
        codes = headers[1]
        start_index = codes.index("START_DATE") if "START_DATE" in codes else None
        patient_index = codes.index("PATIENT_CD") if "PATIENT_CD" in codes else None
        groups: Dict[str, _PatientGroup] = {}

        for row_index, row in enumerate(rows):
            patient_cd = row[patient_index] if patient_index is not None else ""
            group = self._group_for(groups, patient_cd, row_index)
            start_date = row[start_index] if start_index is not None else ""
            visit_key = start_date or None

            for code, value in zip(codes, row):
                if not code or not value:
                    continue
                if code in PATIENT_FIELDS:
                    group.info.setdefault(code, value)
                elif code in VISIT_FIELDS:
                    group.visit(visit_key or f"row-{row_index}").setdefault(code, value)
                else:
                    observation = {"CONCEPT_CD": code, "VALUE": value, "START_DATE": start_date or None}
                    if visit_key:
                        group.visit(visit_key)["observations"].append(observation)
                    else:
                        group.info.setdefault("observations", []).append(observation)
        return groups

    def _group_variant_b(
        self, headers: list[list[str]], rows: list[list[str]]
    ) -> tuple[Dict[str, _PatientGroup], Dict[str, Dict[str, str]]]:
        field_names, valtypes, units, name_chars = headers
        offset = 1 if [h[0] if h else "" for h in headers] == list(VARIANT_B_HEADER_LABELS) else 0
        field_names = field_names[offset:]

        column_types = {
            name: {
                "valtype": valtypes[i + offset] if i + offset < len(valtypes) else "",
                "unit": units[i + offset] if i + offset < len(units) else "",
                "label": name_chars[i + offset] if i + offset < len(name_chars) else "",
            }
            for i, name in enumerate(field_names)
        }

        patient_index = field_names.index("PATIENT_CD") if "PATIENT_CD" in field_names else None
        if patient_index is None:
            self.warn("MISSING_RECOMMENDED_FIELD", "Recommended field 'PATIENT_CD' not found in headers",
                      entity=EntityType.FILE, details={"field": "PATIENT_CD"})

        groups: Dict[str, _PatientGroup] = {}
        for row_index, full_row in enumerate(rows):
            row = full_row[offset:]
            patient_cd = row[patient_index] if patient_index is not None else ""
            group = self._group_for(groups, patient_cd, row_index)

            visit_values = {
                VARIANT_B_VISIT_FIELDS[name]: value
                for name, value in zip(field_names, row)
                if name in VARIANT_B_VISIT_FIELDS and value
            }
            visit_key = visit_values.get("ENCOUNTER_NUM") or visit_values.get("START_DATE")
            if visit_values and not visit_key:
                visit_key = f"row-{row_index}"
            if visit_key:
                visit = group.visit(visit_key)
                for name, value in visit_values.items():
                    visit.setdefault(name, value)

            for name, value in zip(field_names, row):
                if not name or not value or name in VARIANT_B_VISIT_FIELDS:
                    continue
                if name in VARIANT_B_PATIENT_FIELDS:
                    group.info.setdefault(VARIANT_B_PATIENT_FIELDS[name], value)
                    continue
                observation = {
                    "CONCEPT_CD": name,
                    "VALUE": value,
                    "START_DATE": visit_values.get("START_DATE"),
                }
                if visit_key:
                    group.visits[visit_key]["observations"].append(observation)
                else:
                    group.info.setdefault("observations", []).append(observation)
        return groups, column_types

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    @staticmethod
    def _to_records(
        groups: Dict[str, _PatientGroup], column_types: Dict[str, Dict[str, str]]
    ) -> tuple[list[dict], list[dict], list[dict]]:
        patients, visits, observations = [], [], []

        def observation_record(obs: Dict[str, Any], group: _PatientGroup, encounter_num: Optional[str]) -> dict:
            record = {
                "CONCEPT_CD": obs["CONCEPT_CD"],
                "VALUE": obs["VALUE"],
                "START_DATE": obs.get("START_DATE"),
                "PATIENT_CD": group.info.get("PATIENT_CD"),
                "PATIENT_NUM": group.patient_num,
                "ENCOUNTER_NUM": encounter_num,
            }
            column = column_types.get(obs["CONCEPT_CD"])
            if column:
                record["VALTYPE_CD"] = normalize_valtype(column["valtype"])
                record["UNIT_CD"] = column["unit"] or None
            return record

        for group in groups.values():
            group.patient_num = group.info.get("PATIENT_NUM") or group.patient_num
            info = dict(group.info)
            patient_level = info.pop("observations", [])
            patients.append({**info, "PATIENT_NUM": group.patient_num})

            for visit_key in group.visit_order:
                visit = dict(group.visits[visit_key])
                visit_observations = visit.pop("observations")
                encounter_num = visit.pop("ENCOUNTER_NUM", None) or str(len(visits))
                visits.append({
                    **visit,
                    "ENCOUNTER_NUM": encounter_num,
                    "PATIENT_CD": info.get("PATIENT_CD"),
                    "PATIENT_NUM": group.patient_num,
                })
                observations.extend(observation_record(o, group, encounter_num) for o in visit_observations)

            observations.extend(observation_record(o, group, None) for o in patient_level)

        return patients, visits, observations
