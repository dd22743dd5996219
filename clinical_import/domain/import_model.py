"""Canonical Import Model.

This module defines the format-independent representation every parser
produces and the reconciliation engine consumes: patients, visits and
observations following the patient_dimension / visit_dimension /
observation_fact layout of the clinical store.

Architecture:
    - Pydantic V2 models with zero infrastructure dependencies
    - Records accept upper-case column names (PATIENT_CD), snake_case field
      names, and common camelCase aliases (patientId, startDate, ...)
    - Dates are normalised here so parsers can pass raw strings through
    - Observation values are routed into the slot matching their value type
"""

from datetime import date, datetime
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from clinical_import.domain.enums import ValueType
from clinical_import.domain.utils import (
    infer_value_type,
    normalize_date_string,
    normalize_inout_code,
    normalize_sex_code,
    parse_date,
    parse_numeric,
    parse_timestamp,
    to_blob,
)

DEFAULT_SOURCESYSTEM_CD = "IMPORT"


def _apply_aliases(data: Any, model_cls: type, aliases: Dict[str, str]) -> Any:
    """Rename incoming keys to field names; the first key mapping to a field wins."""
    if not isinstance(data, dict):
        return data

    normalised: Dict[str, Any] = {}
    for key, value in data.items():
        if not isinstance(key, str):
            continue
        name = aliases.get(key) or aliases.get(key.lower()) or key.lower()
        if name in model_cls.model_fields or name == "value":
            if name not in normalised or normalised[name] is None:
                normalised[name] = value
    return normalised


def _to_optional_str(v: Any) -> Optional[str]:
    if v is None or isinstance(v, bool):
        return None if v is None else str(v)
    if isinstance(v, float) and v.is_integer():
        v = int(v)
    text = str(v).strip()
    return text or None


class PatientRecord(BaseModel):
    """Patient as delivered by a parser (patient_dimension row).

    Parameters:
        patient_cd: Natural key of the patient; required for reconciliation
        patient_num: File-local patient number used by visits/observations of
            the same file to reference this patient; never written to the store
        sex_cd: Normalised sex code (M, F, U)
        sourcesystem_cd: Provenance tag written with the row
    """

    patient_cd: Optional[str] = Field(None, description="Patient natural key")
    patient_num: Optional[str] = Field(None, description="File-local patient number")
    vital_status_cd: Optional[str] = Field(None, description="Vital status code")
    birth_date: Optional[date] = Field(None, description="Date of birth")
    death_date: Optional[date] = Field(None, description="Date of death")
    age_in_years: Optional[int] = Field(None, ge=0, le=200, description="Age in years")
    sex_cd: Optional[str] = Field(None, description="Sex code (M/F/U)")
    language_cd: Optional[str] = Field(None, description="Language code")
    race_cd: Optional[str] = Field(None, description="Race code")
    marital_status_cd: Optional[str] = Field(None, description="Marital status code")
    religion_cd: Optional[str] = Field(None, description="Religion code")
    statecityzip_path: Optional[str] = Field(None, description="State/city/zip path")
    patient_blob: Optional[str] = Field(None, description="Free-form patient notes (JSON)")
    sourcesystem_cd: str = Field(DEFAULT_SOURCESYSTEM_CD, description="Source system tag")
    upload_id: Optional[int] = Field(None, description="Upload batch identifier")

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    ALIASES: ClassVar[Dict[str, str]] = {
        "patientid": "patient_cd",
        "patient_id": "patient_cd",
        "patientcode": "patient_cd",
        "code": "patient_cd",
        "patientnum": "patient_num",
        "sex": "sex_cd",
        "gender": "sex_cd",
        "age": "age_in_years",
        "birthdate": "birth_date",
        "dob": "birth_date",
        "deathdate": "death_date",
        "vitalstatus": "vital_status_cd",
        "language": "language_cd",
        "race": "race_cd",
        "maritalstatus": "marital_status_cd",
        "religion": "religion_cd",
        "address": "statecityzip_path",
        "sourcesystem": "sourcesystem_cd",
    }

    @model_validator(mode="before")
    @classmethod
    def apply_aliases(cls, data: Any) -> Any:
        data = _apply_aliases(data, cls, cls.ALIASES)
        if isinstance(data, dict):
            data.pop("value", None)
        return data

    @field_validator("patient_cd", "patient_num", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Optional[str]:
        return _to_optional_str(v)

    @field_validator("sex_cd", mode="before")
    @classmethod
    def normalize_sex(cls, v: Any) -> Optional[str]:
        return normalize_sex_code(v)

    @field_validator("birth_date", "death_date", mode="before")
    @classmethod
    def parse_dates(cls, v: Any) -> Optional[date]:
        return parse_date(v)

    @field_validator("age_in_years", mode="before")
    @classmethod
    def parse_age(cls, v: Any) -> Optional[int]:
        number = parse_numeric(v)
        return int(number) if number is not None and 0 <= number <= 200 else None

    @field_validator("patient_blob", mode="before")
    @classmethod
    def serialise_blob(cls, v: Any) -> Optional[str]:
        return to_blob(v)

    @field_validator("sourcesystem_cd", mode="before")
    @classmethod
    def default_sourcesystem(cls, v: Any) -> str:
        return _to_optional_str(v) or DEFAULT_SOURCESYSTEM_CD


class VisitRecord(BaseModel):
    """Visit (encounter) as delivered by a parser (visit_dimension row).

    Parameters:
        encounter_num: Temporary visit id assigned by the parser; observations
            of the same file reference the visit through it
        patient_cd: Natural key of the owning patient
        patient_num: File-local number of the owning patient
    """

    encounter_num: Optional[str] = Field(None, description="Temporary visit id")
    patient_cd: Optional[str] = Field(None, description="Owning patient natural key")
    patient_num: Optional[str] = Field(None, description="Owning patient file-local number")
    active_status_cd: Optional[str] = Field(None, description="Active status code")
    start_date: Optional[datetime] = Field(None, description="Visit start")
    end_date: Optional[datetime] = Field(None, description="Visit end")
    inout_cd: Optional[str] = Field(None, description="Inpatient/outpatient/emergency")
    location_cd: Optional[str] = Field(None, description="Location code")
    length_of_stay: Optional[int] = Field(None, ge=0, description="Length of stay in days")
    visit_blob: Optional[str] = Field(None, description="Visit notes (JSON)")
    sourcesystem_cd: str = Field(DEFAULT_SOURCESYSTEM_CD, description="Source system tag")
    upload_id: Optional[int] = Field(None, description="Upload batch identifier")

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    ALIASES: ClassVar[Dict[str, str]] = {
        "id": "encounter_num",
        "encounternum": "encounter_num",
        "visitid": "encounter_num",
        "visit_id": "encounter_num",
        "patientid": "patient_cd",
        "patient_id": "patient_cd",
        "patientcode": "patient_cd",
        "patientnum": "patient_num",
        "startdate": "start_date",
        "start": "start_date",
        "visitdate": "start_date",
        "visit_date": "start_date",
        "date": "start_date",
        "enddate": "end_date",
        "end": "end_date",
        "inout": "inout_cd",
        "visittype": "inout_cd",
        "location": "location_cd",
        "activestatus": "active_status_cd",
        "notes": "visit_blob",
        "sourcesystem": "sourcesystem_cd",
    }

    @model_validator(mode="before")
    @classmethod
    def apply_aliases(cls, data: Any) -> Any:
        data = _apply_aliases(data, cls, cls.ALIASES)
        if isinstance(data, dict):
            data.pop("value", None)
        return data

    @field_validator("encounter_num", "patient_cd", "patient_num", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Optional[str]:
        return _to_optional_str(v)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def parse_timestamps(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @field_validator("inout_cd", mode="before")
    @classmethod
    def normalize_inout(cls, v: Any) -> Optional[str]:
        return normalize_inout_code(v)

    @field_validator("length_of_stay", mode="before")
    @classmethod
    def parse_length_of_stay(cls, v: Any) -> Optional[int]:
        number = parse_numeric(v)
        return int(number) if number is not None and number >= 0 else None

    @field_validator("visit_blob", mode="before")
    @classmethod
    def serialise_blob(cls, v: Any) -> Optional[str]:
        return to_blob(v)

    @field_validator("sourcesystem_cd", mode="before")
    @classmethod
    def default_sourcesystem(cls, v: Any) -> str:
        return _to_optional_str(v) or DEFAULT_SOURCESYSTEM_CD


class ObservationRecord(BaseModel):
    """Observation (fact) as delivered by a parser (observation_fact row).

    A generic ``value`` key is routed into the slot that matches the value
    type: ``N`` → nval_num, ``T``/``D``/``S``/``F`` → tval_char,
    ``R``/``Q``/``B`` → observation_blob. Without an explicit value type it is
    inferred from the value.

    Parameters:
        patient_cd: Natural key of the owning patient
        patient_num: File-local number of the owning patient
        encounter_num: Temporary id of the visit the observation belongs to
        concept_cd: Concept code; required for reconciliation
        valtype_cd: Value-type discriminant
    """

    observation_id: Optional[str] = Field(None, description="Source observation id")
    patient_cd: Optional[str] = Field(None, description="Owning patient natural key")
    patient_num: Optional[str] = Field(None, description="Owning patient file-local number")
    encounter_num: Optional[str] = Field(None, description="Temporary visit reference")
    concept_cd: Optional[str] = Field(None, description="Concept code")
    category_char: Optional[str] = Field(None, description="Observation category")
    provider_id: str = Field("@", description="Provider identifier")
    start_date: Optional[datetime] = Field(None, description="Observation time")
    end_date: Optional[datetime] = Field(None, description="Observation end")
    instance_num: int = Field(1, ge=1, description="Instance number")
    valtype_cd: Optional[ValueType] = Field(None, description="Value type")
    tval_char: Optional[str] = Field(None, description="Text/date/selection value")
    nval_num: Optional[float] = Field(None, description="Numeric value")
    valueflag_cd: Optional[str] = Field(None, description="Abnormal flag")
    quantity_num: Optional[float] = Field(None, description="Quantity")
    unit_cd: Optional[str] = Field(None, description="Unit of measure")
    location_cd: Optional[str] = Field(None, description="Location code")
    confidence_num: Optional[float] = Field(None, description="Confidence")
    observation_blob: Optional[str] = Field(None, description="Blob/questionnaire payload")
    sourcesystem_cd: str = Field(DEFAULT_SOURCESYSTEM_CD, description="Source system tag")
    upload_id: Optional[int] = Field(None, description="Upload batch identifier")

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    ALIASES: ClassVar[Dict[str, str]] = {
        "id": "observation_id",
        "observationid": "observation_id",
        "patientid": "patient_cd",
        "patient_id": "patient_cd",
        "patientcode": "patient_cd",
        "patientnum": "patient_num",
        "encounternum": "encounter_num",
        "visitid": "encounter_num",
        "visit_id": "encounter_num",
        "encounterid": "encounter_num",
        "visitindex": "encounter_num",
        "visit": "encounter_num",
        "conceptcode": "concept_cd",
        "concept": "concept_cd",
        "category": "category_char",
        "provider": "provider_id",
        "providerid": "provider_id",
        "startdate": "start_date",
        "observationdate": "start_date",
        "date": "start_date",
        "enddate": "end_date",
        "valuetype": "valtype_cd",
        "valtype": "valtype_cd",
        "valtypecd": "valtype_cd",
        "textvalue": "tval_char",
        "numericvalue": "nval_num",
        "valueflag": "valueflag_cd",
        "quantity": "quantity_num",
        "confidence": "confidence_num",
        "instancenum": "instance_num",
        "unit": "unit_cd",
        "units": "unit_cd",
        "units_cd": "unit_cd",
        "location": "location_cd",
        "blob": "observation_blob",
        "bval_blob": "observation_blob",
        "sourcesystem": "sourcesystem_cd",
    }

    @model_validator(mode="before")
    @classmethod
    def route_value(cls, data: Any) -> Any:
        """Apply aliases and move a generic ``value`` into its typed slot."""
        data = _apply_aliases(data, cls, cls.ALIASES)
        if not isinstance(data, dict):
            return data

        value = data.pop("value", None)
        valtype = data.get("valtype_cd")
        if isinstance(valtype, str):
            valtype = valtype.strip().upper() or None
            data["valtype_cd"] = valtype

        if value is not None and not (isinstance(value, str) and not value.strip()):
            if valtype is None:
                valtype = infer_value_type(value)
                data["valtype_cd"] = valtype
            slot = ValueType(valtype).value_slot if valtype in ValueType._value2member_map_ else "tval_char"
            if data.get(slot) is None:
                if slot == "nval_num":
                    data[slot] = parse_numeric(value)
                elif slot == "observation_blob":
                    data[slot] = to_blob(value)
                elif valtype == ValueType.DATE.value:
                    data[slot] = normalize_date_string(value) or str(value)
                else:
                    data[slot] = str(value)
        elif valtype is None:
            if data.get("nval_num") is not None:
                data["valtype_cd"] = ValueType.NUMERIC.value
            elif data.get("observation_blob") is not None:
                data["valtype_cd"] = ValueType.BLOB.value
            elif data.get("tval_char") is not None:
                data["valtype_cd"] = ValueType.TEXT.value
        return data

    @field_validator("observation_id", "patient_cd", "patient_num", "encounter_num",
                     "concept_cd", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Optional[str]:
        return _to_optional_str(v)

    @field_validator("provider_id", mode="before")
    @classmethod
    def default_provider(cls, v: Any) -> str:
        return _to_optional_str(v) or "@"

    @field_validator("instance_num", mode="before")
    @classmethod
    def default_instance(cls, v: Any) -> int:
        number = parse_numeric(v)
        return int(number) if number is not None and number >= 1 else 1

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def parse_timestamps(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @field_validator("nval_num", "quantity_num", "confidence_num", mode="before")
    @classmethod
    def parse_numbers(cls, v: Any) -> Optional[float]:
        return parse_numeric(v)

    @field_validator("tval_char", mode="before")
    @classmethod
    def stringify_text(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)

    @field_validator("observation_blob", mode="before")
    @classmethod
    def serialise_blob(cls, v: Any) -> Optional[str]:
        return to_blob(v)

    @field_validator("sourcesystem_cd", mode="before")
    @classmethod
    def default_sourcesystem(cls, v: Any) -> str:
        return _to_optional_str(v) or DEFAULT_SOURCESYSTEM_CD

    def has_value(self) -> bool:
        """Check whether the slot for the value-type discriminant is populated.

        Without a discriminant, any populated slot counts.
        """
        if self.valtype_cd is None:
            return any(v is not None for v in (self.nval_num, self.tval_char, self.observation_blob))
        return getattr(self, self.valtype_cd.value_slot) is not None

    @property
    def value(self) -> Any:
        """The value held in the slot for the discriminant."""
        if self.valtype_cd is None:
            return next((v for v in (self.nval_num, self.tval_char, self.observation_blob) if v is not None), None)
        return getattr(self, self.valtype_cd.value_slot)


class ImportMetadata(BaseModel):
    """Descriptive metadata of one parsed file."""

    title: Optional[str] = None
    format: Optional[str] = None
    source: Optional[str] = None
    version: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    export_date: Optional[str] = None
    filename: Optional[str] = None
    patient_count: int = 0
    visit_count: int = 0
    observation_count: int = 0
    patient_ids: list[str] = Field(default_factory=list)
    target_patient: Optional[str] = None
    target_visit: Optional[str] = None
    warnings: list[Dict[str, Any]] = Field(default_factory=list, description="Parser warnings")

    model_config = ConfigDict(extra="allow")


class ImportData(BaseModel):
    """The three record lists of a parsed file."""

    patients: list[PatientRecord] = Field(default_factory=list)
    visits: list[VisitRecord] = Field(default_factory=list)
    observations: list[ObservationRecord] = Field(default_factory=list)


class ImportStatistics(BaseModel):
    patient_count: int = 0
    visit_count: int = 0
    observation_count: int = 0
    fetched_at: datetime = Field(default_factory=datetime.now)


class ImportStructure(BaseModel):
    """Canonical model produced by every parser.

    Parameters:
        metadata: Descriptive metadata of the parsed file
        data: Patients, visits and observations
        statistics: Counts of the data lists
    """

    metadata: ImportMetadata = Field(default_factory=ImportMetadata)
    data: ImportData = Field(default_factory=ImportData)
    statistics: ImportStatistics = Field(default_factory=ImportStatistics)

    def refresh_counts(self) -> "ImportStructure":
        """Recompute the counts held in metadata and statistics."""
        patients = self.data.patients
        self.metadata.patient_count = self.statistics.patient_count = len(patients)
        self.metadata.visit_count = self.statistics.visit_count = len(self.data.visits)
        self.metadata.observation_count = self.statistics.observation_count = len(self.data.observations)
        self.metadata.patient_ids = [p.patient_cd for p in patients if p.patient_cd]
        return self


def create_import_structure(
    patients: Optional[list] = None,
    visits: Optional[list] = None,
    observations: Optional[list] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> ImportStructure:
    """Build an ImportStructure from records or plain mappings.

    Parameters:
        patients: PatientRecord instances or mappings
        visits: VisitRecord instances or mappings
        observations: ObservationRecord instances or mappings
        metadata: Metadata fields

    Returns:
        ImportStructure: Structure with counts refreshed

    Raises:
        pydantic.ValidationError: If a record cannot be validated
    """
    structure = ImportStructure(
        metadata=ImportMetadata(**(metadata or {})),
        data=ImportData(
            patients=[p if isinstance(p, PatientRecord) else PatientRecord.model_validate(p) for p in patients or []],
            visits=[v if isinstance(v, VisitRecord) else VisitRecord.model_validate(v) for v in visits or []],
            observations=[
                o if isinstance(o, ObservationRecord) else ObservationRecord.model_validate(o)
                for o in observations or []
            ],
        ),
    )
    return structure.refresh_counts()
