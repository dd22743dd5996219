"""Domain Enumerations for Clinical Import.

This module defines the controlled vocabularies shared by parsers, the
orchestrator, and the reconciliation engine.

Architecture:
    - Pure domain values with zero infrastructure dependencies
    - String-valued enums so they serialize directly into envelopes and the store
"""

from enum import Enum


class ImportFormat(str, Enum):
    """Format tags produced by the format detector."""

    CSV = "csv"
    JSON = "json"
    HL7 = "hl7"
    HTML = "html"
    UNKNOWN = "unknown"


class ValueType(str, Enum):
    """Observation value-type discriminant (VALTYPE_CD)."""

    NUMERIC = "N"
    TEXT = "T"
    DATE = "D"
    SELECTION = "S"
    FINDING = "F"
    RAW = "R"
    QUESTIONNAIRE = "Q"
    BLOB = "B"

    @property
    def value_slot(self) -> str:
        """Name of the ObservationRecord field that holds a value of this type."""
        if self is ValueType.NUMERIC:
            return "nval_num"
        if self in (ValueType.RAW, ValueType.QUESTIONNAIRE, ValueType.BLOB):
            return "observation_blob"
        return "tval_char"


class DuplicateStrategy(str, Enum):
    """Policy applied when a patient natural key already exists in the store."""

    SKIP = "skip"
    UPDATE = "update"
    ERROR = "error"


class ValidationLevel(str, Enum):
    """Structural validation level applied after parsing."""

    STRICT = "strict"


class EntityType(str, Enum):
    """Entity a reconciliation issue or count refers to."""

    PATIENT = "patient"
    VISIT = "visit"
    OBSERVATION = "observation"
    FILE = "file"


class IssueSeverity(str, Enum):
    """Severity of an ImportIssue."""

    ERROR = "error"
    WARNING = "warning"


class InOutCode(str, Enum):
    """Visit setting (INOUT_CD)."""

    INPATIENT = "I"
    OUTPATIENT = "O"
    EMERGENCY = "E"


class SexCode(str, Enum):
    """Patient sex (SEX_CD)."""

    MALE = "M"
    FEMALE = "F"
    UNKNOWN = "U"
