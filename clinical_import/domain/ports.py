"""Domain Ports - Abstract Contracts for Clinical Import.

This module defines the Port interfaces (abstract contracts) that Adapters must implement.
Following Hexagonal Architecture, the Domain Core defines what it needs, not how it's provided.

Security Impact:
    - Parsers never touch the store; only validated canonical records cross the port
    - Store failures surface as typed exceptions, never as partially-written state
      hidden from the reconciliation engine

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Parser adapters (CSV, JSON, HL7, HTML) implement ParserPort
    - Storage adapters (DuckDB) implement StorePort and the repository ports
    - Result type communicates parse failures without exceptions
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar, Union

from clinical_import.domain.enums import ImportFormat
from clinical_import.domain.import_model import (
    ImportStructure,
    ObservationRecord,
    PatientRecord,
    VisitRecord,
)

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Parsers return a Result so that a malformed file is reported as data
    (error code plus issue list) instead of an exception crossing the port.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error message (only present if success=False)
        error_type: Error code (e.g. "INVALID_JSON", "MISSING_HEADERS")
        error_details: Additional error context; parsers put the list of
            structured issues under the "issues" key

    Example:
        ```python
        result = parser.parse(content)
        if result.is_success():
            structure = result.value
        else:
            for issue in result.error_details.get("issues", []):
                report(issue)
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(success=True, value=value)

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Error code (e.g., "INVALID_JSON", "HL7_IMPORT_ERROR")
            error_details: Additional context (issues, source, position, etc.)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class IngestionError(Exception):
    """Base exception for all import-related errors."""
    pass


class ValidationError(IngestionError):
    """Raised when data fails structural validation.

    Attributes:
        source: The source identifier that failed validation
        details: Additional error details or validation messages
    """

    def __init__(self, message: str, source: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.source = source
        self.details = details or {}


class TransformationError(IngestionError):
    """Raised when raw data cannot be transformed into canonical records.

    Attributes:
        source: The source identifier that failed transformation
        raw_data: The raw data that failed transformation (may be truncated)
    """

    def __init__(self, message: str, source: Optional[str] = None, raw_data: Optional[dict] = None):
        super().__init__(message)
        self.source = source
        self.raw_data = raw_data


class UnsupportedSourceError(IngestionError):
    """Raised when no parser is able to handle the given content.

    Attributes:
        source: The source identifier that is unsupported
        adapter: The parser that cannot handle the source
    """

    def __init__(self, message: str, source: Optional[str] = None, adapter: Optional[str] = None):
        super().__init__(message)
        self.source = source
        self.adapter = adapter


class StorageError(IngestionError):
    """Raised when a store operation fails.

    Attributes:
        operation: The store operation that failed (e.g. "create_patient")
        details: Additional error context
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


class DuplicateKeyError(StorageError):
    """Raised by a store when a unique natural key already exists."""
    pass


class DuplicateRecordError(IngestionError):
    """Raised when the ``error`` duplicate strategy meets an existing patient.

    Attributes:
        natural_key: The patient natural key that already exists
        position: Position of the offending patient in the batch
    """

    def __init__(self, message: str, natural_key: Optional[str] = None, position: Optional[int] = None):
        super().__init__(message)
        self.natural_key = natural_key
        self.position = position


class ImportAbortedError(IngestionError):
    """Raised by ImportResult.raise_for_errors() for an unsuccessful import.

    Attributes:
        errors: The issues recorded by the aborted import
    """

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


# ============================================================================
# Parser Port
# ============================================================================

class ParserPort(ABC):
    """Abstract contract for format parsers.

    A parser turns raw file content into the canonical ImportStructure.
    It never touches the store; all failures are reported through Result.

    Attributes:
        format: The ImportFormat this parser handles
        name: Human-readable parser name
    """

    format: ImportFormat = ImportFormat.UNKNOWN
    name: str = "parser"

    @abstractmethod
    def parse(self, content: str, options: Optional[Dict[str, Any]] = None) -> Result[ImportStructure]:
        """Parse content into the canonical import model.

        Parameters:
            content: Raw file content
            options: Parser options (e.g. "filename")

        Returns:
            Result[ImportStructure]: Success with the structure, or failure with
                ``error_type`` set to the primary error code and
                ``error_details["issues"]`` holding every issue found
        """
        pass

    def can_parse(self, content: str, filename: Optional[str] = None) -> bool:
        """Check whether this parser recognises the content (optional)."""
        return False


# ============================================================================
# Store Ports
# ============================================================================

class PatientRepositoryPort(ABC):
    """Patient dimension access."""

    @abstractmethod
    def find_by_natural_key(self, patient_cd: str) -> Optional[Dict[str, Any]]:
        """Look up a patient row by natural key; None if absent."""
        pass

    @abstractmethod
    def find_by_id(self, patient_num: int) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def create(self, patient: PatientRecord) -> int:
        """Insert a patient and return its surrogate key.

        Raises:
            DuplicateKeyError: If the natural key already exists
            StorageError: If the insert fails
        """
        pass

    @abstractmethod
    def update(self, patient_num: int, changes: Dict[str, Any]) -> bool:
        """Update columns of an existing patient; False if no row matched."""
        pass

    @abstractmethod
    def count(self, sourcesystem_cd: Optional[str] = None) -> int:
        pass


class VisitRepositoryPort(ABC):
    """Visit dimension access."""

    @abstractmethod
    def create(self, visit: VisitRecord, patient_num: int) -> int:
        """Insert a visit for a resolved patient and return its surrogate key."""
        pass

    @abstractmethod
    def find_by_id(self, encounter_num: int) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def find_by_patient(self, patient_num: int) -> list[Dict[str, Any]]:
        pass

    @abstractmethod
    def count(self, sourcesystem_cd: Optional[str] = None) -> int:
        pass


class ObservationRepositoryPort(ABC):
    """Observation fact access."""

    @abstractmethod
    def create(self, observation: ObservationRecord, patient_num: int, encounter_num: int) -> int:
        """Insert one observation for resolved keys and return its id."""
        pass

    @abstractmethod
    def create_many(self, rows: list[tuple[ObservationRecord, int, int]]) -> int:
        """Insert (observation, patient_num, encounter_num) rows in one call.

        Returns:
            int: Number of rows written

        Raises:
            StorageError: If any row fails; callers roll back the transaction
        """
        pass

    @abstractmethod
    def find_by_patient(self, patient_num: int) -> list[Dict[str, Any]]:
        pass

    @abstractmethod
    def count(self, sourcesystem_cd: Optional[str] = None) -> int:
        pass


class StorePort(ABC):
    """Abstract contract for the clinical store.

    Groups the three repositories and exposes transaction control. The
    reconciliation engine only ever talks to this port.
    """

    @property
    @abstractmethod
    def patients(self) -> PatientRepositoryPort:
        pass

    @property
    @abstractmethod
    def visits(self) -> VisitRepositoryPort:
        pass

    @property
    @abstractmethod
    def observations(self) -> ObservationRepositoryPort:
        pass

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """Context manager that commits on success and rolls back on error."""
        pass

    @abstractmethod
    def initialize_schema(self) -> Result[None]:
        pass

    @abstractmethod
    def close(self) -> None:
        pass
