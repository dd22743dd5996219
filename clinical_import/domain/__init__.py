"""Domain layer for Clinical Import.

This module contains the canonical import model, the result envelope, the
identifier map and the ports adapters implement. All domain models are pure
Python with no external dependencies beyond Pydantic.
"""

from .import_model import (
    PatientRecord,
    VisitRecord,
    ObservationRecord,
    ImportStructure,
    create_import_structure,
)

__all__ = [
    "PatientRecord",
    "VisitRecord",
    "ObservationRecord",
    "ImportStructure",
    "create_import_structure",
]
