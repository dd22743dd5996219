"""Shared fixtures for Clinical Import tests."""

import pytest

from clinical_import.adapters.parsers import default_parsers
from clinical_import.adapters.storage import DuckDBStore
from clinical_import.domain.services.import_service import ImportService


@pytest.fixture
def store():
    """Fresh in-memory DuckDB store with the schema created."""
    duckdb_store = DuckDBStore(db_path=":memory:")
    result = duckdb_store.initialize_schema()
    assert result.is_success()
    yield duckdb_store
    duckdb_store.close()


@pytest.fixture
def service():
    """Import service with the default parser registry."""
    return ImportService(default_parsers())


@pytest.fixture
def variant_a_csv():
    """Two-header CSV export: two patients, three visits."""
    return (
        "# Export Date: 2024-03-01\n"
        "# Source: Ward export\n"
        "Patient,Sex,Visit Date,Heart Rate,Diagnosis\n"
        "PATIENT_CD,SEX_CD,START_DATE,LOINC: 8867-4,ICD10: DX\n"
        "P001,female,2024-01-15,72,I10\n"
        "P001,female,2024-02-20,80,\n"
        "P002,male,2024-01-16,65,E11\n"
    )
