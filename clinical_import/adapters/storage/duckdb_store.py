"""DuckDB Store Adapter.

This adapter implements the StorePort contract on DuckDB with an i2b2-style
three-level layout:

    patient_dimension   one row per patient, unique PATIENT_CD natural key
    visit_dimension     one row per visit, owned by a patient
    observation_fact    one row per observation, owned by a patient and visit

Surrogate keys (PATIENT_NUM, ENCOUNTER_NUM, OBSERVATION_ID) come from
sequences and are returned through ``INSERT ... RETURNING``.

Security Impact:
    - All statements are parameterised; no record value is interpolated into SQL
    - Natural-key uniqueness is enforced by the schema, so concurrent imports of
      the same patient surface as DuplicateKeyError instead of silent duplicates

Architecture:
    - Implements StorePort and the repository ports (Hexagonal Architecture)
    - Isolated from domain services - only depends on ports and models
    - Each statement autocommits unless run inside ``transaction()``
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import duckdb

from clinical_import.domain.import_model import ObservationRecord, PatientRecord, VisitRecord
from clinical_import.domain.ports import (
    DuplicateKeyError,
    ObservationRepositoryPort,
    PatientRepositoryPort,
    Result,
    StorageError,
    StorePort,
    VisitRepositoryPort,
)
from clinical_import.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

PATIENT_COLUMNS = (
    "patient_cd", "vital_status_cd", "birth_date", "death_date", "age_in_years", "sex_cd",
    "language_cd", "race_cd", "marital_status_cd", "religion_cd", "statecityzip_path",
    "patient_blob", "sourcesystem_cd", "upload_id",
)

VISIT_COLUMNS = (
    "active_status_cd", "start_date", "end_date", "inout_cd", "location_cd", "length_of_stay",
    "visit_blob", "sourcesystem_cd", "upload_id",
)

OBSERVATION_COLUMNS = (
    "concept_cd", "category_char", "provider_id", "start_date", "end_date", "instance_num",
    "valtype_cd", "tval_char", "nval_num", "valueflag_cd", "quantity_num", "unit_cd",
    "location_cd", "confidence_num", "observation_blob", "sourcesystem_cd", "upload_id",
)

SCHEMA_STATEMENTS = (
    "CREATE SEQUENCE IF NOT EXISTS seq_patient_num START 1",
    "CREATE SEQUENCE IF NOT EXISTS seq_encounter_num START 1",
    "CREATE SEQUENCE IF NOT EXISTS seq_observation_id START 1",
    """
    CREATE TABLE IF NOT EXISTS patient_dimension (
        patient_num BIGINT PRIMARY KEY DEFAULT nextval('seq_patient_num'),
        patient_cd VARCHAR NOT NULL UNIQUE,
        vital_status_cd VARCHAR,
        birth_date DATE,
        death_date DATE,
        age_in_years INTEGER,
        sex_cd VARCHAR,
        language_cd VARCHAR,
        race_cd VARCHAR,
        marital_status_cd VARCHAR,
        religion_cd VARCHAR,
        statecityzip_path VARCHAR,
        patient_blob VARCHAR,
        sourcesystem_cd VARCHAR,
        upload_id INTEGER,
        import_date TIMESTAMP NOT NULL,
        update_date TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS visit_dimension (
        encounter_num BIGINT PRIMARY KEY DEFAULT nextval('seq_encounter_num'),
        patient_num BIGINT NOT NULL,
        active_status_cd VARCHAR,
        start_date TIMESTAMP,
        end_date TIMESTAMP,
        inout_cd VARCHAR,
        location_cd VARCHAR,
        length_of_stay INTEGER,
        visit_blob VARCHAR,
        sourcesystem_cd VARCHAR,
        upload_id INTEGER,
        import_date TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS observation_fact (
        observation_id BIGINT PRIMARY KEY DEFAULT nextval('seq_observation_id'),
        encounter_num BIGINT NOT NULL,
        patient_num BIGINT NOT NULL,
        concept_cd VARCHAR NOT NULL,
        category_char VARCHAR,
        provider_id VARCHAR NOT NULL DEFAULT '@',
        start_date TIMESTAMP,
        end_date TIMESTAMP,
        instance_num INTEGER NOT NULL DEFAULT 1,
        valtype_cd VARCHAR,
        tval_char VARCHAR,
        nval_num DOUBLE,
        valueflag_cd VARCHAR,
        quantity_num DOUBLE,
        unit_cd VARCHAR,
        location_cd VARCHAR,
        confidence_num DOUBLE,
        observation_blob VARCHAR,
        source_observation_id VARCHAR,
        sourcesystem_cd VARCHAR,
        upload_id INTEGER,
        import_date TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_visit_patient ON visit_dimension(patient_num)",
    "CREATE INDEX IF NOT EXISTS idx_observation_patient ON observation_fact(patient_num)",
    "CREATE INDEX IF NOT EXISTS idx_observation_encounter ON observation_fact(encounter_num)",
    "CREATE INDEX IF NOT EXISTS idx_observation_concept ON observation_fact(concept_cd)",
)


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class DuckDBStore(StorePort):
    """DuckDB implementation of StorePort.

    Parameters:
        db_config: DatabaseConfig from the configuration manager (preferred)
        db_path: Path to the database file, or ':memory:'

    Example Usage:
        ```python
        store = DuckDBStore(db_path="data/clinical.duckdb")
        store.initialize_schema()
        patient_num = store.patients.create(PatientRecord(patient_cd="P1"))
        ```
    """

    def __init__(self, db_config: Optional[DatabaseConfig] = None, db_path: Optional[str] = None):
        """Initialize the store; the connection is opened lazily.

        Raises:
            StorageError: If the database directory does not exist
        """
        if db_config:
            self.db_path = db_config.db_path
            self.read_only = db_config.read_only
        else:
            self.db_path = db_path or ":memory:"
            self.read_only = False

        if self.db_path != ":memory:" and not Path(self.db_path).parent.exists():
            raise StorageError(
                f"Database directory does not exist: {Path(self.db_path).parent}",
                operation="__init__",
            )

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False
        self._in_transaction = False
        self._patients = DuckDBPatientRepository(self)
        self._visits = DuckDBVisitRepository(self)
        self._observations = DuckDBObservationRepository(self)

    @property
    def patients(self) -> "DuckDBPatientRepository":
        return self._patients

    @property
    def visits(self) -> "DuckDBVisitRepository":
        return self._visits

    @property
    def observations(self) -> "DuckDBObservationRepository":
        return self._observations

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection."""
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path, read_only=self.read_only)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except duckdb.Error as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path},
                )
        return self._connection

    def initialize_schema(self) -> Result[None]:
        """Create sequences, tables and indexes if they do not exist.

        Returns:
            Result[None]: Success or failure result
        """
        try:
            conn = self._get_connection()
            if not self.read_only:
                for statement in SCHEMA_STATEMENTS:
                    conn.execute(statement)
            self._initialized = True
            logger.info("Database schema initialized successfully")
            return Result.success_result(None)
        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError",
            )

    def _ensure_schema(self, operation: str) -> duckdb.DuckDBPyConnection:
        if not self._initialized:
            init_result = self.initialize_schema()
            if init_result.is_failure():
                raise StorageError(init_result.error, operation=operation)
        return self._get_connection()

    def execute(self, sql: str, params: Optional[list] = None, operation: str = "execute") -> duckdb.DuckDBPyConnection:
        """Run one statement, translating DuckDB errors.

        Raises:
            DuplicateKeyError: On a unique or primary key violation
            StorageError: On any other database error
        """
        conn = self._ensure_schema(operation)
        try:
            return conn.execute(sql, params or [])
        except duckdb.ConstraintException as e:
            message = str(e)
            if "unique" in message.lower() or "primary key" in message.lower() or "duplicate" in message.lower():
                raise DuplicateKeyError(f"Duplicate key in {operation}: {message}", operation=operation) from e
            raise StorageError(f"Constraint violated in {operation}: {message}", operation=operation) from e
        except duckdb.Error as e:
            raise StorageError(f"{operation} failed: {str(e)}", operation=operation) from e

    def executemany(self, sql: str, rows: list[list], operation: str) -> None:
        conn = self._ensure_schema(operation)
        try:
            conn.executemany(sql, rows)
        except duckdb.ConstraintException as e:
            raise DuplicateKeyError(f"Duplicate key in {operation}: {e}", operation=operation) from e
        except duckdb.Error as e:
            raise StorageError(f"{operation} failed: {str(e)}", operation=operation) from e

    def fetch_dicts(self, sql: str, params: Optional[list] = None, operation: str = "query") -> list[Dict[str, Any]]:
        cursor = self.execute(sql, params, operation)
        columns = [d[0] for d in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    @contextmanager
    def transaction(self) -> Iterator["DuckDBStore"]:
        """Run the enclosed statements in one transaction.

        Commits on normal exit, rolls back and re-raises on any exception.
        Nested use joins the outer transaction.
        """
        if self._in_transaction:
            yield self
            return

        conn = self._ensure_schema("begin")
        conn.begin()
        self._in_transaction = True
        try:
            yield self
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._in_transaction = False

    def close(self) -> None:
        """Close storage connection and release resources."""
        if self._connection is not None:
            try:
                self._connection.close()
                logger.info("Closed DuckDB connection")
            except duckdb.Error as e:
                logger.warning(f"Error closing connection: {str(e)}")
            finally:
                self._connection = None
                self._initialized = False


class _Repository:
    table: str = ""
    key: str = ""

    def __init__(self, store: DuckDBStore):
        self.store = store

    def find_by_id(self, surrogate: int) -> Optional[Dict[str, Any]]:
        rows = self.store.fetch_dicts(
            f"SELECT * FROM {self.table} WHERE {self.key} = ?", [surrogate], operation=f"find_{self.table}"
        )
        return rows[0] if rows else None

    def count(self, sourcesystem_cd: Optional[str] = None) -> int:
        if sourcesystem_cd is None:
            cursor = self.store.execute(f"SELECT COUNT(*) FROM {self.table}", operation=f"count_{self.table}")
        else:
            cursor = self.store.execute(
                f"SELECT COUNT(*) FROM {self.table} WHERE sourcesystem_cd = ?",
                [sourcesystem_cd],
                operation=f"count_{self.table}",
            )
        return cursor.fetchone()[0]


class DuckDBPatientRepository(_Repository, PatientRepositoryPort):
    table = "patient_dimension"
    key = "patient_num"

    def find_by_natural_key(self, patient_cd: str) -> Optional[Dict[str, Any]]:
        rows = self.store.fetch_dicts(
            "SELECT * FROM patient_dimension WHERE patient_cd = ?", [patient_cd], operation="find_patient"
        )
        return rows[0] if rows else None

    def create(self, patient: PatientRecord) -> int:
        """Insert a patient; the file-local patient number is never stored.

        Raises:
            DuplicateKeyError: If the natural key already exists
            StorageError: On any other failure
        """
        if not patient.patient_cd:
            raise StorageError("Patient has no PATIENT_CD", operation="create_patient")
        values = patient.model_dump(include=set(PATIENT_COLUMNS))
        columns = PATIENT_COLUMNS + ("import_date",)
        row = [values[c] for c in PATIENT_COLUMNS] + [datetime.now()]
        cursor = self.store.execute(
            f"INSERT INTO patient_dimension ({', '.join(columns)}) VALUES ({_placeholders(len(columns))}) "
            "RETURNING patient_num",
            row,
            operation="create_patient",
        )
        patient_num = cursor.fetchone()[0]
        logger.debug(f"Created patient {patient.patient_cd} as {patient_num}")
        return patient_num

    def update(self, patient_num: int, changes: Dict[str, Any]) -> bool:
        """Overwrite the given non-key fields of a patient.

        Returns:
            bool: True if a row was updated
        """
        fields = {k: v for k, v in changes.items() if k in PATIENT_COLUMNS and k != "patient_cd"}
        if not fields:
            return False
        assignments = ", ".join(f"{name} = ?" for name in fields)
        cursor = self.store.execute(
            f"UPDATE patient_dimension SET {assignments}, update_date = ? WHERE patient_num = ?",
            list(fields.values()) + [datetime.now(), patient_num],
            operation="update_patient",
        )
        updated = cursor.fetchone()
        return bool(updated and updated[0])


class DuckDBVisitRepository(_Repository, VisitRepositoryPort):
    table = "visit_dimension"
    key = "encounter_num"

    def create(self, visit: VisitRecord, patient_num: int) -> int:
        values = visit.model_dump(include=set(VISIT_COLUMNS))
        columns = ("patient_num",) + VISIT_COLUMNS + ("import_date",)
        row = [patient_num] + [values[c] for c in VISIT_COLUMNS] + [datetime.now()]
        cursor = self.store.execute(
            f"INSERT INTO visit_dimension ({', '.join(columns)}) VALUES ({_placeholders(len(columns))}) "
            "RETURNING encounter_num",
            row,
            operation="create_visit",
        )
        return cursor.fetchone()[0]

    def find_by_patient(self, patient_num: int) -> list[Dict[str, Any]]:
        return self.store.fetch_dicts(
            "SELECT * FROM visit_dimension WHERE patient_num = ? ORDER BY encounter_num",
            [patient_num],
            operation="find_visits",
        )


class DuckDBObservationRepository(_Repository, ObservationRepositoryPort):
    table = "observation_fact"
    key = "observation_id"

    _COLUMNS = ("encounter_num", "patient_num") + OBSERVATION_COLUMNS + ("source_observation_id", "import_date")

    @staticmethod
    def _row(observation: ObservationRecord, patient_num: int, encounter_num: int, now: datetime) -> list:
        values = observation.model_dump(include=set(OBSERVATION_COLUMNS))
        if observation.valtype_cd is not None:
            values["valtype_cd"] = observation.valtype_cd.value
        return (
            [encounter_num, patient_num]
            + [values[c] for c in OBSERVATION_COLUMNS]
            + [observation.observation_id, now]
        )

    def create(self, observation: ObservationRecord, patient_num: int, encounter_num: int) -> int:
        cursor = self.store.execute(
            f"INSERT INTO observation_fact ({', '.join(self._COLUMNS)}) "
            f"VALUES ({_placeholders(len(self._COLUMNS))}) RETURNING observation_id",
            self._row(observation, patient_num, encounter_num, datetime.now()),
            operation="create_observation",
        )
        return cursor.fetchone()[0]

    def create_many(self, rows: list[tuple[ObservationRecord, int, int]]) -> int:
        """Insert many observations with one prepared statement.

        Returns:
            int: Number of rows written
        """
        if not rows:
            return 0
        now = datetime.now()
        self.store.executemany(
            f"INSERT INTO observation_fact ({', '.join(self._COLUMNS)}) "
            f"VALUES ({_placeholders(len(self._COLUMNS))})",
            [self._row(o, p, e, now) for o, p, e in rows],
            operation="create_observations",
        )
        logger.debug(f"Inserted batch of {len(rows)} observations")
        return len(rows)

    def find_by_patient(self, patient_num: int) -> list[Dict[str, Any]]:
        return self.store.fetch_dicts(
            "SELECT * FROM observation_fact WHERE patient_num = ? ORDER BY observation_id",
            [patient_num],
            operation="find_observations",
        )
