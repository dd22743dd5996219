"""Reconciliation Engine.

This module writes a parsed ImportStructure into the clinical store. File
identifiers (patient natural keys, file-local patient numbers, temporary
visit ids) are translated into store surrogate keys through a run-scoped
IdentifierMap, the duplicate strategy is applied to patients, and every
record-level failure is accounted for in the result envelope.

Phases run strictly in order, each completing before the next starts:

    1. Patients      natural key lookup, then create / skip / update / abort
    2. Visits        patient resolved through the map (store lookup fallback)
    3. Observations  patient and visit resolved; unresolved visits fall back
                     to one default visit per patient; rows written in batches

Security Impact:
    - A structural pre-check rejects malformed input before any store write
    - The ``error`` duplicate strategy checks every natural key before the
      first create, so an aborted run leaves the patient phase untouched

Architecture:
    - Domain service depending only on StorePort (Hexagonal Architecture)
    - Phases commit independently; a failure in a later phase never rolls
      back an earlier one
"""

import logging
import time
import uuid
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from clinical_import.domain.enums import DuplicateStrategy, EntityType, InOutCode
from clinical_import.domain.identifier_map import IdentifierConflictError, IdentifierMap
from clinical_import.domain.import_model import (
    ImportStructure,
    ObservationRecord,
    PatientRecord,
    VisitRecord,
    create_import_structure,
)
from clinical_import.domain.ports import DuplicateRecordError, StorageError, StorePort
from clinical_import.domain.results import ImportResult

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
DEFAULT_VISIT_LOCATION = "Data Import"
PATIENT_KEY_FIELDS = {"patient_cd", "patient_num"}


class ReconciliationEngine:
    """Reconciles canonical import data against the clinical store.

    Parameters:
        store: Store implementing StorePort
        batch_size: Observation rows written per batch

    Example Usage:
        ```python
        engine = ReconciliationEngine(DuckDBStore())
        result = engine.import_to_database(structure, duplicate_strategy="update")
        print(result.count(EntityType.PATIENT))
        ```
    """

    def __init__(self, store: StorePort, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.store = store
        self.batch_size = batch_size

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def import_to_database(
        self,
        structure: Union[ImportStructure, Mapping, None],
        duplicate_strategy: Union[DuplicateStrategy, str] = DuplicateStrategy.SKIP,
        import_id: Optional[str] = None,
    ) -> ImportResult:
        """Write an import structure into the store.

        Parameters:
            structure: ImportStructure or a mapping with a ``data`` container
            duplicate_strategy: skip, update or error
            import_id: Run id attached to log records; generated if omitted

        Returns:
            ImportResult: Per-entity counts, identifier map, errors and
                warnings. ``success`` is False only for a failed pre-check, an
                ``error``-strategy abort or an unexpected store failure.
        """
        started = time.perf_counter()
        id_map = IdentifierMap()
        result = ImportResult(identifier_map=id_map)
        result.metadata["import_id"] = import_id or str(uuid.uuid4())
        result.statistics.update(default_visits=0, patients_updated=0, visits_inferred=0)

        try:
            strategy = DuplicateStrategy(str(getattr(duplicate_strategy, "value", duplicate_strategy)).lower())
        except ValueError:
            result.fail("INVALID_DUPLICATE_STRATEGY", f"Unknown duplicate strategy: {duplicate_strategy!r}")
            return self._finish(result, started)
        result.metadata["duplicate_strategy"] = strategy.value

        canonical = self._coerce(structure)
        if not self._precheck(canonical, result):
            return self._finish(result, started)

        data = canonical.data
        result.count(EntityType.PATIENT).total = len(data.patients)
        result.count(EntityType.VISIT).total = len(data.visits)
        result.count(EntityType.OBSERVATION).total = len(data.observations)
        logger.info(
            f"Reconciling {len(data.patients)} patients, {len(data.visits)} visits, "
            f"{len(data.observations)} observations (strategy={strategy.value})",
            extra={"import_id": result.metadata["import_id"]},
        )

        try:
            if strategy is DuplicateStrategy.ERROR:
                self._check_duplicates(data.patients)
            self._import_patients(data.patients, strategy, id_map, result)
            self._import_visits(data.visits, id_map, result)
            self._import_observations(data.observations, id_map, result)
        except DuplicateRecordError as e:
            logger.warning(f"Import aborted: {e}")
            result.fail(
                "DUPLICATE_PATIENT",
                str(e),
                entity=EntityType.PATIENT,
                position=e.position,
                details={"patient_cd": e.natural_key},
            )
        except StorageError as e:
            logger.error(f"Store failure during import: {e}", exc_info=True)
            result.fail("DATABASE_IMPORT_FAILED", f"Database import failed: {e}", details={"operation": e.operation})

        duplicates = result.count(EntityType.PATIENT).duplicates
        if duplicates:
            result.add_warning(
                "DUPLICATES_ENCOUNTERED",
                f"{duplicates} patient(s) already existed (strategy={strategy.value})",
                entity=EntityType.PATIENT,
                details={"count": duplicates, "strategy": strategy.value},
            )
        return self._finish(result, started)

    def get_import_statistics(self, sourcesystem_cd: Optional[str] = None) -> Dict[str, Any]:
        """Count the rows held by the store.

        Parameters:
            sourcesystem_cd: Restrict counts to one source system

        Returns:
            dict: patients, visits and observations counts

        Raises:
            StorageError: If the store cannot be queried
        """
        return {
            "patients": self.store.patients.count(sourcesystem_cd),
            "visits": self.store.visits.count(sourcesystem_cd),
            "observations": self.store.observations.count(sourcesystem_cd),
            "sourcesystem_cd": sourcesystem_cd,
            "fetched_at": datetime.now().isoformat(),
        }

    # ------------------------------------------------------------------
    # Pre-check
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce(structure: Any) -> Optional[ImportStructure]:
        """Accept an ImportStructure or a mapping shaped like one."""
        if isinstance(structure, ImportStructure):
            return structure
        if not isinstance(structure, Mapping) or not isinstance(structure.get("data"), Mapping):
            return None
        data = structure["data"]
        try:
            return create_import_structure(
                data.get("patients"),
                data.get("visits"),
                data.get("observations"),
                metadata=dict(structure.get("metadata") or {}),
            )
        except (PydanticValidationError, TypeError) as e:
            logger.warning(f"Import data is not a valid structure: {e}")
            return None

    @staticmethod
    def _precheck(structure: Optional[ImportStructure], result: ImportResult) -> bool:
        if structure is None:
            result.fail("INVALID_STRUCTURE", "Invalid import data structure")
            return False
        if not structure.data.patients:
            result.fail("NO_PATIENTS", "No patients found in import data", entity=EntityType.PATIENT)
            return False
        for position, patient in enumerate(structure.data.patients):
            if not patient.patient_cd:
                result.fail(
                    "MISSING_PATIENT_ID",
                    f"Patient at position {position} has no PATIENT_CD",
                    entity=EntityType.PATIENT,
                    position=position,
                )
        return result.success

    def _check_duplicates(self, patients: list[PatientRecord]) -> None:
        """Raise on the first natural key already in the store or repeated in the batch.

        Raises:
            DuplicateRecordError: Naming the offending key
        """
        seen = set()
        for position, patient in enumerate(patients):
            key = patient.patient_cd
            if key in seen or self.store.patients.find_by_natural_key(key) is not None:
                raise DuplicateRecordError(
                    f"Patient with PATIENT_CD '{key}' already exists",
                    natural_key=key,
                    position=position,
                )
            seen.add(key)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _import_patients(
        self,
        patients: list[PatientRecord],
        strategy: DuplicateStrategy,
        id_map: IdentifierMap,
        result: ImportResult,
    ) -> None:
        counts = result.count(EntityType.PATIENT)
        for position, patient in enumerate(patients):
            key = patient.patient_cd
            try:
                surrogate = id_map.patients.get(key)
                if surrogate is None:
                    existing = self.store.patients.find_by_natural_key(key)
                    surrogate = existing["patient_num"] if existing else None

                if surrogate is None:
                    surrogate = self.store.patients.create(patient)
                    counts.imported += 1
                elif strategy is DuplicateStrategy.ERROR:
                    raise DuplicateRecordError(
                        f"Patient with PATIENT_CD '{key}' already exists", natural_key=key, position=position
                    )
                else:
                    if strategy is DuplicateStrategy.UPDATE:
                        changes = patient.model_dump(
                            exclude=PATIENT_KEY_FIELDS, exclude_unset=True, exclude_defaults=True
                        )
                        if self.store.patients.update(surrogate, changes):
                            result.statistics["patients_updated"] += 1
                    counts.duplicates += 1
            except StorageError as e:
                logger.warning(f"Failed to import patient {key}: {e}")
                counts.failed += 1
                result.add_error(
                    "PATIENT_IMPORT_FAILED",
                    f"Failed to import patient {key}: {e}",
                    entity=EntityType.PATIENT,
                    position=position,
                    details={"patient_cd": key},
                )
                continue

            id_map.bind_patient(key, surrogate)
            self._bind_original_number(id_map, patient, surrogate, position, result)

    @staticmethod
    def _bind_original_number(
        id_map: IdentifierMap, patient: PatientRecord, surrogate: int, position: int, result: ImportResult
    ) -> None:
        if patient.patient_num is None:
            return
        try:
            id_map.bind_patient(patient.patient_cd, surrogate, original_num=patient.patient_num)
        except IdentifierConflictError as e:
            result.add_warning(
                "AMBIGUOUS_PATIENT_NUMBER",
                f"File-local patient number {patient.patient_num} is used by more than one patient",
                entity=EntityType.PATIENT,
                position=position,
                details={"patient_num": patient.patient_num, "reason": str(e)},
            )

    def _resolve_patient(
        self, id_map: IdentifierMap, patient_cd: Optional[str], patient_num: Optional[str]
    ) -> Optional[int]:
        """Resolve a patient surrogate through the map, then the store."""
        surrogate = id_map.resolve_patient(patient_cd, patient_num)
        if surrogate is None and patient_cd:
            existing = self.store.patients.find_by_natural_key(patient_cd)
            if existing is not None:
                surrogate = existing["patient_num"]
                id_map.bind_patient(patient_cd, surrogate)
        return surrogate

    def _import_visits(self, visits: list[VisitRecord], id_map: IdentifierMap, result: ImportResult) -> None:
        counts = result.count(EntityType.VISIT)
        for position, visit in enumerate(visits):
            try:
                patient_num = self._resolve_patient(id_map, visit.patient_cd, visit.patient_num)
                if patient_num is None:
                    counts.failed += 1
                    result.add_error(
                        "VISIT_PATIENT_NOT_FOUND",
                        f"Patient not found for visit: {visit.patient_cd or visit.patient_num}",
                        entity=EntityType.VISIT,
                        position=position,
                        details={"patient_cd": visit.patient_cd, "patient_num": visit.patient_num},
                    )
                    continue
                encounter_num = self.store.visits.create(visit, patient_num)
            except StorageError as e:
                logger.warning(f"Failed to import visit at position {position}: {e}")
                counts.failed += 1
                result.add_error(
                    "VISIT_IMPORT_FAILED", f"Failed to import visit: {e}", entity=EntityType.VISIT, position=position
                )
                continue

            counts.imported += 1
            temp_id = visit.encounter_num if visit.encounter_num is not None else str(position)
            try:
                id_map.bind_visit(temp_id, encounter_num, patient_num)
            except IdentifierConflictError:
                result.add_warning(
                    "DUPLICATE_VISIT_REFERENCE",
                    f"Visit reference {temp_id} is used by more than one visit of patient "
                    f"{visit.patient_cd or patient_num}; the first one is kept",
                    entity=EntityType.VISIT,
                    position=position,
                    details={"encounter_num": temp_id, "patient_num": patient_num},
                )

    def _default_visit(
        self, id_map: IdentifierMap, patient_num: int, observation: ObservationRecord, result: ImportResult
    ) -> int:
        """The run's default visit for a patient, created on first use."""
        encounter_num = id_map.default_visit_for(patient_num)
        if encounter_num is not None:
            return encounter_num

        visit = VisitRecord(
            patient_cd=observation.patient_cd,
            start_date=observation.start_date or datetime.now(),
            location_cd=DEFAULT_VISIT_LOCATION,
            inout_cd=InOutCode.OUTPATIENT.value,
            sourcesystem_cd=observation.sourcesystem_cd,
        )
        encounter_num = self.store.visits.create(visit, patient_num)
        id_map.bind_default_visit(patient_num, encounter_num)
        result.statistics["default_visits"] += 1
        result.add_warning(
            "DEFAULT_VISIT_CREATED",
            f"Created default visit {encounter_num} for patient {observation.patient_cd or patient_num}",
            entity=EntityType.VISIT,
            details={"patient_num": patient_num, "encounter_num": encounter_num,
                     "visit_reference": observation.encounter_num},
        )
        return encounter_num

    def _import_observations(
        self, observations: list[ObservationRecord], id_map: IdentifierMap, result: ImportResult
    ) -> None:
        rows: list[tuple[int, ObservationRecord, int, int]] = []
        inferred: list[int] = []

        for position, observation in enumerate(observations):
            try:
                patient_num = self._resolve_patient(id_map, observation.patient_cd, observation.patient_num)
                if patient_num is None:
                    self._reject(result, position, "OBSERVATION_PATIENT_NOT_FOUND",
                                 f"Patient not found for observation: {observation.patient_cd or observation.patient_num}")
                    continue
                if not observation.concept_cd:
                    self._reject(result, position, "MISSING_CONCEPT_CODE", "Observation has no CONCEPT_CD")
                    continue
                if not observation.has_value():
                    self._reject(
                        result, position, "INVALID_OBSERVATION_VALUE",
                        f"Observation {observation.concept_cd} has value type "
                        f"{observation.valtype_cd.value if observation.valtype_cd else None} but no matching value",
                    )
                    continue

                if observation.encounter_num is not None:
                    encounter_num = id_map.resolve_visit(observation.encounter_num, patient_num)
                else:
                    encounter_num = id_map.first_visit_for(patient_num)
                    if encounter_num is not None:
                        inferred.append(position)
                if encounter_num is None or id_map.visit_owner(encounter_num) != patient_num:
                    encounter_num = self._default_visit(id_map, patient_num, observation, result)
            except StorageError as e:
                self._reject(result, position, "OBSERVATION_IMPORT_FAILED", f"Failed to import observation: {e}")
                continue

            rows.append((position, observation, patient_num, encounter_num))

        if inferred:
            result.statistics["visits_inferred"] = len(inferred)
            result.add_warning(
                "VISIT_INFERRED",
                f"{len(inferred)} observation(s) without a visit reference attached to "
                f"their patient's first visit",
                entity=EntityType.OBSERVATION,
                details={"count": len(inferred), "positions": inferred},
            )

        for start in range(0, len(rows), self.batch_size):
            self._write_batch(rows[start:start + self.batch_size], result)

    def _write_batch(self, batch: list[tuple[int, ObservationRecord, int, int]], result: ImportResult) -> None:
        """Write one batch in a transaction; on failure retry row by row."""
        counts = result.count(EntityType.OBSERVATION)
        try:
            with self.store.transaction():
                self.store.observations.create_many([(o, p, e) for _, o, p, e in batch])
            counts.imported += len(batch)
            return
        except StorageError as e:
            logger.warning(f"Observation batch of {len(batch)} failed, retrying row by row: {e}")

        for position, observation, patient_num, encounter_num in batch:
            try:
                self.store.observations.create(observation, patient_num, encounter_num)
                counts.imported += 1
            except StorageError as e:
                self._reject(result, position, "OBSERVATION_IMPORT_FAILED", f"Failed to import observation: {e}")

    @staticmethod
    def _reject(result: ImportResult, position: int, code: str, message: str) -> None:
        result.count(EntityType.OBSERVATION).failed += 1
        result.add_error(code, message, entity=EntityType.OBSERVATION, position=position)

    @staticmethod
    def _finish(result: ImportResult, started: float) -> ImportResult:
        result.statistics["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
        counts = {name: f"{c.imported}/{c.total}" for name, c in result.counts.items()}
        logger.info(
            f"Reconciliation finished: success={result.success}, imported={counts}, "
            f"errors={len(result.errors)}, warnings={len(result.warnings)}",
            extra={"import_id": result.metadata.get("import_id")},
        )
        return result
