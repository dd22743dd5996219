"""Import Orchestrator.

ImportService is the single entry point callers use to turn a file into the
canonical import model. It resolves the format, dispatches to the registered
parser, applies structural validation, and wraps the outcome in the uniform
ImportResult envelope so callers never branch on format.

Security Impact:
    - Oversized content is rejected before any parsing
    - Parser faults are contained and reported as IMPORT_FAILED issues

Architecture:
    - Domain service; parsers are injected as a registry keyed by ImportFormat
    - Never touches the store (see ReconciliationEngine)
"""

import logging
import time
import uuid
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinical_import.domain.enums import DuplicateStrategy, EntityType, ImportFormat, ValidationLevel
from clinical_import.domain.import_model import ImportStructure, ObservationRecord, PatientRecord
from clinical_import.domain.ports import ParserPort
from clinical_import.domain.results import ImportIssue, ImportResult
from clinical_import.domain.services.format_detector import SUPPORTED_FORMATS, detect_format
from clinical_import.domain.utils import parse_file_size

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 50 * 1024 * 1024
DEFAULT_BATCH_SIZE = 1000


class ImportOptions(BaseModel):
    """Options of an import run.

    Parameters:
        duplicate_strategy: Policy for patients already in the store
        max_file_size: Maximum content size in bytes (accepts "50MB" style strings)
        validation_level: Structural validation applied after parsing
        batch_size: Observation rows per store batch
    """

    duplicate_strategy: DuplicateStrategy = Field(default=DuplicateStrategy.SKIP)
    max_file_size: int = Field(default=DEFAULT_MAX_FILE_SIZE, gt=0)
    validation_level: ValidationLevel = Field(default=ValidationLevel.STRICT)
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)

    model_config = ConfigDict(validate_assignment=True)

    @field_validator("max_file_size", mode="before")
    @classmethod
    def parse_size(cls, v: Any) -> int:
        if isinstance(v, str):
            return parse_file_size(v)
        return v

    @field_validator("duplicate_strategy", "validation_level", mode="before")
    @classmethod
    def lower_case(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


def _merge_records(records: list, key_field: str, key: str) -> tuple[Any, int]:
    """Collapse records onto one key; the first wins, later non-null fields fill gaps."""
    merged: Dict[str, Any] = {}
    for record in records:
        for name, value in record.model_dump().items():
            if merged.get(name) is None and value is not None:
                merged[name] = value
    merged[key_field] = key
    return type(records[0]).model_validate(merged), len(records)


class ImportService:
    """Detects, parses and validates import files.

    Parameters:
        parsers: Registry of parsers keyed by ImportFormat
        options: Default ImportOptions (or a mapping of option values)

    Example Usage:
        ```python
        service = ImportService(default_parsers())
        result = service.import_file(content, "export.csv")
        if result.success:
            engine.import_to_database(result.data)
        ```
    """

    def __init__(
        self,
        parsers: Dict[ImportFormat, ParserPort],
        options: Optional[Union[ImportOptions, Dict[str, Any]]] = None,
    ):
        self.parsers = dict(parsers)
        self.options = self._resolve_options(options, base=ImportOptions())

    @staticmethod
    def _resolve_options(
        options: Optional[Union[ImportOptions, Dict[str, Any]]], base: ImportOptions
    ) -> ImportOptions:
        if options is None:
            return base
        if isinstance(options, ImportOptions):
            return options
        return ImportOptions.model_validate({**base.model_dump(), **options})

    def detect_format(self, content: Optional[str], filename: Optional[str] = None) -> ImportFormat:
        return detect_format(content, filename)

    def get_supported_formats(self) -> list[str]:
        """Formats that are both supported and have a registered parser."""
        return [fmt.value for fmt in SUPPORTED_FORMATS if fmt in self.parsers]

    def update_options(self, **changes: Any) -> ImportOptions:
        """Update the default options.

        Raises:
            pydantic.ValidationError: If a value is invalid
        """
        self.options = self._resolve_options(changes, base=self.options)
        logger.info(f"Import options updated: {self.options.model_dump(mode='json')}")
        return self.options

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def import_file(
        self,
        content: Union[str, bytes, None],
        filename: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> ImportResult:
        """Parse a file into the canonical model.

        Parameters:
            content: File content (bytes are decoded as UTF-8)
            filename: Original filename, used for extension-based detection
            options: Per-call option overrides

        Returns:
            ImportResult: ``data`` holds the parsed ImportStructure whenever
                parsing succeeded, even if strict validation failed
        """
        opts = self._resolve_options(options, base=self.options)
        result = self._parse(content, filename, opts)
        if result.data is not None:
            self._validate(result, opts)
        return self._finish(result)

    def import_for_patient(
        self,
        content: Union[str, bytes, None],
        filename: Optional[str],
        patient_ref: str,
        visit_ref: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> ImportResult:
        """Parse a file and force every record onto a known patient (and visit).

        Every patient, visit and observation gets ``patient_ref`` as its
        patient natural key; with ``visit_ref`` every visit and observation
        also gets it as visit reference. Records collapsing onto the same key
        are merged.

        Parameters:
            content: File content
            filename: Original filename
            patient_ref: Natural key of the target patient
            visit_ref: Temporary id of the target visit
            options: Per-call option overrides

        Returns:
            ImportResult: Envelope with the stamped data
        """
        try:
            opts = self._resolve_options(options, base=self.options)
            result = self._parse(content, filename, opts)
            if result.data is not None:
                result.data = self._stamp(result, str(patient_ref), None if visit_ref is None else str(visit_ref))
                self._validate(result, opts)
            result.metadata.update(target_patient=str(patient_ref), target_visit=visit_ref)
        except Exception as e:
            logger.error(f"Patient import failed for {filename}: {e}", exc_info=True)
            result = ImportResult(metadata={"filename": filename})
            result.fail("PATIENT_IMPORT_FAILED", f"Patient import failed: {e}", entity=EntityType.FILE)
        return self._finish(result)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _parse(self, content: Union[str, bytes, None], filename: Optional[str], opts: ImportOptions) -> ImportResult:
        started = time.perf_counter()
        import_id = str(uuid.uuid4())
        result = ImportResult(
            metadata={"filename": filename, "service": type(self).__name__, "import_id": import_id}
        )
        result.statistics["started_at"] = started

        if isinstance(content, bytes):
            content = content.decode("utf-8", errors="replace")
        content = content or ""
        size = len(content.encode("utf-8"))
        result.metadata["size"] = size
        logger.info(
            f"Starting file import: {filename} ({size} bytes)",
            extra={"import_id": import_id, "source_file": filename},
        )

        if size > opts.max_file_size:
            return result.fail(
                "FILE_TOO_LARGE",
                f"File size {size} bytes exceeds maximum of {opts.max_file_size} bytes",
                entity=EntityType.FILE,
                details={"size": size, "max_file_size": opts.max_file_size},
            )

        fmt = self.detect_format(content, filename)
        if fmt not in SUPPORTED_FORMATS:
            return result.fail("UNSUPPORTED_FORMAT", f"Unsupported file format for {filename}", entity=EntityType.FILE)
        result.metadata["format"] = fmt.value
        logger.info(f"Detected file format {fmt.value} for {filename}")

        parser = self.parsers.get(fmt)
        if parser is None:
            return result.fail(
                "SERVICE_NOT_FOUND", f"No import service available for format: {fmt.value}", entity=EntityType.FILE
            )

        try:
            parsed = parser.parse(content, {"filename": filename})
        except Exception as e:
            logger.error(f"Parser {parser.name} failed on {filename}: {e}", exc_info=True)
            return result.fail("IMPORT_FAILED", f"Import failed: {e}", entity=EntityType.FILE)

        if parsed.is_failure():
            details = parsed.error_details or {}
            result.success = False
            result.errors.extend(ImportIssue.from_dict(i) for i in details.get("issues", []))
            result.warnings.extend(ImportIssue.from_dict(w) for w in details.get("warnings", []))
            if not result.errors:
                result.add_error(parsed.error_type or "IMPORT_FAILED", parsed.error or "Parse failed")
            return result

        structure: ImportStructure = parsed.value
        result.data = structure
        result.warnings.extend(ImportIssue.from_dict(w) for w in structure.metadata.warnings)
        return result

    def _validate(self, result: ImportResult, opts: ImportOptions) -> None:
        """Apply structural validation; data is kept for preview either way."""
        if opts.validation_level is not ValidationLevel.STRICT:
            return
        for position, patient in enumerate(result.data.data.patients):
            if not patient.patient_cd:
                result.fail(
                    "MISSING_REQUIRED_FIELD",
                    "Patient is missing required field PATIENT_CD",
                    entity=EntityType.PATIENT,
                    position=position,
                    details={"field": "patient_cd"},
                )
        for position, observation in enumerate(result.data.data.observations):
            if not observation.concept_cd:
                result.fail(
                    "MISSING_REQUIRED_FIELD",
                    "Observation is missing required field CONCEPT_CD",
                    entity=EntityType.OBSERVATION,
                    position=position,
                    details={"field": "concept_cd"},
                )

    def _stamp(self, result: ImportResult, patient_ref: str, visit_ref: Optional[str]) -> ImportStructure:
        structure = result.data
        patients = [p.model_copy(update={"patient_cd": patient_ref}) for p in structure.data.patients]
        if not patients:
            source = next(
                (r.sourcesystem_cd for r in (*structure.data.visits, *structure.data.observations) if r.sourcesystem_cd),
                None,
            )
            patients = [PatientRecord(patient_cd=patient_ref, sourcesystem_cd=source)]
        elif len(patients) > 1:
            merged, count = _merge_records(patients, "patient_cd", patient_ref)
            patients = [merged]
            result.add_warning(
                "PATIENTS_MERGED",
                f"{count} patients merged into target patient {patient_ref}",
                entity=EntityType.PATIENT,
                details={"count": count},
            )
        original_num = patients[0].patient_num

        visit_update: Dict[str, Any] = {"patient_cd": patient_ref, "patient_num": original_num}
        if visit_ref is not None:
            visit_update["encounter_num"] = visit_ref
        visits = [v.model_copy(update=visit_update) for v in structure.data.visits]
        if visit_ref is not None and len(visits) > 1:
            merged, count = _merge_records(visits, "encounter_num", visit_ref)
            visits = [merged]
            result.add_warning(
                "VISITS_MERGED",
                f"{count} visits merged into target visit {visit_ref}",
                entity=EntityType.VISIT,
                details={"count": count},
            )

        observations: list[ObservationRecord] = [
            o.model_copy(update=visit_update) for o in structure.data.observations
        ]

        metadata = structure.metadata.model_copy(update={"target_patient": patient_ref, "target_visit": visit_ref})
        stamped = ImportStructure(metadata=metadata, statistics=structure.statistics.model_copy())
        stamped.data.patients = patients
        stamped.data.visits = visits
        stamped.data.observations = observations
        return stamped.refresh_counts()

    @staticmethod
    def _finish(result: ImportResult) -> ImportResult:
        started = result.statistics.pop("started_at", None)
        if started is not None:
            result.statistics["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
        if result.data is not None:
            stats = result.data.statistics
            result.metadata.update(
                patient_count=stats.patient_count,
                visit_count=stats.visit_count,
                observation_count=stats.observation_count,
                title=result.data.metadata.title,
            )
        logger.info(
            f"Import finished: success={result.success}, errors={len(result.errors)}, "
            f"warnings={len(result.warnings)}",
            extra={
                "import_id": result.metadata.get("import_id"),
                "source_file": result.metadata.get("filename"),
            },
        )
        return result
