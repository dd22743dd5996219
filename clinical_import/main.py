"""Main entry point for the Clinical Import pipeline.

This module wires the configured store, parsers and domain services together
and runs one file through detection, parsing and reconciliation.

Architecture:
    - Follows Hexagonal Architecture principles
    - Parsers are selected by the detected format through the registry
    - The store is configured via the configuration manager
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from clinical_import.adapters.parsers import default_parsers
from clinical_import.adapters.storage import DuckDBStore
from clinical_import.domain.enums import DuplicateStrategy
from clinical_import.domain.ports import StorageError, StorePort
from clinical_import.domain.results import ImportResult
from clinical_import.domain.services.import_service import ImportOptions, ImportService
from clinical_import.domain.services.reconciliation import ReconciliationEngine
from clinical_import.infrastructure.config_manager import DatabaseConfig, ImportConfig
from clinical_import.infrastructure.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ImportRun:
    """Outcome of one file: the parse envelope and, unless skipped, the store envelope."""

    parse_result: ImportResult
    db_result: Optional[ImportResult] = None

    @property
    def success(self) -> bool:
        if self.db_result is None:
            return self.parse_result.success
        return self.parse_result.success and self.db_result.success


def create_store(db_config: Optional[DatabaseConfig] = None) -> StorePort:
    """Create and initialise the configured store.

    Raises:
        StorageError: If the schema cannot be initialised
    """
    db_config = db_config or settings.db_config
    logger.info(f"Initializing DuckDB store with path: {db_config.db_path}")
    store = DuckDBStore(db_config=db_config)
    init_result = store.initialize_schema()
    if init_result.is_failure():
        store.close()
        raise StorageError(init_result.error, operation="initialize_schema")
    return store


def create_import_service(import_config: Optional[ImportConfig] = None) -> ImportService:
    import_config = import_config or settings.import_config
    return ImportService(default_parsers(), ImportOptions(**import_config.model_dump()))


def process_import(
    source: Union[str, Path],
    store: StorePort,
    service: Optional[ImportService] = None,
    duplicate_strategy: Optional[Union[DuplicateStrategy, str]] = None,
    patient_ref: Optional[str] = None,
    visit_ref: Optional[str] = None,
    dry_run: bool = False,
) -> ImportRun:
    """Import one file into the store.

    Parameters:
        source: Path of the file to import
        store: Target store
        service: Import service; a configured one if omitted
        duplicate_strategy: Overrides the configured strategy
        patient_ref: Force every record onto this patient natural key
        visit_ref: Force every visit and observation onto this visit id
        dry_run: Parse and validate only

    Returns:
        ImportRun: Parse envelope plus store envelope (None when parsing
            failed or on a dry run)

    Raises:
        FileNotFoundError: If the source does not exist
    """
    path = Path(source)
    service = service or create_import_service()
    content = path.read_text(encoding="utf-8", errors="replace")

    if patient_ref:
        parse_result = service.import_for_patient(content, path.name, patient_ref, visit_ref)
    else:
        parse_result = service.import_file(content, path.name)

    if not parse_result.success or parse_result.data is None:
        logger.warning(f"Parsing {path.name} failed with {len(parse_result.errors)} error(s)")
        return ImportRun(parse_result)
    if dry_run:
        logger.info(f"Dry run: {path.name} parsed, store left untouched")
        return ImportRun(parse_result)

    strategy = duplicate_strategy or service.options.duplicate_strategy
    engine = ReconciliationEngine(store, batch_size=service.options.batch_size)
    db_result = engine.import_to_database(
        parse_result.data, duplicate_strategy=strategy, import_id=parse_result.metadata.get("import_id")
    )
    return ImportRun(parse_result, db_result)


def main() -> None:
    from clinical_import.cli import app
    app()


if __name__ == "__main__":
    main()
