"""Shared parser plumbing.

BaseParser implements the parts of ParserPort every format needs: issue
construction, Result packaging, and building the canonical ImportStructure
with counts and warnings filled in.
"""

import logging
from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from clinical_import.domain.enums import EntityType
from clinical_import.domain.import_model import ImportStructure, create_import_structure
from clinical_import.domain.ports import ParserPort, Result, TransformationError
from clinical_import.domain.results import ImportIssue

logger = logging.getLogger(__name__)


class BaseParser(ParserPort):
    """Common behaviour of the format parsers."""

    def __init__(self):
        self.warnings: list[ImportIssue] = []

    # ------------------------------------------------------------------
    # Issues and results
    # ------------------------------------------------------------------

    def warn(self, code: str, message: str, **kwargs) -> None:
        self.warnings.append(ImportIssue.warning(code, message, **kwargs))

    @staticmethod
    def error(code: str, message: str, **kwargs) -> ImportIssue:
        return ImportIssue.error(code, message, **kwargs)

    def failure(self, issues: Iterable[ImportIssue], message: Optional[str] = None) -> Result[ImportStructure]:
        """Package issues into a failure Result keyed by the first issue's code."""
        issues = list(issues)
        primary = issues[0]
        logger.warning(f"{self.name} parser rejected content: {primary}")
        return Result.failure_result(
            message or primary.message,
            error_type=primary.code,
            error_details={
                "issues": [issue.to_dict() for issue in issues],
                "warnings": [issue.to_dict() for issue in self.warnings],
                "parser": self.name,
            },
        )

    def build_structure(
        self,
        patients: list,
        visits: list,
        observations: list,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ImportStructure:
        """Validate records into an ImportStructure carrying the parser warnings.

        Raises:
            TransformationError: If a record fails model validation
        """
        meta = dict(metadata or {})
        meta.setdefault("format", self.format.value)
        try:
            structure = create_import_structure(patients, visits, observations, metadata=meta)
        except PydanticValidationError as e:
            raise TransformationError(f"Record validation failed: {e.errors()[0].get('msg')}", source=self.name) from e
        structure.metadata.warnings = [issue.to_dict() for issue in self.warnings]
        return structure

    def success(self, structure: ImportStructure) -> Result[ImportStructure]:
        logger.info(
            f"{self.name} parser produced {structure.statistics.patient_count} patients, "
            f"{structure.statistics.visit_count} visits, {structure.statistics.observation_count} observations"
        )
        return Result.success_result(structure)

    def transformation_failure(self, code: str, error: TransformationError) -> Result[ImportStructure]:
        return self.failure([self.error(code, str(error), entity=EntityType.FILE)])

    def reset(self) -> None:
        """Clear per-parse state; parsers are reused across files."""
        self.warnings = []
