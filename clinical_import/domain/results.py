"""Import Result Envelope.

This module defines the uniform envelope returned by every import operation:
the success flag, the canonical data (for previews), per-entity counts, the
identifier map of a reconciliation run, and structured errors and warnings.

Architecture:
    - Failures are data: operations append ImportIssue entries instead of
      raising, callers inspect ``success``/``errors``
    - ``raise_for_errors()`` converts an unsuccessful envelope into an
      exception for callers that prefer exceptions
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from clinical_import.domain.enums import EntityType, IssueSeverity
from clinical_import.domain.identifier_map import IdentifierMap
from clinical_import.domain.import_model import ImportStructure
from clinical_import.domain.ports import ImportAbortedError


@dataclass
class ImportIssue:
    """A structured error or warning.

    Attributes:
        code: Machine-readable code (e.g. "DUPLICATE_PATIENT")
        message: Human-readable message
        entity: Entity the issue refers to, if any
        position: 0-based position of the record within its list, if any
        severity: error or warning
        details: Additional context (natural key, field name, ...)
    """

    code: str
    message: str
    entity: Optional[EntityType] = None
    position: Optional[int] = None
    severity: IssueSeverity = IssueSeverity.ERROR
    timestamp: datetime = field(default_factory=datetime.now)
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def error(cls, code: str, message: str, **kwargs) -> "ImportIssue":
        return cls(code=code, message=message, severity=IssueSeverity.ERROR, **kwargs)

    @classmethod
    def warning(cls, code: str, message: str, **kwargs) -> "ImportIssue":
        return cls(code=code, message=message, severity=IssueSeverity.WARNING, **kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportIssue":
        """Rebuild an issue from its ``to_dict()`` form."""
        entity = data.get("entity")
        timestamp = data.get("timestamp")
        return cls(
            code=data.get("code", "UNKNOWN"),
            message=data.get("message", ""),
            entity=EntityType(entity) if entity else None,
            position=data.get("position"),
            severity=IssueSeverity(data.get("severity", IssueSeverity.ERROR.value)),
            timestamp=datetime.fromisoformat(timestamp) if isinstance(timestamp, str) else datetime.now(),
            details=dict(data.get("details") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["entity"] = self.entity.value if self.entity else None
        data["severity"] = self.severity.value
        data["timestamp"] = self.timestamp.isoformat()
        return data

    def __str__(self) -> str:
        where = f" [{self.entity.value} #{self.position}]" if self.entity and self.position is not None else ""
        return f"{self.code}{where}: {self.message}"


@dataclass
class EntityCounts:
    """Outcome counts of one entity type; ``imported + duplicates + failed == total``."""

    total: int = 0
    imported: int = 0
    duplicates: int = 0
    failed: int = 0

    def is_balanced(self) -> bool:
        return self.imported + self.duplicates + self.failed == self.total


def _empty_counts() -> Dict[str, EntityCounts]:
    return {
        EntityType.PATIENT.value: EntityCounts(),
        EntityType.VISIT.value: EntityCounts(),
        EntityType.OBSERVATION.value: EntityCounts(),
    }


@dataclass
class ImportResult:
    """Uniform envelope returned by parsing and reconciliation.

    Attributes:
        success: Whether the operation succeeded as a whole
        data: Canonical model (parsing only; kept for previews)
        metadata: Descriptive metadata (format, filename, counts, duration)
        counts: Per-entity EntityCounts keyed by "patient", "visit", "observation"
        statistics: Run statistics (default_visits, duration_ms, ...)
        identifier_map: Identifier map of a reconciliation run
        errors: Error issues
        warnings: Warning issues
    """

    success: bool = True
    data: Optional[ImportStructure] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    counts: Dict[str, EntityCounts] = field(default_factory=_empty_counts)
    statistics: Dict[str, Any] = field(default_factory=dict)
    identifier_map: Optional[IdentifierMap] = None
    errors: list[ImportIssue] = field(default_factory=list)
    warnings: list[ImportIssue] = field(default_factory=list)

    def add_error(self, code: str, message: str, **kwargs) -> ImportIssue:
        issue = ImportIssue.error(code, message, **kwargs)
        self.errors.append(issue)
        return issue

    def add_warning(self, code: str, message: str, **kwargs) -> ImportIssue:
        issue = ImportIssue.warning(code, message, **kwargs)
        self.warnings.append(issue)
        return issue

    def fail(self, code: str, message: str, **kwargs) -> "ImportResult":
        """Record an error and mark the envelope unsuccessful."""
        self.add_error(code, message, **kwargs)
        self.success = False
        return self

    def error_codes(self) -> list[str]:
        return [issue.code for issue in self.errors]

    def warning_codes(self) -> list[str]:
        return [issue.code for issue in self.warnings]

    def count(self, entity: EntityType) -> EntityCounts:
        return self.counts[entity.value]

    def raise_for_errors(self) -> None:
        """Raise ImportAbortedError if the envelope is unsuccessful.

        Raises:
            ImportAbortedError: Carrying the recorded error issues
        """
        if not self.success:
            summary = "; ".join(str(issue) for issue in self.errors[:5]) or "import failed"
            raise ImportAbortedError(f"Import unsuccessful: {summary}", errors=list(self.errors))

    def to_dict(self) -> Dict[str, Any]:
        """Serialisable view of the envelope (data excluded)."""
        return {
            "success": self.success,
            "metadata": dict(self.metadata),
            "counts": {name: asdict(c) for name, c in self.counts.items()},
            "statistics": dict(self.statistics),
            "identifier_map": self.identifier_map.to_dict() if self.identifier_map else None,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
        }
