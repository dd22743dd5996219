"""Domain services for Clinical Import.

Format detection, the import orchestrator and the reconciliation engine.
"""

from clinical_import.domain.services.format_detector import detect_format, is_format_supported
from clinical_import.domain.services.import_service import ImportOptions, ImportService
from clinical_import.domain.services.reconciliation import ReconciliationEngine

__all__ = ["detect_format", "is_format_supported", "ImportOptions", "ImportService", "ReconciliationEngine"]
