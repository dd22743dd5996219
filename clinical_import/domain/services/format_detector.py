"""Format Detector - classify raw content into an ImportFormat.

The detector looks at the filename extension first and falls back to content
sniffing. Sniffers run in a fixed order from most to least specific (HTML,
HL7, JSON, CSV) so that a permissive check never shadows a stricter one:
an HL7 FHIR bundle is valid JSON and almost any text with a comma looks like
CSV.

Architecture:
    - Pure functions, side-effect free
    - Never raises; anything unrecognisable is ImportFormat.UNKNOWN
"""

import json
import logging
import re
from pathlib import PurePath
from typing import Any, Optional

from clinical_import.domain.enums import ImportFormat

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = (ImportFormat.CSV, ImportFormat.JSON, ImportFormat.HL7, ImportFormat.HTML)

EXTENSION_FORMATS = {
    ".csv": ImportFormat.CSV,
    ".tsv": ImportFormat.CSV,
    ".json": ImportFormat.JSON,
    ".xml": ImportFormat.HL7,
    ".hl7": ImportFormat.HL7,
    ".html": ImportFormat.HTML,
    ".htm": ImportFormat.HTML,
}

CSV_DELIMITERS = (",", ";", "\t", "|")

_SCRIPT_DATA_PATTERN = re.compile(r"<script[^>]*>.*?(cda|survey|questionnaire)", re.IGNORECASE | re.DOTALL)


def get_format_from_filename(filename: Optional[str]) -> ImportFormat:
    """Map a filename extension to a format; UNKNOWN if not recognised."""
    if not filename or not isinstance(filename, str):
        return ImportFormat.UNKNOWN
    return EXTENSION_FORMATS.get(PurePath(filename.strip()).suffix.lower(), ImportFormat.UNKNOWN)


def is_html_content(content: str) -> bool:
    lowered = content.strip().lower()
    if "<!doctype html" in lowered or "<html" in lowered:
        return True
    if "<head>" in lowered and "<body>" in lowered:
        return True
    return bool(_SCRIPT_DATA_PATTERN.search(lowered))


def _load_json(content: str) -> Any:
    stripped = content.strip()
    if not stripped or stripped[0] not in "{[":
        return None
    try:
        return json.loads(stripped)
    except ValueError:
        return None


def is_hl7_content(content: str) -> bool:
    """HL7 if the content is a FHIR resource or a CDA / hl7-namespaced XML document."""
    if "<ClinicalDocument" in content or "<hl7:" in content:
        return True
    parsed = _load_json(content)
    return isinstance(parsed, dict) and "resourceType" in parsed


def is_json_content(content: str) -> bool:
    return isinstance(_load_json(content), (dict, list))


def is_csv_content(content: str) -> bool:
    lines = [line for line in content.splitlines() if line.strip()]
    if len(lines) < 2:
        return False
    first_line = lines[0]
    return any(delimiter in first_line for delimiter in CSV_DELIMITERS)


_CONTENT_SNIFFERS = (
    (ImportFormat.HTML, is_html_content),
    (ImportFormat.HL7, is_hl7_content),
    (ImportFormat.JSON, is_json_content),
    (ImportFormat.CSV, is_csv_content),
)


def detect_format(content: Optional[str], filename: Optional[str] = None) -> ImportFormat:
    """Detect the format of a file.

    Parameters:
        content: Raw file content (may be None or empty)
        filename: Original filename (may be None)

    Returns:
        ImportFormat: Detected format, ImportFormat.UNKNOWN if nothing matched
    """
    try:
        by_extension = get_format_from_filename(filename)
        if by_extension is not ImportFormat.UNKNOWN:
            return by_extension

        if not isinstance(content, str) or not content.strip():
            return ImportFormat.UNKNOWN

        for fmt, sniffer in _CONTENT_SNIFFERS:
            if sniffer(content):
                return fmt
    except Exception as e:
        logger.debug(f"Format detection failed for {filename!r}: {e}")

    return ImportFormat.UNKNOWN


def is_format_supported(fmt: Any) -> bool:
    """Check whether a format tag (enum or string) names a supported format."""
    try:
        return ImportFormat(fmt) in SUPPORTED_FORMATS
    except ValueError:
        return False
