"""Parser adapters for Clinical Import.

This module contains the parsers that implement the ParserPort interface for
each supported import format (CSV, JSON, HL7, HTML survey) and the registry
the import service uses to select one.
"""

from typing import Dict, Optional

from clinical_import.adapters.parsers.csv_parser import CSVParser
from clinical_import.adapters.parsers.hl7_parser import HL7Parser
from clinical_import.adapters.parsers.json_parser import JSONParser
from clinical_import.adapters.parsers.survey_parser import SurveyParser
from clinical_import.domain.enums import ImportFormat
from clinical_import.domain.ports import ParserPort, UnsupportedSourceError

__all__ = ["CSVParser", "JSONParser", "HL7Parser", "SurveyParser", "default_parsers", "get_parser"]

PARSER_CLASSES = {
    ImportFormat.CSV: CSVParser,
    ImportFormat.JSON: JSONParser,
    ImportFormat.HL7: HL7Parser,
    ImportFormat.HTML: SurveyParser,
}


def default_parsers() -> Dict[ImportFormat, ParserPort]:
    """Build a fresh registry with one parser instance per supported format."""
    return {fmt: parser_class() for fmt, parser_class in PARSER_CLASSES.items()}


def get_parser(fmt: ImportFormat, registry: Optional[Dict[ImportFormat, ParserPort]] = None) -> ParserPort:
    """Look up the parser registered for a format.

    Parameters:
        fmt: Format tag (enum or its string value)
        registry: Registry to search; a default registry if omitted

    Returns:
        ParserPort: The registered parser

    Raises:
        UnsupportedSourceError: If no parser is registered for the format
    """
    registry = registry if registry is not None else default_parsers()
    try:
        parser = registry.get(ImportFormat(fmt))
    except ValueError:
        parser = None
    if parser is None:
        raise UnsupportedSourceError(f"No parser registered for format {fmt!r}", source=str(fmt))
    return parser
