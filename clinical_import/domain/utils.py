"""Domain Utilities - Normalisation helpers shared by parsers and models.

This module provides the small value-level conversions every parser needs:
sex and visit-setting codes, numeric parsing, date parsing for the date
layouts found in clinical exports, value-type inference and file-size strings.

Architecture:
    - Pure functions with no infrastructure dependencies
    - Never raise on bad input; unparseable values come back as None
"""

import json
import re
from datetime import date, datetime, timezone
from typing import Any, Optional

SEX_CODE_ALIASES = {
    "M": ("m", "male", "man", "1"),
    "F": ("f", "female", "woman", "2"),
    "U": ("u", "unknown", "other", "3"),
}

INOUT_CODE_ALIASES = {
    "I": ("i", "inpatient", "in", "1"),
    "O": ("o", "outpatient", "out", "2"),
    "E": ("e", "emergency", "er", "3"),
}

DATE_LIKE_PATTERNS = (
    re.compile(r"^\d{4}-\d{2}-\d{2}$"),     # YYYY-MM-DD
    re.compile(r"^\d{2}/\d{2}/\d{4}$"),     # MM/DD/YYYY
    re.compile(r"^\d{2}\.\d{2}\.\d{4}$"),   # DD.MM.YYYY
    re.compile(r"^\d{4}/\d{2}/\d{2}$"),     # YYYY/MM/DD
    re.compile(r"^\d{2}-\d{2}-\d{4}$"),     # MM-DD-YYYY
)

_DATE_LAYOUTS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%d.%m.%Y",
    "%Y/%m/%d",
    "%m-%d-%Y",
    "%Y%m%d",
)

_TIMESTAMP_LAYOUTS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y%m%d%H%M%S",
    "%Y%m%d%H%M",
)

_SIZE_UNITS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024 ** 2,
    "GB": 1024 ** 3,
}


def _lookup_alias(value: Any, aliases: dict) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    lowered = text.lower()
    for code, names in aliases.items():
        if lowered in names:
            return code
    return text


def normalize_sex_code(value: Any) -> Optional[str]:
    """Map common sex/gender spellings to M, F or U.

    Unrecognised values are returned unchanged (stripped); empty values
    become None.
    """
    return _lookup_alias(value, SEX_CODE_ALIASES)


def normalize_inout_code(value: Any) -> Optional[str]:
    """Map common visit-setting spellings to I, O or E."""
    return _lookup_alias(value, INOUT_CODE_ALIASES)


def parse_numeric(value: Any) -> Optional[float]:
    """Parse a number, returning None for empty or non-numeric input.

    Booleans are not treated as numbers.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def is_numeric(value: Any) -> bool:
    return parse_numeric(value) is not None


def is_date_like(value: Any) -> bool:
    if value is None:
        return False
    text = str(value).strip()
    return any(pattern.match(text) for pattern in DATE_LIKE_PATTERNS)


def is_json_like(value: Any) -> bool:
    if isinstance(value, (dict, list)):
        return True
    if not isinstance(value, str):
        return False
    text = value.strip()
    return (text.startswith("{") and text.endswith("}")) or (text.startswith("[") and text.endswith("]"))


def infer_value_type(value: Any) -> str:
    """Infer the observation value-type discriminant from a raw value.

    Parameters:
        value: Raw observation value

    Returns:
        str: "N" for numbers, "D" for date-like strings, "B" for JSON-like
            content, otherwise "T"
    """
    if value is None:
        return "T"
    if isinstance(value, (date, datetime)):
        return "D"
    if is_json_like(value):
        return "B"
    text = str(value).strip()
    if not text:
        return "T"
    if is_numeric(value):
        return "N"
    if is_date_like(text):
        return "D"
    return "T"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a timestamp from the common clinical export layouts.

    Timezone-aware values are converted to UTC and returned naive. Date-only
    input yields midnight of that day.

    Parameters:
        value: datetime, date, or string

    Returns:
        Optional[datetime]: Parsed timestamp, or None if unparseable
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if not text:
            return None
        parsed = None
        iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
        try:
            parsed = datetime.fromisoformat(iso_text)
        except ValueError:
            for layout in _TIMESTAMP_LAYOUTS + _DATE_LAYOUTS:
                try:
                    parsed = datetime.strptime(text, layout)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_date(value: Any) -> Optional[date]:
    """Parse a calendar date; timestamps are truncated to their date."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    parsed = parse_timestamp(value)
    return parsed.date() if parsed else None


def normalize_date_string(value: Any) -> Optional[str]:
    """Return the date as YYYY-MM-DD, or None if unparseable."""
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


def parse_file_size(value: Any) -> int:
    """Convert a size such as "50MB", "512 KB" or 1024 into bytes.

    Raises:
        ValueError: If the value cannot be interpreted as a size
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid file size: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"File size cannot be negative: {value}")
        return int(value)

    match = re.match(r"^\s*(\d+(?:\.\d+)?)\s*([KMG]?B)?\s*$", str(value), re.IGNORECASE)
    if not match:
        raise ValueError(f"Invalid file size: {value!r}")
    number = float(match.group(1))
    unit = (match.group(2) or "B").upper()
    return int(number * _SIZE_UNITS[unit])


def to_blob(value: Any) -> Optional[str]:
    """Serialise a structured value into the observation blob slot."""
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)
