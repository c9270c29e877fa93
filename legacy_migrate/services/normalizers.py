"""Value normalization helpers shared by contracts and the transformer."""

import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from dateutil import parser as date_parser

_TRUE_STRINGS = {"1", "t", "true", "y", "yes", "on"}
_FALSE_STRINGS = {"0", "f", "false", "n", "no", "off", ""}

_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_NON_KEY_CHARS = re.compile(r"[^a-z0-9]+")


def normalize_timestamp(value: Any) -> Optional[datetime]:
    """
    Convert a legacy timestamp to a timezone-aware UTC datetime.

    Accepts datetimes, dates, ISO or free-form strings and unix seconds.
    Naive values are taken to be UTC.

    Raises:
        ValueError: If a non-empty value cannot be parsed
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        try:
            parsed = date_parser.parse(value.strip())
        except (ValueError, OverflowError) as e:
            raise ValueError(f"Unparseable timestamp: {value!r}") from e
    else:
        raise ValueError(f"Unsupported timestamp type: {type(value).__name__}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_date(value: Any) -> Optional[date]:
    """Convert a legacy date value to a date."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return normalize_timestamp(value).date()


def coerce_bool(value: Any, default: bool = False) -> bool:
    """Coerce legacy truthy encodings (1/0, t/f, y/n, yes/no, on/off)."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    return default


def coerce_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def coerce_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def sanitize_string(value: Any, max_length: Optional[int] = None) -> str:
    """Strip control characters and surrounding whitespace."""
    if value is None:
        return ""
    text = _CONTROL_CHARS.sub("", str(value)).strip()
    if max_length is not None:
        text = text[:max_length]
    return text


def sanitize_email(value: Any) -> Optional[str]:
    """Lowercased email, or None when it is empty or malformed."""
    text = sanitize_string(value).lower()
    if not text or not _EMAIL_PATTERN.match(text):
        return None
    return text


def slugify_key(value: Any, max_length: int = 50) -> str:
    """Lowercase key with non-alphanumeric runs collapsed to underscores."""
    key = _NON_KEY_CHARS.sub("_", sanitize_string(value).lower()).strip("_")
    return key[:max_length].rstrip("_")


GENDER_MAP = {
    "m": "male",
    "male": "male",
    "f": "female",
    "female": "female",
    "o": "other",
    "other": "other",
}


def map_gender(value: Any) -> Optional[str]:
    if value is None:
        return None
    return GENDER_MAP.get(str(value).strip().lower())


def json_safe(value: Any) -> Any:
    """Make a value JSON-serializable for extra_data."""
    if isinstance(value, datetime):
        return normalize_timestamp(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def build_extra_data(**values: Any) -> Dict[str, Any]:
    """extra_data dict without None values."""
    return {k: json_safe(v) for k, v in values.items() if v is not None}
