"""
Turn decoded payloads into upsert rows.

Handles:
- Payload parsing (JSON object or ParseError)
- Domain filtering (minimum date, required fields, subtype equality)
- Primary key validation
- Column mapping with named field transforms
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.encryption import FieldCipher
from core.exceptions import (
    ConfigurationError,
    EncryptionError,
    ParseError,
    TransformationError,
    ValidationError,
)
from schemas.jobs import FilterSpec, JobSpec
import logging

logger = logging.getLogger(__name__)

DIGITS_ONLY = re.compile(r"\D")
POSITIVE_INTEGER = re.compile(r"^[1-9][0-9]*$")


# ============================================================================
# Parsing
# ============================================================================

def parse_payload(raw: Optional[bytes]) -> Dict[str, Any]:
    """Decode one message value into a record envelope."""
    if raw is None:
        raise ParseError("Empty message payload")
    try:
        data = json.loads(raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise ParseError("INVALID_JSON", original_exception=e)

    if not isinstance(data, dict):
        raise ParseError(
            "INVALID_JSON",
            context={"payload_type": type(data).__name__}
        )
    return data


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a source timestamp into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (``Z`` suffix allowed) and the
    legacy ``YYYY-MM-DD HH:MM:SS`` format. Naive values are taken as UTC.
    Returns None for anything unparseable.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_key(value: Any) -> Optional[Any]:
    """
    Return a usable primary key or None.

    Positive integers and positive integer strings become ``int``; other
    non-blank strings are kept as stripped text. Zero, negatives, booleans
    and blanks are unusable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        return int(value) if value.is_integer() and value > 0 else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if POSITIVE_INTEGER.match(text):
            return int(text)
        if text.lstrip("-").isdigit():
            return None
        return text
    return None


# ============================================================================
# Field transforms
# ============================================================================

def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def _lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(float(value.strip()))  # Handle "10.0" strings
    return int(value)


def _to_datetime(value: Any) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError(f"Unparseable datetime: {value!r}")
    # Target columns are naive DATETIME
    return parsed.replace(tzinfo=None)


def normalize_mobile(value: Any) -> Optional[str]:
    """Digits only, last ten kept; None when fewer than ten digits."""
    digits = DIGITS_ONLY.sub("", str(value))
    return digits[-10:] if len(digits) >= 10 else None


def clean_email(value: Any) -> Optional[str]:
    email = str(value).strip().lower()
    return email if "@" in email else None


TRANSFORMS: Dict[str, Callable[[Any], Any]] = {
    "strip": _strip,
    "lower": _lower,
    "string": str,
    "int": _to_int,
    "float": float,
    "datetime": _to_datetime,
    "normalize_mobile": normalize_mobile,
    "clean_email": clean_email,
}

ENCRYPT = "encrypt"


# ============================================================================
# Filter
# ============================================================================

class RecordFilter:
    """
    Decide whether a record is in scope for its job.

    A record is kept only when every configured rule passes:
    - ``equals``: field values must match exactly (e.g. vehicle type "4w")
    - ``required_fields``: fields must be present and non-blank
    - ``min_date``: the timestamp must be strictly later than the cutoff;
      missing or unparseable timestamps follow ``missing_date``
    """

    def __init__(self, spec: Optional[FilterSpec]):
        self.spec = spec
        self.cutoff = parse_timestamp(spec.min_date) if spec and spec.min_date else None

    def accepts(self, record: Dict[str, Any]) -> bool:
        return self.rejection_reason(record) is None

    def rejection_reason(self, record: Dict[str, Any]) -> Optional[str]:
        if self.spec is None:
            return None

        for field, expected in self.spec.equals.items():
            if record.get(field) != expected:
                return f"{field} != {expected!r}"

        for field in self.spec.required_fields:
            value = record.get(field)
            if value is None or (isinstance(value, str) and not value.strip()):
                return f"missing {field}"

        if self.cutoff is not None:
            timestamp = parse_timestamp(record.get(self.spec.min_date_field))
            if timestamp is None:
                if self.spec.missing_date == "exclude":
                    return f"no usable {self.spec.min_date_field}"
            elif timestamp <= self.cutoff:
                return f"{self.spec.min_date_field} not after cutoff"

        return None


# ============================================================================
# Transformer
# ============================================================================

@dataclass(frozen=True)
class UpsertRow:
    """Fixed-order column values for one key, independent of the target sink."""
    columns: Tuple[str, ...]
    values: Tuple[Any, ...]

    @property
    def key(self) -> Any:
        return self.values[0]

    @property
    def key_column(self) -> str:
        return self.columns[0]

    def as_dict(self) -> Dict[str, Any]:
        return dict(zip(self.columns, self.values))


class RecordTransformer:
    """
    Build UpsertRows for one job.

    Transform chains are resolved once; unknown names are a configuration
    error. Any failure inside a chain degrades that column to None. Besides
    the primary key, only columns marked ``required`` are mandatory.
    """

    def __init__(self, job: JobSpec, cipher: Optional[FieldCipher] = None):
        self.job = job
        self._cipher = cipher
        self._chains: List[Tuple[str, List[Tuple[str, Callable[[Any], Any]]]]] = []

        for column in job.columns:
            chain = [(name, self._resolve(name)) for name in column.transforms]
            self._chains.append((column.column, chain))

    def _resolve(self, name: str) -> Callable[[Any], Any]:
        if name == ENCRYPT:
            if self._cipher is None:
                try:
                    self._cipher = FieldCipher.from_settings()
                except EncryptionError as e:
                    raise ConfigurationError(
                        "Encryption requested but no usable key is configured",
                        context={"job_name": self.job.name},
                        original_exception=e
                    )
            return self._encrypt

        if name not in TRANSFORMS:
            raise ConfigurationError(
                f"Unknown transform '{name}'",
                context={"job_name": self.job.name, "available": sorted([*TRANSFORMS, ENCRYPT])}
            )
        return TRANSFORMS[name]

    def _encrypt(self, value: Any) -> str:
        return self._cipher.encrypt(str(value))

    def primary_key(self, record: Dict[str, Any]) -> Any:
        """Usable primary key of ``record`` or ValidationError."""
        raw = record.get(self.job.key_field)
        key = normalize_key(raw)
        if key is None:
            raise ValidationError(
                "INVALID_PRIMARY_KEY",
                context={"key_field": self.job.key_field, "key_value": raw}
            )
        return key

    def transform(self, record: Dict[str, Any]) -> UpsertRow:
        key = self.primary_key(record)
        values = [key]

        for column_spec, (column, chain) in zip(self.job.columns, self._chains):
            value = record.get(column_spec.source_field)
            if value is None:
                value = column_spec.default

            for name, fn in chain:
                if value is None:
                    break
                try:
                    value = fn(value)
                except Exception as e:
                    logger.warning(
                        f"Transform '{name}' failed for {self.job.name} key={key} "
                        f"column={column}: {type(e).__name__}; storing NULL"
                    )
                    value = None

            if value is None and column_spec.required:
                raise TransformationError(
                    column_spec.rejection_message,
                    context={"column": column, "source_field": column_spec.source_field}
                )
            values.append(value)

        return UpsertRow(columns=tuple(self.job.upsert_columns), values=tuple(values))
