"""
FieldValue: tagged representation of a value submitted into a form field.

Submitted form payloads are string-keyed and loosely typed. Everything the
resolver hands to the evaluator is wrapped in a FieldValue so the rule
validators branch on an explicit ValueKind instead of probing Python types.
A field that is absent from the payload is represented by ``None`` at the
resolver boundary, never by a FieldValue.
"""

import json
import math
import re
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

_COMMA_NUMBER_RE = re.compile(r"^\d[\d,.]*$")
_ISO_DATE_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_US_DATE_RE = re.compile(r"^\d{2}/\d{2}/\d{4}$")

_DATETIME_FORMATS = (
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
)


class ValueKind(str, Enum):
    """Discriminant of a submitted value."""

    NULL = "null"
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    LIST = "list"


class FieldValue(BaseModel):
    """
    A submitted value with its kind.

    Attributes:
        kind: Which variant this value is
        raw: The value itself (str, int/float, bool, list[str] or None)
    """

    kind: ValueKind
    raw: Any = None

    @classmethod
    def from_raw(cls, raw: Any) -> "FieldValue":
        """
        Wrap a raw payload value.

        Booleans are checked before numbers (bool is an int subclass),
        sequences become LIST of strings and nested mappings are kept as
        their JSON text, which is how repeating-group fields arrive.
        """
        if isinstance(raw, FieldValue):
            return raw
        if raw is None:
            return cls(kind=ValueKind.NULL, raw=None)
        if isinstance(raw, bool):
            return cls(kind=ValueKind.BOOLEAN, raw=raw)
        if isinstance(raw, int | float):
            return cls(kind=ValueKind.NUMBER, raw=raw)
        if isinstance(raw, str):
            return cls(kind=ValueKind.STRING, raw=raw)
        if isinstance(raw, list | tuple | set | frozenset):
            items = ["" if item is None else str(item) for item in raw]
            return cls(kind=ValueKind.LIST, raw=items)
        if isinstance(raw, dict):
            return cls(kind=ValueKind.STRING, raw=json.dumps(raw, sort_keys=True, default=str))
        if isinstance(raw, datetime | date):
            return cls(kind=ValueKind.STRING, raw=raw.isoformat())
        return cls(kind=ValueKind.STRING, raw=str(raw))

    @property
    def is_empty(self) -> bool:
        """NULL or the empty string. Whitespace and empty lists are not empty."""
        if self.kind is ValueKind.NULL:
            return True
        return self.kind is ValueKind.STRING and self.raw == ""

    @property
    def is_multi_value(self) -> bool:
        """
        True for a delimited checkbox/multi-select selection.

        A comma-joined string counts unless it looks like a comma-formatted
        number ("1,234.5") or starts with an ISO date.
        """
        if self.kind is ValueKind.LIST:
            return True
        if self.kind is not ValueKind.STRING:
            return False
        text = self.raw
        return (
            "," in text
            and not _COMMA_NUMBER_RE.match(text)
            and not _ISO_DATE_PREFIX_RE.match(text)
        )

    def as_text(self) -> str:
        """Stringify the way the form layer displays the value."""
        if self.kind is ValueKind.NULL:
            return ""
        if self.kind is ValueKind.BOOLEAN:
            return "true" if self.raw else "false"
        if self.kind is ValueKind.NUMBER:
            number = self.raw
            if isinstance(number, float) and number.is_integer():
                return str(int(number))
            return str(number)
        if self.kind is ValueKind.LIST:
            return ",".join(self.raw)
        return self.raw

    def as_number(self) -> float | None:
        """Numeric coercion; None when the value is not a finite number."""
        if self.kind is ValueKind.NUMBER:
            number = float(self.raw)
        elif self.kind is ValueKind.STRING:
            text = self.raw.strip()
            if not text:
                return None
            try:
                number = float(text)
            except ValueError:
                return None
        else:
            return None
        return number if math.isfinite(number) else None

    def as_date(self) -> datetime | None:
        """Date coercion for ISO (date or date-time) and MM/DD/YYYY strings."""
        if self.kind is not ValueKind.STRING:
            return None
        return parse_date_text(self.raw)

    def to_python(self) -> Any:
        """Plain Python value used for expression bindings."""
        if self.kind is ValueKind.LIST:
            return list(self.raw)
        return self.raw


def parse_date_text(text: str) -> datetime | None:
    """
    Parse the date spellings clinical forms submit.

    Accepts ``YYYY-MM-DD``, ISO date-times (with optional ``Z`` or offset,
    which is dropped) and ``MM/DD/YYYY``. Bare numbers are never dates.
    """
    text = text.strip()
    if _ISO_DATE_RE.match(text):
        try:
            return datetime.strptime(text, "%Y-%m-%d")
        except ValueError:
            return None
    if _US_DATE_RE.match(text):
        try:
            return datetime.strptime(text, "%m/%d/%Y")
        except ValueError:
            return None
    if _ISO_DATE_PREFIX_RE.match(text):
        candidate = text.replace("Z", "")
        try:
            return datetime.fromisoformat(candidate).replace(tzinfo=None)
        except ValueError:
            pass
        for fmt in _DATETIME_FORMATS:
            try:
                return datetime.strptime(candidate[:19], fmt)
            except ValueError:
                continue
    return None
