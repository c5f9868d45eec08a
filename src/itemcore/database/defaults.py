"""Turn a column's stored default expression into a Python value."""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from itemcore.schema import ColumnInfo

# 'draft'::character varying  /  '{}'::jsonb  /  NULL::text
_CAST_SUFFIX = re.compile(r"^(?P<value>.*?)::[A-Za-z_ ]+(?:\[\])?(?:\(\d+(?:,\s*\d+)?\))?$", re.S)
_FUNCTION_CALL = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*\(.*\)$", re.S)

_INTEGER_TYPES = {"smallint", "integer", "bigint"}
_FLOAT_TYPES = {"real", "double precision", "numeric", "decimal"}
_JSON_TYPES = {"json", "jsonb"}


def get_default_value(column: ColumnInfo) -> Any:
    """Return the value a fresh row would get for *column*.

    Function defaults such as ``now()`` or ``nextval(...)`` are evaluated by
    the database at insert time, so they map to ``None`` here.
    """
    raw = column.default_value
    if raw is None:
        return None

    text = raw.strip()
    while True:
        match = _CAST_SUFFIX.match(text)
        if match is None:
            break
        text = match.group("value").strip()
    while text.startswith("(") and text.endswith(")"):
        text = text[1:-1].strip()

    if text.upper() == "NULL" or _FUNCTION_CALL.match(text):
        return None

    if text.startswith("'") and text.endswith("'") and len(text) >= 2:
        text = text[1:-1].replace("''", "'")
        quoted = True
    else:
        quoted = False

    return _cast(column.data_type, text, quoted)


def _cast(data_type: str, value: str, quoted: bool) -> Any:
    if data_type == "boolean":
        return value.lower() in ("true", "t", "1", "yes", "on")
    if data_type in _JSON_TYPES:
        try:
            return json.loads(value)
        except ValueError:
            return value
    if data_type in _INTEGER_TYPES:
        try:
            return int(value)
        except ValueError:
            return None
    if data_type in _FLOAT_TYPES:
        try:
            return float(value)
        except ValueError:
            return None
    if not quoted and data_type.startswith(("timestamp", "date", "time")):
        return None
    return value
