"""Transform operations for the field-mapping DSL.

Every operation is a pure function ``(value, params, raw_record) -> value``
registered against a closed set of :class:`TransformKind` values. Chains of
operations are applied left to right, the output of one feeding the next.

Stored mappings describe operations as JSON objects keyed by ``op``:

    {"op": "date_parse", "format": "epoch_ms"}
    {"op": "concat", "fields": ["first_name", "last_name"], "separator": " "}
    {"op": "map_values", "mapping": {"A": "active"}, "default": "unknown"}
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from dateutil import parser as date_parser

from edunav.connectors.exceptions import ConfigurationError, TransformError
from edunav.connectors.mapping.paths import resolve_path

TRUTHY_STRINGS = frozenset({"true", "1", "yes", "sim"})


class TransformKind(str, Enum):
    """Supported transform operations."""

    CAST_STRING = "cast_string"
    CAST_NUMBER = "cast_number"
    CAST_INT = "cast_int"
    CAST_BOOLEAN = "cast_boolean"
    DATE_PARSE = "date_parse"
    LOWERCASE = "lowercase"
    UPPERCASE = "uppercase"
    TRIM = "trim"
    DEFAULT_VALUE = "default_value"
    CONCAT = "concat"
    MAP_VALUES = "map_values"
    REGEX_EXTRACT = "regex_extract"
    SPLIT = "split"
    TEMPLATE = "template"


@dataclass(frozen=True)
class TransformOp:
    """A single parameterized transform step."""

    kind: TransformKind
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TransformOp:
        """Build an operation from its stored JSON form.

        Raises:
            ConfigurationError: If ``op`` is missing or not a known operation.
        """
        op = data.get("op")
        try:
            kind = TransformKind(op)
        except ValueError:
            raise ConfigurationError(
                f"Unknown transform operation: {op!r}. "
                f"Valid operations are: {', '.join(k.value for k in TransformKind)}"
            ) from None
        params = {key: value for key, value in data.items() if key != "op"}
        return cls(kind=kind, params=params)

    def to_dict(self) -> dict[str, Any]:
        """Return the stored JSON form of this operation."""
        return {"op": self.kind.value, **self.params}


def stringify(value: Any) -> str:
    """Render a JSON value as text.

    Integral floats drop their fractional part so ``1.0`` and ``1`` render
    the same way, which keeps identifiers stable across numeric encodings.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def parse_number(value: Any) -> int | float | None:
    """Parse a value as a finite number, returning None when it is not numeric."""
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as a UTC ISO-8601 string with millisecond precision."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _cast_string(value: Any, params: Mapping[str, Any], record: Mapping[str, Any]) -> Any:
    return stringify(value) if value is not None else None


def _cast_number(value: Any, params: Mapping[str, Any], record: Mapping[str, Any]) -> Any:
    return parse_number(value)


def _cast_int(value: Any, params: Mapping[str, Any], record: Mapping[str, Any]) -> Any:
    number = parse_number(value)
    return math.floor(number) if number is not None else None


def _cast_boolean(value: Any, params: Mapping[str, Any], record: Mapping[str, Any]) -> Any:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in TRUTHY_STRINGS
    return bool(value)


def _date_parse(value: Any, params: Mapping[str, Any], record: Mapping[str, Any]) -> Any:
    if value is None:
        return None

    fmt = params.get("format")
    if fmt in ("epoch_ms", "epoch_s"):
        epoch = parse_number(value)
        if epoch is not None:
            seconds = epoch / 1000 if fmt == "epoch_ms" else epoch
            try:
                return format_timestamp(datetime.fromtimestamp(seconds, tz=UTC))
            except (OverflowError, OSError, ValueError):
                return None

    if isinstance(value, datetime):
        return format_timestamp(value)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return format_timestamp(date_parser.parse(value))
    except (ValueError, OverflowError):
        return None


def _lowercase(value: Any, params: Mapping[str, Any], record: Mapping[str, Any]) -> Any:
    return value.lower() if isinstance(value, str) else value


def _uppercase(value: Any, params: Mapping[str, Any], record: Mapping[str, Any]) -> Any:
    return value.upper() if isinstance(value, str) else value


def _trim(value: Any, params: Mapping[str, Any], record: Mapping[str, Any]) -> Any:
    return value.strip() if isinstance(value, str) else value


def _default_value(value: Any, params: Mapping[str, Any], record: Mapping[str, Any]) -> Any:
    return value if value is not None else params.get("default")


def _concat(value: Any, params: Mapping[str, Any], record: Mapping[str, Any]) -> Any:
    fields = params.get("fields")
    if not fields:
        return value
    if not isinstance(fields, list) or not all(isinstance(f, str) for f in fields):
        raise TransformError("concat requires 'fields' to be a list of paths")

    separator = params.get("separator")
    separator = "" if separator is None else str(separator)
    parts = []
    for path in fields:
        part = resolve_path(record, path)
        parts.append(stringify(part) if part is not None else "")
    return separator.join(parts)


def _map_values(value: Any, params: Mapping[str, Any], record: Mapping[str, Any]) -> Any:
    mapping = params.get("mapping")
    if not mapping or value is None:
        return value
    if not isinstance(mapping, dict):
        raise TransformError("map_values requires 'mapping' to be an object")

    key = stringify(value)
    if key in mapping:
        return mapping[key]
    default = params.get("default")
    return default if default is not None else value


def _regex_extract(value: Any, params: Mapping[str, Any], record: Mapping[str, Any]) -> Any:
    pattern = params.get("pattern")
    if not pattern or not isinstance(value, str):
        return value

    try:
        compiled = re.compile(pattern)
    except re.error as e:
        raise TransformError(f"invalid regex pattern {pattern!r}: {e}") from e

    match = compiled.search(value)
    if match is None:
        return None
    group = params.get("group")
    try:
        return match.group(0 if group is None else group)
    except IndexError:
        # unknown group number or name
        return None


def _split(value: Any, params: Mapping[str, Any], record: Mapping[str, Any]) -> Any:
    if not isinstance(value, str):
        return value

    delimiter = params.get("delimiter")
    delimiter = "," if delimiter is None else str(delimiter)
    if delimiter == "":
        parts = list(value)
    else:
        parts = value.split(delimiter)

    index = params.get("index")
    if index is None:
        return parts
    if isinstance(index, bool) or not isinstance(index, int):
        raise TransformError("split requires 'index' to be an integer")
    return parts[index] if 0 <= index < len(parts) else None


def _template(value: Any, params: Mapping[str, Any], record: Mapping[str, Any]) -> Any:
    template = params.get("template")
    if not template:
        return value
    rendered = stringify(value) if value is not None else ""
    return str(template).replace("{{value}}", rendered)


TransformFn = Callable[[Any, Mapping[str, Any], Mapping[str, Any]], Any]

OPERATIONS: dict[TransformKind, TransformFn] = {
    TransformKind.CAST_STRING: _cast_string,
    TransformKind.CAST_NUMBER: _cast_number,
    TransformKind.CAST_INT: _cast_int,
    TransformKind.CAST_BOOLEAN: _cast_boolean,
    TransformKind.DATE_PARSE: _date_parse,
    TransformKind.LOWERCASE: _lowercase,
    TransformKind.UPPERCASE: _uppercase,
    TransformKind.TRIM: _trim,
    TransformKind.DEFAULT_VALUE: _default_value,
    TransformKind.CONCAT: _concat,
    TransformKind.MAP_VALUES: _map_values,
    TransformKind.REGEX_EXTRACT: _regex_extract,
    TransformKind.SPLIT: _split,
    TransformKind.TEMPLATE: _template,
}


def apply_transform(op: TransformOp, value: Any, record: Mapping[str, Any]) -> Any:
    """Apply a single operation to a value."""
    return OPERATIONS[op.kind](value, op.params, record)


def apply_chain(ops: Iterable[TransformOp], value: Any, record: Mapping[str, Any]) -> Any:
    """Apply operations left to right, feeding each output into the next."""
    for op in ops:
        value = apply_transform(op, value, record)
    return value


def parse_transforms(raw: Any) -> list[TransformOp]:
    """Parse a stored transform column into a list of operations.

    Accepts None, a single operation object, or a list of operation objects.

    Raises:
        ConfigurationError: If an entry is not an object or names an unknown op.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = json.loads(raw) if raw.strip() else None
        if raw is None:
            return []
    entries = raw if isinstance(raw, list) else [raw]
    ops = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            raise ConfigurationError(
                f"Transform entries must be objects, got {type(entry).__name__}"
            )
        ops.append(TransformOp.from_dict(entry))
    return ops
