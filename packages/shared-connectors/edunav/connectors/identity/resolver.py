"""Derive stable external identifiers for raw records."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from edunav.connectors.mapping.paths import resolve_path
from edunav.connectors.mapping.transforms import stringify


def extract_source_id(raw_record: Any, id_field: str = "id") -> str | None:
    """Resolve the external identifier of a raw record.

    Uses the same path syntax as field mappings (``id``, ``meta.uuid``,
    ``refs[0].id``). The result is the idempotency key half that, together
    with the connector id, deduplicates upserts across reruns.

    A missing, empty or structured (object/array) value yields None: the
    caller must skip the record, never invent an identifier.

    Args:
        raw_record: Record as extracted from the response.
        id_field: Path of the identifier field. Defaults to "id".

    Returns:
        The identifier as a string, or None.
    """
    if not isinstance(raw_record, Mapping):
        return None

    value = resolve_path(raw_record, id_field or "id")
    if value is None or isinstance(value, (dict, list)):
        return None

    source_id = stringify(value).strip()
    return source_id or None
