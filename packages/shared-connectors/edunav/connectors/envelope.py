"""Locate the record array inside an API response body."""

from __future__ import annotations

from typing import Any

# Keys searched, in order, when no data path is configured
ENVELOPE_KEYS = ("data", "results", "records", "items")


def extract_records(body: Any, data_path: str | None = None) -> list[Any]:
    """Extract records from a decoded JSON response.

    Without ``data_path`` a top-level array is used as-is, then the first
    array under ``data``, ``results``, ``records`` or ``items``; any other
    object is treated as a single record.

    With ``data_path`` the dotted path is walked through nested objects.
    A non-object on the way yields no records. An array leaf is returned
    directly and an object leaf becomes a single record.

    Args:
        body: Decoded JSON response.
        data_path: Optional dot-path to the record array, e.g. ``payload.rows``.

    Returns:
        List of records (possibly empty). Never raises for unexpected shapes.
    """
    if not data_path:
        if isinstance(body, list):
            return body
        if isinstance(body, dict):
            for key in ENVELOPE_KEYS:
                if isinstance(body.get(key), list):
                    return body[key]
            return [body]
        return []

    current = body
    for part in data_path.split("."):
        if not isinstance(current, dict):
            return []
        current = current.get(part)

    if isinstance(current, list):
        return current
    if isinstance(current, dict):
        return [current]
    return []


def find_next_cursor(body: Any) -> str | None:
    """Return the next-page cursor from a response body, if any.

    Checks ``next_cursor``, ``cursor`` and ``next`` in that order; empty
    values are treated as absent.
    """
    if not isinstance(body, dict):
        return None
    for key in ("next_cursor", "cursor", "next"):
        value = body.get(key)
        if value not in (None, "", False):
            return str(value)
    return None
