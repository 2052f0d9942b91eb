"""Dot/bracket path resolution over decoded JSON values."""

from __future__ import annotations

import re
from typing import Any

# Matches a single indexed segment such as "contact[0]"
INDEXED_SEGMENT = re.compile(r"^(\w+)\[(\d+)\]$")


def resolve_path(value: Any, path: str) -> Any:
    """Walk a dotted path through nested objects and return the leaf.

    Each segment is either a key (``name``) or a key with one array index
    (``name[0]``). A purely numeric segment indexes into a list. Anything
    that cannot be walked resolves to None rather than raising.

    Args:
        value: Decoded JSON value (dict, list or scalar).
        path: Path such as ``data.contact[0].email``.

    Returns:
        The resolved value, or None when any segment is missing.

    Example:
        >>> resolve_path({"data": {"contact": [{"email": "a@b.co"}]}}, "data.contact[0].email")
        'a@b.co'
    """
    if not path:
        return None

    current = value
    for segment in path.split("."):
        if current is None:
            return None

        if "[" in segment:
            match = INDEXED_SEGMENT.match(segment)
            if match is None or not isinstance(current, dict):
                return None
            items = current.get(match.group(1))
            index = int(match.group(2))
            if not isinstance(items, list) or index >= len(items):
                return None
            current = items[index]
        elif isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None

    return current
