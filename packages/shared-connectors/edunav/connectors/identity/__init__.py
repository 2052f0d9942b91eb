"""Identity resolution for raw source records.

Example:
    from edunav.connectors.identity import extract_source_id

    extract_source_id({"id": 42})                       # "42"
    extract_source_id({"meta": {"uuid": "a1"}}, "meta.uuid")  # "a1"
    extract_source_id({"name": "no id"})                # None
"""

from edunav.connectors.identity.resolver import extract_source_id

__all__ = [
    "extract_source_id",
]
