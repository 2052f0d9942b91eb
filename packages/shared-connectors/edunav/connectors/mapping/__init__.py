"""Declarative field mapping.

Resolves dot/bracket source paths in raw records and runs them through
ordered transform chains to build normalized payloads.

Example:
    from edunav.connectors.mapping import apply_mappings

    result = apply_mappings(raw_record, mappings)
    result.payload          # {"full_name": "Ana"}
    result.unmapped_fields  # ["created_at"]
    result.errors           # ["amount -> value: ..."]
"""

from edunav.connectors.mapping.engine import TransformResult, apply_mappings
from edunav.connectors.mapping.paths import resolve_path
from edunav.connectors.mapping.transforms import (
    OPERATIONS,
    TransformKind,
    TransformOp,
    apply_chain,
    parse_transforms,
    stringify,
)

__all__ = [
    "OPERATIONS",
    "TransformKind",
    "TransformOp",
    "TransformResult",
    "apply_chain",
    "apply_mappings",
    "parse_transforms",
    "resolve_path",
    "stringify",
]
