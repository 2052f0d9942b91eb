"""Apply connector field mappings to raw source records."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from edunav.connectors.mapping.paths import resolve_path
from edunav.connectors.mapping.transforms import apply_chain

if TYPE_CHECKING:
    from edunav.connectors.config import ConnectorMapping

logger = logging.getLogger(__name__)


@dataclass
class TransformResult:
    """Outcome of mapping one raw record.

    Attributes:
        payload: Normalized payload keyed by target field.
        unmapped_fields: Top-level source keys no mapping reads directly.
        errors: One message per failed mapping, formatted
            ``"<source_path> -> <target_field>: <message>"``.
    """

    payload: dict[str, Any] = field(default_factory=dict)
    unmapped_fields: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def apply_mappings(
    raw_record: Mapping[str, Any],
    mappings: Sequence[ConnectorMapping],
) -> TransformResult:
    """Convert a raw record into a normalized payload.

    Each mapping resolves its source path, runs its transform chain and
    assigns the result to its target field. A failing chain is recorded in
    ``errors`` and leaves that target field unset; other mappings proceed.

    Args:
        raw_record: Record as extracted from the API response.
        mappings: Mappings configured for the connector.

    Returns:
        TransformResult with payload, unmapped field names and errors.
    """
    result = TransformResult()

    for mapping in mappings:
        try:
            value = resolve_path(raw_record, mapping.source_path)
            value = apply_chain(mapping.transforms, value, raw_record)
        except Exception as e:
            result.errors.append(f"{mapping.source_path} -> {mapping.target_field}: {e}")
            continue
        result.payload[mapping.target_field] = value

    mapped_paths = {mapping.source_path for mapping in mappings}
    result.unmapped_fields = [key for key in raw_record if key not in mapped_paths]

    if result.errors:
        logger.debug(f"Mapping produced {len(result.errors)} field errors")

    return result
