from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..models.record import BOOLEAN_FIELDS, DATE_FIELDS, NUMBER_FIELDS, NormalizedRow
from .coercion import coerce_text, is_blank, parse_boolean, parse_excel_date, parse_number

"""Row normalization: raw keyed rows -> NormalizedRow.

Each cell whose raw header has a mapping entry is coerced according to the
type class of its canonical field. Blank and malformed cells both leave the
field unset. Rows ending up with no field at all are dropped, but counted.
"""

__all__ = [
    "NormalizationResult",
    "coercer_for",
    "normalize_row",
    "normalize_rows",
]

logger = logging.getLogger(__name__)


@dataclass
class NormalizationResult:
    rows: list[NormalizedRow] = field(default_factory=list)
    total_rows: int = 0
    dropped_rows: int = 0
    # position of each kept row in the raw row sequence
    source_positions: list[int] = field(default_factory=list)


def coercer_for(field_name: str) -> Callable[[Any], Any]:
    if field_name in DATE_FIELDS:
        return parse_excel_date
    if field_name in BOOLEAN_FIELDS:
        return parse_boolean
    if field_name in NUMBER_FIELDS:
        return parse_number
    return coerce_text


def normalize_row(raw_row: Mapping[str, Any], header_map: Mapping[str, str]) -> NormalizedRow:
    """Apply header mapping and coercers to one raw row."""
    normalized: NormalizedRow = {}
    for raw_header, field_name in header_map.items():
        value = raw_row.get(raw_header)
        if is_blank(value):
            continue
        coerced = coercer_for(field_name)(value)
        if coerced is None:
            continue
        normalized[field_name] = coerced
    return normalized


def normalize_rows(
    raw_rows: Iterable[Mapping[str, Any]], header_map: Mapping[str, str]
) -> NormalizationResult:
    result = NormalizationResult()
    for position, raw in enumerate(raw_rows):
        result.total_rows += 1
        normalized = normalize_row(raw, header_map)
        if not normalized:
            result.dropped_rows += 1
            logger.debug(f"row {position + 1}: skipped (no usable fields after mapping)")
            continue
        result.rows.append(normalized)
        result.source_positions.append(position)
    return result
