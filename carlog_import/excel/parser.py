from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from ..models.record import NormalizedRow
from .headers import HeaderMapping, MappingDiagnostic, build_header_map
from .normalizer import normalize_rows
from .reader import (
    DEFAULT_HEADER_KEYWORDS,
    DEFAULT_SHEET_MATCH,
    ParseError,
    extract_sheet,
    read_workbook,
    select_sheet,
)

"""Workbook -> normalized rows pipeline.

``parse_workbook`` is the boundary of the ingestion pipeline: parse failures
never propagate past it. A workbook without extractable data yields an empty
row list plus a message in ``errors``; header problems are reported as
``diagnostics`` next to whatever rows could be read.
"""

__all__ = [
    "ParseResult",
    "parse_workbook",
]

logger = logging.getLogger(__name__)


@dataclass
class ParseResult:
    rows: list[NormalizedRow] = field(default_factory=list)
    headers: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    diagnostics: list[MappingDiagnostic] = field(default_factory=list)
    sheet_name: str | None = None
    header_row: int | None = None
    headers_recognized: bool = False
    header_map: HeaderMapping | None = None
    total_rows: int = 0
    dropped_rows: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors


def parse_workbook(
    source: Path | bytes,
    *,
    sheet_match: str = DEFAULT_SHEET_MATCH,
    header_keywords: Iterable[str] = DEFAULT_HEADER_KEYWORDS,
    keep_na_strings: list[str] | None = None,
) -> ParseResult:
    """Read a workbook and return normalized rows with diagnostics."""
    try:
        sheets = read_workbook(source, keep_na_strings=keep_na_strings)
    except Exception as e:  # reader backends raise assorted types for bad files
        logger.error(f"failed to read workbook: {e}")
        return ParseResult(errors=[f"Failed to read workbook: {e}"])

    logger.debug(f"available sheets: {[name for name, _ in sheets]}")
    sheet_name: str | None = None
    try:
        sheet_name, df = select_sheet(sheets, sheet_match)
        sheet = extract_sheet(sheet_name, df, header_keywords)
    except ParseError as e:
        logger.warning(f"sheet={sheet_name}: {e}")
        return ParseResult(errors=[str(e)], sheet_name=sheet_name)

    result = ParseResult(
        headers=sheet.columns,
        sheet_name=sheet.sheet_name,
        header_row=sheet.header_row,
        headers_recognized=sheet.headers_recognized,
    )
    if not sheet.headers_recognized:
        result.diagnostics.append(
            MappingDiagnostic(
                kind="HEADER_ROW_UNRECOGNIZED",
                message=(
                    f"no recognizable header found in rows 1-{sheet.header_row + 1}; "
                    f"using row {sheet.header_row + 1} as header"
                ),
                headers=tuple(sheet.columns),
            )
        )
    logger.info(
        f"sheet={sheet.sheet_name} header_row={sheet.header_row + 1} "
        f"columns={len(sheet.columns)} raw_rows={len(sheet.rows)}"
        + (" (headers recovered from row below)" if sheet.repaired else "")
    )

    header_map = build_header_map(sheet.columns)
    result.header_map = header_map
    result.diagnostics.extend(header_map.diagnostics)
    logger.info(f"mapped {header_map.matched} header(s) to CAR log fields")

    normalized = normalize_rows(sheet.rows, header_map.mapping)
    result.rows = normalized.rows
    result.total_rows = normalized.total_rows
    result.dropped_rows = normalized.dropped_rows
    if normalized.total_rows and not normalized.rows:
        logger.warning("all rows were filtered out; check that headers match the expected format")
    logger.info(f"normalized {len(normalized.rows)} of {normalized.total_rows} row(s)")
    return result
