from __future__ import annotations

import io
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pandas as pd

from .coercion import coerce_text, is_blank
from .headers import PLACEHOLDER_PREFIX

"""Workbook reading, sheet selection and header-row detection.

Source workbooks are loosely structured: the CAR log sheet is not always the
first sheet, and a title or blank banner row may sit above the real header
row. Detection is heuristic, so the result carries a confidence flag
(``headers_recognized``) and callers surface it as a diagnostic.

Steps:
1. Read every sheet raw (``header=None``) so row positions are preserved
2. Select the sheet whose name contains the target phrase, else the first
3. Probe header rows 0..3 until one yields data rows and looks like headers
4. If the header cells were blank/merged, take headers from the next row
"""

__all__ = [
    "DEFAULT_SHEET_MATCH",
    "DEFAULT_HEADER_KEYWORDS",
    "MAX_HEADER_PROBE_ROW",
    "NO_DATA_MESSAGE",
    "NO_HEADER_MESSAGE",
    "ParseError",
    "NoWorksheetError",
    "SheetData",
    "read_workbook",
    "select_sheet",
    "header_tokens",
    "headers_look_real",
    "detect_header_row",
    "repair_placeholder_headers",
    "extract_sheet",
]

logger = logging.getLogger(__name__)

DEFAULT_SHEET_MATCH = "car log"
DEFAULT_HEADER_KEYWORDS: tuple[str, ...] = ("car", "status", "location", "date")
MAX_HEADER_PROBE_ROW = 3

NO_DATA_MESSAGE = "No data found in worksheet. The sheet might be empty or formatted incorrectly."
NO_HEADER_MESSAGE = "No header row found in rows 1-4. Headers must start within the first four rows."


class ParseError(Exception):
    """Raised when no extractable data exists in the workbook."""


class NoWorksheetError(ParseError):
    """Raised when the workbook has no sheets at all."""


@dataclass
class SheetData:
    sheet_name: str
    columns: list[str]  # raw header strings, not yet normalized
    rows: list[dict[str, Any]]  # raw header -> RawCell, spreadsheet order
    header_row: int  # 0-based grid row the headers were taken from
    headers_recognized: bool  # False when the last probe was used as a fallback
    repaired: bool = False  # headers were recovered from the row below blank/merged cells


def read_workbook(
    source: Path | bytes, keep_na_strings: list[str] | None = None
) -> list[tuple[str, pd.DataFrame]]:
    """Read a workbook returning raw DataFrames as (sheet name, grid) pairs.

    Parameters
    ----------
    source: workbook path or raw file bytes
    keep_na_strings: strings excluded from pandas' default NaN conversion
        (e.g. ['NA', 'N/A'] so a status of "N/A" survives as text)
    """
    import pandas._libs.parsers as parsers

    if keep_na_strings:
        na_values = list(parsers.STR_NA_VALUES - set(keep_na_strings))
        keep_default_na = False
    else:
        na_values = None
        keep_default_na = True

    handle: Any = io.BytesIO(source) if isinstance(source, (bytes, bytearray)) else source
    sheets: list[tuple[str, pd.DataFrame]] = []
    with pd.ExcelFile(handle) as xls:
        for name in xls.sheet_names:
            # header=None: header row is detected later, positions must be kept
            df = xls.parse(name, header=None, keep_default_na=keep_default_na, na_values=na_values)
            sheets.append((str(name), df))
    return sheets


def select_sheet(
    sheets: Sequence[tuple[str, pd.DataFrame]], target_phrase: str = DEFAULT_SHEET_MATCH
) -> tuple[str, pd.DataFrame]:
    """Pick the first sheet whose name contains target_phrase, else the first sheet."""
    if not sheets:
        raise NoWorksheetError("No worksheet found in Excel file")
    phrase = target_phrase.lower()
    for name, df in sheets:
        if phrase and phrase in name.lower():
            logger.debug(f"using sheet matching {target_phrase!r}: {name}")
            return name, df
    name, df = sheets[0]
    logger.debug(f"no sheet matches {target_phrase!r}, using first sheet: {name}")
    return name, df


def _to_grid(df: pd.DataFrame) -> list[list[Any]]:
    # object dtype keeps Timestamps/ints as python-level scalars
    return df.astype(object).to_numpy().tolist()


def header_tokens(cells: Iterable[Any]) -> list[str]:
    """Turn a header row into unique string tokens.

    Blank cells become ``__EMPTY``, ``__EMPTY_1``...; repeated names get
    ``_1``, ``_2`` suffixes so every column keeps its own key.
    """
    tokens: list[str] = []
    seen: set[str] = set()
    empty_count = 0
    for cell in cells:
        if is_blank(cell):
            token = PLACEHOLDER_PREFIX if empty_count == 0 else f"{PLACEHOLDER_PREFIX}_{empty_count}"
            empty_count += 1
        else:
            token = coerce_text(cell) or ""
        base, n = token, 0
        while token in seen:
            n += 1
            token = f"{base}_{n}"
        seen.add(token)
        tokens.append(token)
    return tokens


def headers_look_real(tokens: Iterable[str], keywords: Iterable[str] = DEFAULT_HEADER_KEYWORDS) -> bool:
    lowered = [k.lower() for k in keywords]
    return any(k in str(t).lower() for t in tokens for k in lowered)


def _data_rows(grid: list[list[Any]], header_row: int, tokens: list[str]) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for raw in grid[header_row + 1:]:
        # entirely blank rows are skipped
        if all(is_blank(v) for v in raw):
            continue
        rows.append(dict(zip(tokens, raw, strict=False)))
    return rows


def _first_data_row(grid: list[list[Any]], header_row: int) -> int:
    for index in range(header_row + 1, len(grid)):
        if not all(is_blank(v) for v in grid[index]):
            return index
    return header_row


def detect_header_row(
    grid: list[list[Any]],
    keywords: Iterable[str] = DEFAULT_HEADER_KEYWORDS,
    max_probe_row: int = MAX_HEADER_PROBE_ROW,
) -> tuple[int, list[str], list[dict[str, Any]], bool]:
    """Find the header row by probing rows 0..max_probe_row.

    The first probe producing at least one data row with recognizable
    headers wins. If none looks like real headers, the last probe
    (max_probe_row) is used as long as it produces data and is not entirely
    blank.

    Returns (header_row, tokens, rows, headers_recognized).

    Raises:
        ParseError: no probe produced any data row, or the last probe row is
            blank (headers start below the probed rows)
    """
    keywords = tuple(keywords)
    for row_index in range(max_probe_row + 1):
        if row_index >= len(grid):
            break
        tokens = header_tokens(grid[row_index])
        rows = _data_rows(grid, row_index, tokens)
        if not rows:
            continue
        recognized = headers_look_real(tokens, keywords)
        logger.debug(f"header probe row={row_index} data_rows={len(rows)} recognized={recognized}")
        if recognized:
            return row_index, tokens, rows, recognized
        if row_index == max_probe_row:
            if all(t.startswith(PLACEHOLDER_PREFIX) for t in tokens):
                raise ParseError(NO_HEADER_MESSAGE)
            return row_index, tokens, rows, recognized
    raise ParseError(NO_DATA_MESSAGE)


def repair_placeholder_headers(
    tokens: list[str], rows: list[dict[str, Any]]
) -> tuple[list[str], list[dict[str, Any]], bool]:
    """Recover headers from the first data row when the header cells were blank.

    Triggered when the first header token is a placeholder. The first data
    row's values become the headers, that row is removed, and every other row
    is re-keyed positionally. Columns whose recovered header is blank are
    dropped.
    """
    if not tokens or not tokens[0].startswith(PLACEHOLDER_PREFIX) or not rows:
        return tokens, rows, False
    first = rows[0]
    recovered = header_tokens(first.get(t) for t in tokens)
    keep = [
        (old, new) for old, new in zip(tokens, recovered, strict=True)
        if not new.startswith(PLACEHOLDER_PREFIX)
    ]
    rebuilt = [{new: row.get(old) for old, new in keep} for row in rows[1:]]
    headers = [new for _, new in keep]
    logger.debug(f"placeholder headers replaced by row values: {headers[:10]}")
    return headers, rebuilt, True


def extract_sheet(
    sheet_name: str,
    df: pd.DataFrame,
    keywords: Iterable[str] = DEFAULT_HEADER_KEYWORDS,
) -> SheetData:
    """Detect headers in a raw sheet and return keyed data rows."""
    grid = _to_grid(df)
    header_row, tokens, rows, recognized = detect_header_row(grid, keywords)
    headers, rows, repaired = repair_placeholder_headers(tokens, rows)
    if repaired:
        header_row = _first_data_row(grid, header_row)
        recognized = recognized or headers_look_real(headers, keywords)
    return SheetData(
        sheet_name=sheet_name,
        columns=headers,
        rows=rows,
        header_row=header_row,
        headers_recognized=recognized,
        repaired=repaired,
    )
