from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from carlog_import.excel.reader import (
    NO_DATA_MESSAGE,
    NO_HEADER_MESSAGE,
    NoWorksheetError,
    ParseError,
    detect_header_row,
    extract_sheet,
    header_tokens,
    read_workbook,
    repair_placeholder_headers,
    select_sheet,
)


def test_read_workbook_from_path_and_bytes(make_workbook, car_log_headers):
    path = make_workbook({"CAR LOG": [car_log_headers, ["25-001", "Plant 1", "Open"]]})
    from_path = read_workbook(path)
    from_bytes = read_workbook(path.read_bytes())
    assert [name for name, _ in from_path] == ["CAR LOG"]
    assert [name for name, _ in from_bytes] == ["CAR LOG"]
    df = from_path[0][1]
    # header=None: the header row is still part of the grid
    assert df.iloc[0, 0] == "Internal CAR #"
    assert df.iloc[1, 0] == "25-001"


def test_keep_na_strings(make_workbook):
    path = make_workbook({"CAR LOG": [["Internal CAR #", "Status"], ["25-001", "N/A"]]})
    default = read_workbook(path)[0][1]
    assert pd.isna(default.iloc[1, 1])
    kept = read_workbook(path, keep_na_strings=["N/A"])[0][1]
    assert kept.iloc[1, 1] == "N/A"


def test_select_sheet_prefers_car_log():
    a, b = pd.DataFrame([[1]]), pd.DataFrame([[2]])
    name, df = select_sheet([("Summary", a), ("2025 Car Log", b)])
    assert name == "2025 Car Log"
    assert df is b


def test_select_sheet_falls_back_to_first():
    a, b = pd.DataFrame([[1]]), pd.DataFrame([[2]])
    assert select_sheet([("Summary", a), ("Other", b)])[0] == "Summary"


def test_select_sheet_without_sheets():
    with pytest.raises(NoWorksheetError, match="No worksheet found in Excel file"):
        select_sheet([])


def test_header_tokens_placeholders_and_duplicates():
    tokens = header_tokens(["Status", "Status", None, float("nan"), "Status", "  "])
    assert tokens == ["Status", "Status_1", "__EMPTY", "__EMPTY_1", "Status_2", "__EMPTY_2"]


def test_detect_header_row_skips_title_rows():
    grid = [
        ["Quality Report", None, None],
        ["Plant 7", None, None],
        ["Internal CAR #", "Status", "Location"],
        ["25-001", "Open", "Plant 1"],
        [None, None, None],
        ["25-002", "Closed", "Plant 2"],
    ]
    header_row, tokens, rows, recognized = detect_header_row(grid)
    assert header_row == 2
    assert recognized is True
    assert tokens == ["Internal CAR #", "Status", "Location"]
    # entirely blank rows are not data rows
    assert [r["Internal CAR #"] for r in rows] == ["25-001", "25-002"]


def test_detect_header_row_falls_back_to_fourth_row_without_keywords():
    grid = [
        ["Alpha", "Beta"],
        ["a1", "b1"],
        ["a2", "b2"],
        ["a3", "b3"],
        ["a4", "b4"],
    ]
    header_row, tokens, rows, recognized = detect_header_row(grid)
    assert header_row == 3
    assert recognized is False
    assert tokens == ["a3", "b3"]
    assert rows == [{"a3": "a4", "b3": "b4"}]


def test_detect_header_row_without_data():
    with pytest.raises(ParseError, match="No data found in worksheet"):
        detect_header_row([["Internal CAR #", "Status"]])
    with pytest.raises(ParseError) as exc:
        detect_header_row([])
    assert str(exc.value) == NO_DATA_MESSAGE


def test_detect_header_row_blank_rows_above_fifth_row_headers():
    grid = [
        [None, None, None],
        [None, None, None],
        [None, None, None],
        [None, None, None],
        ["Internal CAR #", "Status", "Location"],
        ["25-001", "Open", "Plant 1"],
    ]
    with pytest.raises(ParseError) as exc:
        detect_header_row(grid)
    assert str(exc.value) == NO_HEADER_MESSAGE


def test_detect_header_row_blank_rows_above_fourth_row_headers():
    grid = [
        [None, None],
        [None, None],
        [None, None],
        ["Internal CAR #", "Status"],
        ["25-001", "Open"],
    ]
    header_row, tokens, rows, recognized = detect_header_row(grid)
    assert header_row == 3
    assert recognized is True
    assert rows == [{"Internal CAR #": "25-001", "Status": "Open"}]


def test_repair_placeholder_headers_from_first_data_row():
    tokens = ["__EMPTY", "CAR LOG 2025", "__EMPTY_1"]
    rows = [
        {"__EMPTY": "Internal CAR #", "CAR LOG 2025": "Status", "__EMPTY_1": "Location"},
        {"__EMPTY": "25-001", "CAR LOG 2025": "Open", "__EMPTY_1": "Plant 1"},
    ]
    headers, rebuilt, repaired = repair_placeholder_headers(tokens, rows)
    assert repaired is True
    assert headers == ["Internal CAR #", "Status", "Location"]
    assert rebuilt == [{"Internal CAR #": "25-001", "Status": "Open", "Location": "Plant 1"}]


def test_repair_not_triggered_for_real_first_header():
    tokens = ["Internal CAR #", "__EMPTY"]
    rows = [{"Internal CAR #": "25-001", "__EMPTY": None}]
    assert repair_placeholder_headers(tokens, rows) == (tokens, rows, False)


def test_extract_sheet_merged_title_row(make_workbook):
    path = make_workbook(
        {
            "CAR LOG": [
                [None, "CAR LOG 2025", None],
                ["Internal CAR #", "Status", "Location"],
                ["25-001", "Open", "Plant 1"],
                ["25-002", "Closed", "Plant 2"],
            ]
        }
    )
    name, df = read_workbook(path)[0]
    sheet = extract_sheet(name, df)
    # headers were taken from the second row
    assert sheet.header_row == 1
    assert sheet.repaired is True
    assert sheet.headers_recognized is True
    assert sheet.columns == ["Internal CAR #", "Status", "Location"]
    assert [r["Internal CAR #"] for r in sheet.rows] == ["25-001", "25-002"]


def test_extract_sheet_headers_on_fifth_row_are_not_recognized(make_workbook, car_log_headers):
    grid = [
        ["Quality Report"],
        ["Plant 7"],
        ["Prepared by QA"],
        ["Rev 3"],
        car_log_headers,
        ["25-001", "Plant 1", "Open", "2025-01-15", 2, "Y", "$100.00", "Scratch"],
    ]
    path = make_workbook({"CAR LOG": grid})
    name, df = read_workbook(Path(path))[0]
    sheet = extract_sheet(name, df)
    assert sheet.header_row == 3
    assert sheet.headers_recognized is False
    assert sheet.columns[0] == "Rev 3"


def test_extract_sheet_headers_below_four_blank_rows_fail(car_log_headers):
    blank = [None] * len(car_log_headers)
    df = pd.DataFrame(
        [blank, blank, blank, blank, car_log_headers, ["25-001", "Plant 1", "Open", "2025-01-15", 2, "Y", "$1", "x"]]
    )
    with pytest.raises(ParseError, match="No header row found in rows 1-4"):
        extract_sheet("CAR LOG", df)
