from __future__ import annotations

import json
from pathlib import Path

from carlog_import.config.loader import CarlogConfig
from carlog_import.logging.error_log import ErrorLogBuffer
from carlog_import.services.orchestrator import FILE_LEVEL_SHEET, import_workbook
from carlog_import.store import JsonFileRecordStore


def _read_log(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_import_creates_records_and_logs_duplicates(temp_workdir, make_workbook, car_log_headers):
    path = make_workbook(
        {
            "CAR LOG": [
                car_log_headers,
                ["25-001", "Plant 1", "Open", "2025-01-15", 2, "Y", "$100.00", "Scratch"],
                [None, "Plant 2", "Open", 45658, 1, "N", None, "Dent"],
                ["25-001", "Plant 3", "Closed", None, None, None, None, "Second copy"],
            ]
        }
    )
    store = JsonFileRecordStore(temp_workdir / "data" / "records.json")

    run = import_workbook(path, store, CarlogConfig(batch_size=1, max_workers=2), year="25")

    assert (run.summary.total, run.summary.created, run.summary.updated, run.summary.failed) == (3, 2, 0, 1)
    assert run.dropped == 0
    assert run.has_failures is True
    assert [r.internal_car_number for r in store.list_records()] == ["25-001", "25-002"]
    assert store.find_by_car_number("25-001").get("location") == "Plant 1"

    assert run.error_log_path is not None
    assert run.error_log_path.parent == Path("logs")
    entries = _read_log(temp_workdir / run.error_log_path)
    assert entries == [
        {
            "timestamp": entries[0]["timestamp"],
            "file": "car_log.xlsx",
            "sheet": "CAR LOG",
            "row": 2,
            "error_type": "DUPLICATE_KEY",
            "message": "Duplicate Internal CAR #: 25-001",
        }
    ]

    # persisted: a fresh store sees the same records and counter
    reopened = JsonFileRecordStore(temp_workdir / "data" / "records.json")
    assert len(reopened.list_records()) == 2
    assert reopened.counters["25"] >= 2


def test_reimport_updates_existing_records(temp_workdir, make_workbook, car_log_headers):
    path = make_workbook(
        {"CAR LOG": [car_log_headers, ["25-010", "Plant 1", "Open", "2025-02-01", 5, "N", "$20", "Crack"]]}
    )
    store = JsonFileRecordStore(temp_workdir / "data" / "records.json")
    first = import_workbook(path, store, year="25")
    assert first.summary.created == 1
    assert first.error_log_path is None

    path2 = make_workbook(
        {"CAR LOG": [car_log_headers, ["25-010", None, "Closed", None, None, "Y", None, None]]},
        name="car_log_v2.xlsx",
    )
    second = import_workbook(path2, store, year="25")
    assert (second.summary.created, second.summary.updated, second.summary.failed) == (0, 1, 0)
    record = store.find_by_car_number("25-010")
    assert record.get("status") == "Closed"
    assert record.get("containmentComplete") is True
    # fields absent from the second file are kept
    assert record.get("location") == "Plant 1"
    assert record.get("proposedCost") == 20.0


def test_empty_sheet_is_logged_at_file_level(temp_workdir, make_workbook):
    path = make_workbook({"CAR LOG": [["Internal CAR #", "Status"]]})
    store = JsonFileRecordStore(temp_workdir / "data" / "records.json")
    log = ErrorLogBuffer()

    run = import_workbook(path, store, error_log=log)

    assert run.summary.total == 0
    assert run.has_failures is True
    # caller-owned buffers are not flushed by the import
    assert run.error_log_path is None
    records = log.records()
    assert [r.error_type for r in records] == ["PARSE_ERROR"]
    assert records[0].row == -1
    assert records[0].sheet in ("CAR LOG", FILE_LEVEL_SHEET)


def test_unreadable_workbook(temp_workdir):
    bogus = temp_workdir / "broken.xlsx"
    bogus.write_bytes(b"not a workbook")
    store = JsonFileRecordStore(temp_workdir / "data" / "records.json")

    run = import_workbook(bogus, store)

    assert run.summary.total == 0
    assert run.has_failures is True
    entries = _read_log(temp_workdir / run.error_log_path)
    assert entries[0]["sheet"] == FILE_LEVEL_SHEET
    assert entries[0]["error_type"] == "PARSE_ERROR"
    assert store.list_records() == []


def test_keep_na_strings_preserved_through_import(temp_workdir, make_workbook, car_log_headers):
    path = make_workbook(
        {"CAR LOG": [car_log_headers, ["25-001", "N/A", "NA", None, None, None, None, "n/a"]]}
    )
    store = JsonFileRecordStore(temp_workdir / "data" / "records.json")

    import_workbook(path, store, CarlogConfig(keep_na_strings=["N/A", "NA", "n/a"]), year="25")

    record = store.find_by_car_number("25-001")
    assert record.get("location") == "N/A"
    assert record.get("status") == "NA"
    assert record.get("problemDescription") == "n/a"


def test_title_rows_above_fifth_row_headers_count_as_failure(temp_workdir, make_workbook, car_log_headers):
    path = make_workbook(
        {
            "CAR LOG": [
                ["Quality Report"],
                ["Plant 7"],
                ["Prepared by QA"],
                ["Rev 3"],
                car_log_headers,
                ["25-001", "Plant 1", "Open", "2025-01-15", 2, "Y", "$100.00", "Scratch"],
            ]
        }
    )
    store = JsonFileRecordStore(temp_workdir / "data" / "records.json")

    run = import_workbook(path, store, year="25")

    assert run.parse.headers_recognized is False
    assert run.summary.failed == 0
    assert run.has_failures is True
    entries = _read_log(temp_workdir / run.error_log_path)
    assert "HEADER_ROW_UNRECOGNIZED" in {e["error_type"] for e in entries}
