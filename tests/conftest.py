# Shared pytest fixtures
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pandas as pd
import pytest

from carlog_import.logging.init import reset_logging


@pytest.fixture()
def temp_workdir(tmp_path: Path, monkeypatch) -> Path:
    (tmp_path / "config").mkdir()
    (tmp_path / "data").mkdir()
    (tmp_path / "logs").mkdir()
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture()
def clean_logging():
    reset_logging()
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _release_log_handler():
    # the app handler is bound to the stdout of the test that installed it
    yield
    reset_logging()


@pytest.fixture()
def sample_config_yaml() -> str:
    return """store:
  backend: json
  path: ./data/records.json
sheet_match: car log
header_keywords: [car, status, location, date]
batch_size: 50
max_workers: 4
keep_na_strings: [NA, N/A]
timezone: UTC
database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "carlog.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


def write_workbook(path: Path, sheets: dict[str, list[list[Any]]]) -> Path:
    """Write raw grids (no pandas header row) into an .xlsx file."""
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        for sheet, rows in sheets.items():
            pd.DataFrame(rows).to_excel(writer, sheet_name=sheet, header=False, index=False)
    return path


@pytest.fixture()
def make_workbook(tmp_path: Path) -> Callable[..., Path]:
    def _make(sheets: dict[str, list[list[Any]]], name: str = "car_log.xlsx") -> Path:
        return write_workbook(tmp_path / name, sheets)

    return _make


CAR_LOG_HEADERS = [
    "Internal CAR #",
    "Location",
    "Status",
    "Received Date",
    "Quantity",
    "Containment Complete?",
    "Proposed Cost",
    "Problem Description",
]


@pytest.fixture()
def car_log_headers() -> list[str]:
    return list(CAR_LOG_HEADERS)
