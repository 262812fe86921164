from __future__ import annotations

import io
import logging
from collections.abc import Iterable
from datetime import date
from typing import Any

import pandas as pd
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from ..models.record import (
    BOOLEAN_FIELDS,
    CURRENCY_FIELDS,
    DATE_FIELDS,
    NUMBER_FIELDS,
    Record,
)
from .coercion import format_boolean, format_currency, format_date_for_export, is_blank

"""Workbook export.

One sheet, "CAR LOG", with a fixed column order. Values use the same
formatting rules the importer understands, so an exported file re-imports
to the same records.
"""

__all__ = [
    "EXPORT_SHEET_NAME",
    "EXPORT_COLUMNS",
    "export_rows",
    "export_records",
    "export_filename",
]

logger = logging.getLogger(__name__)

EXPORT_SHEET_NAME = "CAR LOG"
HEADER_FILL = "E0E0E0"

# (header label, field, column width)
EXPORT_COLUMNS: tuple[tuple[str, str, int], ...] = (
    ("Internal CAR #", "internalCarNumber", 15),
    ("Location", "location", 15),
    ("Status", "status", 12),
    ("Incidence Type", "incidenceType", 18),
    ("Type", "type", 15),
    ("Category", "category", 15),
    ("Received Date", "receivedDate", 15),
    ("Part Number", "partNumber", 18),
    ("Part Description", "partDescription", 30),
    ("Part Family", "partFamily", 18),
    ("Cust. CAR #", "customerCarNumber", 15),
    ("Stop Tag #", "stopTagNumber", 15),
    ("Audit NC #", "auditNcNumber", 15),
    ("Customer", "customer", 20),
    ("Komatsu Tracking", "komatsuTracking", 18),
    ("Work Order #", "workOrderNumber", 15),
    ("Manufacture Date", "manufactureDate", 18),
    ("Quantity", "quantity", 12),
    ("Problem Description", "problemDescription", 40),
    ("Department Responsible", "departmentResponsible", 25),
    ("Defect Category", "defectCategory", 20),
    ("Champion", "champion", 20),
    ("Containment Complete?", "containmentComplete", 22),
    ("Corrective Action Prevention", "correctiveActionPrevention", 35),
    ("Corrective Action Detection", "correctiveActionDetection", 35),
    ("Proposed Cost", "proposedCost", 15),
    ("Cost Approved?", "costApproved", 15),
    ("Initial Resp.", "initialResp", 15),
    ("Final Resp. Due Date", "finalRespDueDate", 20),
    ("Completed Resp. Actual", "completedRespActual", 22),
    ("# Days to Close", "daysToClose", 18),
    ("Closed Date", "closedDate", 15),
    ("Employee ID", "employeeId", 15),
    ("RMA #", "rmaNumber", 15),
    ("Contact", "followUpContact", 20),
    ("Debit Cost", "followUpDebitCost", 15),
    ("Comments", "followUpComments", 40),
)


def _export_value(field_name: str, value: Any) -> Any:
    if field_name in DATE_FIELDS:
        return format_date_for_export(value)
    if field_name in BOOLEAN_FIELDS:
        return format_boolean(value)
    if field_name in CURRENCY_FIELDS:
        return format_currency(value)
    if is_blank(value):
        return ""
    if field_name in NUMBER_FIELDS and isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def export_rows(records: Iterable[Record]) -> list[list[Any]]:
    """Records -> cell rows in EXPORT_COLUMNS order, sorted by business key."""
    ordered = sorted(records, key=lambda r: r.internal_car_number)
    return [[_export_value(name, r.get(name)) for _, name, _ in EXPORT_COLUMNS] for r in ordered]


def export_records(records: Iterable[Record]) -> bytes:
    """Render records as an .xlsx workbook and return its bytes."""
    rows = export_rows(records)
    df = pd.DataFrame(rows, columns=[label for label, _, _ in EXPORT_COLUMNS])
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name=EXPORT_SHEET_NAME, index=False)
        ws = writer.sheets[EXPORT_SHEET_NAME]
        for cell in ws[1]:
            cell.font = Font(bold=True)
            cell.fill = PatternFill("solid", fgColor=HEADER_FILL)
        for idx, (_, _, width) in enumerate(EXPORT_COLUMNS, start=1):
            ws.column_dimensions[get_column_letter(idx)].width = width
    logger.info(f"exported {len(rows)} record(s)")
    return buffer.getvalue()


def export_filename(today: date) -> str:
    return f"CAR LOG - Export - {today.isoformat()}.xlsx"
