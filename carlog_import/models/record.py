from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

"""Corrective-action record model.

A Record is a normalized row (canonical field name -> typed value) plus the
business key ``internalCarNumber`` and the store-managed identifiers.
Date fields are kept as ``YYYY-MM-DD`` strings, booleans as ``bool`` and
numbers as ``float``; absent fields are simply missing from ``fields``.
"""

__all__ = [
    "NormalizedRow",
    "Record",
    "CAR_NUMBER_FIELD",
    "CAR_NUMBER_PATTERN",
    "TEXT_FIELDS",
    "DATE_FIELDS",
    "BOOLEAN_FIELDS",
    "NUMBER_FIELDS",
    "CURRENCY_FIELDS",
    "CANONICAL_FIELDS",
    "parse_car_number",
    "format_car_number",
    "utc_now",
    "parse_timestamp",
]

NormalizedRow = dict[str, Any]

CAR_NUMBER_FIELD = "internalCarNumber"
CAR_NUMBER_PATTERN = re.compile(r"^\d{2}-\d{3,}$")

TEXT_FIELDS = frozenset({
    "internalCarNumber",
    "location",
    "status",
    "incidenceType",
    "type",
    "category",
    "partNumber",
    "partDescription",
    "partFamily",
    "customerCarNumber",
    "stopTagNumber",
    "auditNcNumber",
    "customer",
    "komatsuTracking",
    "workOrderNumber",
    "problemDescription",
    "departmentResponsible",
    "defectCategory",
    "champion",
    "correctiveActionPrevention",
    "correctiveActionDetection",
    "initialResp",
    "employeeId",
    "rmaNumber",
    "followUpContact",
    "followUpComments",
})

DATE_FIELDS = frozenset({
    "receivedDate",
    "manufactureDate",
    "finalRespDueDate",
    "completedRespActual",
    "closedDate",
})

BOOLEAN_FIELDS = frozenset({
    "containmentComplete",
    "costApproved",
})

NUMBER_FIELDS = frozenset({
    "quantity",
    "daysToClose",
    "proposedCost",
    "followUpDebitCost",
})

# Subset of NUMBER_FIELDS rendered as money on export
CURRENCY_FIELDS = frozenset({"proposedCost", "followUpDebitCost"})

CANONICAL_FIELDS = TEXT_FIELDS | DATE_FIELDS | BOOLEAN_FIELDS | NUMBER_FIELDS


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_car_number(value: str | None) -> tuple[str, int] | None:
    """Split a business key into (two-digit year, sequence).

    Returns None when the value does not follow the ``YY-NNN`` format, so
    free-form legacy keys never take part in sequence allocation.
    """
    if not value:
        return None
    text = value.strip()
    if not CAR_NUMBER_PATTERN.match(text):
        return None
    year, seq = text.split("-", 1)
    return year, int(seq)


def format_car_number(year: str, sequence: int) -> str:
    """Render ``YY-NNN`` (sequence zero-padded to at least 3 digits)."""
    return f"{year[-2:]}-{sequence:03d}"


@dataclass
class Record:
    """Stored corrective-action record.

    Attributes:
        id: Storage identifier assigned by the record store
        internal_car_number: Business key, unique across the store
        fields: Canonical field values (never contains the business key)
        created_at: UTC creation timestamp (store managed)
        updated_at: UTC last-modified timestamp, advanced on every mutation
    """
    id: str
    internal_car_number: str
    fields: NormalizedRow = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def get(self, name: str, default: Any = None) -> Any:
        if name == CAR_NUMBER_FIELD:
            return self.internal_car_number
        return self.fields.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        """Flat document form (camelCase keys, ISO timestamps)."""
        doc: dict[str, Any] = {"id": self.id, CAR_NUMBER_FIELD: self.internal_car_number}
        doc.update(self.fields)
        doc["createdAt"] = self.created_at.isoformat() if self.created_at else None
        doc["updatedAt"] = self.updated_at.isoformat() if self.updated_at else None
        return doc

    @staticmethod
    def from_dict(doc: dict[str, Any]) -> Record:
        data = dict(doc)
        record_id = str(data.pop("id"))
        car_number = str(data.pop(CAR_NUMBER_FIELD, "") or "")
        created = data.pop("createdAt", None)
        updated = data.pop("updatedAt", None)
        return Record(
            id=record_id,
            internal_car_number=car_number,
            fields=data,
            created_at=parse_timestamp(created),
            updated_at=parse_timestamp(updated),
        )


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts
