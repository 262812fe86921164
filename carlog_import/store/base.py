from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from ..models.record import CAR_NUMBER_FIELD, Record, parse_car_number, utc_now

"""Record store interface.

The reconciliation engine and the bulk field-edit save only talk to a store
through this interface. Stores own the two pieces of shared mutable state:

- the record set, whose business key is unique (enforced at write time by
  the store itself, never by a caller's read-before-write check)
- the per-year sequence counter, allocated with an atomic read-increment
"""

__all__ = [
    "StoreError",
    "DuplicateKeyError",
    "ConflictError",
    "RecordNotFoundError",
    "RecordStore",
    "next_timestamp",
    "split_changes",
    "max_sequence_for_year",
]


class StoreError(Exception):
    """An underlying store operation failed."""


class DuplicateKeyError(StoreError):
    """The business key is already taken."""


class ConflictError(StoreError):
    """The record was modified after the caller's expected timestamp."""


class RecordNotFoundError(StoreError):
    pass


def next_timestamp(previous: datetime | None) -> datetime:
    """Current UTC time, forced strictly past ``previous``."""
    now = utc_now()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def split_changes(changes: Mapping[str, Any]) -> tuple[str | None, dict[str, Any], list[str]]:
    """Separate a patch into (new business key, fields to set, fields to clear).

    A value of None clears the field; absent fields are never stored as
    sentinels.
    """
    new_key: str | None = None
    to_set: dict[str, Any] = {}
    to_clear: list[str] = []
    for name, value in changes.items():
        if name == CAR_NUMBER_FIELD:
            if value is not None and str(value).strip():
                new_key = str(value).strip()
            continue
        if value is None:
            to_clear.append(name)
        else:
            to_set[name] = value
    return new_key, to_set, to_clear


def max_sequence_for_year(car_numbers: Any, year: str) -> int:
    best = 0
    for number in car_numbers:
        parsed = parse_car_number(number)
        if parsed is not None and parsed[0] == year:
            best = max(best, parsed[1])
    return best


class RecordStore(ABC):
    """Abstract record store."""

    @abstractmethod
    def get(self, record_id: str) -> Record | None:
        """Point lookup by storage id."""

    @abstractmethod
    def find_by_car_number(self, car_number: str) -> Record | None:
        """Lookup by business key; at most one match."""

    @abstractmethod
    def list_records(self) -> list[Record]:
        """All records ordered by business key."""

    @abstractmethod
    def insert(self, car_number: str, fields: Mapping[str, Any]) -> Record:
        """Create a record.

        Raises:
            DuplicateKeyError: car_number already exists
            StoreError: the write failed
        """

    @abstractmethod
    def update_record(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        expected_updated_at: datetime | None = None,
    ) -> Record:
        """Partial-field update; always advances ``updated_at``.

        Fields missing from ``changes`` are left untouched. When
        ``expected_updated_at`` is given and the stored ``updated_at`` is
        strictly later, nothing is written.

        Raises:
            RecordNotFoundError: no record with record_id
            ConflictError: stored record is newer than expected_updated_at
            DuplicateKeyError: the patch renames the key to a taken one
        """

    @abstractmethod
    def allocate_sequence(self, year: str, minimum: int = 0) -> int:
        """Atomically allocate the next sequence number for a two-digit year.

        The result is one more than the largest of: the year's counter, the
        highest sequence among stored keys for that year, and ``minimum``.
        """

    def update_by_car_number(self, car_number: str, changes: Mapping[str, Any]) -> Record:
        existing = self.find_by_car_number(car_number)
        if existing is None:
            raise RecordNotFoundError(f"Record not found: {car_number}")
        return self.update_record(existing.id, changes)

    @contextmanager
    def write_batch(self) -> Iterator[None]:
        """Group the writes made inside the block.

        Stores that persist a whole document write it once on exit and roll
        the group back when that write fails (StoreError). Stores that commit
        each write on its own make this a no-op.
        """
        yield

    def close(self) -> None:  # pragma: no cover - trivial
        pass

    def __enter__(self) -> RecordStore:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
