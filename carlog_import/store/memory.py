from __future__ import annotations

import copy
import json
import logging
import threading
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from ..models.record import Record, parse_timestamp
from .base import (
    ConflictError,
    DuplicateKeyError,
    RecordNotFoundError,
    RecordStore,
    StoreError,
    max_sequence_for_year,
    next_timestamp,
    split_changes,
)

"""In-process record stores.

InMemoryRecordStore keeps everything in dicts guarded by one lock, which makes
check-and-insert and counter read-increment atomic for every thread of the
process. JsonFileRecordStore adds persistence to a single JSON document
(records + counters), rewritten after each write or once per write batch.
"""

__all__ = [
    "InMemoryRecordStore",
    "JsonFileRecordStore",
]

logger = logging.getLogger(__name__)


class InMemoryRecordStore(RecordStore):
    persistent = False

    def __init__(
        self,
        records: Iterable[Record] | None = None,
        counters: Mapping[str, int] | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, Record] = {}
        self._by_key: dict[str, str] = {}
        self._counters: dict[str, int] = dict(counters or {})
        self._batch_depth = 0
        self._dirty = False
        for record in records or []:
            if record.internal_car_number in self._by_key:
                raise DuplicateKeyError(f"Duplicate Internal CAR #: {record.internal_car_number}")
            self._records[record.id] = copy.deepcopy(record)
            self._by_key[record.internal_car_number] = record.id

    @property
    def counters(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def _persist(self) -> None:
        """Write the current state out; persistent subclasses override. Lock held."""

    def _snapshot(self) -> tuple[dict[str, Record], dict[str, str], dict[str, int]]:
        # stored Record objects are replaced on update, never mutated
        return dict(self._records), dict(self._by_key), dict(self._counters)

    def _restore(self, state: tuple[dict[str, Record], dict[str, str], dict[str, int]]) -> None:
        self._records, self._by_key, self._counters = state

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """Run one write under the lock and persist it.

        Inside write_batch() persistence is deferred to the end of the batch.
        Outside a batch a failed persist restores the state before the write.
        """
        with self._lock:
            state = self._snapshot() if self.persistent and not self._batch_depth else None
            try:
                yield
                if self._batch_depth:
                    self._dirty = True
                else:
                    self._persist()
            except StoreError:
                if state is not None:
                    self._restore(state)
                raise

    @contextmanager
    def write_batch(self) -> Iterator[None]:
        # the lock is not held across the block: worker threads write inside it
        with self._lock:
            outer = self._batch_depth == 0
            state = self._snapshot() if outer and self.persistent else None
            self._batch_depth += 1
        try:
            yield
        finally:
            with self._lock:
                self._batch_depth -= 1
                if outer and self._dirty:
                    self._dirty = False
                    try:
                        self._persist()
                    except StoreError:
                        if state is not None:
                            self._restore(state)
                        raise

    def get(self, record_id: str) -> Record | None:
        with self._lock:
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def find_by_car_number(self, car_number: str) -> Record | None:
        with self._lock:
            record_id = self._by_key.get(car_number)
            return self.get(record_id) if record_id is not None else None

    def list_records(self) -> list[Record]:
        with self._lock:
            records = [copy.deepcopy(r) for r in self._records.values()]
        return sorted(records, key=lambda r: r.internal_car_number)

    def insert(self, car_number: str, fields: Mapping[str, Any]) -> Record:
        with self._mutation():
            if car_number in self._by_key:
                raise DuplicateKeyError(f"Duplicate Internal CAR #: {car_number}")
            now = next_timestamp(None)
            record = Record(
                id=uuid.uuid4().hex,
                internal_car_number=car_number,
                fields=dict(fields),
                created_at=now,
                updated_at=now,
            )
            self._records[record.id] = record
            self._by_key[car_number] = record.id
        return copy.deepcopy(record)

    def update_record(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        expected_updated_at: datetime | None = None,
    ) -> Record:
        expected = parse_timestamp(expected_updated_at)
        new_key, to_set, to_clear = split_changes(changes)
        with self._mutation():
            current = self._records.get(record_id)
            if current is None:
                raise RecordNotFoundError("Record not found")
            if expected is not None and current.updated_at is not None and current.updated_at > expected:
                raise ConflictError("Record was modified by another user")
            record = copy.deepcopy(current)
            if new_key is not None and new_key != record.internal_car_number:
                if new_key in self._by_key:
                    raise DuplicateKeyError(f"Duplicate Internal CAR #: {new_key}")
                del self._by_key[record.internal_car_number]
                self._by_key[new_key] = record.id
                record.internal_car_number = new_key
            record.fields.update(to_set)
            for name in to_clear:
                record.fields.pop(name, None)
            record.updated_at = next_timestamp(record.updated_at)
            self._records[record_id] = record
        return copy.deepcopy(record)

    def allocate_sequence(self, year: str, minimum: int = 0) -> int:
        with self._mutation():
            existing = max_sequence_for_year(self._by_key.keys(), year)
            sequence = max(self._counters.get(year, 0), existing, minimum) + 1
            self._counters[year] = sequence
        return sequence


class JsonFileRecordStore(InMemoryRecordStore):
    """Record store persisted as one JSON document.

    Layout: ``{"records": [<record dict>...], "counters": {"25": 12}}``.
    A write that cannot be saved to the file is undone in memory as well.
    """

    persistent = True

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        records: list[Record] = []
        counters: dict[str, int] = {}
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
            except json.JSONDecodeError as e:
                raise StoreError(f"invalid record file {self.path}: {e}") from e
            records = [Record.from_dict(doc) for doc in data.get("records", [])]
            counters = {str(k): int(v) for k, v in data.get("counters", {}).items()}
            logger.debug(f"loaded {len(records)} record(s) from {self.path}")
        super().__init__(records=records, counters=counters)

    def _persist(self) -> None:
        doc = {
            "records": [r.to_dict() for r in self._records.values()],
            "counters": self._counters,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(doc, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            raise StoreError(f"failed writing {self.path}: {e}") from e
