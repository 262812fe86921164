from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..models.processing_result import ImportAction, ImportSummary, RowOutcome
from ..models.record import (
    CAR_NUMBER_FIELD,
    NormalizedRow,
    Record,
    format_car_number,
    parse_car_number,
    utc_now,
)
from ..store.base import DuplicateKeyError, RecordStore, StoreError, max_sequence_for_year

"""Import-time reconciliation (upsert by business key).

Rows are planned strictly in input order: duplicate detection and key
allocation depend on it. The resulting store writes are then dispatched in
bounded batches on a thread pool; writes touching the same business key
inside one batch run serially, in input order, on a single worker. Each
batch is one store write batch; when it cannot be persisted every row of it that
would have been written fails with STORE_ERROR.

Per row:
1. key supplied and already claimed by an earlier created row -> failed
2. key supplied and stored -> updated (partial merge)
3. key supplied, not stored -> created with that key
4. no key -> created with a freshly allocated ``YY-NNN`` key
"""

__all__ = [
    "BATCH_SIZE",
    "DEFAULT_MAX_WORKERS",
    "current_year_suffix",
    "next_car_number",
    "add_record",
    "reconcile_rows",
]

logger = logging.getLogger(__name__)

BATCH_SIZE = 200
DEFAULT_MAX_WORKERS = 8

CANCELLED_MESSAGE = "import cancelled"


@dataclass
class _Plan:
    row_index: int
    action: ImportAction
    car_number: str | None = None
    fields: NormalizedRow = field(default_factory=dict)
    record_id: str | None = None
    error: str | None = None
    error_type: str | None = None

    def failed_outcome(self) -> RowOutcome:
        return RowOutcome(
            success=False,
            row_index=self.row_index,
            action=ImportAction.FAILED,
            error=self.error,
            error_type=self.error_type,
        )


def current_year_suffix(now: datetime | None = None) -> str:
    return f"{(now or utc_now()).year % 100:02d}"


def next_car_number(records: Iterable[Record], year: str | None = None) -> str:
    """Preview the next business key for manual entry (max sequence + 1)."""
    year = year or current_year_suffix()
    highest = max_sequence_for_year((r.internal_car_number for r in records), year)
    return format_car_number(year, highest + 1)


def add_record(
    store: RecordStore,
    fields: Mapping[str, Any],
    car_number: str | None = None,
    year: str | None = None,
) -> Record:
    """Create one record from manual entry, allocating a key when none is given."""
    data = {k: v for k, v in fields.items() if k != CAR_NUMBER_FIELD and v is not None}
    key = (car_number or str(fields.get(CAR_NUMBER_FIELD) or "")).strip()
    if not key:
        year = year or current_year_suffix()
        key = format_car_number(year, store.allocate_sequence(year))
    return store.insert(key, data)


def _row_key(row: Mapping[str, Any]) -> str | None:
    value = row.get(CAR_NUMBER_FIELD)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class _Planner:
    """Sequential planning state shared across the batches of one import."""

    def __init__(self, store: RecordStore, year: str) -> None:
        self.store = store
        self.year = year
        self.created_keys: set[str] = set()
        self.batch_max: dict[str, int] = {}

    def _claim(self, key: str) -> None:
        self.created_keys.add(key)
        parsed = parse_car_number(key)
        if parsed is not None:
            year, seq = parsed
            self.batch_max[year] = max(self.batch_max.get(year, 0), seq)

    def release(self, keys: Iterable[str | None]) -> None:
        """Forget claims whose writes were rolled back."""
        self.created_keys.difference_update(k for k in keys if k)

    def plan(self, row_index: int, row: Mapping[str, Any]) -> _Plan:
        key = _row_key(row)
        fields = {k: v for k, v in row.items() if k != CAR_NUMBER_FIELD}
        try:
            if key is not None:
                if key in self.created_keys:
                    return _Plan(
                        row_index,
                        ImportAction.FAILED,
                        error=f"Duplicate Internal CAR #: {key}",
                        error_type="DUPLICATE_KEY",
                    )
                existing = self.store.find_by_car_number(key)
                if existing is not None:
                    return _Plan(row_index, ImportAction.UPDATED, key, fields, record_id=existing.id)
                self._claim(key)
                return _Plan(row_index, ImportAction.CREATED, key, fields)

            sequence = self.store.allocate_sequence(self.year, minimum=self.batch_max.get(self.year, 0))
            key = format_car_number(self.year, sequence)
            self._claim(key)
            return _Plan(row_index, ImportAction.CREATED, key, fields)
        except StoreError as e:
            return _Plan(row_index, ImportAction.FAILED, error=str(e), error_type="STORE_ERROR")


def _write(plan: _Plan, store: RecordStore) -> RowOutcome:
    try:
        if plan.action is ImportAction.CREATED:
            store.insert(plan.car_number or "", plan.fields)
        else:
            store.update_record(plan.record_id or "", plan.fields)
    except DuplicateKeyError as e:
        plan.error, plan.error_type = str(e), "DUPLICATE_KEY"
        return plan.failed_outcome()
    except StoreError as e:
        plan.error, plan.error_type = str(e), "STORE_ERROR"
        return plan.failed_outcome()
    except Exception as e:
        # unexpected driver errors stay scoped to their row
        logger.exception(f"row {plan.row_index + 1}: unexpected store failure")
        plan.error, plan.error_type = str(e) or type(e).__name__, "STORE_ERROR"
        return plan.failed_outcome()
    return RowOutcome(
        success=True,
        row_index=plan.row_index,
        action=plan.action,
        internal_car_number=plan.car_number,
    )


def _rolled_back(outcomes: list[RowOutcome], start: int, count: int, error: str) -> list[RowOutcome]:
    """Outcomes for a batch whose writes could not be persisted."""
    failed = {o.row_index: o for o in outcomes if not o.success}
    return [
        failed.get(i)
        or RowOutcome(success=False, row_index=i, action=ImportAction.FAILED, error=error, error_type="STORE_ERROR")
        for i in range(start, start + count)
    ]


def _write_group(plans: list[_Plan], store: RecordStore) -> list[RowOutcome]:
    return [_write(p, store) for p in plans]


def _dispatch(plans: Sequence[_Plan], store: RecordStore, pool: ThreadPoolExecutor) -> list[RowOutcome]:
    outcomes: list[RowOutcome] = []
    groups: dict[str, list[_Plan]] = {}
    for plan in plans:
        if plan.action is ImportAction.FAILED:
            outcomes.append(plan.failed_outcome())
            continue
        groups.setdefault(plan.car_number or "", []).append(plan)
    futures = [pool.submit(_write_group, group, store) for group in groups.values()]
    for future in futures:
        outcomes.extend(future.result())
    return outcomes


def reconcile_rows(
    rows: Iterable[NormalizedRow],
    store: RecordStore,
    *,
    year: str | None = None,
    batch_size: int = BATCH_SIZE,
    max_workers: int = DEFAULT_MAX_WORKERS,
    cancel_event: threading.Event | None = None,
    progress: Callable[[int], None] | None = None,
) -> ImportSummary:
    """Reconcile normalized rows against the store.

    Args:
        rows: Normalized rows in spreadsheet order
        store: Record store holding the existing records and year counters
        year: Two-digit year used for allocated keys (default: current year)
        batch_size: Rows planned and written per dispatch round
        max_workers: Thread pool size for store writes
        cancel_event: When set, no further batch is started; the remaining
            rows are reported as failed ("import cancelled")
        progress: Called with the number of rows finished after each batch

    Returns:
        ImportSummary with one outcome per input row, ordered by row index.
        Never raises for row-level failures.
    """
    start_time = utc_now()
    rows = list(rows)
    planner = _Planner(store, year or current_year_suffix())
    outcomes: list[RowOutcome] = []
    batch_size = max(1, batch_size)

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        for batch_start in range(0, len(rows), batch_size):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"import cancelled; {len(rows) - batch_start} row(s) not processed")
                outcomes.extend(
                    RowOutcome(
                        success=False,
                        row_index=i,
                        action=ImportAction.FAILED,
                        error=CANCELLED_MESSAGE,
                        error_type="CANCELLED",
                    )
                    for i in range(batch_start, len(rows))
                )
                break
            batch = rows[batch_start:batch_start + batch_size]
            plans: list[_Plan] = []
            batch_outcomes: list[RowOutcome] = []
            try:
                with store.write_batch():
                    plans = [planner.plan(batch_start + offset, row) for offset, row in enumerate(batch)]
                    batch_outcomes = _dispatch(plans, store, pool)
            except StoreError as e:
                logger.error(f"rows {batch_start + 1}-{batch_start + len(batch)}: writes rolled back: {e}")
                planner.release(p.car_number for p in plans if p.action is ImportAction.CREATED)
                batch_outcomes = _rolled_back(batch_outcomes, batch_start, len(batch), str(e))
            outcomes.extend(batch_outcomes)
            logger.debug(f"reconciled rows {batch_start + 1}-{batch_start + len(batch)}")
            if progress is not None:
                progress(len(batch))

    summary = ImportSummary.from_outcomes(outcomes, start_time, utc_now())
    logger.info(
        f"reconciled total={summary.total} created={summary.created} "
        f"updated={summary.updated} failed={summary.failed}"
    )
    return summary
