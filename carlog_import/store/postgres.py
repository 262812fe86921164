from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import psycopg2
import psycopg2.errors
from psycopg2.extras import Json
from psycopg2.pool import ThreadedConnectionPool

from ..models.record import Record, parse_timestamp
from .base import (
    ConflictError,
    DuplicateKeyError,
    RecordNotFoundError,
    RecordStore,
    StoreError,
    split_changes,
)

"""PostgreSQL-backed record store (psycopg2).

Business-key uniqueness is a UNIQUE constraint on ``internal_car_number``;
an insert racing another writer fails with DuplicateKeyError instead of
creating a second record. The year counter is advanced with a single
``INSERT ... ON CONFLICT DO UPDATE ... RETURNING`` statement, so concurrent
allocators never receive the same sequence number.

Each operation runs in its own transaction on a pooled connection, which
lets the reconciliation engine dispatch row writes from worker threads.
"""

__all__ = [
    "SCHEMA_SQL",
    "PostgresRecordStore",
]

logger = logging.getLogger(__name__)

TABLE = "corrective_actions"
COUNTER_TABLE = "car_counters"

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE} (
    id TEXT PRIMARY KEY,
    internal_car_number TEXT NOT NULL UNIQUE,
    fields JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS {COUNTER_TABLE} (
    year TEXT PRIMARY KEY,
    count INTEGER NOT NULL
);
"""

_COLUMNS = "id, internal_car_number, fields, created_at, updated_at"

_INSERT_SQL = f"""
INSERT INTO {TABLE} ({_COLUMNS})
VALUES (%s, %s, %s, clock_timestamp(), clock_timestamp())
RETURNING {_COLUMNS}
"""

# fields || set - clear; updated_at strictly increases even on clock ties
_UPDATE_SQL = f"""
UPDATE {TABLE}
   SET fields = (fields || %(set)s::jsonb) - %(clear)s::text[],
       internal_car_number = COALESCE(%(new_key)s, internal_car_number),
       updated_at = GREATEST(clock_timestamp(), updated_at + interval '1 microsecond')
 WHERE id = %(id)s
   AND (%(expected)s::timestamptz IS NULL OR updated_at <= %(expected)s::timestamptz)
RETURNING {_COLUMNS}
"""

_ALLOCATE_SQL = f"""
INSERT INTO {COUNTER_TABLE} (year, count)
VALUES (
    %(year)s,
    GREATEST(
        %(minimum)s,
        (SELECT COALESCE(MAX(split_part(internal_car_number, '-', 2)::bigint), 0)
           FROM {TABLE}
          WHERE internal_car_number ~ %(pattern)s)
    ) + 1
)
ON CONFLICT (year) DO UPDATE
   SET count = GREATEST({COUNTER_TABLE}.count + 1, EXCLUDED.count)
RETURNING count
"""


def _row_to_record(row: tuple[Any, ...]) -> Record:
    record_id, car_number, fields, created_at, updated_at = row
    return Record(
        id=str(record_id),
        internal_car_number=car_number,
        fields=dict(fields or {}),
        created_at=parse_timestamp(created_at),
        updated_at=parse_timestamp(updated_at),
    )


class PostgresRecordStore(RecordStore):
    def __init__(self, pool: Any) -> None:
        self._pool = pool

    @classmethod
    def from_dsn(cls, dsn: str, maxconn: int = 8) -> PostgresRecordStore:
        try:
            pool = ThreadedConnectionPool(1, max(1, maxconn), dsn)
        except psycopg2.Error as e:
            raise StoreError(f"database connection failed: {e}") from e
        return cls(pool)

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        """One transaction on a pooled connection: commit on success, rollback on error."""
        conn = self._pool.getconn()
        try:
            cur = conn.cursor()
            try:
                yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()
        finally:
            self._pool.putconn(conn)

    def ensure_schema(self) -> None:
        try:
            with self._cursor() as cur:
                cur.execute(SCHEMA_SQL)
        except psycopg2.Error as e:
            raise StoreError(f"schema setup failed: {e}") from e
        logger.debug(f"schema ready: {TABLE}, {COUNTER_TABLE}")

    def get(self, record_id: str) -> Record | None:
        try:
            with self._cursor() as cur:
                cur.execute(f"SELECT {_COLUMNS} FROM {TABLE} WHERE id = %s", (record_id,))
                row = cur.fetchone()
        except psycopg2.Error as e:
            raise StoreError(str(e)) from e
        return _row_to_record(row) if row else None

    def find_by_car_number(self, car_number: str) -> Record | None:
        try:
            with self._cursor() as cur:
                cur.execute(
                    f"SELECT {_COLUMNS} FROM {TABLE} WHERE internal_car_number = %s LIMIT 1",
                    (car_number,),
                )
                row = cur.fetchone()
        except psycopg2.Error as e:
            raise StoreError(str(e)) from e
        return _row_to_record(row) if row else None

    def list_records(self) -> list[Record]:
        try:
            with self._cursor() as cur:
                cur.execute(f"SELECT {_COLUMNS} FROM {TABLE} ORDER BY internal_car_number")
                rows = cur.fetchall()
        except psycopg2.Error as e:
            raise StoreError(str(e)) from e
        return [_row_to_record(r) for r in rows]

    def insert(self, car_number: str, fields: Mapping[str, Any]) -> Record:
        try:
            with self._cursor() as cur:
                cur.execute(_INSERT_SQL, (uuid.uuid4().hex, car_number, Json(dict(fields))))
                row = cur.fetchone()
        except psycopg2.errors.UniqueViolation as e:
            raise DuplicateKeyError(f"Duplicate Internal CAR #: {car_number}") from e
        except psycopg2.Error as e:
            raise StoreError(str(e)) from e
        return _row_to_record(row)

    def update_record(
        self,
        record_id: str,
        changes: Mapping[str, Any],
        expected_updated_at: datetime | None = None,
    ) -> Record:
        new_key, to_set, to_clear = split_changes(changes)
        params = {
            "id": record_id,
            "set": Json(to_set),
            "clear": to_clear,
            "new_key": new_key,
            "expected": parse_timestamp(expected_updated_at),
        }
        try:
            with self._cursor() as cur:
                cur.execute(_UPDATE_SQL, params)
                row = cur.fetchone()
                if row is None:
                    cur.execute(f"SELECT updated_at FROM {TABLE} WHERE id = %s", (record_id,))
                    current = cur.fetchone()
        except psycopg2.errors.UniqueViolation as e:
            raise DuplicateKeyError(f"Duplicate Internal CAR #: {new_key}") from e
        except psycopg2.Error as e:
            raise StoreError(str(e)) from e
        if row is None:
            if current is None:
                raise RecordNotFoundError("Record not found")
            raise ConflictError("Record was modified by another user")
        return _row_to_record(row)

    def allocate_sequence(self, year: str, minimum: int = 0) -> int:
        params = {"year": year, "minimum": minimum, "pattern": f"^{year}-[0-9]{{3,}}$"}
        try:
            with self._cursor() as cur:
                cur.execute(_ALLOCATE_SQL, params)
                (count,) = cur.fetchone()
        except psycopg2.Error as e:
            raise StoreError(f"counter allocation failed: {e}") from e
        return int(count)

    def close(self) -> None:
        closeall = getattr(self._pool, "closeall", None)
        if closeall is not None:
            closeall()
