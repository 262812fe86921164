from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ..config.loader import CarlogConfig
from ..excel.parser import ParseResult, parse_workbook
from ..logging.error_log import ErrorLogBuffer, ErrorRecord
from ..models.processing_result import ImportSummary
from ..models.record import utc_now
from ..store.base import RecordStore
from .progress import ProgressTracker
from .reconcile import current_year_suffix, reconcile_rows

"""Import orchestration: workbook -> parse pipeline -> reconciliation.

Parse errors, header diagnostics and failed rows are all recorded in the
JSON Lines error log; the run itself only fails for problems outside a
single row (unreadable config, unreachable store).
"""

__all__ = [
    "FILE_LEVEL_SHEET",
    "ImportRun",
    "import_workbook",
]

logger = logging.getLogger(__name__)

FILE_LEVEL_SHEET = "<FILE_LEVEL>"


@dataclass
class ImportRun:
    file_name: str
    parse: ParseResult
    summary: ImportSummary
    error_log_path: Path | None = None

    @property
    def dropped(self) -> int:
        return self.parse.dropped_rows

    @property
    def has_failures(self) -> bool:
        """Any failed row, a header row that had to be guessed, or nothing
        imported because the workbook could not be parsed."""
        if self.summary.failed:
            return True
        if any(d.kind == "HEADER_ROW_UNRECOGNIZED" for d in self.parse.diagnostics):
            return True
        return not self.parse.rows and bool(self.parse.errors or self.parse.diagnostics)


def _record_parse_problems(file_name: str, parsed: ParseResult, error_log: ErrorLogBuffer) -> None:
    sheet = parsed.sheet_name or FILE_LEVEL_SHEET
    for message in parsed.errors:
        error_log.append(ErrorRecord.create(file_name, sheet, -1, "PARSE_ERROR", message))
    for diagnostic in parsed.diagnostics:
        logger.warning(f"sheet={sheet}: {diagnostic.message}")
        error_log.append(ErrorRecord.create(file_name, sheet, -1, diagnostic.kind, diagnostic.message))


def import_workbook(
    source: Path | bytes,
    store: RecordStore,
    config: CarlogConfig | None = None,
    *,
    file_name: str | None = None,
    error_log: ErrorLogBuffer | None = None,
    cancel_event: threading.Event | None = None,
    year: str | None = None,
) -> ImportRun:
    """Parse one workbook and reconcile its rows against the store.

    Args:
        source: Workbook path or uploaded bytes
        store: Record store to reconcile against
        config: Parsing / batching options (defaults when None)
        file_name: Name used in the error log (defaults to the path name)
        error_log: Buffer to record problems in; a fresh one is created and
            flushed when omitted
        cancel_event: Stops issuing new write batches once set
        year: Two-digit year for allocated keys (default: current year in
            the configured timezone)

    Returns:
        ImportRun with the parse result and the reconciliation summary
    """
    config = config or CarlogConfig()
    year = year or current_year_suffix(datetime.now(config.zone))
    if file_name is None:
        file_name = source.name if isinstance(source, Path) else "<upload>"
    owns_log = error_log is None
    log = error_log if error_log is not None else ErrorLogBuffer()

    logger.info(f"importing {file_name}")
    parsed = parse_workbook(
        source,
        sheet_match=config.sheet_match,
        header_keywords=config.header_keywords,
        keep_na_strings=config.keep_na_strings,
    )
    _record_parse_problems(file_name, parsed, log)

    if parsed.rows:
        with ProgressTracker(len(parsed.rows), description=f"Importing {file_name}") as progress:
            summary = reconcile_rows(
                parsed.rows,
                store,
                year=year,
                batch_size=config.batch_size,
                max_workers=config.max_workers,
                cancel_event=cancel_event,
                progress=progress,
            )
            progress.set_postfix(created=summary.created, updated=summary.updated, failed=summary.failed)
    else:
        now = utc_now()
        summary = ImportSummary.from_outcomes([], now, now)

    sheet = parsed.sheet_name or FILE_LEVEL_SHEET
    for outcome in summary.failures:
        logger.warning(f"row {outcome.row_index + 1}: {outcome.error}")
        log.append(
            ErrorRecord.create(
                file_name,
                sheet,
                outcome.row_index,
                outcome.error_type or "STORE_ERROR",
                outcome.error or "",
            )
        )

    error_log_path: Path | None = None
    if owns_log:
        try:
            error_log_path = log.flush()
        except OSError as e:
            # the import already happened; losing the log must not fail it
            logger.error(f"could not write error log: {e}")
    return ImportRun(file_name=file_name, parse=parsed, summary=summary, error_log_path=error_log_path)
