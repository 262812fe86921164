"""Domain models for the CAR log import tool."""

from .error_record import ErrorRecord
from .processing_result import (
    BulkUpdateSummary,
    ImportAction,
    ImportSummary,
    PatchResult,
    RowOutcome,
)
from .record import CAR_NUMBER_FIELD, CAR_NUMBER_PATTERN, NormalizedRow, Record

__all__ = [
    # Records
    "CAR_NUMBER_FIELD",
    "CAR_NUMBER_PATTERN",
    "NormalizedRow",
    "Record",
    # Results
    "BulkUpdateSummary",
    "ErrorRecord",
    "ImportAction",
    "ImportSummary",
    "PatchResult",
    "RowOutcome",
]
